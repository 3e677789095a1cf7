"""Unit of work that runs an external agent command for one item."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from pathlib import Path
from typing import IO, Any

from swe_swarm.execution.lock import kill_process_tree
from swe_swarm.execution.schemas import WorkItem
from swe_swarm.units import UnitResult

logger = logging.getLogger(__name__)

DEFAULT_ARTIFACT_TEMPLATE = ".worktrees/issue-{id}.pr"
DEFAULT_FAILURE_MARKER = "❌"


def _write_log(fh: IO[str], event: str, **data: Any) -> None:
    """Append a single JSONL event to the log file handle."""
    entry = {"ts": time.time(), "event": event, **data}
    fh.write(json.dumps(entry, default=str) + "\n")
    fh.flush()


def _open_log(log_file: str | Path | None) -> IO[str] | None:
    """Open a log file for appending. Returns None if no log_file."""
    if log_file is None:
        return None
    path = Path(log_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    return open(path, "a", encoding="utf-8")


def _render(template: str, item: WorkItem) -> str:
    return template.replace("{id}", item.id).replace("{title}", item.title)


class CommandUnit:
    """Run ``command`` once per work item and report how it went.

    ``{id}`` and ``{title}`` in the command arguments are replaced with the
    item's values. The item counts as done when the artifact file (by default
    ``.worktrees/issue-{id}.pr``, relative to ``cwd``) exists and is
    non-empty, whatever the exit status. Otherwise a non-zero exit is a
    failure, and a zero exit is a failure only if the output contains
    ``failure_marker``.

    Args:
        command: Command line template, e.g. ``["swarm", "{id}"]``.
        cwd: Working directory for the command and base for the artifact path.
        env: Extra environment variables.
        log_dir: Directory for per-item ``issue-{id}.log`` JSONL logs.
        artifact_template: Path template of the completion artifact; empty
            disables the artifact check.
        failure_marker: Text marking a failure despite a zero exit status.
    """

    def __init__(
        self,
        command: list[str],
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        log_dir: str | None = None,
        artifact_template: str = DEFAULT_ARTIFACT_TEMPLATE,
        failure_marker: str = DEFAULT_FAILURE_MARKER,
    ) -> None:
        if not command:
            raise ValueError("command must not be empty")
        self.command = list(command)
        self.cwd = cwd or os.getcwd()
        self.env = dict(env or {})
        self.log_dir = log_dir
        self.artifact_template = artifact_template
        self.failure_marker = failure_marker

    def artifact_for(self, item_id: str) -> str:
        """Return the artifact recorded for ``item_id`` (e.g. a PR URL), or ``""``."""
        if not self.artifact_template:
            return ""
        path = os.path.join(self.cwd, self.artifact_template.replace("{id}", item_id))
        try:
            with open(path, "r", encoding="utf-8") as f:
                return f.read().strip()
        except FileNotFoundError:
            return ""
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Cannot read artifact %s: %s", path, e)
            return ""

    def log_path(self, item_id: str) -> str | None:
        if self.log_dir is None:
            return None
        return os.path.join(self.log_dir, f"issue-{item_id}.log")

    async def __call__(self, item: WorkItem) -> UnitResult:
        cmd = [_render(arg, item) for arg in self.command]
        full_env = {
            **os.environ,
            **self.env,
            "TERM": "dumb",
            "NO_COLOR": "1",
        }

        log_fh = _open_log(self.log_path(item.id))
        try:
            if log_fh:
                _write_log(log_fh, "start", item=item.id, cmd=cmd, cwd=self.cwd)
            start_time = time.time()

            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=full_env,
            )
            try:
                stdout_b, stderr_b = await proc.communicate()
            except asyncio.CancelledError:
                logger.warning("Item %s cancelled; killing PID %d", item.id, proc.pid)
                await asyncio.to_thread(kill_process_tree, proc.pid)
                if log_fh:
                    _write_log(log_fh, "end", is_error=True, reason="cancelled")
                raise

            duration_ms = int((time.time() - start_time) * 1000)
            output = stdout_b.decode("utf-8", errors="replace")
            stderr_text = stderr_b.decode("utf-8", errors="replace")
            if stderr_text.strip():
                output = f"{output}\n{stderr_text}" if output else stderr_text

            artifact = self.artifact_for(item.id)
            if artifact:
                success = True
            elif proc.returncode != 0:
                success = False
            else:
                success = not (self.failure_marker and self.failure_marker in output)

            if log_fh:
                _write_log(
                    log_fh,
                    "end",
                    is_error=not success,
                    exit_code=proc.returncode,
                    duration_ms=duration_ms,
                    artifact=artifact,
                    output=output,
                )
        finally:
            if log_fh:
                log_fh.close()

        return UnitResult(
            success=success,
            output=output,
            exit_code=proc.returncode,
            artifact=artifact,
        )
