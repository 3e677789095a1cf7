"""Durable RunState documents with atomic replace-on-write.

One RunState document and one ExecutionPlan document per run id, both kept
under ``state_dir``. Every mutation goes through :meth:`StateStore.update`,
which re-reads the on-disk state, applies a transformation and writes the
result to a temporary file that is renamed into place, so a crash leaves
either the old or the new document on disk.

The store guarantees atomicity of a single write only. Mutual exclusion
between processes is the lock manager's job.
"""

from __future__ import annotations

import json
import logging
import os
import re
import socket
import tempfile
from datetime import datetime, timezone
from typing import Callable

from pydantic import ValidationError

from swe_swarm.exceptions import AlreadyExists, CorruptState, NotFound
from swe_swarm.execution.schemas import (
    ErrorKind,
    ErrorRecord,
    ExecutionPlan,
    ItemState,
    ItemStatus,
    RunKind,
    RunState,
    RunStatus,
)

logger = logging.getLogger(__name__)

_RUN_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

MAX_ERROR_MESSAGE_CHARS = 2000

# Legal WorkItem transitions. Anything leaving ``fatal`` or ``completed`` is a bug.
_TRANSITIONS: dict[ItemStatus, frozenset[ItemStatus]] = {
    ItemStatus.PENDING: frozenset({ItemStatus.IN_PROGRESS}),
    ItemStatus.IN_PROGRESS: frozenset({
        ItemStatus.IN_PROGRESS,  # re-dispatch after a crash mid-wave
        ItemStatus.COMPLETED,
        ItemStatus.FAILED,
        ItemStatus.FATAL,
    }),
    ItemStatus.FAILED: frozenset({ItemStatus.IN_PROGRESS}),
    ItemStatus.COMPLETED: frozenset(),
    ItemStatus.FATAL: frozenset(),
}


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def atomic_write(path: str, text: str) -> None:
    """Write ``text`` to ``path`` via a temp file in the same directory and rename."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{os.path.basename(path)}.", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            os.unlink(tmp)


def validate_run_id(run_id: str) -> str:
    if not _RUN_ID_RE.match(run_id or ""):
        raise ValueError(
            f"run id must be alphanumeric with '.', '_' or '-', got {run_id!r}"
        )
    return run_id


# ---------------------------------------------------------------------------
# Pure RunState mutators (used as StateStore.update transformations)
# ---------------------------------------------------------------------------


def mark_item(
    state: RunState,
    item_id: str,
    status: ItemStatus,
    message: str = "",
    artifact: str = "",
) -> RunState:
    """Advance one item's status. ``failed`` transitions bump the attempt counter."""
    current = state.item(item_id)
    if status not in _TRANSITIONS[current.status]:
        raise ValueError(
            f"illegal transition for item {item_id!r}: {current.status.value} -> {status.value}"
        )
    state.items[item_id] = ItemState(
        status=status,
        attempts=current.attempts + (1 if status == ItemStatus.FAILED else 0),
        message=message,
        updated_at=utc_now(),
        artifact=artifact or current.artifact,
    )
    return state


def register_items(state: RunState, item_ids: list[str]) -> RunState:
    """Add a pending entry for every id the state has not seen yet."""
    for item_id in item_ids:
        if item_id not in state.items:
            state.items[item_id] = ItemState()
    return state


def record_error(state: RunState, item_id: str, kind: ErrorKind, message: str) -> RunState:
    text = (message or "").strip()
    if len(text) > MAX_ERROR_MESSAGE_CHARS:
        text = "..." + text[-MAX_ERROR_MESSAGE_CHARS:]
    state.errors.append(ErrorRecord(item_id=item_id, kind=kind, message=text, timestamp=utc_now()))
    return state


def mark_wave_complete(state: RunState, wave: int) -> RunState:
    state.completed_waves = sorted(set(state.completed_waves) | {wave})
    return state


def set_current_wave(state: RunState, wave: int) -> RunState:
    state.current_wave = wave
    return state


def set_run_status(state: RunState, status: RunStatus) -> RunState:
    state.status = status
    return state


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class StateStore:
    """Filesystem-resident RunState and ExecutionPlan documents keyed by run id."""

    def __init__(self, state_dir: str) -> None:
        self.state_dir = state_dir

    def state_path(self, run_id: str) -> str:
        return os.path.join(self.state_dir, f"{validate_run_id(run_id)}.json")

    def plan_path(self, run_id: str) -> str:
        return os.path.join(self.state_dir, f"{validate_run_id(run_id)}-plan.json")

    def lock_path(self, run_id: str) -> str:
        return os.path.join(self.state_dir, f"{validate_run_id(run_id)}.lock")

    def log_path(self, run_id: str) -> str:
        return os.path.join(self.state_dir, f"{validate_run_id(run_id)}.log")

    def exists(self, run_id: str) -> bool:
        return os.path.exists(self.state_path(run_id))

    def initialize(
        self,
        run_id: str,
        kind: RunKind = RunKind.EPIC,
        fresh: bool = False,
    ) -> RunState:
        """Create a fresh RunState.

        Raises:
            AlreadyExists: a state exists and is not a completed run being
                restarted with ``fresh=True``. The caller must resume instead.
        """
        if self.exists(run_id):
            existing = self.load(run_id)
            if not (fresh and existing.status == RunStatus.COMPLETED):
                raise AlreadyExists(
                    f"Run {run_id!r} already exists (status: {existing.status.value}); "
                    f"resume it or discard it first"
                )
            logger.info("Starting fresh run over completed state for %s", run_id)

        now = utc_now()
        state = RunState(
            run_id=run_id,
            kind=kind,
            created_at=now,
            updated_at=now,
            pid=os.getpid(),
            hostname=socket.gethostname(),
        )
        self._write(state)
        return state

    def load(self, run_id: str) -> RunState:
        """Read and validate the persisted RunState. Never writes."""
        path = self.state_path(run_id)
        if not os.path.exists(path):
            raise NotFound(f"No state for run {run_id!r} at {path}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                return RunState.model_validate(json.load(f))
        except (json.JSONDecodeError, ValidationError) as e:
            raise CorruptState(f"State file {path} is invalid: {e}") from e

    def update(self, run_id: str, mutator: Callable[[RunState], RunState | None]) -> RunState:
        """Apply ``mutator`` to the current on-disk state and persist the result atomically."""
        working = self.load(run_id)
        result = mutator(working)
        new_state = result if result is not None else working
        new_state.updated_at = utc_now()
        new_state.pid = os.getpid()
        self._write(new_state)
        return new_state

    def discard(self, run_id: str) -> None:
        """Remove the RunState and plan documents (operator-initiated fresh start)."""
        for path in (self.state_path(run_id), self.plan_path(run_id)):
            if os.path.exists(path):
                os.remove(path)
                logger.info("Discarded %s", path)

    def save_plan(self, run_id: str, plan: ExecutionPlan) -> None:
        atomic_write(self.plan_path(run_id), plan.model_dump_json(indent=2) + "\n")

    def load_plan(self, run_id: str) -> ExecutionPlan | None:
        """Return the accepted plan for ``run_id``, or None if none was stored."""
        path = self.plan_path(run_id)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return ExecutionPlan.model_validate(json.load(f))
        except (json.JSONDecodeError, ValidationError) as e:
            raise CorruptState(f"Plan file {path} is invalid: {e}") from e

    def _write(self, state: RunState) -> None:
        atomic_write(self.state_path(state.run_id), state.model_dump_json(indent=2) + "\n")
