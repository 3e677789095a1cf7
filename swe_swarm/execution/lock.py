"""PID-based run locks: at most one live orchestrator per run id.

A lock is a small JSON document created with ``O_EXCL`` next to the run
state. Liveness of the recorded owner is probed with psutil; PID reuse can
make a dead owner look alive, which is an accepted risk.
"""

from __future__ import annotations

import json
import logging
import os
import socket

import psutil
from pydantic import ValidationError

from swe_swarm.exceptions import LockHeld
from swe_swarm.execution.schemas import LockRecord
from swe_swarm.execution.state_store import utc_now, validate_run_id

logger = logging.getLogger(__name__)

TERMINATE_GRACE_SECONDS = 5.0


def pid_alive(pid: int | None) -> bool:
    """Best-effort "is this process currently running" probe. Zombies count as dead."""
    if pid is None or pid <= 0:
        return False
    try:
        proc = psutil.Process(pid)
        return proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        # AccessDenied means the process exists but belongs to someone else.
        return psutil.pid_exists(pid)


def kill_process_tree(pid: int, timeout: float = TERMINATE_GRACE_SECONDS) -> None:
    """Terminate ``pid`` and all its descendants, force-killing survivors after ``timeout``."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return
    try:
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        children = []

    procs = children + [parent]
    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass
    _, alive = psutil.wait_procs(procs, timeout=timeout)
    for proc in alive:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
    if alive:
        psutil.wait_procs(alive, timeout=timeout)


def kill_children(timeout: float = TERMINATE_GRACE_SECONDS) -> int:
    """Terminate every descendant of the current process. Returns how many were found."""
    try:
        children = psutil.Process(os.getpid()).children(recursive=True)
    except psutil.NoSuchProcess:
        return 0
    for child in children:
        try:
            child.terminate()
        except psutil.NoSuchProcess:
            pass
    _, alive = psutil.wait_procs(children, timeout=timeout)
    for child in alive:
        try:
            child.kill()
        except psutil.NoSuchProcess:
            pass
    return len(children)


class LockManager:
    """Creates and releases ``<run_id>.lock`` files under ``lock_dir``."""

    def __init__(self, lock_dir: str) -> None:
        self.lock_dir = lock_dir

    def lock_path(self, run_id: str) -> str:
        return os.path.join(self.lock_dir, f"{validate_run_id(run_id)}.lock")

    def read(self, run_id: str) -> LockRecord | None:
        """Return the current lock record, or None if absent or unreadable."""
        path = self.lock_path(run_id)
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = f.read()
        except FileNotFoundError:
            return None
        try:
            return LockRecord.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError):
            # Legacy / hand-written locks may hold a bare PID.
            text = raw.strip()
            if text.isdigit():
                return LockRecord(run_id=run_id, pid=int(text))
            logger.warning("Ignoring unreadable lock file %s", path)
            return None

    def acquire(self, run_id: str, force: bool = False) -> LockRecord:
        """Take the lock for ``run_id`` and return the token to release it with.

        Raises:
            LockHeld: the recorded owner is alive and ``force`` is False, or
                the owner is this very process.
        """
        os.makedirs(self.lock_dir, exist_ok=True)
        path = self.lock_path(run_id)

        existing = self.read(run_id)
        if existing is not None or os.path.exists(path):
            if existing is not None and pid_alive(existing.pid):
                if not force or existing.pid == os.getpid():
                    raise LockHeld(run_id, existing.pid)
                logger.warning("Force-killing stale process %d holding %s", existing.pid, run_id)
                kill_process_tree(existing.pid)
            elif existing is not None:
                logger.info("Removing stale lock for %s (PID %d not running)", run_id, existing.pid)
            try:
                os.remove(path)
            except FileNotFoundError:
                pass

        token = LockRecord(
            run_id=run_id,
            pid=os.getpid(),
            hostname=socket.gethostname(),
            acquired_at=utc_now(),
        )
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            # Someone else won the race between our removal and create.
            winner = self.read(run_id)
            raise LockHeld(run_id, winner.pid if winner else -1)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(token.model_dump_json() + "\n")
        logger.debug("Acquired lock %s", path)
        return token

    def release(self, token: LockRecord) -> bool:
        """Remove the lock only if it still records the caller's own process.

        Returns True when the file was removed.
        """
        current = self.read(token.run_id)
        if current is None or current.pid != token.pid or current.acquired_at != token.acquired_at:
            logger.debug("Lock for %s no longer ours; leaving it in place", token.run_id)
            return False
        try:
            os.remove(self.lock_path(token.run_id))
        except FileNotFoundError:
            return False
        return True
