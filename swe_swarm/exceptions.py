"""Exception hierarchy for swe_swarm.

All exceptions inherit from SwarmError so callers can catch broadly
or narrowly as needed. Per-item failures are never raised; they are
absorbed by the scheduler and recorded in the run state.
"""


class SwarmError(Exception):
    """Base exception for all swe_swarm errors."""


# ---------------------------------------------------------------------------
# State store
# ---------------------------------------------------------------------------

class StateError(SwarmError):
    """Failed state store operation."""


class AlreadyExists(StateError):
    """A run state already exists and must be resumed explicitly."""


class NotFound(StateError):
    """No run state exists for the requested run id."""


class CorruptState(StateError):
    """A persisted state or lock document failed validation on load."""


# ---------------------------------------------------------------------------
# Locking
# ---------------------------------------------------------------------------

class LockHeld(SwarmError):
    """Another live process owns the run lock."""

    def __init__(self, run_id: str, pid: int) -> None:
        super().__init__(f"Lock for {run_id!r} held by PID {pid} (use --force to override)")
        self.run_id = run_id
        self.pid = pid


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------

class InvalidPlan(SwarmError):
    """Execution plan is structurally malformed."""
