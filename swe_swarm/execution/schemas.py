"""Pydantic schemas for wave plans, persisted run state and execution config."""

from __future__ import annotations

import os
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

STATE_VERSION = "1"
DEFAULT_STATE_DIR = ".swarm"


def _default_state_dir() -> str:
    return os.getenv("SWE_SWARM_STATE_DIR", DEFAULT_STATE_DIR)


# ---------------------------------------------------------------------------
# Status enums
# ---------------------------------------------------------------------------


class RunKind(str, Enum):
    """Nesting level a run operates at."""

    EPIC = "epic"          # schedules issues
    PROJECT = "project"    # schedules epics


class RunStatus(str, Enum):
    """Overall status of one orchestration run."""

    INITIALIZED = "initialized"
    RUNNING = "running"
    INTERRUPTED = "interrupted"
    FATAL_ERROR = "fatal_error"
    COMPLETED = "completed"


class ItemStatus(str, Enum):
    """Status of a single work item within a run."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    FATAL = "fatal"


class ErrorKind(str, Enum):
    """Failure taxonomy produced by the error classifier."""

    NONE = "none"                # unclassified failure
    RATE_LIMIT = "rate_limit"    # 429 - retry with backoff
    AUTH = "auth"                # 401/403 - fatal
    QUOTA = "quota"              # billing / quota exhausted - fatal
    TIMEOUT = "timeout"          # retry
    NETWORK = "network"          # retry
    API_ERROR = "api_error"      # 5xx - retry


class RunOutcome(str, Enum):
    """Operator-facing verdict derived from a terminal RunState."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FATAL = "fatal"
    INTERRUPTED = "interrupted"


# ---------------------------------------------------------------------------
# Plan models
# ---------------------------------------------------------------------------


def _as_id(value: Any) -> str:
    if isinstance(value, bool) or value is None:
        raise ValueError(f"invalid work item id: {value!r}")
    text = str(value).strip()
    if not text:
        raise ValueError("work item id must not be empty")
    return text


class WorkItem(BaseModel):
    """One schedulable unit: an issue number, or an epic number at the outer level."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    depends_on: list[str] = []   # informational only; waves already encode the order

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, v: Any) -> str:
        return _as_id(v)

    @field_validator("depends_on", mode="before")
    @classmethod
    def _coerce_deps(cls, v: Any) -> list[str]:
        if v is None:
            return []
        return [_as_id(d) for d in v]


class Wave(BaseModel):
    """An ordered stage of the plan and the items assigned to it."""

    model_config = ConfigDict(frozen=True)

    number: int
    items: list[str]
    description: str = ""

    @field_validator("number")
    @classmethod
    def _validate_number(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"wave number must be >= 1, got {v}")
        return v

    @field_validator("items", mode="before")
    @classmethod
    def _validate_items(cls, v: Any) -> list[str]:
        if not isinstance(v, (list, tuple)) or not v:
            raise ValueError("wave item list must be a non-empty list")
        return [_as_id(i) for i in v]


class ExecutionPlan(BaseModel):
    """Ordered waves plus optional metadata. Immutable once accepted."""

    model_config = ConfigDict(frozen=True)

    waves: list[Wave]
    items: dict[str, WorkItem] = {}
    success_criteria: list[str] = []
    estimated_time: str = ""

    @model_validator(mode="after")
    def _validate_structure(self) -> "ExecutionPlan":
        if not self.waves:
            raise ValueError("plan must contain at least one wave")

        previous = 0
        for wave in self.waves:
            if wave.number <= previous:
                raise ValueError(
                    f"wave numbers must be strictly increasing; {wave.number} follows {previous}"
                )
            previous = wave.number

        seen: set[str] = set()
        for wave in self.waves:
            for item_id in wave.items:
                if item_id in seen:
                    raise ValueError(f"work item {item_id!r} appears more than once in the plan")
                seen.add(item_id)
        return self

    @property
    def item_ids(self) -> list[str]:
        """All item ids in wave order."""
        return [i for wave in self.waves for i in wave.items]

    def item(self, item_id: str) -> WorkItem:
        """Return the WorkItem for ``item_id``, synthesising a bare one if no details exist."""
        return self.items.get(item_id) or WorkItem(id=item_id)

    def wave(self, number: int) -> Wave:
        for wave in self.waves:
            if wave.number == number:
                return wave
        raise KeyError(f"no wave {number} in plan")


# ---------------------------------------------------------------------------
# Persisted run state
# ---------------------------------------------------------------------------


class ItemState(BaseModel):
    """Progress of one work item inside a run."""

    status: ItemStatus = ItemStatus.PENDING
    attempts: int = 0
    message: str = ""
    updated_at: str = ""
    artifact: str = ""   # e.g. PR URL produced by the unit of work


class ErrorRecord(BaseModel):
    """One observed failure. Appended, never mutated or removed."""

    model_config = ConfigDict(frozen=True)

    item_id: str
    kind: ErrorKind
    message: str
    timestamp: str


class RunState(BaseModel):
    """The single mutable, persisted record for one orchestration run."""

    model_config = ConfigDict(extra="forbid")

    version: str = STATE_VERSION
    run_id: str
    kind: RunKind = RunKind.EPIC
    status: RunStatus = RunStatus.INITIALIZED
    current_wave: int = 0
    completed_waves: list[int] = []
    items: dict[str, ItemState] = {}
    errors: list[ErrorRecord] = []
    created_at: str = ""
    updated_at: str = ""
    pid: int = 0
    hostname: str = ""

    def item(self, item_id: str) -> ItemState:
        """Return the state for ``item_id`` (a fresh pending state when unseen)."""
        return self.items.get(item_id) or ItemState()

    def items_with_status(self, status: ItemStatus) -> list[str]:
        return [k for k, v in self.items.items() if v.status == status]

    @property
    def has_fatal(self) -> bool:
        return any(v.status == ItemStatus.FATAL for v in self.items.values())


class LockRecord(BaseModel):
    """Contents of a run lock file."""

    run_id: str
    pid: int
    hostname: str = ""
    acquired_at: str = ""


# ---------------------------------------------------------------------------
# Execution results
# ---------------------------------------------------------------------------


class ItemOutcome(BaseModel):
    """Raw result of one unit-of-work invocation. Not interpreted by the executor."""

    item_id: str
    success: bool
    output: str = ""
    timed_out: bool = False
    exit_code: int | None = None
    artifact: str = ""
    # Text to classify when ``output`` was written by the executor rather than
    # the unit (timeout notice, traceback). None means classify ``output``.
    error: str | None = None
    interrupted: bool = False


class WaveResult(BaseModel):
    """Aggregated result of driving one wave to completion (or a stop condition)."""

    wave: int
    dispatch_rounds: int = 0
    complete: bool = False
    fatal: bool = False
    interrupted: bool = False
    completed: list[str] = []
    failed: list[str] = []
    fatal_items: list[str] = []


class RunSummary(BaseModel):
    """Counts derived from a RunState for reporting and exit status."""

    run_id: str
    kind: RunKind
    status: RunStatus
    total: int
    completed: int
    failed: int
    fatal: int
    pending: int
    completed_waves: list[int] = []

    @property
    def outcome(self) -> RunOutcome:
        if self.status == RunStatus.FATAL_ERROR or self.fatal:
            return RunOutcome.FATAL
        if self.status in (RunStatus.INTERRUPTED, RunStatus.RUNNING, RunStatus.INITIALIZED):
            return RunOutcome.INTERRUPTED
        if self.failed or self.pending:
            return RunOutcome.PARTIAL
        return RunOutcome.SUCCESS


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ExecutionConfig(BaseModel):
    """Configuration for one level of the wave scheduler."""

    model_config = ConfigDict(extra="forbid")

    max_retries: int = 2
    max_parallel: int = 0                 # 0 = unbounded
    item_timeout_seconds: float = 0       # 0 = no timeout
    backoff_base_seconds: float = 5.0
    backoff_max_seconds: float = 300.0
    state_dir: str = Field(default_factory=_default_state_dir)

    @field_validator(
        "max_retries",
        "max_parallel",
        "item_timeout_seconds",
        "backoff_base_seconds",
        "backoff_max_seconds",
    )
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"must be non-negative, got {v}")
        return v

    @model_validator(mode="after")
    def _validate_backoff(self) -> "ExecutionConfig":
        if self.backoff_max_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_max_seconds must be >= backoff_base_seconds")
        return self

    @classmethod
    def for_epic(cls, **overrides: Any) -> "ExecutionConfig":
        """Defaults for scheduling issues inside one epic."""
        values: dict[str, Any] = {"max_retries": 2, "max_parallel": 0, "item_timeout_seconds": 60 * 60}
        values.update(overrides)
        return cls(**values)

    @classmethod
    def for_project(cls, **overrides: Any) -> "ExecutionConfig":
        """Defaults for scheduling epics inside a project."""
        values: dict[str, Any] = {"max_retries": 1, "max_parallel": 2, "item_timeout_seconds": 120 * 60}
        values.update(overrides)
        return cls(**values)
