"""Shared pytest fixtures for the swe_swarm test suite.

Provides:
- ``state_dir``: a per-test state directory under ``tmp_path``.
- ``ScriptedUnit``: a fake unit of work that replays a per-item script of
  results and records every invocation.
- ``no_sleep``: an async sleep replacement that records requested delays
  instead of waiting.
"""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from swe_swarm.execution.schemas import ExecutionConfig, WorkItem
from swe_swarm.units import UnitResult

OK = UnitResult(success=True, output="done")


def fail(output: str = "something went wrong", **kwargs: Any) -> UnitResult:
    return UnitResult(success=False, output=output, **kwargs)


class ScriptedUnit:
    """Replays ``script[item_id]`` one entry per call; unscripted calls succeed.

    An entry may be a UnitResult, an exception instance (raised), or a
    float (sleep that many seconds, then succeed).
    """

    def __init__(self, script: dict[str, list[Any]] | None = None) -> None:
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0

    def calls_for(self, item_id: str) -> int:
        return self.calls.count(item_id)

    async def __call__(self, item: WorkItem) -> UnitResult:
        self.calls.append(item.id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            queue = self.script.get(item.id) or []
            entry = queue.pop(0) if queue else OK
            if isinstance(entry, BaseException):
                raise entry
            if isinstance(entry, (int, float)):
                await asyncio.sleep(entry)
                return OK
            await asyncio.sleep(0)
            return entry
        finally:
            self.active -= 1


@pytest.fixture
def state_dir(tmp_path) -> str:
    return str(tmp_path / "state")


@pytest.fixture
def config(state_dir) -> ExecutionConfig:
    return ExecutionConfig(max_retries=2, state_dir=state_dir)


@pytest.fixture
def no_sleep():
    delays: list[float] = []

    async def _sleep(delay: float) -> None:
        delays.append(delay)

    _sleep.delays = delays
    return _sleep
