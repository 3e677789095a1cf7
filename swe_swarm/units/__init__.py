"""Unit-of-work collaborators: what actually runs for one work item.

A unit of work is any async callable ``unit(item) -> UnitResult``. It must be
safe to invoke again for an item that previously failed.

Implementations:
    CommandUnit    (swe_swarm.units.command) runs an external agent command.
    NestedRunUnit  (swe_swarm.units.nested)  runs a whole inner wave run as
                   one opaque unit, which is how a project schedules epics.

Concrete units are not imported here so that importing this package never
pulls in the run driver.
"""

from __future__ import annotations

from typing import Protocol

from pydantic import BaseModel

from swe_swarm.execution.schemas import WorkItem


class UnitResult(BaseModel):
    """What a unit of work reports back for one invocation."""

    success: bool
    output: str = ""            # raw text, used for failure classification
    timed_out: bool = False     # the unit's own timeout elapsed
    exit_code: int | None = None
    artifact: str = ""          # e.g. PR URL proving the item produced output
    interrupted: bool = False   # stopped by a shutdown request before finishing


class WorkUnit(Protocol):
    async def __call__(self, item: WorkItem) -> UnitResult: ...


__all__ = ["UnitResult", "WorkUnit"]
