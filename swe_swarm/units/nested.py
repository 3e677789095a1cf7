"""Unit of work that runs a whole inner wave run for one item.

This is how a project run schedules epics: each epic is one opaque item to
the outer scheduler, and executing it means driving the epic's own issue
plan to a terminal state with its own RunState, plan document and lock.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable

from swe_swarm.exceptions import SwarmError
from swe_swarm.execution.errors import error_type_name, is_fatal
from swe_swarm.execution.notes import NoteFn
from swe_swarm.execution.report import summarize
from swe_swarm.execution.run_driver import run_plan
from swe_swarm.execution.schemas import (
    ExecutionConfig,
    ExecutionPlan,
    RunKind,
    RunState,
    RunStatus,
    WorkItem,
)
from swe_swarm.execution.state_store import StateStore
from swe_swarm.execution.wave_scheduler import ArtifactProbe
from swe_swarm.units import UnitResult, WorkUnit

logger = logging.getLogger(__name__)

PlanLoader = Callable[[WorkItem], Any]

DEFAULT_RUN_ID_TEMPLATE = "epic-{id}"


def _describe_inner(state: RunState) -> str:
    """Text the outer classifier sees.

    Item and run ids are left out: numeric ids such as ``429`` would
    otherwise match the classifier's status-code patterns.
    """
    fatal_run = state.status == RunStatus.FATAL_ERROR
    lines = []
    for err in state.errors:
        if fatal_run and not is_fatal(err.kind):
            continue
        first_line = err.message.splitlines()[0] if err.message else ""
        lines.append(f"{error_type_name(err.kind)}: {first_line}")
    if not fatal_run:
        summary = summarize(state)
        lines.append(
            f"inner run {state.status.value}: {summary.completed} completed, "
            f"{summary.failed} failed, {summary.pending} pending"
        )
    return "\n".join(lines)


class NestedRunUnit:
    """Run an inner :func:`run_plan` per item.

    The inner run always resumes its own state when one exists, so a retried
    or resumed outer item continues where the inner run stopped rather than
    starting over. An inner run that reaches ``completed`` counts as success
    even when some of its items failed. An interrupted inner run is reported as
    interrupted, which the scheduler does not count as an attempt; a fatal
    inner run is a failure whose output carries the inner error records.

    Args:
        inner_unit: Unit of work the inner runs dispatch their items to.
        config: Inner-level execution config.
        plan_loader: ``item -> plan`` (plain or async) producing the inner
            plan. May return None when the inner plan was stored by an earlier
            attempt.
        run_id_template: Inner run id, ``{id}`` is replaced by the item id.
        note_fn: Observability callback passed to the inner runs.
        shutdown: Shared interruption flag; inner runs stop at their next wave
            boundary once it is set.
        artifact_probe: Artifact lookup for the inner items.
        sleep_fn: Backoff pause override for the inner runs.
    """

    def __init__(
        self,
        inner_unit: WorkUnit,
        config: ExecutionConfig | None = None,
        plan_loader: PlanLoader | None = None,
        run_id_template: str = DEFAULT_RUN_ID_TEMPLATE,
        note_fn: NoteFn | None = None,
        shutdown: asyncio.Event | None = None,
        artifact_probe: ArtifactProbe | None = None,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self.inner_unit = inner_unit
        self.config = config or ExecutionConfig.for_epic()
        self.plan_loader = plan_loader
        self.run_id_template = run_id_template
        self.note_fn = note_fn
        self.shutdown = shutdown
        self.artifact_probe = artifact_probe
        self.sleep_fn = sleep_fn

    def run_id_for(self, item_id: str) -> str:
        return self.run_id_template.replace("{id}", item_id)

    async def _load_plan(self, item: WorkItem) -> ExecutionPlan | dict | None:
        if self.plan_loader is None:
            return None
        plan = self.plan_loader(item)
        if inspect.isawaitable(plan):
            plan = await plan
        return plan

    async def __call__(self, item: WorkItem) -> UnitResult:
        run_id = self.run_id_for(item.id)
        try:
            stored = StateStore(self.config.state_dir).load_plan(run_id)
            plan = None if stored is not None else await self._load_plan(item)
            state = await run_plan(
                run_id,
                plan,
                self.inner_unit,
                config=self.config,
                kind=RunKind.EPIC,
                resume=True,
                note_fn=self.note_fn,
                shutdown=self.shutdown,
                artifact_probe=self.artifact_probe,
                sleep_fn=self.sleep_fn,
            )
        except SwarmError as e:
            logger.warning("Inner run %s could not start: %s", run_id, e)
            return UnitResult(success=False, output=f"{type(e).__name__}: {e}")

        return UnitResult(
            success=state.status == RunStatus.COMPLETED,
            output=_describe_inner(state),
            interrupted=state.status == RunStatus.INTERRUPTED,
        )
