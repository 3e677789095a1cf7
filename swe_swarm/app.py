"""Composition of the wave scheduler for the two nesting levels.

``run_epic`` drives one epic's issue plan with an external agent command per
issue. ``run_project`` drives a project's epic plan, running each epic as a
nested epic run whose issue plan comes from ``<plan_dir>/epic-<id>.json``
(or ``.yaml``).
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any

from swe_swarm.exceptions import InvalidPlan
from swe_swarm.execution.notes import NoteFn
from swe_swarm.execution.plan import load_document, load_plan_file
from swe_swarm.execution.run_driver import ReportHook, ValidationHook, WaveHook, run_plan
from swe_swarm.execution.schemas import (
    ExecutionConfig,
    ExecutionPlan,
    RunKind,
    RunState,
    WorkItem,
)
from swe_swarm.units.command import CommandUnit
from swe_swarm.units.nested import NestedRunUnit

logger = logging.getLogger(__name__)

_LEVEL_SECTIONS = ("epic", "project")
_PLAN_EXTENSIONS = (".json", ".yaml", ".yml")


def epic_run_id(epic_id: Any) -> str:
    return f"epic-{epic_id}"


def project_run_id(project_id: Any) -> str:
    return f"project-{project_id}"


def load_config(
    path: str | None = None,
    kind: RunKind = RunKind.EPIC,
    **overrides: Any,
) -> ExecutionConfig:
    """Build the config for one nesting level.

    Values come from the level's presets, then the file at ``path`` (top-level
    keys, then the ``epic:`` or ``project:`` section), then ``overrides``.
    Overrides that are None are ignored so CLI flags can be passed through
    unconditionally.
    """
    values: dict[str, Any] = {}
    if path:
        data = load_document(path)
        values.update({k: v for k, v in data.items() if k not in _LEVEL_SECTIONS})
        section = data.get(kind.value)
        if isinstance(section, dict):
            values.update(section)
    values.update({k: v for k, v in overrides.items() if v is not None})
    if kind == RunKind.PROJECT:
        return ExecutionConfig.for_project(**values)
    return ExecutionConfig.for_epic(**values)


def epic_plan_path(plan_dir: str, epic_id: str) -> str | None:
    """Locate ``epic-<id>`` plan document in ``plan_dir``, or None."""
    for ext in _PLAN_EXTENSIONS:
        path = os.path.join(plan_dir, f"{epic_run_id(epic_id)}{ext}")
        if os.path.exists(path):
            return path
    return None


def epic_plan_loader(plan_dir: str):
    """Plan loader for nested epic runs backed by plan files in ``plan_dir``."""

    def _load(item: WorkItem) -> ExecutionPlan:
        path = epic_plan_path(plan_dir, item.id)
        if path is None:
            logger.warning("No epic-%s plan in %s", item.id, plan_dir)
            raise InvalidPlan(f"no plan for epic {item.id}")
        return load_plan_file(path)

    return _load


async def run_epic(
    epic_id: Any,
    plan: ExecutionPlan | dict | None,
    command: list[str],
    config: ExecutionConfig | None = None,
    cwd: str | None = None,
    log_dir: str | None = None,
    resume: bool = False,
    force: bool = False,
    fresh: bool = False,
    note_fn: NoteFn | None = None,
    on_wave_complete: WaveHook | None = None,
    final_validation: ValidationHook | None = None,
    report_fn: ReportHook | None = None,
    handle_signals: bool = True,
    shutdown: asyncio.Event | None = None,
) -> RunState:
    """Run one epic: every issue of ``plan`` executes ``command`` with ``{id}`` substituted."""
    if config is None:
        config = ExecutionConfig.for_epic()
    unit = CommandUnit(
        command,
        cwd=cwd,
        log_dir=log_dir or os.path.join(config.state_dir, "logs"),
    )
    return await run_plan(
        epic_run_id(epic_id),
        plan,
        unit,
        config=config,
        kind=RunKind.EPIC,
        resume=resume,
        force=force,
        fresh=fresh,
        note_fn=note_fn,
        shutdown=shutdown,
        artifact_probe=unit.artifact_for,
        on_wave_complete=on_wave_complete,
        final_validation=final_validation,
        report_fn=report_fn,
        handle_signals=handle_signals,
    )


async def run_project(
    project_id: Any,
    plan: ExecutionPlan | dict | None,
    command: list[str],
    plan_dir: str,
    config: ExecutionConfig | None = None,
    epic_config: ExecutionConfig | None = None,
    cwd: str | None = None,
    log_dir: str | None = None,
    resume: bool = False,
    force: bool = False,
    fresh: bool = False,
    note_fn: NoteFn | None = None,
    on_wave_complete: WaveHook | None = None,
    final_validation: ValidationHook | None = None,
    report_fn: ReportHook | None = None,
    handle_signals: bool = True,
) -> RunState:
    """Run a project: each epic of ``plan`` is a nested epic run.

    Nested epic runs keep their state in the same state directory as the
    project run and share its interruption flag, so one SIGINT stops every
    level at its next wave boundary.
    """
    if config is None:
        config = ExecutionConfig.for_project()
    if epic_config is None:
        epic_config = ExecutionConfig.for_epic(state_dir=config.state_dir)

    shutdown = asyncio.Event()
    command_unit = CommandUnit(
        command,
        cwd=cwd,
        log_dir=log_dir or os.path.join(config.state_dir, "logs"),
    )
    unit = NestedRunUnit(
        command_unit,
        config=epic_config,
        plan_loader=epic_plan_loader(plan_dir),
        note_fn=note_fn,
        shutdown=shutdown,
        artifact_probe=command_unit.artifact_for,
    )
    return await run_plan(
        project_run_id(project_id),
        plan,
        unit,
        config=config,
        kind=RunKind.PROJECT,
        resume=resume,
        force=force,
        fresh=fresh,
        note_fn=note_fn,
        shutdown=shutdown,
        on_wave_complete=on_wave_complete,
        final_validation=final_validation,
        report_fn=report_fn,
        handle_signals=handle_signals,
    )
