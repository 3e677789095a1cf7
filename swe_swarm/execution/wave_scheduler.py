"""Per-wave dispatch and retry loop.

Per work item::

    pending     -> in_progress   dispatched to the executor
    in_progress -> completed     outcome: success
    in_progress -> failed        outcome: failure, classified non-fatal (attempts += 1)
    in_progress -> fatal         outcome: failure, classified fatal
    in_progress -> in_progress   outcome: interrupted by shutdown (no attempt counted)
    failed      -> in_progress   retried while attempts < max_retries

A wave is complete when every item is ``completed`` or ``fatal`` or is
``failed`` with its retries exhausted. Until then the scheduler re-dispatches
the eligible items, pausing ``backoff_delay(round)`` between rounds. Any
``fatal`` item anywhere in the run stops the loop immediately.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable

from swe_swarm.execution.backoff import backoff_delay
from swe_swarm.execution.errors import classify, error_type_name, is_fatal
from swe_swarm.execution.executor import BoundedExecutor
from swe_swarm.execution.notes import NoteFn, emit_note
from swe_swarm.execution.schemas import (
    ErrorKind,
    ExecutionConfig,
    ExecutionPlan,
    ItemOutcome,
    ItemStatus,
    RunState,
    Wave,
    WaveResult,
    WorkItem,
)
from swe_swarm.execution.state_store import StateStore, mark_item, record_error
from swe_swarm.units import WorkUnit

logger = logging.getLogger(__name__)

ArtifactProbe = Callable[[str], str]

_TERMINAL = (ItemStatus.COMPLETED, ItemStatus.FATAL)


def _exhausted(state: RunState, item_id: str, max_retries: int) -> bool:
    item = state.item(item_id)
    return item.status == ItemStatus.FAILED and item.attempts >= max_retries


def eligible_items(state: RunState, wave: Wave, max_retries: int) -> list[str]:
    """Items of ``wave`` that still need a dispatch, in plan order."""
    return [
        item_id
        for item_id in wave.items
        if state.item(item_id).status not in _TERMINAL
        and not _exhausted(state, item_id, max_retries)
    ]


def is_wave_complete(state: RunState, wave: Wave, max_retries: int) -> bool:
    return not eligible_items(state, wave, max_retries)


def _failure_message(outcome: ItemOutcome) -> str:
    if outcome.output.strip():
        return outcome.output
    if outcome.exit_code is not None:
        return f"exited with status {outcome.exit_code}"
    return "failed without output"


def _classify_outcome(outcome: ItemOutcome) -> ErrorKind:
    if outcome.error is None:
        return classify(outcome.output, outcome.exit_code, outcome.timed_out)
    if outcome.timed_out:
        return ErrorKind.TIMEOUT
    return classify(outcome.error, outcome.exit_code)


async def _pause(delay: float, shutdown: asyncio.Event) -> None:
    """Sleep for ``delay`` seconds, waking early if shutdown is requested."""
    try:
        await asyncio.wait_for(shutdown.wait(), timeout=delay)
    except asyncio.TimeoutError:
        pass


async def run_wave(
    wave: Wave,
    plan: ExecutionPlan,
    store: StateStore,
    run_id: str,
    executor: BoundedExecutor,
    unit: WorkUnit,
    config: ExecutionConfig,
    note_fn: NoteFn | None = None,
    artifact_probe: ArtifactProbe | None = None,
    sleep_fn: Callable[[float], Awaitable[None]] | None = None,
    rng: random.Random | None = None,
) -> WaveResult:
    """Drive one wave until it is complete, a fatal item appears, or shutdown.

    Per-item failures never raise out of here: they are classified, recorded
    as ErrorRecords and reflected in the item's status.

    Args:
        wave: The wave to execute.
        plan: The accepted plan (source of WorkItem details).
        store: State store holding the run's RunState.
        run_id: Run whose state is updated.
        executor: Concurrency-bounded executor; its ``shutdown`` event is the
            run-wide interruption flag.
        unit: Unit-of-work collaborator invoked per item.
        config: Retry and backoff settings.
        note_fn: Optional observability callback.
        artifact_probe: Optional ``item_id -> artifact`` lookup consulted when
            an outcome reports failure; a non-empty artifact (e.g. a PR URL)
            means the item did produce its output and counts as completed.
        sleep_fn: Replacement for the interruptible backoff pause (tests).
        rng: Random source for backoff jitter.
    """
    result = WaveResult(wave=wave.number)

    def _on_start(item: WorkItem) -> None:
        store.update(run_id, lambda s: mark_item(s, item.id, ItemStatus.IN_PROGRESS))
        emit_note(note_fn, logger, f"Item {item.id} dispatched", tags=["wave", "item", "start", item.id])

    def _probe(item_id: str) -> str:
        try:
            return artifact_probe(item_id) or ""
        except Exception:
            logger.exception("Artifact probe failed for item %s", item_id)
            return ""

    def _on_outcome(outcome: ItemOutcome) -> None:
        artifact = outcome.artifact
        if not outcome.success and not artifact and artifact_probe is not None:
            artifact = _probe(outcome.item_id)

        if outcome.success or artifact:
            store.update(
                run_id,
                lambda s: mark_item(
                    s, outcome.item_id, ItemStatus.COMPLETED, message="completed", artifact=artifact,
                ),
            )
            suffix = f" ({artifact})" if artifact else ""
            emit_note(
                note_fn, logger, f"Item {outcome.item_id} completed{suffix}",
                tags=["wave", "item", "complete", outcome.item_id],
            )
            return

        if outcome.interrupted:
            # Not an attempt: the item stays in flight and is re-dispatched on resume.
            store.update(
                run_id,
                lambda s: mark_item(s, outcome.item_id, ItemStatus.IN_PROGRESS, message="interrupted"),
            )
            emit_note(
                note_fn, logger, f"Item {outcome.item_id} interrupted before finishing",
                tags=["wave", "item", "interrupted", outcome.item_id], level=logging.WARNING,
            )
            return

        kind = _classify_outcome(outcome)
        status = ItemStatus.FATAL if is_fatal(kind) else ItemStatus.FAILED
        label = error_type_name(kind)
        message = _failure_message(outcome)

        def _fail(s: RunState) -> RunState:
            mark_item(s, outcome.item_id, status, message=label)
            return record_error(s, outcome.item_id, kind, message)

        state = store.update(run_id, _fail)
        if status == ItemStatus.FATAL:
            emit_note(
                note_fn, logger, f"Item {outcome.item_id} hit fatal error: {label}",
                tags=["wave", "item", "fatal", outcome.item_id], level=logging.ERROR,
            )
        else:
            attempts = state.item(outcome.item_id).attempts
            emit_note(
                note_fn, logger,
                f"Item {outcome.item_id} failed ({label}), attempt {attempts}/{config.max_retries}",
                tags=["wave", "item", "failed", outcome.item_id], level=logging.WARNING,
            )

    while True:
        state = store.load(run_id)

        if state.has_fatal:
            result.fatal = True
            break

        pending = eligible_items(state, wave, config.max_retries)
        if not pending:
            result.complete = True
            break

        if executor.shutdown.is_set():
            result.interrupted = True
            break

        if result.dispatch_rounds > 0:
            delay = backoff_delay(
                result.dispatch_rounds,
                base=config.backoff_base_seconds,
                max_delay=config.backoff_max_seconds,
                rng=rng,
            )
            emit_note(
                note_fn, logger,
                f"Wave {wave.number} incomplete after round {result.dispatch_rounds}; "
                f"retrying {pending} in {delay:.1f}s",
                tags=["wave", "retry"], level=logging.WARNING,
            )
            if sleep_fn is not None:
                await sleep_fn(delay)
            else:
                await _pause(delay, executor.shutdown)
            if executor.shutdown.is_set():
                result.interrupted = True
                break

        result.dispatch_rounds += 1
        emit_note(
            note_fn, logger,
            f"Wave {wave.number} round {result.dispatch_rounds}: dispatching {pending}",
            tags=["wave", "dispatch"],
        )
        await executor.run(
            [plan.item(i) for i in pending],
            unit,
            on_start=_on_start,
            on_outcome=_on_outcome,
        )

    final = store.load(run_id)
    for item_id in wave.items:
        status = final.item(item_id).status
        if status == ItemStatus.COMPLETED:
            result.completed.append(item_id)
        elif status == ItemStatus.FATAL:
            result.fatal_items.append(item_id)
        elif status == ItemStatus.FAILED:
            result.failed.append(item_id)
    if result.interrupted or result.fatal:
        result.complete = is_wave_complete(final, wave, config.max_retries)
    return result
