"""Top-level control loop for one orchestration run.

The driver composes the lock manager, state store, plan, executor and wave
scheduler for a single run id::

    acquire lock
      -> accept plan (InvalidPlan when malformed)
      -> load or initialize RunState
      -> for each wave: shutdown? fatal? -> run_wave -> mark wave complete
      -> final validation, report, persist ``completed``
    release lock (always)

The same driver runs at both nesting levels: an epic run schedules issues,
and a project run schedules epics whose unit of work is itself a nested
epic run (see :mod:`swe_swarm.units.nested`).
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
import signal
from typing import Any, Awaitable, Callable

from swe_swarm.exceptions import InvalidPlan, NotFound
from swe_swarm.execution.executor import BoundedExecutor
from swe_swarm.execution.lock import LockManager, kill_children
from swe_swarm.execution.notes import NoteFn, emit_note
from swe_swarm.execution.plan import parse_plan
from swe_swarm.execution.report import render_report, summarize
from swe_swarm.execution.schemas import (
    ExecutionConfig,
    ExecutionPlan,
    RunKind,
    RunState,
    RunStatus,
    Wave,
)
from swe_swarm.execution.state_store import (
    StateStore,
    mark_wave_complete,
    register_items,
    set_current_wave,
    set_run_status,
)
from swe_swarm.execution.wave_scheduler import ArtifactProbe, run_wave
from swe_swarm.units import WorkUnit

logger = logging.getLogger(__name__)

WaveHook = Callable[[Wave, RunState], Any]
ValidationHook = Callable[[RunState, ExecutionPlan], Any]
ReportHook = Callable[[str, RunState], Any]


async def _call_hook(name: str, hook: Callable | None, *args: Any) -> None:
    """Invoke an optional collaborator; failures are logged, never propagated."""
    if hook is None:
        return
    try:
        result = hook(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("%s hook failed", name)


def _install_signal_handlers(shutdown: asyncio.Event, note_fn: NoteFn | None) -> list[int]:
    """SIGINT/SIGTERM request a graceful stop; a second signal kills child processes."""
    loop = asyncio.get_running_loop()
    kill_tasks: set[asyncio.Task] = set()

    async def _kill_children() -> None:
        killed = await asyncio.to_thread(kill_children)
        logger.warning("Terminated %d child process(es)", killed)

    def _on_signal(signum: int) -> None:
        if shutdown.is_set():
            logger.warning("Second signal %d received; terminating child processes", signum)
            task = loop.create_task(_kill_children())
            kill_tasks.add(task)
            task.add_done_callback(kill_tasks.discard)
            return
        emit_note(
            note_fn, logger,
            "Shutdown requested; in-flight items will finish, no new waves start",
            tags=["run", "shutdown"], level=logging.WARNING,
        )
        shutdown.set()

    installed: list[int] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _on_signal, sig)
            installed.append(sig)
        except (NotImplementedError, RuntimeError, ValueError):
            logger.debug("Cannot install handler for signal %s", sig)
    return installed


def _remove_signal_handlers(installed: list[int]) -> None:
    loop = asyncio.get_running_loop()
    for sig in installed:
        loop.remove_signal_handler(sig)


def _accept_plan(
    store: StateStore,
    run_id: str,
    plan: ExecutionPlan | dict | None,
    resume: bool,
) -> tuple[ExecutionPlan, bool]:
    """Return the plan to execute and whether it came from the store."""
    provided = parse_plan(plan) if plan is not None else None
    if resume:
        stored = store.load_plan(run_id)
        if stored is not None:
            if provided is not None and provided != stored:
                logger.warning("Run %s resumes with its stored plan; the new plan is ignored", run_id)
            return stored, True
    if provided is None:
        raise InvalidPlan(f"no execution plan given for run {run_id!r}")
    return provided, False


async def run_plan(
    run_id: str,
    plan: ExecutionPlan | dict | None,
    unit: WorkUnit,
    config: ExecutionConfig | None = None,
    kind: RunKind = RunKind.EPIC,
    resume: bool = False,
    force: bool = False,
    fresh: bool = False,
    note_fn: NoteFn | None = None,
    shutdown: asyncio.Event | None = None,
    artifact_probe: ArtifactProbe | None = None,
    on_wave_complete: WaveHook | None = None,
    final_validation: ValidationHook | None = None,
    report_fn: ReportHook | None = None,
    handle_signals: bool = False,
    sleep_fn: Callable[[float], Awaitable[None]] | None = None,
    rng: random.Random | None = None,
) -> RunState:
    """Execute ``plan`` for ``run_id`` wave by wave and return the terminal RunState.

    Args:
        run_id: Stable identifier of the run; names the state, plan and lock
            documents under ``config.state_dir``.
        plan: The execution plan (a parsed plan or a plan document). May be
            None when resuming a run whose plan was stored earlier.
        unit: Unit-of-work collaborator invoked once per dispatched item.
        config: Retry, parallelism, timeout and state-dir settings.
        kind: Nesting level recorded in the RunState.
        resume: Continue an existing RunState (initialize one if none exists).
            Without it, an existing state fails with AlreadyExists.
        force: Take the lock over from a live owner, killing its process tree.
        fresh: Discard any existing state and plan before starting.
        note_fn: Optional observability callback (``note_fn(msg, tags=[...])``).
        shutdown: Shared interruption flag. A new event is created if omitted.
        artifact_probe: Optional ``item_id -> artifact`` lookup, see
            :func:`swe_swarm.execution.wave_scheduler.run_wave`.
        on_wave_complete: Called as ``(wave, state)`` after each wave completes.
        final_validation: Called as ``(state, plan)`` after all waves.
        report_fn: Receives the markdown report and the terminal state.
        handle_signals: Install SIGINT/SIGTERM handlers for the duration of
            the run. Only the outermost driver should do this.
        sleep_fn: Replacement for the backoff pause between retry rounds.
        rng: Random source for backoff jitter.

    Raises:
        LockHeld: another live process owns the run.
        InvalidPlan: the plan is missing or malformed.
        AlreadyExists: a state exists and ``resume`` was not requested.
    """
    if config is None:
        config = ExecutionConfig()
    if shutdown is None:
        shutdown = asyncio.Event()

    store = StateStore(config.state_dir)
    locks = LockManager(config.state_dir)

    token = locks.acquire(run_id, force=force)
    installed = _install_signal_handlers(shutdown, note_fn) if handle_signals else []
    try:
        return await _drive(
            run_id=run_id,
            plan=plan,
            unit=unit,
            config=config,
            kind=kind,
            resume=resume,
            fresh=fresh,
            note_fn=note_fn,
            shutdown=shutdown,
            store=store,
            artifact_probe=artifact_probe,
            on_wave_complete=on_wave_complete,
            final_validation=final_validation,
            report_fn=report_fn,
            sleep_fn=sleep_fn,
            rng=rng,
        )
    finally:
        _remove_signal_handlers(installed)
        locks.release(token)


async def _drive(
    run_id: str,
    plan: ExecutionPlan | dict | None,
    unit: WorkUnit,
    config: ExecutionConfig,
    kind: RunKind,
    resume: bool,
    fresh: bool,
    note_fn: NoteFn | None,
    shutdown: asyncio.Event,
    store: StateStore,
    artifact_probe: ArtifactProbe | None,
    on_wave_complete: WaveHook | None,
    final_validation: ValidationHook | None,
    report_fn: ReportHook | None,
    sleep_fn: Callable[[float], Awaitable[None]] | None,
    rng: random.Random | None,
) -> RunState:
    if fresh:
        store.discard(run_id)
        resume = False

    accepted, from_store = _accept_plan(store, run_id, plan, resume)

    if resume:
        try:
            state = store.load(run_id)
        except NotFound:
            state = store.initialize(run_id, kind)
    else:
        state = store.initialize(run_id, kind)

    if state.status == RunStatus.COMPLETED:
        emit_note(note_fn, logger, f"Run {run_id} already completed; nothing to do", tags=["run", "resume"])
        return state

    if not from_store:
        store.save_plan(run_id, accepted)

    state = store.update(
        run_id,
        lambda s: set_run_status(register_items(s, accepted.item_ids), RunStatus.RUNNING),
    )
    emit_note(
        note_fn, logger,
        f"Run {run_id} {'resuming' if resume else 'starting'}: "
        f"{len(accepted.item_ids)} items, {len(accepted.waves)} waves, "
        f"completed waves {state.completed_waves or 'none'}",
        tags=["run", "start"],
    )

    executor = BoundedExecutor(
        max_parallel=config.max_parallel,
        item_timeout=config.item_timeout_seconds,
        shutdown=shutdown,
    )

    async def _finish(status: RunStatus) -> RunState:
        final = store.update(run_id, lambda s: set_run_status(s, status))
        summary = summarize(final, accepted)
        emit_note(
            note_fn, logger,
            f"Run {run_id} {status.value}: {summary.completed}/{summary.total} completed, "
            f"{summary.failed} failed, {summary.fatal} fatal, {summary.pending} pending",
            tags=["run", "complete", status.value],
            level=logging.INFO if status == RunStatus.COMPLETED else logging.WARNING,
        )
        await _call_hook("report", report_fn, render_report(final, accepted), final)
        return final

    try:
        for wave in accepted.waves:
            state = store.load(run_id)
            if wave.number in state.completed_waves:
                logger.debug("Wave %d already completed; skipping", wave.number)
                continue

            if shutdown.is_set():
                return await _finish(RunStatus.INTERRUPTED)
            if state.has_fatal:
                emit_note(
                    note_fn, logger, f"Fatal error recorded; not starting wave {wave.number}",
                    tags=["run", "fatal"], level=logging.ERROR,
                )
                return await _finish(RunStatus.FATAL_ERROR)

            store.update(run_id, lambda s: set_current_wave(s, wave.number))
            emit_note(
                note_fn, logger,
                f"Wave {wave.number}/{len(accepted.waves)} starting: {len(wave.items)} items"
                + (f" ({wave.description})" if wave.description else ""),
                tags=["run", "wave", "start"],
            )

            result = await run_wave(
                wave,
                accepted,
                store,
                run_id,
                executor,
                unit,
                config,
                note_fn=note_fn,
                artifact_probe=artifact_probe,
                sleep_fn=sleep_fn,
                rng=rng,
            )

            if result.fatal:
                return await _finish(RunStatus.FATAL_ERROR)
            if not result.complete:
                return await _finish(RunStatus.INTERRUPTED)

            state = store.update(run_id, lambda s: mark_wave_complete(s, wave.number))
            emit_note(
                note_fn, logger,
                f"Wave {wave.number} complete: {len(result.completed)} completed, "
                f"{len(result.failed)} failed",
                tags=["run", "wave", "complete"],
            )
            await _call_hook("on_wave_complete", on_wave_complete, wave, state)

        state = store.load(run_id)
        if state.has_fatal:
            return await _finish(RunStatus.FATAL_ERROR)

        await _call_hook("final_validation", final_validation, state, accepted)
        return await _finish(RunStatus.COMPLETED)
    except asyncio.CancelledError:
        store.update(run_id, lambda s: set_run_status(s, RunStatus.INTERRUPTED))
        raise
