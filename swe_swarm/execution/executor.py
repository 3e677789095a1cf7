"""Concurrency-bounded execution of work items.

The executor launches one unit-of-work call per item, never more than
``max_parallel`` at once, and turns every way an item can end (result,
exception, per-item timeout) into an :class:`ItemOutcome`. It does not
classify failures; the wave scheduler does that on top.
"""

from __future__ import annotations

import asyncio
import logging
import traceback
from typing import Callable

from swe_swarm.execution.schemas import ItemOutcome, WorkItem
from swe_swarm.units import UnitResult, WorkUnit

logger = logging.getLogger(__name__)


class BoundedExecutor:
    """Runs work items concurrently under a semaphore.

    Args:
        max_parallel: Maximum simultaneously live items; ``<= 0`` is unbounded.
        item_timeout: Seconds before an item is abandoned with a timeout
            outcome; ``0`` disables the timeout.
        shutdown: Event set by the run driver on an interruption request.
            Items not yet started when it is set are never started; in-flight
            items finish normally.
    """

    def __init__(
        self,
        max_parallel: int = 0,
        item_timeout: float = 0,
        shutdown: asyncio.Event | None = None,
    ) -> None:
        self.max_parallel = max_parallel
        self.item_timeout = item_timeout
        self.shutdown = shutdown or asyncio.Event()

    async def run(
        self,
        items: list[WorkItem],
        unit: WorkUnit,
        on_start: Callable[[WorkItem], None] | None = None,
        on_outcome: Callable[[ItemOutcome], None] | None = None,
    ) -> list[ItemOutcome]:
        """Execute ``items`` and return outcomes in completion order.

        ``on_start`` fires right before an item's unit of work is invoked and
        ``on_outcome`` as soon as that item finishes, so callers can persist
        progress first-finished-first-updated. Items skipped because of a
        shutdown request produce no outcome.
        """
        if not items:
            return []

        semaphore = asyncio.Semaphore(self.max_parallel) if self.max_parallel > 0 else None
        outcomes: list[ItemOutcome] = []

        async def _guarded(item: WorkItem) -> None:
            if semaphore is None:
                outcome = await self._start(item, unit, on_start)
            else:
                async with semaphore:
                    outcome = await self._start(item, unit, on_start)
            if outcome is None:
                return
            outcomes.append(outcome)
            if on_outcome is not None:
                on_outcome(outcome)

        # Every item task runs to its end before a callback failure (a state
        # store error) is re-raised, so no sibling is left running unawaited.
        results = await asyncio.gather(
            *(_guarded(item) for item in items), return_exceptions=True,
        )
        for res in results:
            if isinstance(res, BaseException):
                raise res
        return outcomes

    async def _start(
        self,
        item: WorkItem,
        unit: WorkUnit,
        on_start: Callable[[WorkItem], None] | None,
    ) -> ItemOutcome | None:
        if self.shutdown.is_set():
            logger.info("Shutdown requested; not starting item %s", item.id)
            return None
        if on_start is not None:
            on_start(item)
        return await self._run_one(item, unit)

    async def _run_one(self, item: WorkItem, unit: WorkUnit) -> ItemOutcome:
        try:
            if self.item_timeout and self.item_timeout > 0:
                result = await asyncio.wait_for(unit(item), timeout=self.item_timeout)
            else:
                result = await unit(item)
        except asyncio.TimeoutError:
            logger.warning("Item %s timed out after %ss", item.id, self.item_timeout)
            return ItemOutcome(
                item_id=item.id,
                success=False,
                output=f"Item {item.id} timed out after {self.item_timeout}s",
                timed_out=True,
                error="",
            )
        except Exception as e:
            return ItemOutcome(
                item_id=item.id,
                success=False,
                output="".join(traceback.format_exception(type(e), e, e.__traceback__)),
                error=f"{type(e).__name__}: {e}",
            )

        if not isinstance(result, UnitResult):
            # Units may hand back a bare bool for trivial work.
            return ItemOutcome(item_id=item.id, success=bool(result))
        return ItemOutcome(
            item_id=item.id,
            success=result.success,
            output=result.output,
            timed_out=result.timed_out,
            exit_code=result.exit_code,
            artifact=result.artifact,
            interrupted=result.interrupted,
        )
