"""Tests for swe_swarm.execution.executor."""

from __future__ import annotations

import asyncio

import pytest

from conftest import ScriptedUnit, fail
from swe_swarm.execution.executor import BoundedExecutor
from swe_swarm.execution.schemas import WorkItem
from swe_swarm.units import UnitResult


def _items(*ids: str) -> list[WorkItem]:
    return [WorkItem(id=i) for i in ids]


class TestBoundedExecutor:
    @pytest.mark.asyncio
    async def test_collects_outcomes(self):
        unit = ScriptedUnit({"B": [fail("HTTP 502", exit_code=1)]})
        outcomes = await BoundedExecutor().run(_items("A", "B"), unit)

        by_id = {o.item_id: o for o in outcomes}
        assert by_id["A"].success is True
        assert by_id["B"].success is False
        assert by_id["B"].output == "HTTP 502"
        assert by_id["B"].exit_code == 1

    @pytest.mark.asyncio
    async def test_empty_input(self):
        assert await BoundedExecutor().run([], ScriptedUnit()) == []

    @pytest.mark.asyncio
    async def test_respects_max_parallel(self):
        unit = ScriptedUnit({i: [0.02] for i in "ABCDEF"})
        await BoundedExecutor(max_parallel=2).run(_items(*"ABCDEF"), unit)
        assert unit.max_active == 2
        assert sorted(unit.calls) == list("ABCDEF")

    @pytest.mark.asyncio
    async def test_unbounded_runs_all_at_once(self):
        unit = ScriptedUnit({i: [0.02] for i in "ABCD"})
        await BoundedExecutor(max_parallel=0).run(_items(*"ABCD"), unit)
        assert unit.max_active == 4

    @pytest.mark.asyncio
    async def test_timeout_yields_timed_out_outcome(self):
        unit = ScriptedUnit({"slow": [5.0]})
        outcomes = await BoundedExecutor(item_timeout=0.05).run(_items("slow", "fast"), unit)

        by_id = {o.item_id: o for o in outcomes}
        assert by_id["slow"].timed_out is True
        assert by_id["slow"].error == ""
        assert by_id["fast"].error is None
        assert by_id["slow"].success is False
        assert by_id["fast"].success is True

    @pytest.mark.asyncio
    async def test_exception_becomes_failure(self):
        unit = ScriptedUnit({"A": [RuntimeError("connection refused")]})
        [outcome] = await BoundedExecutor().run(_items("A"), unit)
        assert outcome.success is False
        assert "connection refused" in outcome.output
        assert "RuntimeError" in outcome.output
        assert outcome.error == "RuntimeError: connection refused"

    @pytest.mark.asyncio
    async def test_bare_bool_result(self):
        async def unit(item):
            return item.id == "A"

        outcomes = await BoundedExecutor().run(_items("A", "B"), unit)
        assert {o.item_id: o.success for o in outcomes} == {"A": True, "B": False}

    @pytest.mark.asyncio
    async def test_callbacks_fire_in_order(self):
        events: list[tuple[str, str]] = []
        unit = ScriptedUnit()
        await BoundedExecutor(max_parallel=1).run(
            _items("A", "B"),
            unit,
            on_start=lambda item: events.append(("start", item.id)),
            on_outcome=lambda outcome: events.append(("done", outcome.item_id)),
        )
        assert events == [("start", "A"), ("done", "A"), ("start", "B"), ("done", "B")]

    @pytest.mark.asyncio
    async def test_shutdown_stops_new_items(self):
        shutdown = asyncio.Event()
        started: list[str] = []

        async def unit(item):
            started.append(item.id)
            shutdown.set()
            await asyncio.sleep(0.01)
            return UnitResult(success=True)

        executor = BoundedExecutor(max_parallel=1, shutdown=shutdown)
        outcomes = await executor.run(_items("A", "B", "C"), unit)

        assert started == ["A"]
        assert [o.item_id for o in outcomes] == ["A"]
        assert outcomes[0].success is True

    @pytest.mark.asyncio
    async def test_result_fields_pass_through(self):
        async def unit(item):
            return UnitResult(success=True, output="ok", artifact="https://example/pr/7")

        [outcome] = await BoundedExecutor().run(_items("7"), unit)
        assert outcome.artifact == "https://example/pr/7"
        assert outcome.output == "ok"

    @pytest.mark.asyncio
    async def test_callback_failure_waits_for_siblings(self):
        unit = ScriptedUnit({"slow": [0.05]})

        def on_outcome(outcome):
            if outcome.item_id == "fast":
                raise OSError("disk full")

        with pytest.raises(OSError, match="disk full"):
            await BoundedExecutor().run(_items("fast", "slow"), unit, on_outcome=on_outcome)

        assert sorted(unit.calls) == ["fast", "slow"]
        assert unit.active == 0
