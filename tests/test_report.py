"""Tests for swe_swarm.execution.report."""

from __future__ import annotations

from swe_swarm.execution.plan import parse_plan
from swe_swarm.execution.report import render_report, summarize
from swe_swarm.execution.schemas import (
    ErrorKind,
    ItemStatus,
    RunKind,
    RunOutcome,
    RunState,
    RunStatus,
)
from swe_swarm.execution.state_store import mark_item, record_error, register_items

PLAN = parse_plan({
    "waves": [{"wave": 1, "issues": [1, 2]}, {"wave": 2, "issues": [3, 4]}],
    "issue_details": {"1": {"title": "Parser"}},
    "success_criteria": ["all green"],
})


def _state(status: RunStatus = RunStatus.COMPLETED) -> RunState:
    state = RunState(run_id="epic-7", status=status)
    register_items(state, PLAN.item_ids)
    return state


def _finish(state: RunState, item_id: str, status: ItemStatus, **kwargs) -> None:
    mark_item(state, item_id, ItemStatus.IN_PROGRESS)
    mark_item(state, item_id, status, **kwargs)


class TestSummarize:
    def test_counts(self):
        state = _state()
        _finish(state, "1", ItemStatus.COMPLETED)
        _finish(state, "2", ItemStatus.FAILED)
        mark_item(state, "3", ItemStatus.IN_PROGRESS)

        summary = summarize(state, PLAN)
        assert (summary.total, summary.completed, summary.failed, summary.fatal, summary.pending) == (4, 1, 1, 0, 2)
        assert summary.outcome == RunOutcome.PARTIAL

    def test_plan_items_unknown_to_state_are_pending(self):
        state = RunState(run_id="epic-7", status=RunStatus.COMPLETED)
        assert summarize(state, PLAN).pending == 4
        assert summarize(state).total == 0

    def test_outcomes(self):
        state = _state()
        for item_id in PLAN.item_ids:
            _finish(state, item_id, ItemStatus.COMPLETED)
        assert summarize(state, PLAN).outcome == RunOutcome.SUCCESS

        state.status = RunStatus.INTERRUPTED
        assert summarize(state, PLAN).outcome == RunOutcome.INTERRUPTED

        state.status = RunStatus.FATAL_ERROR
        assert summarize(state, PLAN).outcome == RunOutcome.FATAL


class TestRenderReport:
    def test_sections(self):
        state = _state(RunStatus.FATAL_ERROR)
        _finish(state, "1", ItemStatus.COMPLETED, artifact="https://example.test/pull/1")
        _finish(state, "2", ItemStatus.FATAL)
        record_error(state, "2", ErrorKind.AUTH, "401 Unauthorized\nstack trace")
        record_error(state, "3", ErrorKind.NETWORK, "connection refused")
        state.completed_waves = [1]

        text = render_report(state, PLAN)

        assert text.startswith("## Epic run report: epic-7")
        assert "**Status:** fatal_error (fatal)" in text
        assert "- Completed waves: 1" in text
        assert "#1 Parser: completed - https://example.test/pull/1" in text
        assert "#2: fatal" in text
        assert "### Fatal errors" in text
        assert "- 2: AUTH_ERROR - 401 Unauthorized" in text
        assert "stack trace" not in text
        assert "NETWORK_ERROR" not in text
        assert "- all green" in text

    def test_project_label_and_no_fatal_section(self):
        state = RunState(run_id="project-1", kind=RunKind.PROJECT, status=RunStatus.COMPLETED)
        text = render_report(state)

        assert text.startswith("## Project run report: project-1")
        assert "Fatal errors" not in text
        assert "- Completed waves: none" in text
