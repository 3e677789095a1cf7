"""Run summaries and the markdown run report.

The report is derived entirely from the RunState and the plan; it carries
no information of its own.
"""

from __future__ import annotations

from swe_swarm.execution.errors import error_type_name, is_fatal
from swe_swarm.execution.schemas import (
    ExecutionPlan,
    ItemStatus,
    RunKind,
    RunState,
    RunSummary,
)

_STATUS_ICONS = {
    ItemStatus.COMPLETED: "✅",
    ItemStatus.FAILED: "❌",
    ItemStatus.FATAL: "⛔",
    ItemStatus.IN_PROGRESS: "⏳",
    ItemStatus.PENDING: "⏸",
}


def summarize(state: RunState, plan: ExecutionPlan | None = None) -> RunSummary:
    """Count item statuses. Plan items the state has not seen yet count as pending."""
    ids = plan.item_ids if plan is not None else list(state.items)
    counts = {status: 0 for status in ItemStatus}
    for item_id in ids:
        counts[state.item(item_id).status] += 1
    return RunSummary(
        run_id=state.run_id,
        kind=state.kind,
        status=state.status,
        total=len(ids),
        completed=counts[ItemStatus.COMPLETED],
        failed=counts[ItemStatus.FAILED],
        fatal=counts[ItemStatus.FATAL],
        pending=counts[ItemStatus.PENDING] + counts[ItemStatus.IN_PROGRESS],
        completed_waves=list(state.completed_waves),
    )


def render_report(state: RunState, plan: ExecutionPlan | None = None) -> str:
    summary = summarize(state, plan)
    label = "Epic" if state.kind == RunKind.EPIC else "Project"

    lines = [
        f"## {label} run report: {state.run_id}",
        "",
        f"**Status:** {state.status.value} ({summary.outcome.value})",
        "",
        "### Summary",
        f"- Total: {summary.total}",
        f"- Completed: {summary.completed}",
        f"- Failed: {summary.failed}",
        f"- Fatal: {summary.fatal}",
        f"- Pending: {summary.pending}",
        f"- Completed waves: {', '.join(str(w) for w in summary.completed_waves) or 'none'}",
        "",
        "### Items",
    ]

    ids = plan.item_ids if plan is not None else list(state.items)
    for item_id in ids:
        item = state.item(item_id)
        title = ""
        if plan is not None and plan.items.get(item_id) is not None:
            title = plan.items[item_id].title
        line = f"- {_STATUS_ICONS[item.status]} #{item_id}"
        if title:
            line += f" {title}"
        line += f": {item.status.value}"
        if item.attempts:
            line += f" (attempts: {item.attempts})"
        if item.artifact:
            line += f" - {item.artifact}"
        lines.append(line)

    fatal_errors = [e for e in state.errors if is_fatal(e.kind)]
    if fatal_errors:
        lines += ["", "### Fatal errors"]
        for err in fatal_errors:
            first_line = err.message.splitlines()[0] if err.message else ""
            lines.append(f"- {err.item_id}: {error_type_name(err.kind)} - {first_line}")

    if plan is not None and plan.success_criteria:
        lines += ["", "### Success criteria"]
        lines.extend(f"- {c}" for c in plan.success_criteria)

    return "\n".join(lines) + "\n"
