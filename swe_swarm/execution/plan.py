"""Execution plan documents: parsing, validation and display.

Two document layouts are accepted, matching what the planners emit:

Issue plans (one epic)::

    {"waves": [{"wave": 1, "issues": [145, 148], "description": "..."}],
     "issue_details": {"145": {"title": "...", "depends_on": []}},
     "success_criteria": ["..."], "estimated_time": "3-4 days"}

Epic plans (one project)::

    {"epic_waves": [{"wave": 1, "epics": [151, 152], "description": "..."}],
     "epic_details": {"151": {"title": "...", "depends_on": []}},
     "estimated_total_time": "2 weeks"}

The serialized :class:`ExecutionPlan` itself (``waves[].number`` /
``waves[].items``) is accepted as well.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any

import yaml
from pydantic import ValidationError

from swe_swarm.exceptions import InvalidPlan
from swe_swarm.execution.schemas import ExecutionPlan, Wave, WorkItem

logger = logging.getLogger(__name__)

_WAVE_LIST_KEYS = ("waves", "epic_waves")
_WAVE_ITEM_KEYS = ("items", "issues", "epics", "epic_ids")
_DETAIL_KEYS = ("items", "issue_details", "epic_details")


def load_document(path: str) -> dict:
    """Read a JSON or YAML mapping from ``path`` (chosen by extension, JSON by default)."""
    with open(path, "r", encoding="utf-8") as f:
        text = f.read()
    ext = os.path.splitext(path)[1].lower()
    if ext in (".yaml", ".yml"):
        data = yaml.safe_load(text)
    else:
        data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping at the top level")
    return data


def _first(data: dict, keys: tuple[str, ...]) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _normalize_wave(raw: Any, index: int) -> dict:
    if not isinstance(raw, dict):
        raise InvalidPlan(f"wave #{index} must be a mapping, got {type(raw).__name__}")
    items = _first(raw, _WAVE_ITEM_KEYS)
    if not items:
        raise InvalidPlan(f"wave #{index} has an empty item list")
    return {
        "number": raw.get("number", raw.get("wave", index)),
        "items": items,
        "description": raw.get("description") or "",
    }


def _normalize_details(raw: Any) -> dict[str, dict]:
    if not raw:
        return {}
    if not isinstance(raw, dict):
        raise InvalidPlan("item details must be a mapping of id -> details")
    details: dict[str, dict] = {}
    for key, value in raw.items():
        entry = dict(value) if isinstance(value, dict) else {}
        entry["id"] = key
        details[str(key).strip()] = entry
    return details


def parse_plan(data: Any) -> ExecutionPlan:
    """Validate a plan document and return the accepted :class:`ExecutionPlan`.

    Raises:
        InvalidPlan: the document is not a mapping, has no waves, has an
            empty wave, repeats an item, or numbers its waves out of order.
    """
    if isinstance(data, ExecutionPlan):
        return data
    if not isinstance(data, dict):
        raise InvalidPlan(f"plan must be a mapping, got {type(data).__name__}")

    raw_waves = _first(data, _WAVE_LIST_KEYS)
    if not raw_waves or not isinstance(raw_waves, list):
        raise InvalidPlan("plan has no waves")

    waves = [_normalize_wave(w, i) for i, w in enumerate(raw_waves, start=1)]
    details = _normalize_details(_first(data, _DETAIL_KEYS))
    estimated = data.get("estimated_time") or data.get("estimated_total_time") or ""
    criteria = data.get("success_criteria") or []
    if isinstance(criteria, str):
        criteria = [criteria]

    try:
        return ExecutionPlan(
            waves=waves,
            items=details,
            success_criteria=[str(c) for c in criteria],
            estimated_time=str(estimated),
        )
    except ValidationError as e:
        raise InvalidPlan(f"plan is malformed: {e}") from e


def load_plan_file(path: str) -> ExecutionPlan:
    """Read and validate a plan document from disk."""
    try:
        data = load_document(path)
    except FileNotFoundError as e:
        raise InvalidPlan(f"plan file not found: {path}") from e
    except (ValueError, yaml.YAMLError) as e:
        raise InvalidPlan(f"cannot parse plan file {path}: {e}") from e
    return parse_plan(data)


def sequential_plan(item_ids: list[Any], titles: dict[str, str] | None = None) -> ExecutionPlan:
    """One wave per item, in the given order.

    Used when no dependency analysis is available: nothing runs in parallel
    but progress is still tracked and resumable.
    """
    if not item_ids:
        raise InvalidPlan("cannot build a plan without any items")
    titles = titles or {}
    waves = [
        Wave(number=n, items=[item_id], description=f"Item #{item_id}")
        for n, item_id in enumerate(item_ids, start=1)
    ]
    items = {
        str(i): WorkItem(id=i, title=titles.get(str(i), ""))
        for i in item_ids
    }
    try:
        return ExecutionPlan(waves=waves, items=items)
    except ValidationError as e:
        raise InvalidPlan(f"plan is malformed: {e}") from e


def describe_plan(plan: ExecutionPlan, max_parallel: int | None = None) -> str:
    """Human-readable plan summary printed for dry runs and at run start."""
    lines = [
        f"Total items: {len(plan.item_ids)}",
        f"Waves: {len(plan.waves)}",
    ]
    if max_parallel:
        lines.append(f"Max parallel: {max_parallel}")
    lines.append("")
    for wave in plan.waves:
        ids = ", ".join(f"#{i}" for i in wave.items)
        lines.append(f"  Wave {wave.number}: {ids}")
        if wave.description:
            lines.append(f"    └─ {wave.description}")
        for item_id in wave.items:
            item = plan.items.get(item_id)
            if item is not None and item.title:
                deps = f" (after {', '.join('#' + d for d in item.depends_on)})" if item.depends_on else ""
                lines.append(f"       #{item_id} {item.title}{deps}")
    lines.append("")
    lines.append(f"Estimated time: {plan.estimated_time or 'unknown'}")
    if plan.success_criteria:
        lines.append("Success criteria:")
        lines.extend(f"  - {c}" for c in plan.success_criteria)
    return "\n".join(lines)
