"""Observability notes: ``note_fn(message, tags=[...])`` with a logging fallback."""

from __future__ import annotations

import logging
from typing import Callable

NoteFn = Callable[..., None]


def emit_note(
    note_fn: NoteFn | None,
    logger: logging.Logger,
    msg: str,
    tags: list[str] | None = None,
    level: int = logging.INFO,
) -> None:
    """Send a note via ``note_fn`` when attached, else fall back to ``logger``."""
    if note_fn is not None:
        note_fn(msg, tags=tags or [])
        return
    if tags:
        logger.log(level, "%s (tags=%s)", msg, ",".join(tags))
    else:
        logger.log(level, "%s", msg)
