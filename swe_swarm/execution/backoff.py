"""Retry pacing for re-dispatch rounds within a wave."""

from __future__ import annotations

import random

DEFAULT_BASE_SECONDS = 5.0
DEFAULT_MAX_SECONDS = 300.0
JITTER_FRACTION = 0.2


def backoff_delay(
    attempt: int,
    base: float = DEFAULT_BASE_SECONDS,
    max_delay: float = DEFAULT_MAX_SECONDS,
    rng: random.Random | None = None,
) -> float:
    """Exponential delay in seconds for a 1-based ``attempt``, capped at ``max_delay``.

    The raw delay doubles for each attempt above 1. A uniform +/-20% jitter is
    applied to the capped value; the result stays within ``[0, max_delay]``.
    """
    attempt = max(1, attempt)
    delay = float(base)
    for _ in range(attempt - 1):
        delay *= 2
        if delay >= max_delay:
            delay = float(max_delay)
            break
    delay = min(delay, float(max_delay))

    jitter = delay * JITTER_FRACTION
    if jitter > 0:
        delay += (rng or random).uniform(-jitter, jitter)
    return min(max(0.0, delay), float(max_delay))
