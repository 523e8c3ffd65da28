"""Shared exponential backoff with jitter.

Delay formula: ``min(initial_delay * multiplier^attempt, max_delay)`` plus up to
25% additive jitter so concurrent retries do not fire in lockstep.
"""

from __future__ import annotations

import random

MAX_JITTER_RATIO = 0.25


def compute_backoff_delay(
    attempt: int,
    initial_delay: float = 1.0,
    multiplier: float = 2.0,
    max_delay: float = 30.0,
    jitter: bool = True,
) -> float:
    """Return the delay in seconds before retry number ``attempt`` (0-indexed).

    Args:
        attempt: Zero-based attempt index that just failed.
        initial_delay: Delay for the first retry.
        multiplier: Growth factor applied per attempt.
        max_delay: Upper bound for the un-jittered delay.
        jitter: Add a random 0-25% of the delay on top.
    """
    base_delay = min(max_delay, max(0.0, initial_delay * (multiplier**attempt)))
    if not jitter:
        return base_delay
    return base_delay + base_delay * MAX_JITTER_RATIO * random.random()

