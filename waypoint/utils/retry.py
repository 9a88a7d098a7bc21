from __future__ import annotations

import random
from datetime import timedelta
from typing import Optional

from ..config import RetryConfig


def compute_backoff(
    attempt: int,
    base: float,
    factor: float,
    max_delay: float,
    jitter: float = 0.0,
    rng: Optional[random.Random] = None,
) -> float:
    """Compute exponential backoff in seconds with proportional jitter.

    ``attempt`` is the number of attempts already made (1 for the first retry).
    The result never exceeds ``max_delay``.
    """
    delay = min(base * factor ** max(attempt - 1, 0), max_delay)
    if jitter:
        delay += delay * (rng or random).uniform(-jitter, jitter)
    return max(0.0, min(delay, max_delay))


def backoff_delay(attempt: int, config: RetryConfig) -> timedelta:
    """Delay before reattempting a faulted step for the ``attempt``-th time."""
    return timedelta(
        seconds=compute_backoff(
            attempt,
            base=config.base_seconds,
            factor=config.factor,
            max_delay=config.max_seconds,
            jitter=config.jitter,
        )
    )
