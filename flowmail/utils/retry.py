from __future__ import annotations

import random
from datetime import timedelta


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


def retry_delay(
    attempt: int,
    delay_seconds: float = 60.0,
    base: float = 2.0,
    jitter: float = 5.0,
) -> timedelta:
    """Delay before retry number ``attempt`` (1-based) of a failed step."""
    seconds = delay_seconds * compute_backoff(max(attempt - 1, 0), base=base, jitter=0)
    if jitter > 0:
        seconds += random.uniform(0, jitter)
    return timedelta(seconds=seconds)
