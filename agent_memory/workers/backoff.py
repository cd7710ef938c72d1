"""Exponential backoff with jitter for retrying provider calls."""

import random
from typing import Optional

DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_DELAY = 30.0
JITTER_FRACTION = 0.5


def backoff_delay(
    attempt: int,
    base: float = DEFAULT_BASE_DELAY,
    cap: float = DEFAULT_MAX_DELAY,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Seconds to wait before retry number *attempt* (1-based).

    base * 2**(attempt-1), plus up to 50% random jitter, capped at *cap*.
    """
    if attempt < 1:
        raise ValueError("attempt must be >= 1")
    rng = rng or random
    raw = base * (2 ** min(attempt - 1, 62))
    return min(cap, raw + rng.uniform(0, JITTER_FRACTION * raw))
