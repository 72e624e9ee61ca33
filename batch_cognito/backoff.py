"""Exponential backoff with full jitter."""

from __future__ import annotations

import random
from typing import Optional


def backoff_delay(
    attempt: int,
    base_seconds: float,
    max_seconds: float,
    rng: Optional[random.Random] = None,
) -> float:
    """Delay before retry number ``attempt`` (1-based).

    The ceiling doubles per attempt and is capped at ``max_seconds``; the
    returned delay is drawn uniformly from [0, ceiling].
    """
    ceiling = min(base_seconds * (2 ** max(attempt - 1, 0)), max_seconds)
    if ceiling <= 0:
        return 0.0
    return (rng or random).uniform(0, ceiling)
