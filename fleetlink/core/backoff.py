"""Reconnect backoff schedule."""

from __future__ import annotations

import random
from typing import Callable

# 2**62 seconds is already far past any sane cap; keeps the float math finite.
_MAX_EXPONENT = 62


def backoff_delay_s(
    attempt: int,
    *,
    base_s: float = 1.0,
    max_s: float = 30.0,
    jitter_ratio: float = 0.0,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay before reconnect ``attempt``: ``min(base * 2**attempt, max)``.

    With ``jitter_ratio`` r > 0 the delay is scaled by a uniform factor in
    ``[1 - r, 1]``, so jitter never pushes it past ``max_s``.
    """
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    if not (0.0 <= jitter_ratio <= 1.0):
        raise ValueError("jitter_ratio must be in [0, 1]")
    delay = min(base_s * (2 ** min(attempt, _MAX_EXPONENT)), max_s)
    if jitter_ratio > 0.0:
        delay *= 1.0 - jitter_ratio * rng()
    return delay
