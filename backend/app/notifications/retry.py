"""
retry.py — Backoff strategies for failed deliveries.

    Strategy       Delay (minutes)         retry_count = 1, 2, 3, 4, 5, 6, 7
    ───────────    ───────────────         ─────────────────────────────────
    linear         retry_count × 5         5, 10, 15, 20, 25, 30, 35
    exponential    2 ^ retry_count         2,  4,  8, 16, 32, 60, 60

Both are capped at MAX_BACKOFF_MINUTES, and both are monotonically
non-decreasing in retry_count.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Union

from backend.app.notifications.models import utcnow

MAX_BACKOFF_MINUTES = 60
LINEAR_STEP_MINUTES = 5

# 2^6 already exceeds the cap; avoids building huge ints for absurd counts
_EXPONENT_CEILING = 6


class BackoffStrategy(str, Enum):
    LINEAR = "linear"
    EXPONENTIAL = "exponential"

    @classmethod
    def parse(cls, value: Union[str, "BackoffStrategy"]) -> "BackoffStrategy":
        """Case-insensitive lookup; raises ValueError for unknown names."""
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower())


def compute_backoff_minutes(strategy: Union[str, BackoffStrategy], retry_count: int) -> int:
    """
    Delay before the next attempt.

    Parameters
    ----------
    strategy : BackoffStrategy or str
        ``linear`` or ``exponential``.
    retry_count : int
        Retries consumed so far, including the failure just recorded.

    Returns
    -------
    int
        Delay in whole minutes, never above MAX_BACKOFF_MINUTES.
    """
    retry_count = max(0, int(retry_count))
    if BackoffStrategy.parse(strategy) is BackoffStrategy.EXPONENTIAL:
        delay = 2 ** min(retry_count, _EXPONENT_CEILING)
    else:
        delay = retry_count * LINEAR_STEP_MINUTES
    return min(delay, MAX_BACKOFF_MINUTES)


def next_retry_at(
    strategy: Union[str, BackoffStrategy],
    retry_count: int,
    now: Optional[datetime] = None,
) -> datetime:
    return (now or utcnow()) + timedelta(minutes=compute_backoff_minutes(strategy, retry_count))
