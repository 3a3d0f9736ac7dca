"""
Cool-off policy.

After an optimization is applied, the same portfolio may not be optimized
again until ``cool_off`` has elapsed since its ``applied_at``.  Only the most
recent applied optimization counts; canceled and failed attempts never start
a cool-off window.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

DEFAULT_COOL_OFF = timedelta(hours=24)


def remaining(
    now: datetime,
    last_applied_at: Optional[datetime],
    cool_off: timedelta = DEFAULT_COOL_OFF,
) -> timedelta:
    """Return how long the portfolio must still wait; zero when it may proceed.

    A ``last_applied_at`` in the future (clock skew) is treated as "just
    applied", never as a longer wait than ``cool_off``.
    """
    if last_applied_at is None:
        return timedelta(0)
    elapsed = max(now - last_applied_at, timedelta(0))
    return max(cool_off - elapsed, timedelta(0))


def is_cooling_off(
    now: datetime,
    last_applied_at: Optional[datetime],
    cool_off: timedelta = DEFAULT_COOL_OFF,
) -> bool:
    return remaining(now, last_applied_at, cool_off) > timedelta(0)
