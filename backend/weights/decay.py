from __future__ import annotations

import math
from datetime import datetime

MIN_WEIGHT = 0.1
MAX_WEIGHT = 1.0

# (start_day, end_day, weight_at_start, weight_at_end)
_RAMP: list[tuple[float, float, float, float]] = [
    (1.0, 7.0, 0.1, 0.5),
    (7.0, 30.0, 0.5, 0.95),
]
FULL_WEIGHT_DAYS = 30.0

_SECONDS_PER_DAY = 24 * 60 * 60


def elapsed_days(last_selected_at: datetime, now: datetime) -> float:
    """Fractional days between a selection and *now*, never negative."""
    seconds = (now - last_selected_at).total_seconds()
    return max(0.0, seconds / _SECONDS_PER_DAY)


def weight_for_elapsed(days: float) -> float:
    if days < 1.0:
        return MIN_WEIGHT
    for start, end, w_start, w_end in _RAMP:
        if start <= days < end:
            return w_start + (days - start) / (end - start) * (w_end - w_start)
    return MAX_WEIGHT


def compute_weight(last_selected_at: datetime | None, now: datetime) -> float:
    """Return the selection weight for a restaurant.

    Never-selected restaurants get the maximum weight. A fresh pick is
    strongly suppressed and recovers along a piecewise-linear ramp until
    it is back at full weight after thirty days.
    """
    if last_selected_at is None:
        return MAX_WEIGHT
    return weight_for_elapsed(elapsed_days(last_selected_at, now))


def days_until_full_weight(last_selected_at: datetime | None, now: datetime) -> int:
    if last_selected_at is None:
        return 0
    remaining = FULL_WEIGHT_DAYS - elapsed_days(last_selected_at, now)
    return max(0, math.ceil(remaining))
