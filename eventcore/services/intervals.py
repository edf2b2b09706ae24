"""Overlap rules for time windows."""

from __future__ import annotations

from datetime import date

from eventcore.domain.models import TimeWindow


def shared_days(a: TimeWindow, b: TimeWindow) -> list[date]:
    """Return the calendar days both windows span, in order."""
    first = max(a.start_date, b.start_date)
    last = min(a.end_date, b.end_date)
    if first > last:
        return []
    return [d for d in a.days() if first <= d <= last]


def first_overlap_day(a: TimeWindow, b: TimeWindow) -> date | None:
    """Return the first day on which the two windows overlap, if any.

    Each day is the half-open interval ``[start, end)``: a window ending
    exactly when the other starts does NOT overlap it.
    """
    days = shared_days(a, b)
    if not days:
        return None
    a_start, a_end = a.daily_minutes()
    b_start, b_end = b.daily_minutes()
    if a_start < b_end and b_start < a_end:
        return days[0]
    return None
