"""Time-range helpers for reservations with optional (open) end times."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

# Stand-in for an open end: far enough out that every real instant precedes it.
OPEN_END = datetime(9999, 12, 31, 23, 59, 59)


def effective_end(end: Optional[datetime]) -> datetime:
    return end if end is not None else OPEN_END


def ranges_overlap(
    start_a: datetime,
    end_a: Optional[datetime],
    start_b: datetime,
    end_b: Optional[datetime],
) -> bool:
    """Return True when ``[start_a, end_a)`` and ``[start_b, end_b)`` intersect.

    A ``None`` end means the range is still open. Ranges that only touch
    (one ends exactly when the other starts) do not overlap.
    """
    return start_a < effective_end(end_b) and start_b < effective_end(end_a)


def is_active_at(start: datetime, end: Optional[datetime], now: datetime) -> bool:
    return start <= now < effective_end(end)


def format_time_range(start: datetime, end: Optional[datetime]) -> str:
    day = "%d/%m"
    clock = "%H:%M"
    if end is None:
        return f"from {start.strftime(day)} {start.strftime(clock)} (no end time)"
    if start.date() == end.date():
        return f"{start.strftime(day)} from {start.strftime(clock)} to {end.strftime(clock)}"
    return f"{start.strftime(day)} {start.strftime(clock)} to {end.strftime(day)} {end.strftime(clock)}"
