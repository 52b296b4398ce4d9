"""
Periods -- calendar-month windows for spend analytics.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  All windows are
    anchored on an ``as_of`` date supplied by the caller's Clock.

Window vocabulary:
    trailing window   first day of the month N months before the as-of
                      month, through the as-of date (12-month spend).
    full months       the N complete calendar months before the as-of
                      month; ``offset`` shifts further back (trend periods).
    trailing days     as_of - N days through as_of (90-day spend rate).
    month buckets     the last N month starts, oldest first, the as-of
                      month included (series, price history).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta


def month_start(value: date) -> date:
    """First day of the month containing ``value``."""
    return value.replace(day=1)


def shift_month(value: date, months: int) -> date:
    """Month start ``months`` months after (negative: before) ``value``'s month."""
    index = value.year * 12 + (value.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def month_key(value: date) -> str:
    """``YYYY-MM`` bucket key."""
    return f"{value.year:04d}-{value.month:02d}"


@dataclass(frozen=True)
class DateWindow:
    """Inclusive date range."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"Window end {self.end} precedes start {self.start}")

    def contains(self, value: date | None) -> bool:
        return value is not None and self.start <= value <= self.end

    def union(self, other: DateWindow) -> DateWindow:
        return DateWindow(min(self.start, other.start), max(self.end, other.end))


def trailing_months_window(as_of: date, months: int) -> DateWindow:
    """``months`` full months before the as-of month plus month-to-date."""
    return DateWindow(shift_month(month_start(as_of), -months), as_of)


def full_months_window(as_of: date, months: int, offset: int = 0) -> DateWindow:
    """
    ``months`` complete calendar months ending before the as-of month.

    >>> full_months_window(date(2025, 6, 15), 6)
    DateWindow(start=datetime.date(2024, 12, 1), end=datetime.date(2025, 5, 31))
    >>> full_months_window(date(2025, 6, 15), 6, offset=6)
    DateWindow(start=datetime.date(2024, 6, 1), end=datetime.date(2024, 11, 30))
    """
    end_exclusive = shift_month(month_start(as_of), -offset)
    start = shift_month(end_exclusive, -months)
    return DateWindow(start, end_exclusive - timedelta(days=1))


def trailing_days_window(as_of: date, days: int) -> DateWindow:
    return DateWindow(as_of - timedelta(days=days), as_of)


def recent_month_starts(as_of: date, count: int) -> list[date]:
    """The last ``count`` month starts, oldest first, including the as-of month."""
    current = month_start(as_of)
    return [shift_month(current, -(count - 1 - i)) for i in range(count)]
