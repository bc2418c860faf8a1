# backend/valuation_engine/utils/date_utils.py
"""
Date helpers shared by the FX service, price history and the rebuilder.

Usage:
    from valuation_engine.utils.date_utils import get_business_days, date_range

    days = get_business_days(start_date, end_date)
"""

from collections.abc import Iterator
from datetime import date, datetime, timedelta, timezone


def get_business_days(start_date: date, end_date: date) -> list[date]:
    """
    Get list of business days (weekdays) in a date range.

    This is a simplified check that doesn't account for market holidays.

    Example:
        >>> get_business_days(date(2024, 1, 1), date(2024, 1, 7))
        [date(2024, 1, 1), date(2024, 1, 2), date(2024, 1, 3),
         date(2024, 1, 4), date(2024, 1, 5)]  # Mon-Fri
    """
    return [d for d in date_range(start_date, end_date) if d.weekday() < 5]


def date_range(start_date: date, end_date: date) -> Iterator[date]:
    """Yield every calendar date from start_date to end_date inclusive."""
    current = start_date
    while current <= end_date:
        yield current
        current += timedelta(days=1)


def chunk_dates(start_date: date, end_date: date, days_per_chunk: int) -> Iterator[tuple[date, date]]:
    """
    Split an inclusive range into consecutive (start, end) chunks.

    Example:
        >>> list(chunk_dates(date(2024, 1, 1), date(2024, 1, 5), 2))
        [(date(2024, 1, 1), date(2024, 1, 2)),
         (date(2024, 1, 3), date(2024, 1, 4)),
         (date(2024, 1, 5), date(2024, 1, 5))]
    """
    current = start_date
    while current <= end_date:
        chunk_end = min(current + timedelta(days=days_per_chunk - 1), end_date)
        yield current, chunk_end
        current = chunk_end + timedelta(days=1)


def utc_today() -> date:
    """Today's date in UTC; the rebuild horizon."""
    return datetime.now(timezone.utc).date()


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
