"""
Time utilities.

All timestamps are stored as naive UTC datetimes so that SQLite and
PostgreSQL compare them the same way.
"""

from datetime import date, datetime, timezone
from typing import Optional, Union

from ismart_edge.core.logger import log


def utcnow() -> datetime:
    """Current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def today_utc() -> date:
    return utcnow().date()


def date_key(day: Optional[Union[date, datetime]] = None) -> str:
    """
    Format a day as the ``YYYY-MM-DD`` key used by daily counters.

    Args:
        day: Date or datetime (defaults to today, UTC)

    Returns:
        Date key string
    """
    if day is None:
        day = today_utc()
    if isinstance(day, datetime):
        day = day.date()
    return day.isoformat()


def parse_date(value: Union[date, datetime, str, None]) -> Optional[date]:
    """
    Parse a date given as ``date``, ``datetime`` or ISO string.

    Returns:
        Parsed date, or None if parsing fails
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.fromisoformat(str(value).replace('Z', '+00:00')).date()
    except ValueError as e:
        log.warning(f"Failed to parse date: {value}, error: {e}")
        return None


def days_between(start: date, end: date) -> int:
    """Whole days from start to end, never negative."""
    return max(0, (end - start).days)
