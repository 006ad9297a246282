"""Datetime utilities with consistent timezone handling.

Provider payloads carry instants as epoch seconds and all-day values as
``YYYY-MM-DD`` strings; everything stored or compared inside Lightkeeper is a
timezone-aware ``datetime``. These helpers are the only place that converts
between the three.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional, Union


def now_utc() -> datetime:
    """Return current datetime in UTC timezone.

    Returns:
        Current datetime with timezone=UTC
    """
    return datetime.now(timezone.utc)


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure datetime is timezone-aware, assuming UTC if naive.

    Args:
        dt: Datetime to check/convert, or None

    Returns:
        Timezone-aware datetime, or None if input was None
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)

    return dt


def from_epoch(seconds: Union[int, float]) -> datetime:
    """Convert epoch seconds to an aware UTC datetime."""
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def to_epoch(dt: datetime) -> int:
    """Convert a datetime to whole epoch seconds (naive values are UTC)."""
    return int(ensure_aware(dt).timestamp())


def local_midnight(value: Union[str, date]) -> datetime:
    """Return midnight local time for a calendar date.

    Args:
        value: ``YYYY-MM-DD`` string or ``date``

    Returns:
        Timezone-aware datetime at 00:00 in the host's local timezone

    Raises:
        ValueError: If the string is not a valid ISO date
    """
    if isinstance(value, str):
        value = date.fromisoformat(value)
    # astimezone() on a naive value interprets it as local time
    return datetime(value.year, value.month, value.day).astimezone()


def add_days(dt: datetime, days: int) -> datetime:
    """Shift a datetime by a whole number of days."""
    return dt + timedelta(days=days)


def to_iso_string(dt: Optional[datetime]) -> Optional[str]:
    """Convert datetime to ISO string with timezone info.

    Args:
        dt: Datetime to convert, or None

    Returns:
        ISO format string with timezone, or None if input was None
    """
    if dt is None:
        return None

    return ensure_aware(dt).isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO string (a trailing ``Z`` means UTC) into an aware datetime."""
    if not value:
        return None
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    return ensure_aware(datetime.fromisoformat(value))
