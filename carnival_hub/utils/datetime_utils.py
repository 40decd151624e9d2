"""
Datetime utility functions.
Keeps every timestamp the core persists or compares in UTC.
"""

from datetime import date, datetime, timedelta
from typing import Optional, Protocol

import pytz


def utcnow() -> datetime:
    """
    Get current UTC datetime using pytz.UTC.

    Returns:
        Current UTC datetime with pytz timezone information
    """
    return datetime.now(pytz.UTC)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalise a datetime read back from the database to an aware UTC value.

    SQLite drops tzinfo on round-trip, PostgreSQL keeps it. Naive values are
    assumed to already be UTC (everything the core writes is).

    Args:
        value: Datetime from a model column, or None

    Returns:
        Aware UTC datetime, or None when value is None
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return pytz.UTC.localize(value)
    return value.astimezone(pytz.UTC)


def to_date(value) -> Optional[date]:
    """Coerce a datetime or date to a date (None passes through)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    return value


class Clock(Protocol):
    """Source of "now" for the services."""

    def now(self) -> datetime: ...


class SystemClock:
    """
    Wall clock that never goes backwards.

    Registration and payment timestamps are compared against each other, so a
    small backwards NTP step must not produce a payment dated before the
    registration it pays for.
    """

    def __init__(self):
        self._last: Optional[datetime] = None

    def now(self) -> datetime:
        current = utcnow()
        if self._last is not None and current < self._last:
            return self._last
        self._last = current
        return current


class FixedClock:
    """Manually advanced clock for tests and replays."""

    def __init__(self, start: datetime):
        self._now = as_utc(start)

    def now(self) -> datetime:
        return self._now

    def advance(self, **delta) -> datetime:
        self._now = self._now + timedelta(**delta)
        return self._now

    def set(self, value: datetime) -> None:
        self._now = as_utc(value)
