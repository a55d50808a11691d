"""
Clock -- injected time.

Request age (stale flagging), request and donation expiry, allocation
dates and audit timestamps all come from a Clock passed to the service,
never from ``datetime.now()``.  ``DeterministicClock`` lets tests walk a
request past its thirty-day threshold without waiting.

Failure modes:
    - ``ensure_utc`` treats naive datetimes as UTC.  SQLite returns naive
      values for timezone-aware columns; everything the kernel writes is UTC.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime, timedelta, timezone


class Clock(ABC):
    """Source of the current time.  ``now()`` is always timezone-aware UTC."""

    @abstractmethod
    def now(self) -> datetime: ...

    def today(self) -> date:
        """UTC calendar date; donation expiry dates compare against this."""
        return self.now().astimezone(timezone.utc).date()


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """Frozen test clock.  Time moves only through ``advance`` and ``set_time``."""

    EPOCH = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __init__(self, start: datetime | None = None):
        self._current = start or self.EPOCH

    def now(self) -> datetime:
        return self._current

    def set_time(self, moment: datetime) -> None:
        self._current = moment

    def advance(self, seconds: int = 1) -> None:
        self._current += timedelta(seconds=seconds)

    def advance_days(self, days: int) -> None:
        self._current += timedelta(days=days)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to a naive datetime; convert an aware one to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
