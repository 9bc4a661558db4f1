"""
Clocks

Billing never reads the wall clock directly; every service takes a clock so
sweeps can be replayed against a fixed instant.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Optional


class Clock(ABC):
    """Source of the current UTC instant."""

    @abstractmethod
    def now(self) -> datetime:
        """Current instant, timezone-aware UTC."""


class SystemClock(Clock):
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """
    Manually driven clock.

    Used by tests and by back-fill runs that reconcile against a chosen instant.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = ensure_utc(start or datetime.now(timezone.utc))
        self._lock = Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, instant: datetime) -> None:
        with self._lock:
            self._now = ensure_utc(instant)

    def advance(self, **kwargs) -> datetime:
        """Move the clock forward by a timedelta built from kwargs."""
        with self._lock:
            self._now = self._now + timedelta(**kwargs)
            return self._now


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_instant(value) -> Optional[datetime]:
    """Parse a stored instant (ISO string or datetime) into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    return ensure_utc(datetime.fromisoformat(str(value)))


def format_instant(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    # Fixed width keeps stored SQLite text instants ordered lexicographically
    return ensure_utc(value).isoformat(timespec="microseconds")
