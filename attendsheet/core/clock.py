"""
Injectable clock so services never call ``datetime.now()`` directly.

The scheduler, dispatcher and audit sink all take a ``Clock``; tests swap in
``FixedClock`` to pin deadlines and stamps.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


def ensure_utc(dt: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        """Current time, timezone-aware UTC."""


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Test clock that only moves when told to."""

    def __init__(self, fixed_time: datetime | None = None) -> None:
        self._now = ensure_utc(fixed_time) or datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def set_time(self, when: datetime) -> None:
        self._now = ensure_utc(when)  # type: ignore[assignment]

    def advance(self, seconds: float = 1) -> datetime:
        self._now = self._now + timedelta(seconds=seconds)
        return self._now
