"""Injectable time source for the engine and the escalation sweep."""

from __future__ import annotations

import abc
from datetime import datetime, timedelta, timezone


class Clock(metaclass=abc.ABCMeta):
    """Returns timezone-aware UTC datetimes."""

    @abc.abstractmethod
    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall-clock time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """Clock that only moves when told to. Used by tests and dry runs."""

    def __init__(self, fixed_time: datetime | None = None) -> None:
        self._time = ensure_utc(
            fixed_time or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
        )

    def now(self) -> datetime:
        return self._time

    def set_time(self, time: datetime) -> None:
        self._time = ensure_utc(time)

    def advance(self, delta: timedelta) -> datetime:
        """Move the clock forward and return the new time."""
        self._time = self._time + delta
        return self._time


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC and normalise aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
