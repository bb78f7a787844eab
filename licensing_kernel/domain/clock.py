"""
Clock -- injectable time source.

Responsibility:
    Services never call ``datetime.now()``; they receive a Clock.  Every
    timestamp on applications, history entries, change requests and claims
    therefore comes from one place, and tests can pin or step it.

Architecture position:
    Kernel > Domain.  SystemClock is the only I/O in this package.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """``now()`` returns a timezone-aware UTC ``datetime``."""

    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):
    """Wall-clock UTC time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock.  Stands still unless moved with ``advance()``, or, when
    constructed with ``step``, moves forward by ``step`` after every read so
    that consecutive writes get strictly increasing timestamps.
    """

    def __init__(self, start: datetime | None = None, step: timedelta | None = None):
        start = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        if start.tzinfo is None:
            raise ValueError("DeterministicClock needs a timezone-aware start time")
        self._current = start
        self._step = step

    def now(self) -> datetime:
        current = self._current
        if self._step:
            self._current = current + self._step
        return current

    def advance(self, **delta: float) -> datetime:
        """Move forward by ``timedelta(**delta)`` and return the new time."""
        self._current += timedelta(**delta)
        return self._current
