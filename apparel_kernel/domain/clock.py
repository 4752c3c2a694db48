"""
Injectable time source.

Services stamp ledger entries, journal entries and audit events through a
``Clock`` rather than ``datetime.now()``, so tests and replays can pin the
time and compare results exactly.
"""

from abc import ABC, abstractmethod
from datetime import UTC, date, datetime, timedelta

# Noon on the first day of the default test period.
DEFAULT_FIXED_TIME = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)


class Clock(ABC):
    """``now()`` is timezone-aware UTC; ``today()`` is its calendar date."""

    @abstractmethod
    def now(self) -> datetime: ...

    def today(self) -> date:
        return self.now().date()


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(UTC)


class DeterministicClock(Clock):
    """Frozen clock that only moves when told to."""

    def __init__(self, fixed_time: datetime | None = None):
        self._current = fixed_time or DEFAULT_FIXED_TIME

    def now(self) -> datetime:
        return self._current

    def set_time(self, moment: datetime) -> None:
        self._current = moment

    def set_date(self, day: date) -> None:
        """Move to noon UTC on ``day``, e.g. to post into a later period."""
        self._current = datetime(day.year, day.month, day.day, 12, tzinfo=UTC)

    def advance(self, seconds: int = 1) -> datetime:
        self._current += timedelta(seconds=seconds)
        return self._current
