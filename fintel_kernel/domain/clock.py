"""
Clock -- Deterministic time abstraction.

Responsibility:
    Provides an injectable clock interface so that engine and service code
    never call ``datetime.now()`` or ``date.today()`` directly.  Forecast
    horizons, overdue checks and "days since last payment" all hang off
    the clock, so tests pin it.

Architecture position:
    Kernel > Domain -- pure, zero I/O (except SystemClock, which is the one
    sanctioned I/O boundary for time).

Failure modes:
    None.
"""

from abc import ABC, abstractmethod
from datetime import UTC, date, datetime, timedelta


class Clock(ABC):
    """
    Abstract clock interface.

    Contract:
        All services that need current time receive a Clock instance via
        constructor injection.  Engines receive an explicit ``as_of`` date
        instead of a clock.

    Guarantees:
        - ``now()`` returns a timezone-aware UTC ``datetime``.
        - ``today()`` returns ``now().date()``.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current time."""
        ...

    def today(self) -> date:
        """Get the current calendar date (UTC)."""
        return self.now().date()


class SystemClock(Clock):
    """Production clock that returns actual system time."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    Guarantees:
        - ``now()`` returns the same value on repeated calls until
          ``advance()`` or ``set_time()`` is called.
    """

    def __init__(self, fixed_time: datetime | None = None):
        fixed_time = fixed_time or datetime(2026, 1, 15, 12, 0, 0, tzinfo=UTC)
        if fixed_time.tzinfo is None:
            fixed_time = fixed_time.replace(tzinfo=UTC)
        self._fixed_time = fixed_time
        self._advance_seconds = 0

    def now(self) -> datetime:
        return self._fixed_time + timedelta(seconds=self._advance_seconds)

    def set_time(self, time: datetime) -> None:
        """Set the clock to a specific time."""
        if time.tzinfo is None:
            time = time.replace(tzinfo=UTC)
        self._fixed_time = time
        self._advance_seconds = 0

    def advance(self, seconds: int = 1) -> None:
        """Advance the clock by the specified seconds."""
        self._advance_seconds += seconds

    def advance_days(self, days: int) -> None:
        """Advance the clock by whole days."""
        self.advance(days * 86400)
