"""
Clock -- Deterministic time abstraction.

Responsibility:
    Provides an injectable clock so that stage deadlines, commitment windows
    and ledger timestamps never come from ``datetime.now()`` directly.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O (except SystemClock,
    which is the one sanctioned I/O boundary for time).

Audit relevance:
    Every timestamp written to the state log, the ledger and reviewer
    memberships comes from an injected Clock instance, so a scenario can be
    replayed against a DeterministicClock with identical results.
"""

from abc import ABC, abstractmethod
from datetime import UTC, datetime, timedelta


class Clock(ABC):
    """
    Abstract clock interface.

    Guarantees:
        ``now()`` returns a timezone-aware UTC ``datetime``.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current time."""
        ...


class SystemClock(Clock):
    """Production clock that returns actual system time."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    Guarantees:
        - ``now()`` returns the same value on repeated calls until ``advance()``
          or ``set_time()`` is called.
        - ``tick()`` advances by exactly 1 second and returns the new time.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._current = fixed_time or datetime(2024, 1, 1, 12, 0, 0, tzinfo=UTC)

    def now(self) -> datetime:
        return self._current

    def set_time(self, time: datetime) -> None:
        """Set the clock to a specific time."""
        self._current = time

    def advance(self, seconds: int = 0, *, hours: int = 0, days: int = 0) -> datetime:
        """Move the clock forward and return the new time."""
        self._current += timedelta(seconds=seconds, hours=hours, days=days)
        return self._current

    def tick(self) -> datetime:
        """Advance by 1 second and return new time."""
        return self.advance(1)
