"""Clock abstraction so timers and expiry are deterministic under test.

All timestamps are naive UTC: SQLite drops tzinfo on round-trip, so keeping
the whole domain naive avoids mixing aware and naive values.
"""

from datetime import datetime, timedelta, timezone
from typing import Protocol


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return utcnow()


class FixedClock:
    """Manually driven clock for tests and replays."""

    def __init__(self, start: datetime) -> None:
        self._now = start.replace(tzinfo=None) if start.tzinfo else start

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value.replace(tzinfo=None) if value.tzinfo else value

    def advance(self, delta: timedelta | None = None, **kwargs: float) -> datetime:
        self._now += delta if delta is not None else timedelta(**kwargs)
        return self._now


system_clock = SystemClock()


def get_clock() -> Clock:
    """FastAPI dependency; overridden in tests with a FixedClock."""
    return system_clock
