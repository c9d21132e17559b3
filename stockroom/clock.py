"""
Injectable time source.

Services never call ``datetime.utcnow()`` themselves; they receive ``now``
from a Clock so overdue sweeps, extension limits and the reversal window
can be exercised with a fixed time in tests.

All values are naive UTC, the same shape the database columns store.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


def to_utc_naive(dt: datetime) -> datetime:
    # 带时区的先转 UTC 再去 tzinfo；不带时区的按 UTC 理解
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime:
        ...


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FixedClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, fixed_time: datetime | None = None):
        self._time = to_utc_naive(fixed_time or datetime(2024, 1, 1, 12, 0, 0))

    def now(self) -> datetime:
        return self._time

    def set_time(self, time: datetime) -> None:
        self._time = to_utc_naive(time)

    def advance(self, **kwargs) -> datetime:
        self._time = self._time + timedelta(**kwargs)
        return self._time
