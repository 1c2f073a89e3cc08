"""Injectable time source.

Components take a `Clock` instead of calling `datetime.now()` / `time.time()`
directly so tests can drive TTLs, backoff windows and cooldowns with a fake.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from typing import Protocol


class Clock(Protocol):
    """Wall-clock time in two shapes."""

    def now(self) -> datetime:
        """Timezone-aware UTC datetime."""
        ...

    def time(self) -> float:
        """Seconds since the epoch."""
        ...


class SystemClock:
    """Clock backed by the system time."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def time(self) -> float:
        return time.time()


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops the offset on read)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


system_clock = SystemClock()
