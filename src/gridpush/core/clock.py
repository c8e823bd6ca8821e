# src/gridpush/core/clock.py
"""Clock abstraction for testable timing logic.

Every suspension point in gridpush (limiter waits, failure cooldowns) and
every checkpoint timestamp goes through a Clock, so tests can run a
thousand-operation dispatch in simulated time.

Production code uses SystemClock (the default).
Tests inject MockClock to control time advancement.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    """Abstract clock for spacing, cooldowns and checkpoint expiry.

    Implementations:
    - SystemClock: time.monotonic(), time.sleep(), datetime.now(UTC)
    - MockClock: controllable time where sleep() advances instantly
    """

    def monotonic(self) -> float:
        """Return monotonic time in seconds.

        Must never go backwards. Used for elapsed time and spacing.
        """
        ...

    def sleep(self, seconds: float) -> None:
        """Suspend the caller for ``seconds``."""
        ...

    def now(self) -> datetime:
        """Return timezone-aware wall-clock time (UTC).

        Used for checkpoint timestamps, which must survive process restarts.
        """
        ...


class SystemClock:
    """Production clock backed by the system clocks."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)

    def now(self) -> datetime:
        return datetime.now(UTC)


class MockClock:
    """Controllable clock for deterministic testing.

    sleep() advances time instead of blocking, and every requested sleep is
    recorded so tests can assert on cooldowns.

    Example:
        clock = MockClock()
        limiter = RateLimiter(RateLimitConfig.no_jitter(), clock=clock)

        limiter.admit()
        limiter.admit()  # "sleeps" 0.4s without blocking
        assert clock.monotonic() == pytest.approx(0.4)
    """

    def __init__(self, start: float = 0.0, *, wall_start: datetime | None = None) -> None:
        """Initialize mock clock.

        Args:
            start: Initial monotonic time value (default 0.0).
            wall_start: Wall-clock time corresponding to ``start``
                (default 2026-01-01T00:00:00Z).
        """
        self._current = start
        self._start = start
        self._wall_start = wall_start or datetime(2026, 1, 1, tzinfo=UTC)
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self._current

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        if seconds > 0:
            self._current += seconds

    def now(self) -> datetime:
        return self._wall_start + timedelta(seconds=self._current - self._start)

    def advance(self, seconds: float) -> None:
        """Advance mock time by specified seconds.

        Raises:
            ValueError: If seconds is negative.
        """
        if seconds < 0:
            raise ValueError(f"Cannot advance time by negative amount: {seconds}")
        self._current += seconds


# Default clock for production use
DEFAULT_CLOCK: Clock = SystemClock()
