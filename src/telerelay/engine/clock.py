# src/telerelay/engine/clock.py
"""Clock abstraction for testable time-window logic.

Circuit breaker windows, batch lookbacks, heartbeat ages, claim leases and
status cadences are all computed from this clock. Persisted timestamps
come from now() (always timezone-aware UTC); elapsed-time measurements
such as request latency come from monotonic().

Production code uses SystemClock (the default).
Tests inject MockClock to control time advancement.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime, timedelta
from typing import Protocol


class Clock(Protocol):
    """Abstract clock for windowed and timeout-based operations."""

    def now(self) -> datetime:
        """Return the current wall-clock time as an aware UTC datetime."""
        ...

    def monotonic(self) -> float:
        """Return monotonic time in seconds, for elapsed-time measurement."""
        ...


class SystemClock:
    """Production clock backed by the system time sources."""

    def now(self) -> datetime:
        return datetime.now(UTC)

    def monotonic(self) -> float:
        return time.monotonic()


class MockClock:
    """Controllable clock for deterministic testing.

    Wall time and monotonic time advance together.

    Example:
        clock = MockClock(start=datetime(2024, 1, 1, tzinfo=UTC))
        breaker = CircuitBreaker(state, delivery_log, config, clock=clock)

        clock.advance(301)  # past the 5 minute recovery window
        assert breaker.evaluate() is CircuitState.HALF_OPEN
    """

    def __init__(self, start: datetime | None = None) -> None:
        """Initialize mock clock.

        Args:
            start: Initial wall time (naive values are taken as UTC).
                Defaults to 2024-01-01T00:00:00Z.
        """
        if start is None:
            start = datetime(2024, 1, 1, tzinfo=UTC)
        elif start.tzinfo is None:
            start = start.replace(tzinfo=UTC)
        self._now = start
        self._monotonic = 0.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        """Advance mock time by specified seconds.

        Raises:
            ValueError: If seconds is negative.
        """
        if seconds < 0:
            raise ValueError(f"Cannot advance time by negative amount: {seconds}")
        self._now += timedelta(seconds=seconds)
        self._monotonic += seconds

    def set(self, value: datetime) -> None:
        """Set wall time to an absolute value (monotonic time is unchanged)."""
        self._now = value if value.tzinfo is not None else value.replace(tzinfo=UTC)


# Default clock for production use
DEFAULT_CLOCK: Clock = SystemClock()
