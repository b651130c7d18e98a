# =============================================================================
# File: tests/fakes/fake_clock.py
# Description: Manually advanced clock for TTL, breaker and snapshot tests
# =============================================================================

from __future__ import annotations

from datetime import datetime, timedelta, timezone


class FakeClock:
    """
    Clock whose time only moves when a test says so.

    Usage:
        clock = FakeClock()
        breaker = CircuitBreaker(config, clock=clock)
        clock.advance(30)
    """

    def __init__(self, start: datetime = datetime(2026, 1, 1, tzinfo=timezone.utc)):
        self._now = start
        self._monotonic = 1000.0

    def now(self) -> datetime:
        return self._now

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        self._now += timedelta(seconds=seconds)
        self._monotonic += seconds
