"""
Time sources.

Every time-based rule (failure window, reset timeout, batch age, record
retention) reads the clock it was given, so tests can drive time by hand.
"""

from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    def now(self) -> float:
        """Current time in seconds since the epoch."""
        ...


class SystemClock:
    """Wall clock. Persisted timestamps must survive a process restart."""

    def now(self) -> float:
        return time.time()


class ManualClock:
    """Clock that only moves when told to.

    Example:
        clock = ManualClock(1_000.0)
        breaker = CircuitBreaker(config, clock=clock)
        clock.advance(30)
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("cannot move a clock backwards")
        self._now += seconds

    def set(self, value: float) -> None:
        self._now = float(value)
