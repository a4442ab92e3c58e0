# src/formulabench/engine/clock.py
"""Clock abstraction for testable timing logic.

Cache TTLs, debounce deadlines, the recent-edit window and every audit
event timestamp read time through a Clock so tests can drive them
without sleeping.

Production code uses SystemClock (the default).
Tests inject MockClock and advance it together with a ManualScheduler.
"""

from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    """Abstract monotonic clock.

    Implementations:
    - SystemClock: Uses time.monotonic() (production)
    - MockClock: Returns controllable times (testing)
    """

    def monotonic(self) -> float:
        """Return monotonic time in seconds."""
        ...


class SystemClock:
    """Production clock using time.monotonic()."""

    def monotonic(self) -> float:
        return time.monotonic()


class MockClock:
    """Controllable clock for deterministic testing.

    Example:
        clock = MockClock(start=0.0)
        cache = ArtifactCache(default_ttl=60.0, clock=clock)

        cache.set("f1", func, source_hash="abc")
        clock.advance(61.0)
        assert cache.get("f1") is None  # expired
    """

    def __init__(self, start: float = 0.0) -> None:
        self._current = start

    def monotonic(self) -> float:
        return self._current

    def advance(self, seconds: float) -> None:
        """Advance mock time.

        Raises:
            ValueError: If seconds is negative.
        """
        if seconds < 0:
            raise ValueError(f"Cannot advance time by negative amount: {seconds}")
        self._current += seconds

    def set(self, value: float) -> None:
        """Set mock time to an absolute value (may move backwards)."""
        self._current = value


DEFAULT_CLOCK: Clock = SystemClock()
