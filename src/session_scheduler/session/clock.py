"""Wall-clock access and drift accounting for the tick loop."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol

HIGH_PRECISION_DRIFT = 2.0
ACCEPTABLE_DRIFT = 10.0


class TimingAccuracy(str, Enum):
    HIGH_PRECISION = "high_precision"
    ACCEPTABLE = "acceptable"
    DEGRADED = "degraded"

    @classmethod
    def classify(cls, drift: float) -> "TimingAccuracy":
        magnitude = abs(drift)
        if magnitude <= HIGH_PRECISION_DRIFT:
            return cls.HIGH_PRECISION
        if magnitude <= ACCEPTABLE_DRIFT:
            return cls.ACCEPTABLE
        return cls.DEGRADED


class Clock(Protocol):
    def now(self) -> float:
        """Return wall-clock time as epoch seconds."""
        ...


class SystemClock:
    """Clock backed by ``time.time``."""

    def now(self) -> float:
        return time.time()


class ManualClock:
    """Clock that only moves when told to; used by tests and simulations."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = float(start)

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> float:
        if seconds < 0:
            raise ValueError("ManualClock cannot move backwards")
        self._now += seconds
        return self._now

    def set(self, value: float) -> None:
        self._now = float(value)


def to_datetime(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


class DriftTracker:
    """Compares wall-clock progress against the progress implied by ticks.

    Every tick contributes its nominal interval to ``expected``. The drift is
    the signed difference between the wall-clock elapsed time and that
    expectation; positive means the ticks are running behind the wall clock.
    """

    def __init__(self, *, expected: float = 0.0, ticks: int = 0, drift: float = 0.0) -> None:
        self.expected = expected
        self.ticks = ticks
        self.drift = drift

    def observe(self, wall_elapsed: float, interval: float) -> float:
        self.ticks += 1
        self.expected += interval
        self.drift = wall_elapsed - self.expected
        return self.drift

    @property
    def accuracy(self) -> TimingAccuracy:
        return TimingAccuracy.classify(self.drift)

    def next_delay(self, interval: float) -> float:
        """Delay until the next tick, shortened or lengthened to absorb drift.

        Degraded drift is not chased: a large gap is reported instead of
        being replayed as a burst of back-to-back ticks.
        """

        if self.accuracy is TimingAccuracy.DEGRADED:
            return interval
        return max(0.0, interval - self.drift)


__all__ = [
    "ACCEPTABLE_DRIFT",
    "Clock",
    "DriftTracker",
    "HIGH_PRECISION_DRIFT",
    "ManualClock",
    "SystemClock",
    "TimingAccuracy",
    "to_datetime",
]
