"""Suspend/resume signals for the scheduler engine."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Protocol

logger = logging.getLogger(__name__)


class SleepWakeTarget(Protocol):
    def on_sleep(self, at: float | None = None) -> object:
        ...

    def on_wake(self) -> object:
        ...


class ClockJumpSleepMonitor:
    """Detect system suspension by watching for clock discontinuities.

    The monotonic clock stops while the machine is suspended and the wall clock
    does not, so a wall-clock jump larger than ``threshold`` between two polls
    means the host slept. The target receives ``on_sleep`` with the estimated
    moment of suspension followed by ``on_wake``.
    """

    def __init__(
        self,
        target: SleepWakeTarget,
        *,
        threshold: float = 30.0,
        poll_interval: float = 5.0,
        monotonic: Callable[[], float] = time.monotonic,
        wall: Callable[[], float] = time.time,
    ) -> None:
        self._target = target
        self.threshold = threshold
        self.poll_interval = poll_interval
        self._monotonic = monotonic
        self._wall = wall
        self._last_monotonic: float | None = None
        self._last_wall: float | None = None

    def reset(self) -> None:
        self._last_monotonic = self._monotonic()
        self._last_wall = self._wall()

    def poll(self) -> float | None:
        """Compare clocks once; return the detected jump, if any."""

        current_mono = self._monotonic()
        current_wall = self._wall()
        if self._last_monotonic is None or self._last_wall is None:
            self._last_monotonic, self._last_wall = current_mono, current_wall
            return None

        expected_wall = self._last_wall + (current_mono - self._last_monotonic)
        jump = current_wall - expected_wall
        previous_wall = self._last_wall
        self._last_monotonic, self._last_wall = current_mono, current_wall

        if jump <= self.threshold:
            if jump < -self.threshold:
                logger.warning("Wall clock moved backwards", extra={"jump_seconds": jump})
            return None

        slept_at = current_wall - jump
        logger.info(
            "Suspension detected",
            extra={"jump_seconds": round(jump, 3), "previous_poll": previous_wall},
        )
        self._target.on_sleep(at=slept_at)
        self._target.on_wake()
        return jump

    async def watch(self) -> None:
        """Poll until cancelled."""

        self.reset()
        while True:
            await asyncio.sleep(self.poll_interval)
            self.poll()


__all__ = ["ClockJumpSleepMonitor", "SleepWakeTarget"]
