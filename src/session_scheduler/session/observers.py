"""Subscribe/unsubscribe registry for scheduler snapshots."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from .record import SchedulerSnapshot

logger = logging.getLogger(__name__)

Observer = Callable[[SchedulerSnapshot], None]


class SnapshotBroadcaster:
    """Delivers the latest snapshot to every subscriber.

    When an event loop is running, publications made during one loop iteration
    are coalesced and only the last one is delivered. Without a running loop
    delivery is immediate.
    """

    def __init__(self) -> None:
        self._observers: dict[int, Observer] = {}
        self._next_token = 0
        self._pending: SchedulerSnapshot | None = None
        self._flush_scheduled = False

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        token = self._next_token
        self._next_token += 1
        self._observers[token] = observer

        def unsubscribe() -> None:
            self._observers.pop(token, None)

        return unsubscribe

    def publish(self, snapshot: SchedulerSnapshot) -> None:
        self._pending = snapshot
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        if not self._flush_scheduled:
            self._flush_scheduled = True
            loop.call_soon(self.flush)

    def flush(self) -> None:
        self._flush_scheduled = False
        snapshot, self._pending = self._pending, None
        if snapshot is None:
            return
        for observer in list(self._observers.values()):
            try:
                observer(snapshot)
            except Exception:
                logger.exception("Snapshot observer raised", extra={"state": snapshot.state.value})


__all__ = ["Observer", "SnapshotBroadcaster"]
