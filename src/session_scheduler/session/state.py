"""Scheduler states and the guarded transition table."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class SchedulerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    RECOVERING = "recovering"
    BACKGROUNDED = "backgrounded"

    @property
    def can_start(self) -> bool:
        return self in _STARTABLE

    @property
    def is_active(self) -> bool:
        """States in which session time advances and the tick loop works."""

        return self in ACTIVE_STATES


class SchedulerEvent(str, Enum):
    START = "start"
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"
    BACKGROUND = "background"
    FOREGROUND = "foreground"
    RECOVER = "recover"
    RESET = "reset"
    COMPLETE = "complete"
    RETRY_SCHEDULED = "retry_scheduled"
    RECOVERED = "recovered"
    FAIL = "fail"
    SLEEP = "sleep"


S = SchedulerState

ACTIVE_STATES = frozenset({S.RUNNING, S.BACKGROUNDED, S.RECOVERING})
_STARTABLE = frozenset({S.IDLE, S.COMPLETED, S.ERROR})

# event -> (legal source states, target state); RESET is legal from anywhere.
TRANSITIONS: dict[SchedulerEvent, tuple[frozenset[SchedulerState], SchedulerState]] = {
    SchedulerEvent.START: (_STARTABLE, S.RUNNING),
    SchedulerEvent.PAUSE: (frozenset({S.RUNNING, S.BACKGROUNDED}), S.PAUSED),
    SchedulerEvent.RESUME: (frozenset({S.PAUSED, S.RECOVERING}), S.RUNNING),
    SchedulerEvent.STOP: (
        frozenset({S.RUNNING, S.PAUSED, S.RECOVERING, S.BACKGROUNDED}),
        S.IDLE,
    ),
    SchedulerEvent.BACKGROUND: (frozenset({S.RUNNING}), S.BACKGROUNDED),
    SchedulerEvent.FOREGROUND: (frozenset({S.BACKGROUNDED}), S.RUNNING),
    SchedulerEvent.RECOVER: (frozenset({S.ERROR, S.PAUSED}), S.RECOVERING),
    SchedulerEvent.RESET: (frozenset(SchedulerState), S.IDLE),
    SchedulerEvent.COMPLETE: (ACTIVE_STATES, S.COMPLETED),
    SchedulerEvent.RETRY_SCHEDULED: (ACTIVE_STATES, S.RECOVERING),
    SchedulerEvent.RECOVERED: (frozenset({S.RECOVERING}), S.RUNNING),
    SchedulerEvent.FAIL: (ACTIVE_STATES | {S.PAUSED}, S.ERROR),
    SchedulerEvent.SLEEP: (ACTIVE_STATES, S.PAUSED),
}


def next_state(current: SchedulerState, event: SchedulerEvent) -> SchedulerState | None:
    """Return the target state, or ``None`` when the transition is illegal."""

    sources, target = TRANSITIONS[event]
    if current not in sources:
        return None
    return target


@dataclass(slots=True)
class TransitionResult:
    """Outcome of an engine operation, returned to whoever invoked it."""

    accepted: bool
    event: SchedulerEvent
    state: SchedulerState
    previous_state: SchedulerState
    session_id: str | None = None
    reason: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "accepted": self.accepted,
            "event": self.event.value,
            "state": self.state.value,
            "previous_state": self.previous_state.value,
            "session_id": self.session_id,
            "reason": self.reason,
        }


__all__ = [
    "ACTIVE_STATES",
    "SchedulerEvent",
    "SchedulerState",
    "TRANSITIONS",
    "TransitionResult",
    "next_state",
]
