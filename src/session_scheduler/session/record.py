"""Session record and the snapshot published to observers."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from ..presets.models import DEFAULT_SESSION_DURATION
from .clock import TimingAccuracy
from .errors import ErrorInfo
from .state import SchedulerState


class SessionState(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {SessionState.COMPLETED, SessionState.FAILED}


class SleepWakeType(str, Enum):
    SLEEP = "sleep"
    WAKE = "wake"


class SleepWakeEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    type: SleepWakeType


class SessionRecord(BaseModel):
    """One scheduled run. Timing fields are epoch seconds."""

    id: str = Field(default_factory=lambda: uuid4().hex)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    planned_duration: float = Field(default=DEFAULT_SESSION_DURATION, gt=0)
    actual_start_time: float
    accumulated_paused_time: float = Field(default=0.0, ge=0)
    pause_started_at: float | None = None
    precision_drift_seconds: float = 0.0
    tick_count: int = 0
    expected_elapsed: float = 0.0
    last_precision_check: float | None = None
    execution_count: int = 0
    last_execution_at: datetime | None = None
    next_execution_elapsed: float = 0.0
    state: SessionState = SessionState.RUNNING
    last_error: ErrorInfo | None = None
    sleep_wake_log: list[SleepWakeEvent] = Field(default_factory=list)
    ended_at: datetime | None = None

    def wall_elapsed(self, now: float) -> float:
        """Wall-clock time spent outside pauses, before drift correction."""

        reference = self.pause_started_at if self.pause_started_at is not None else now
        return reference - self.actual_start_time - self.accumulated_paused_time

    def elapsed(self, now: float) -> float:
        raw = self.wall_elapsed(now) - self.precision_drift_seconds
        return min(self.planned_duration, max(0.0, raw))

    def progress(self, now: float) -> float:
        return self.elapsed(now) / self.planned_duration

    def time_remaining(self, now: float) -> float:
        return self.planned_duration - self.elapsed(now)

    def open_pause(self, now: float) -> None:
        if self.pause_started_at is None:
            self.pause_started_at = now
        self.state = SessionState.PAUSED

    def close_pause(self, now: float) -> float:
        """Close the pause window and return how long it lasted."""

        paused_for = 0.0
        if self.pause_started_at is not None:
            paused_for = max(0.0, now - self.pause_started_at)
            self.accumulated_paused_time += paused_for
            self.pause_started_at = None
        self.state = SessionState.RUNNING
        return paused_for

    def record_sleep_wake(self, kind: SleepWakeType, at: datetime) -> None:
        self.sleep_wake_log.append(SleepWakeEvent(timestamp=at, type=kind))

    def record_execution(self, at: datetime) -> None:
        self.execution_count += 1
        self.last_execution_at = at

    def complete(self, at: datetime) -> None:
        self.state = SessionState.COMPLETED
        self.pause_started_at = None
        self.ended_at = at


class SchedulerSnapshot(BaseModel):
    """Immutable view of the engine handed to observers."""

    model_config = ConfigDict(frozen=True)

    state: SchedulerState
    session_id: str | None = None
    progress: float = 0.0
    elapsed: float = 0.0
    time_remaining: float = 0.0
    last_error: ErrorInfo | None = None
    execution_count: int = 0
    recovery_attempts: int = 0
    drift_seconds: float = 0.0
    timing_accuracy: TimingAccuracy = TimingAccuracy.HIGH_PRECISION


__all__ = [
    "SchedulerSnapshot",
    "SessionRecord",
    "SessionState",
    "SleepWakeEvent",
    "SleepWakeType",
]
