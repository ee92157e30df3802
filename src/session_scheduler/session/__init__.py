"""Session data model, state machine, and timing primitives."""

from .clock import DriftTracker, ManualClock, SystemClock, TimingAccuracy
from .errors import ErrorInfo, ErrorKind, ErrorSeverity
from .observers import SnapshotBroadcaster
from .record import SchedulerSnapshot, SessionRecord, SessionState, SleepWakeType
from .sleepwake import ClockJumpSleepMonitor
from .state import SchedulerEvent, SchedulerState, TransitionResult

__all__ = [
    "ClockJumpSleepMonitor",
    "DriftTracker",
    "ErrorInfo",
    "ErrorKind",
    "ErrorSeverity",
    "ManualClock",
    "SchedulerEvent",
    "SchedulerSnapshot",
    "SchedulerState",
    "SessionRecord",
    "SessionState",
    "SleepWakeType",
    "SnapshotBroadcaster",
    "SystemClock",
    "TimingAccuracy",
    "TransitionResult",
]
