"""Session scheduling engine.

The engine owns the single live ``SessionRecord``. Every mutation happens on
the asyncio event loop that runs :meth:`SchedulerEngine.run`; operations called
from other threads are marshaled onto that loop before they touch state.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import functools
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, TypeVar

from pydantic import ValidationError

from .command.runner import CommandResult, CommandRunnerProtocol
from .presets.models import SchedulerSettings
from .session.clock import Clock, DriftTracker, SystemClock, TimingAccuracy, to_datetime
from .session.errors import (
    ErrorInfo,
    ErrorKind,
    ErrorSeverity,
    classify_exception,
    classify_result,
)
from .session.observers import Observer, SnapshotBroadcaster
from .session.record import SchedulerSnapshot, SessionRecord, SessionState, SleepWakeType
from .session.state import (
    ACTIVE_STATES,
    SchedulerEvent,
    SchedulerState,
    TransitionResult,
    next_state,
)
from .storage import LoadStatus, PersistenceStore, StoreWriteError

logger = logging.getLogger(__name__)

AUTO_RESTART_DELAY = 10.0
MEMORY_PRESSURE_TICK_FACTOR = 2
# slack on top of the runner's own timeout before the engine gives up waiting
INVOCATION_GRACE = 5.0
# upper bound on how long a call from another thread waits for the loop
MARSHAL_TIMEOUT = 30.0

_SEVERITY_RANK = {
    ErrorSeverity.WARNING: 0,
    ErrorSeverity.RECOVERABLE: 1,
    ErrorSeverity.CRITICAL: 2,
}

F = TypeVar("F", bound=Callable[..., Any])


class EngineUnavailableError(RuntimeError):
    """Raised when a call from another thread cannot run on the engine loop."""


@dataclass(slots=True)
class SettingsUpdate:
    accepted: bool
    settings: SchedulerSettings
    errors: list[str] = field(default_factory=list)


def _serialized(method: F) -> F:
    """Run the wrapped operation on the engine's event loop thread."""

    @functools.wraps(method)
    def wrapper(self: "SchedulerEngine", *args: Any, **kwargs: Any) -> Any:
        loop = self._loop
        if (
            loop is None
            or loop.is_closed()
            or not loop.is_running()
            or self._loop_thread == threading.get_ident()
        ):
            return method(self, *args, **kwargs)

        future: concurrent.futures.Future[Any] = concurrent.futures.Future()

        def _call() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(method(self, *args, **kwargs))
            except Exception as exc:
                future.set_exception(exc)

        loop.call_soon_threadsafe(_call)
        done, _ = concurrent.futures.wait((future,), timeout=MARSHAL_TIMEOUT)
        if not done:
            future.cancel()
            raise EngineUnavailableError(
                f"{method.__name__} did not run on the scheduler loop within {MARSHAL_TIMEOUT:.0f}s"
            )
        return future.result()

    return wrapper  # type: ignore[return-value]


class SchedulerEngine:
    """Runs one session at a time and invokes the command on its cadence."""

    def __init__(
        self,
        *,
        runner: CommandRunnerProtocol,
        store: PersistenceStore,
        settings: SchedulerSettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._runner = runner
        self._store = store
        self._settings = settings or SchedulerSettings()
        self._clock = clock or SystemClock()
        self._broadcaster = SnapshotBroadcaster()

        self._state = SchedulerState.IDLE
        self._record: SessionRecord | None = None
        self._drift = DriftTracker()
        self._last_error: ErrorInfo | None = None
        self._recovery_attempts = 0
        self._retry_due_at: float | None = None
        self._timing_degraded = False
        self._published_elapsed = 0.0
        self._state_before_sleep: SchedulerState | None = None
        self._low_power = False
        self._memory_pressure = False

        self._inflight: asyncio.Task[None] | None = None
        self._auto_restart_handle: asyncio.TimerHandle | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._loop_thread: int | None = None
        self._wakeup: asyncio.Event | None = None
        self._run_task: asyncio.Task[None] | None = None
        self._running = False

    # ------------------------------------------------------------------ views

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def session(self) -> SessionRecord | None:
        """A copy of the live record, if any."""

        return self._record.model_copy(deep=True) if self._record is not None else None

    @property
    def settings(self) -> SchedulerSettings:
        return self._settings

    @property
    def last_error(self) -> ErrorInfo | None:
        return self._last_error

    @property
    def recovery_attempts(self) -> int:
        return self._recovery_attempts

    @property
    def retry_due_at(self) -> float | None:
        return self._retry_due_at

    @property
    def timing_accuracy(self) -> TimingAccuracy:
        return TimingAccuracy.classify(self._drift.drift)

    @property
    def invocation_pending(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    @property
    def effective_tick_interval(self) -> float:
        interval = self._settings.adapted_tick_interval(low_power=self._low_power)
        if self._memory_pressure:
            interval *= MEMORY_PRESSURE_TICK_FACTOR
        return interval

    def snapshot(self) -> SchedulerSnapshot:
        record = self._record
        if record is None:
            return SchedulerSnapshot(state=self._state, last_error=self._last_error)
        now = self._clock.now()
        elapsed = max(self._published_elapsed, record.elapsed(now))
        self._published_elapsed = elapsed
        return SchedulerSnapshot(
            state=self._state,
            session_id=record.id,
            progress=elapsed / record.planned_duration,
            elapsed=elapsed,
            time_remaining=record.planned_duration - elapsed,
            last_error=self._last_error,
            execution_count=record.execution_count,
            recovery_attempts=self._recovery_attempts,
            drift_seconds=record.precision_drift_seconds,
            timing_accuracy=TimingAccuracy.classify(record.precision_drift_seconds),
        )

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        return self._broadcaster.subscribe(observer)

    # ------------------------------------------------------------- operations

    @_serialized
    def start_session(self) -> TransitionResult:
        previous = self._state
        record = self._record
        if previous is SchedulerState.RUNNING and record is not None:
            return TransitionResult(
                accepted=True,
                event=SchedulerEvent.START,
                state=previous,
                previous_state=previous,
                session_id=record.id,
                reason="session already running",
            )
        if next_state(previous, SchedulerEvent.START) is None:
            return self._reject(SchedulerEvent.START, f"cannot start while {previous.value}")
        if record is not None and not record.state.is_terminal:
            return self._reject(SchedulerEvent.START, "previous session is still live")

        self._cancel_inflight()
        self._cancel_auto_restart()

        now = self._clock.now()
        record = SessionRecord(
            created_at=to_datetime(now),
            planned_duration=self._settings.session_duration,
            actual_start_time=now,
            last_precision_check=now,
        )
        self._record = record
        self._drift = DriftTracker()
        self._last_error = None
        self._recovery_attempts = 0
        self._retry_due_at = None
        self._timing_degraded = False
        self._published_elapsed = 0.0
        self._state_before_sleep = None
        self._transition(SchedulerEvent.START)

        logger.info(
            "Session started",
            extra={
                "session_id": record.id,
                "planned_duration": record.planned_duration,
                "tick_interval": self.effective_tick_interval,
                "execution_interval": self._settings.execution_interval,
            },
        )

        self._maybe_execute(0.0, now)
        self._checkpoint()
        self._publish()
        self._wake_loop()
        return self._accepted(SchedulerEvent.START, previous)

    @_serialized
    def pause_session(self) -> TransitionResult:
        previous = self._state
        if self._record is None or not self._transition(SchedulerEvent.PAUSE):
            return self._reject(SchedulerEvent.PAUSE, f"cannot pause while {previous.value}")

        self._record.open_pause(self._clock.now())
        self._state_before_sleep = None
        logger.info("Session paused", extra={"session_id": self._record.id})
        self._checkpoint()
        self._publish()
        return self._accepted(SchedulerEvent.PAUSE, previous)

    @_serialized
    def resume_session(self) -> TransitionResult:
        previous = self._state
        if self._record is None or not self._transition(SchedulerEvent.RESUME):
            return self._reject(SchedulerEvent.RESUME, f"cannot resume while {previous.value}")

        paused_for = self._record.close_pause(self._clock.now())
        self._state_before_sleep = None
        if previous is SchedulerState.RECOVERING:
            # manual resume abandons the pending retry; the cadence continues
            self._retry_due_at = None
        logger.info(
            "Session resumed",
            extra={"session_id": self._record.id, "paused_seconds": round(paused_for, 3)},
        )
        self._checkpoint()
        self._publish()
        self._wake_loop()
        return self._accepted(SchedulerEvent.RESUME, previous)

    @_serialized
    def stop_session(self) -> TransitionResult:
        previous = self._state
        record = self._record
        if record is None or not self._transition(SchedulerEvent.STOP):
            return self._reject(SchedulerEvent.STOP, f"cannot stop while {previous.value}")

        self._cancel_inflight()
        now = self._clock.now()
        elapsed = record.elapsed(now)
        record.complete(to_datetime(now))
        self._log_session_metrics("Session stopped", record, elapsed)

        self._discard_session()
        self._publish()
        return self._accepted(SchedulerEvent.STOP, previous, session_id=record.id)

    @_serialized
    def reset_session(self) -> TransitionResult:
        previous = self._state
        session_id = self._record.id if self._record is not None else None
        self._transition(SchedulerEvent.RESET)
        self._cancel_inflight()
        self._cancel_auto_restart()
        self._discard_session()
        self._last_error = None
        logger.info("Session reset", extra={"session_id": session_id})
        self._publish()
        return self._accepted(SchedulerEvent.RESET, previous, session_id=session_id)

    @_serialized
    def retry_session(self) -> TransitionResult:
        """User-initiated recovery from ``error`` (or ``paused``)."""

        previous = self._state
        record = self._record
        if record is None:
            return self._reject(SchedulerEvent.RECOVER, "no session to retry")
        if not self._transition(SchedulerEvent.RECOVER):
            return self._reject(SchedulerEvent.RECOVER, f"cannot retry while {previous.value}")

        now = self._clock.now()
        record.close_pause(now)
        record.last_error = None
        record.ended_at = None
        self._state_before_sleep = None
        self._last_error = None
        self._recovery_attempts = 0
        self._retry_due_at = None
        logger.info("Retrying session", extra={"session_id": record.id, "from_state": previous.value})

        self._launch_invocation(reason="manual retry")
        self._checkpoint()
        self._publish()
        self._wake_loop()
        return self._accepted(SchedulerEvent.RECOVER, previous)

    @_serialized
    def update_settings(self, settings: SchedulerSettings | Mapping[str, Any]) -> SettingsUpdate:
        """Validate and apply new settings; partial mappings override the current ones."""

        if isinstance(settings, SchedulerSettings):
            payload = settings.model_dump()
        else:
            payload = {**self._settings.model_dump(), **dict(settings)}
        try:
            candidate = SchedulerSettings.model_validate(payload)
        except ValidationError as exc:
            errors = [
                f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
                for error in exc.errors()
            ]
            logger.warning("Rejected settings update", extra={"errors": errors})
            return SettingsUpdate(accepted=False, settings=self._settings, errors=errors)

        self._settings = candidate
        logger.info(
            "Settings updated",
            extra={
                "tick_interval": candidate.tick_interval,
                "execution_interval": candidate.execution_interval,
                "session_duration": candidate.session_duration,
            },
        )
        self._wake_loop()
        return SettingsUpdate(accepted=True, settings=candidate)

    @_serialized
    def restore(self) -> SchedulerSnapshot:
        """Load the last checkpoint; a live session comes back paused."""

        if self._record is not None:
            logger.warning("Restore skipped; a session is already live", extra={"session_id": self._record.id})
            return self.snapshot()

        result = self._store.load()
        if result.status is LoadStatus.ABSENT:
            logger.debug("No checkpoint to restore")
            return self.snapshot()

        if result.status is LoadStatus.CORRUPTED or result.record is None:
            logger.error("Discarding corrupted checkpoint", extra={"reason": result.reason})
            self._store.clear()
            self._state = SchedulerState.IDLE
            self._last_error = ErrorInfo.from_kind(ErrorKind.PERSISTENCE_CORRUPTED, result.reason)
            self._publish()
            return self.snapshot()

        record = result.record
        self._record = record
        self._drift = DriftTracker(
            expected=record.expected_elapsed,
            ticks=record.tick_count,
            drift=record.precision_drift_seconds,
        )
        self._last_error = record.last_error
        self._recovery_attempts = 0
        self._retry_due_at = None

        if record.state is SessionState.RUNNING:
            # the process was not running since the last tick: count the gap as paused
            gap_start = record.last_precision_check
            if gap_start is None and result.document is not None:
                gap_start = result.document.persistence_timestamp.timestamp()
            record.open_pause(gap_start if gap_start is not None else self._clock.now())
            self._state = SchedulerState.PAUSED
        elif record.state is SessionState.PAUSED:
            record.open_pause(record.last_precision_check or self._clock.now())
            self._state = SchedulerState.PAUSED
        elif record.state is SessionState.COMPLETED:
            self._state = SchedulerState.COMPLETED
        else:
            self._state = SchedulerState.ERROR
            if self._last_error is None:
                self._last_error = ErrorInfo.from_kind(ErrorKind.RECOVERY_FAILED, "restored failed session")

        self._published_elapsed = record.elapsed(self._clock.now())
        logger.info(
            "Session restored",
            extra={
                "session_id": record.id,
                "state": self._state.value,
                "elapsed": round(self._published_elapsed, 3),
            },
        )
        self._checkpoint()
        self._publish()
        return self.snapshot()

    # ------------------------------------------------------------ host signals

    @_serialized
    def on_sleep(self, at: float | None = None) -> None:
        record = self._record
        if record is None:
            return
        now = self._clock.now()
        slept_at = now if at is None else min(now, max(at, record.actual_start_time))
        record.record_sleep_wake(SleepWakeType.SLEEP, to_datetime(slept_at))

        previous = self._state
        if self._transition(SchedulerEvent.SLEEP):
            self._state_before_sleep = previous
            record.open_pause(slept_at)
            logger.info("System sleeping; session paused", extra={"session_id": record.id})
        self._checkpoint()
        self._publish()

    @_serialized
    def on_wake(self) -> None:
        record = self._record
        if record is None:
            return
        now = self._clock.now()
        record.record_sleep_wake(SleepWakeType.WAKE, to_datetime(now))

        restore_to = self._state_before_sleep
        if self._state is SchedulerState.PAUSED and restore_to is not None:
            paused_for = record.close_pause(now)
            self._state = restore_to
            self._state_before_sleep = None
            logger.info(
                "System awake; session resumed",
                extra={"session_id": record.id, "paused_seconds": round(paused_for, 3)},
            )
        self._checkpoint()
        self._publish()
        self._wake_loop()

    @_serialized
    def on_background(self) -> TransitionResult:
        previous = self._state
        if not self._transition(SchedulerEvent.BACKGROUND):
            return self._reject(SchedulerEvent.BACKGROUND, f"cannot background while {previous.value}")
        self._publish()
        return self._accepted(SchedulerEvent.BACKGROUND, previous)

    @_serialized
    def on_foreground(self) -> TransitionResult:
        previous = self._state
        if not self._transition(SchedulerEvent.FOREGROUND):
            return self._reject(SchedulerEvent.FOREGROUND, f"cannot foreground while {previous.value}")
        self._publish()
        return self._accepted(SchedulerEvent.FOREGROUND, previous)

    @_serialized
    def on_power_state_change(self, low_power: bool) -> None:
        if low_power == self._low_power:
            return
        self._low_power = low_power
        logger.info(
            "Power state changed",
            extra={"low_power": low_power, "tick_interval": self.effective_tick_interval},
        )
        self._wake_loop()

    @_serialized
    def on_memory_pressure(self, active: bool = True) -> None:
        self._memory_pressure = active
        if active:
            logger.warning("Memory pressure detected", extra={"tick_interval": self.effective_tick_interval})
            self._note_error(ErrorInfo.from_kind(ErrorKind.MEMORY_PRESSURE))
        else:
            self._clear_error(ErrorKind.MEMORY_PRESSURE)
        self._publish()
        self._wake_loop()

    # ---------------------------------------------------------------- ticking

    @_serialized
    def tick(self, interval: float | None = None) -> SchedulerSnapshot | None:
        """Advance the live session by one tick of ``interval`` seconds."""

        record = self._record
        if record is None or not self._state.is_active:
            return None

        interval = self.effective_tick_interval if interval is None else interval
        now = self._clock.now()
        drift = self._drift.observe(record.wall_elapsed(now), interval)
        record.precision_drift_seconds = drift
        record.tick_count = self._drift.ticks
        record.expected_elapsed = self._drift.expected
        record.last_precision_check = now
        self._check_timing(drift)

        elapsed = record.elapsed(now)
        if elapsed >= record.planned_duration:
            self._complete(now)
        else:
            self._maybe_execute(elapsed, now)
            self._checkpoint()
            self._publish()
        return self.snapshot()

    async def run(self) -> None:
        """Drive the tick loop until :meth:`shutdown` is called."""

        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self._wakeup = asyncio.Event()
        self._running = True
        logger.info("Scheduler tick loop started")
        try:
            while self._running:
                if not self._state.is_active:
                    self._wakeup.clear()
                    await self._wakeup.wait()
                    continue

                interval = self.effective_tick_interval
                delay = self._drift.next_delay(interval)
                self._wakeup.clear()
                if await self._wait_for_wakeup(delay):
                    continue
                try:
                    self.tick(interval)
                except Exception as exc:
                    logger.exception("Tick failed", extra={"state": self._state.value})
                    self._note_error(ErrorInfo.from_kind(ErrorKind.BACKGROUND_TASK_FAILED, str(exc)))
                    self._publish()
        finally:
            self._running = False
            self._cancel_inflight()
            self._cancel_auto_restart()
            self._wakeup = None
            self._loop = None
            self._loop_thread = None
            logger.info("Scheduler tick loop stopped")

    def ensure_running(self) -> asyncio.Task[None]:
        """Start :meth:`run` on the current loop unless it is already running."""

        if self._run_task is None or self._run_task.done():
            loop = asyncio.get_running_loop()
            self._loop = loop
            self._loop_thread = threading.get_ident()
            self._run_task = loop.create_task(self.run())
        return self._run_task

    @_serialized
    def shutdown(self) -> None:
        self._running = False
        self._wake_loop()

    async def drain(self) -> None:
        """Wait until the outstanding command invocation, if any, has settled."""

        while self._inflight is not None and not self._inflight.done():
            await asyncio.wait({self._inflight})

    # ---------------------------------------------------------- command results

    @_serialized
    def deliver_result(self, session_id: str, outcome: CommandResult | BaseException) -> None:
        """Apply an invocation outcome to the session it was started for.

        Outcomes tagged with a session that is no longer live are discarded.
        """

        record = self._record
        if (
            record is None
            or record.id != session_id
            or self._state in {SchedulerState.IDLE, SchedulerState.COMPLETED, SchedulerState.ERROR}
        ):
            logger.info(
                "Discarding stale command result",
                extra={"session_id": session_id, "state": self._state.value},
            )
            return

        if isinstance(outcome, BaseException):
            self._handle_failure(classify_exception(outcome), str(outcome) or type(outcome).__name__)
        elif outcome.ok:
            self._handle_success(outcome)
        else:
            self._handle_failure(classify_result(outcome), outcome.failure_reason)
        self._checkpoint()
        self._publish()

    async def _invoke(self, session_id: str, command: str, timeout: float) -> None:
        try:
            result = await asyncio.wait_for(
                self._runner.invoke(command, timeout=timeout),
                timeout + INVOCATION_GRACE,
            )
        except asyncio.CancelledError:
            logger.info("Command invocation cancelled", extra={"session_id": session_id})
            raise
        except asyncio.TimeoutError:
            self._deliver_timeout(session_id, timeout)
            return
        except Exception as exc:
            self.deliver_result(session_id, exc)
            return
        self.deliver_result(session_id, result)

    def _deliver_timeout(self, session_id: str, timeout: float) -> None:
        waited = timeout + INVOCATION_GRACE
        self.deliver_result(
            session_id,
            CommandResult(
                args=(self._settings.command,),
                returncode=None,
                stdout="",
                stderr=f"no result within {waited:.0f}s",
                duration=waited,
                timed_out=True,
            ),
        )

    def _handle_success(self, result: CommandResult) -> None:
        record = self._record
        assert record is not None
        now = self._clock.now()
        record.record_execution(to_datetime(now))
        self._recovery_attempts = 0
        self._retry_due_at = None
        if self._last_error is not None and not self._last_error.is_critical:
            self._last_error = None
            record.last_error = None
        if self._state is SchedulerState.RECOVERING:
            self._transition(SchedulerEvent.RECOVERED)
        logger.info(
            "Command executed",
            extra={
                "session_id": record.id,
                "execution_count": record.execution_count,
                "duration": round(result.duration, 3),
            },
        )

    def _handle_failure(self, kind: ErrorKind, detail: str | None) -> None:
        record = self._record
        assert record is not None
        now = self._clock.now()
        self._recovery_attempts += 1
        error = ErrorInfo.from_kind(kind, detail, occurred_at=to_datetime(now))
        limit = min(self._settings.max_retry_attempts, kind.policy.max_retry_attempts)
        logger.warning(
            "Command failed",
            extra={
                "session_id": record.id,
                "kind": kind.value,
                "detail": detail,
                "attempt": self._recovery_attempts,
                "limit": limit,
            },
        )

        if kind.auto_recoverable and self._recovery_attempts < limit:
            delay = kind.policy.retry_delay or self._settings.retry_delay
            self._retry_due_at = now + delay
            self._last_error = error
            record.last_error = error
            if self._state in ACTIVE_STATES:
                self._transition(SchedulerEvent.RETRY_SCHEDULED)
            logger.info(
                "Retry scheduled",
                extra={"session_id": record.id, "delay": delay, "attempt": self._recovery_attempts},
            )
            return

        if kind.auto_recoverable:
            error = ErrorInfo.from_kind(
                ErrorKind.RECOVERY_FAILED,
                error.message,
                attempts=self._recovery_attempts,
                occurred_at=to_datetime(now),
            )
        self._fail(error)

    def _fail(self, error: ErrorInfo) -> None:
        record = self._record
        assert record is not None
        self._retry_due_at = None
        self._state_before_sleep = None
        # elapsed stays frozen in error; retry_session closes the window
        record.open_pause(self._clock.now())
        record.state = SessionState.FAILED
        record.last_error = error
        self._last_error = error
        self._transition(SchedulerEvent.FAIL)
        logger.error(
            "Session failed",
            extra={
                "session_id": record.id,
                "kind": error.kind.value,
                "error_message": error.message,
                "suggestion": error.suggestion_key,
            },
        )

    # --------------------------------------------------------------- internals

    def _maybe_execute(self, elapsed: float, now: float) -> None:
        record = self._record
        assert record is not None

        if self._retry_due_at is not None:
            if now >= self._retry_due_at:
                self._retry_due_at = None
                self._launch_invocation(reason="retry")
            return

        boundary = record.next_execution_elapsed
        if elapsed < boundary or boundary >= record.planned_duration:
            return
        while record.next_execution_elapsed <= elapsed:
            record.next_execution_elapsed += self._settings.execution_interval
        self._launch_invocation(reason="scheduled")

    def _launch_invocation(self, *, reason: str) -> None:
        record = self._record
        assert record is not None
        if self.invocation_pending:
            logger.info(
                "Skipping invocation; previous one still running",
                extra={"session_id": record.id, "reason": reason},
            )
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "No running event loop; command invocation skipped",
                extra={"session_id": record.id, "reason": reason},
            )
            return

        settings = self._settings
        logger.debug("Invoking command", extra={"session_id": record.id, "reason": reason})
        task = loop.create_task(self._invoke(record.id, settings.command, settings.command_timeout))
        self._inflight = task
        task.add_done_callback(self._forget_invocation)

    def _forget_invocation(self, task: asyncio.Task[None]) -> None:
        if self._inflight is task:
            self._inflight = None

    def _cancel_inflight(self) -> None:
        task, self._inflight = self._inflight, None
        if task is not None and not task.done():
            task.cancel()

    def _complete(self, now: float) -> None:
        record = self._record
        assert record is not None
        self._cancel_inflight()
        self._retry_due_at = None
        record.complete(to_datetime(now))
        self._transition(SchedulerEvent.COMPLETE)
        self._log_session_metrics("Session completed", record, record.elapsed(now))
        self._checkpoint()
        self._publish()

        if self._settings.auto_restart:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.warning("No running event loop; auto-restart skipped", extra={"session_id": record.id})
                return
            self._auto_restart_handle = loop.call_later(AUTO_RESTART_DELAY, self._auto_restart, record.id)

    def _auto_restart(self, session_id: str) -> None:
        self._auto_restart_handle = None
        record = self._record
        if self._state is SchedulerState.COMPLETED and record is not None and record.id == session_id:
            logger.info("Auto-restarting session", extra={"previous_session_id": session_id})
            self.start_session()

    def _cancel_auto_restart(self) -> None:
        if self._auto_restart_handle is not None:
            self._auto_restart_handle.cancel()
            self._auto_restart_handle = None

    def _check_timing(self, drift: float) -> None:
        accuracy = TimingAccuracy.classify(drift)
        if accuracy is TimingAccuracy.DEGRADED:
            if not self._timing_degraded:
                self._timing_degraded = True
                logger.warning(
                    "Timing precision degraded",
                    extra={"session_id": self._record.id if self._record else None, "drift": round(drift, 3)},
                )
                self._note_error(ErrorInfo.from_kind(ErrorKind.TIMING_PRECISION_LOST, f"{drift:.1f}s drift"))
        elif self._timing_degraded:
            self._timing_degraded = False
            logger.info("Timing precision restored", extra={"drift": round(drift, 3)})
            self._clear_error(ErrorKind.TIMING_PRECISION_LOST)

    def _note_error(self, error: ErrorInfo) -> None:
        """Record an error unless a more severe one is already showing."""

        current = self._last_error
        if current is not None and _SEVERITY_RANK[current.severity] > _SEVERITY_RANK[error.severity]:
            return
        self._last_error = error
        if self._record is not None:
            self._record.last_error = error

    def _clear_error(self, kind: ErrorKind) -> None:
        if self._last_error is not None and self._last_error.kind is kind:
            self._last_error = None
            if self._record is not None:
                self._record.last_error = None

    def _checkpoint(self) -> None:
        record = self._record
        if record is None:
            return
        try:
            self._store.save(record)
        except StoreWriteError as exc:
            logger.error("Checkpoint write failed", extra={"session_id": record.id, "error": str(exc)})
            self._note_error(ErrorInfo.from_kind(ErrorKind.BACKGROUND_TASK_FAILED, str(exc)))

    def _discard_session(self) -> None:
        self._record = None
        self._drift = DriftTracker()
        self._recovery_attempts = 0
        self._retry_due_at = None
        self._timing_degraded = False
        self._published_elapsed = 0.0
        self._state_before_sleep = None
        self._state = SchedulerState.IDLE
        self._store.clear()

    def _publish(self) -> None:
        self._broadcaster.publish(self.snapshot())

    def _wake_loop(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()

    async def _wait_for_wakeup(self, timeout: float) -> bool:
        assert self._wakeup is not None
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def _transition(self, event: SchedulerEvent) -> bool:
        target = next_state(self._state, event)
        if target is None:
            return False
        logger.debug(
            "State transition",
            extra={"event": event.value, "from_state": self._state.value, "to_state": target.value},
        )
        self._state = target
        return True

    def _accepted(
        self,
        event: SchedulerEvent,
        previous: SchedulerState,
        *,
        session_id: str | None = None,
    ) -> TransitionResult:
        if session_id is None and self._record is not None:
            session_id = self._record.id
        return TransitionResult(
            accepted=True,
            event=event,
            state=self._state,
            previous_state=previous,
            session_id=session_id,
        )

    def _reject(self, event: SchedulerEvent, reason: str) -> TransitionResult:
        logger.warning("Transition rejected", extra={"event": event.value, "reason": reason})
        return TransitionResult(
            accepted=False,
            event=event,
            state=self._state,
            previous_state=self._state,
            session_id=self._record.id if self._record is not None else None,
            reason=reason,
        )

    def _log_session_metrics(self, message: str, record: SessionRecord, elapsed: float) -> None:
        logger.info(
            message,
            extra={
                "session_id": record.id,
                "elapsed": round(elapsed, 3),
                "planned_duration": record.planned_duration,
                "paused_seconds": round(record.accumulated_paused_time, 3),
                "drift": round(record.precision_drift_seconds, 3),
                "accuracy": TimingAccuracy.classify(record.precision_drift_seconds).value,
                "execution_count": record.execution_count,
            },
        )


__all__ = ["AUTO_RESTART_DELAY", "EngineUnavailableError", "SchedulerEngine", "SettingsUpdate"]
