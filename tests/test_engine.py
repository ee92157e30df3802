from __future__ import annotations

import asyncio
import logging
import threading
import time

import pytest

from session_scheduler import engine as engine_module
from session_scheduler.command.runner import CommandResult, FakeCommandRunner
from session_scheduler.engine import EngineUnavailableError, SchedulerEngine
from session_scheduler.presets import SchedulerSettings
from session_scheduler.session.clock import ManualClock, TimingAccuracy
from session_scheduler.session.errors import ErrorKind
from session_scheduler.session.record import SchedulerSnapshot, SessionState
from session_scheduler.session.state import SchedulerState
from session_scheduler.storage import LoadStatus, MemoryStore


def make_engine(
    runner: FakeCommandRunner | None = None,
    **overrides,
) -> tuple[SchedulerEngine, ManualClock, FakeCommandRunner, MemoryStore]:
    clock = ManualClock()
    runner = runner or FakeCommandRunner()
    store = MemoryStore()
    settings = SchedulerSettings(**{"session_duration": 100.0, "tick_interval": 1.0, **overrides})
    engine = SchedulerEngine(runner=runner, store=store, settings=settings, clock=clock)
    return engine, clock, runner, store


def step(engine: SchedulerEngine, clock: ManualClock, seconds: float) -> SchedulerSnapshot | None:
    clock.advance(seconds)
    return engine.tick(seconds)


def test_start_creates_running_session_and_checkpoints() -> None:
    engine, clock, _, store = make_engine()

    result = engine.start_session()

    assert result.accepted
    assert result.previous_state is SchedulerState.IDLE
    assert engine.state is SchedulerState.RUNNING
    session = engine.session
    assert session is not None
    assert session.actual_start_time == clock.now()
    assert session.planned_duration == 100.0
    loaded = store.load()
    assert loaded.status is LoadStatus.LOADED
    assert loaded.record.id == result.session_id


def test_start_is_idempotent_while_running() -> None:
    engine, clock, _, _ = make_engine()
    first = engine.start_session()
    step(engine, clock, 1.0)
    before = engine.session

    second = engine.start_session()

    assert second.accepted
    assert second.session_id == first.session_id
    assert second.reason == "session already running"
    after = engine.session
    assert after.actual_start_time == before.actual_start_time
    assert after.execution_count == before.execution_count


def test_start_rejected_while_paused() -> None:
    engine, _, _, _ = make_engine()
    engine.start_session()
    engine.pause_session()

    result = engine.start_session()

    assert not result.accepted
    assert engine.state is SchedulerState.PAUSED


def test_illegal_operations_are_rejected_without_changes(caplog: pytest.LogCaptureFixture) -> None:
    engine, _, _, store = make_engine()

    with caplog.at_level(logging.WARNING):
        pause = engine.pause_session()
        resume = engine.resume_session()
        stop = engine.stop_session()

    assert not pause.accepted and not resume.accepted and not stop.accepted
    assert engine.state is SchedulerState.IDLE
    assert store.saves == 0
    assert "Transition rejected" in caplog.text


def test_ten_one_second_ticks_complete_a_ten_second_session() -> None:
    engine, clock, _, store = make_engine(session_duration=10.0, tick_interval=1.0)
    engine.start_session()

    snapshots = [step(engine, clock, 1.0) for _ in range(10)]

    assert engine.state is SchedulerState.COMPLETED
    assert snapshots[-1].progress == 1.0
    assert snapshots[-1].time_remaining == 0.0
    assert [round(snapshot.progress, 1) for snapshot in snapshots[:3]] == [0.1, 0.2, 0.3]
    assert store.load().record.state is SessionState.COMPLETED
    assert engine.tick(1.0) is None


def test_progress_is_monotonic_while_running_and_constant_while_paused() -> None:
    engine, clock, _, _ = make_engine(session_duration=1000.0)
    engine.start_session()

    observed: list[float] = []
    for jitter in [1.0, 1.4, 0.7, 1.1, 0.9, 1.6, 0.5]:
        clock.advance(jitter)
        observed.append(engine.snapshot().progress)
        engine.tick(1.0)
        observed.append(engine.snapshot().progress)

    assert observed == sorted(observed)

    engine.pause_session()
    paused = engine.snapshot().progress
    clock.advance(300)
    assert engine.snapshot().progress == paused
    assert engine.tick(1.0) is None

    engine.resume_session()
    clock.advance(1.0)
    assert engine.snapshot().progress >= paused


def test_elapsed_stays_within_bounds() -> None:
    engine, clock, _, _ = make_engine(session_duration=5.0)
    engine.start_session()

    assert engine.snapshot().elapsed == 0.0
    clock.advance(50)
    snapshot = engine.snapshot()
    assert snapshot.elapsed == 5.0
    assert snapshot.progress == 1.0


def test_drift_is_tracked_and_degraded_accuracy_reported_once() -> None:
    engine, clock, _, _ = make_engine(session_duration=1000.0)
    engine.start_session()

    clock.advance(1.5)
    snapshot = engine.tick(1.0)
    assert snapshot.drift_seconds == pytest.approx(0.5)
    assert snapshot.timing_accuracy is TimingAccuracy.HIGH_PRECISION
    assert snapshot.elapsed == pytest.approx(1.0)

    clock.advance(20.0)
    snapshot = engine.tick(1.0)
    assert snapshot.timing_accuracy is TimingAccuracy.DEGRADED
    assert snapshot.last_error.kind is ErrorKind.TIMING_PRECISION_LOST
    assert engine.state is SchedulerState.RUNNING

    first_error = engine.last_error
    clock.advance(1.0)
    engine.tick(1.0)
    assert engine.last_error is first_error


def test_pause_resume_accumulates_paused_time() -> None:
    engine, clock, _, store = make_engine()
    engine.start_session()
    step(engine, clock, 1.0)

    engine.pause_session()
    clock.advance(42.0)
    engine.resume_session()

    session = engine.session
    assert session.accumulated_paused_time == pytest.approx(42.0)
    assert session.state is SessionState.RUNNING
    assert store.load().record.accumulated_paused_time == pytest.approx(42.0)
    assert engine.snapshot().elapsed == pytest.approx(1.0)


def test_sleep_then_wake_adds_sleep_duration_to_paused_time() -> None:
    engine, clock, _, _ = make_engine()
    engine.start_session()
    step(engine, clock, 5.0)
    before = engine.snapshot().elapsed

    engine.on_sleep()
    assert engine.state is SchedulerState.PAUSED
    clock.advance(600.0)
    engine.on_wake()

    assert engine.state is SchedulerState.RUNNING
    session = engine.session
    assert session.accumulated_paused_time == pytest.approx(600.0)
    assert engine.snapshot().elapsed == pytest.approx(before)
    assert [event.type.value for event in session.sleep_wake_log] == ["sleep", "wake"]


def test_sleep_with_estimated_start_backdates_pause() -> None:
    engine, clock, _, _ = make_engine()
    engine.start_session()
    step(engine, clock, 5.0)
    clock.advance(300.0)

    engine.on_sleep(at=clock.now() - 300.0)
    engine.on_wake()

    assert engine.session.accumulated_paused_time == pytest.approx(300.0)
    assert engine.snapshot().elapsed == pytest.approx(5.0)


def test_wake_does_not_resume_user_pause() -> None:
    engine, clock, _, _ = make_engine()
    engine.start_session()
    engine.pause_session()

    engine.on_sleep()
    clock.advance(60.0)
    engine.on_wake()

    assert engine.state is SchedulerState.PAUSED


def test_background_and_foreground_keep_time_running() -> None:
    engine, clock, _, _ = make_engine()
    engine.start_session()

    assert engine.on_background().accepted
    assert engine.state is SchedulerState.BACKGROUNDED
    assert step(engine, clock, 1.0).elapsed == pytest.approx(1.0)
    assert engine.on_foreground().accepted
    assert engine.state is SchedulerState.RUNNING
    assert not engine.on_foreground().accepted


def test_stop_discards_session_and_checkpoint(caplog: pytest.LogCaptureFixture) -> None:
    engine, clock, _, store = make_engine()
    engine.start_session()
    step(engine, clock, 3.0)

    with caplog.at_level(logging.INFO):
        result = engine.stop_session()

    assert result.accepted
    assert engine.state is SchedulerState.IDLE
    assert engine.session is None
    assert store.load().status is LoadStatus.ABSENT
    assert "Session stopped" in caplog.text


def test_reset_from_any_state_clears_everything() -> None:
    engine, _, _, store = make_engine()
    engine.start_session()
    engine.pause_session()

    result = engine.reset_session()

    assert result.accepted
    assert engine.state is SchedulerState.IDLE
    assert engine.session is None
    assert engine.last_error is None
    assert store.raw is None
    assert engine.reset_session().accepted


def test_update_settings_rejects_negative_duration() -> None:
    engine, _, _, _ = make_engine()
    before = engine.settings

    outcome = engine.update_settings({"session_duration": -1})

    assert not outcome.accepted
    assert outcome.settings is before
    assert engine.settings is before
    assert any(error.startswith("session_duration") for error in outcome.errors)


def test_update_settings_merges_partial_changes() -> None:
    engine, _, _, _ = make_engine(execution_interval=60.0)

    outcome = engine.update_settings({"tick_interval": 2.5})

    assert outcome.accepted
    assert engine.settings.tick_interval == 2.5
    assert engine.settings.execution_interval == 60.0
    assert engine.effective_tick_interval == 2.5


def test_settings_change_does_not_alter_live_planned_duration() -> None:
    engine, _, _, _ = make_engine(session_duration=100.0)
    engine.start_session()

    engine.update_settings(SchedulerSettings(session_duration=50.0))

    assert engine.session.planned_duration == 100.0


def test_power_and_memory_signals_adapt_tick_interval() -> None:
    engine, _, _, _ = make_engine(tick_interval=5.0)

    engine.on_power_state_change(True)
    assert engine.effective_tick_interval == 30.0

    engine.on_memory_pressure(True)
    assert engine.effective_tick_interval == 60.0
    assert engine.last_error.kind is ErrorKind.MEMORY_PRESSURE

    engine.on_memory_pressure(False)
    engine.on_power_state_change(False)
    assert engine.effective_tick_interval == 5.0
    assert engine.last_error is None


def test_observers_receive_snapshots_until_unsubscribed() -> None:
    engine, clock, _, _ = make_engine()
    received: list[SchedulerSnapshot] = []
    unsubscribe = engine.subscribe(received.append)

    engine.start_session()
    step(engine, clock, 1.0)
    unsubscribe()
    step(engine, clock, 1.0)

    assert [snapshot.state for snapshot in received] == [SchedulerState.RUNNING] * 2
    assert received[-1].elapsed == pytest.approx(1.0)


def test_failing_observer_does_not_break_engine(caplog: pytest.LogCaptureFixture) -> None:
    engine, _, _, _ = make_engine()

    def broken(_: SchedulerSnapshot) -> None:
        raise RuntimeError("observer bug")

    engine.subscribe(broken)
    with caplog.at_level(logging.ERROR):
        result = engine.start_session()

    assert result.accepted
    assert "Snapshot observer raised" in caplog.text


def test_publications_are_coalesced_within_one_loop_iteration() -> None:
    gate = asyncio.Event()
    engine, _, _, _ = make_engine(runner=FakeCommandRunner(gate=gate))
    received: list[SchedulerSnapshot] = []
    engine.subscribe(received.append)

    async def scenario() -> None:
        engine.start_session()
        engine.pause_session()
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        engine.reset_session()

    asyncio.run(scenario())

    assert received[0].state is SchedulerState.PAUSED


def test_commands_run_on_the_execution_cadence() -> None:
    engine, clock, runner, _ = make_engine(
        session_duration=100.0,
        tick_interval=10.0,
        execution_interval=30.0,
        command="claude -p 'hello'",
        command_timeout=12.0,
    )

    async def scenario() -> None:
        engine.start_session()
        await engine.drain()
        while engine.state is SchedulerState.RUNNING:
            step(engine, clock, 10.0)
            await engine.drain()

    asyncio.run(scenario())

    assert engine.state is SchedulerState.COMPLETED
    assert runner.invocations == [("claude -p 'hello'", 12.0)] * 4
    assert engine.session.execution_count == 4
    assert engine.session.last_execution_at is not None


def test_boundaries_reached_during_inflight_invocation_are_skipped() -> None:
    gate = asyncio.Event()
    engine, clock, runner, _ = make_engine(
        runner=FakeCommandRunner(gate=gate),
        session_duration=1000.0,
        tick_interval=10.0,
        execution_interval=20.0,
    )

    async def scenario() -> None:
        engine.start_session()
        await asyncio.sleep(0)
        for _ in range(5):
            step(engine, clock, 10.0)
        assert engine.invocation_pending
        gate.set()
        await engine.drain()

    asyncio.run(scenario())

    assert len(runner.invocations) == 1
    assert engine.session.execution_count == 1
    assert engine.session.next_execution_elapsed == 60.0


def test_stop_cancels_inflight_invocation_and_discards_late_result() -> None:
    gate = asyncio.Event()
    engine, _, _, _ = make_engine(runner=FakeCommandRunner(gate=gate))

    async def scenario() -> str:
        result = engine.start_session()
        await asyncio.sleep(0)
        assert engine.invocation_pending
        engine.stop_session()
        assert not engine.invocation_pending
        return result.session_id

    session_id = asyncio.run(scenario())
    engine.start_session()
    engine.deliver_result(
        session_id,
        CommandResult(args=("claude",), returncode=0, stdout="", stderr=""),
    )

    assert engine.session.id != session_id
    assert engine.session.execution_count == 0


def test_auto_restart_starts_a_fresh_session(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(engine_module, "AUTO_RESTART_DELAY", 0.0)
    engine, clock, _, _ = make_engine(session_duration=2.0, auto_restart=True)

    async def scenario() -> tuple[str, str]:
        first = engine.start_session().session_id
        step(engine, clock, 1.0)
        step(engine, clock, 1.0)
        assert engine.state is SchedulerState.COMPLETED
        await asyncio.sleep(0.01)
        return first, engine.session.id

    first, second = asyncio.run(scenario())

    assert engine.state is SchedulerState.RUNNING
    assert first != second


def test_run_loop_drives_session_to_completion() -> None:
    store = MemoryStore()
    engine = SchedulerEngine(
        runner=FakeCommandRunner(),
        store=store,
        settings=SchedulerSettings(session_duration=0.3, tick_interval=0.05),
    )

    async def scenario() -> None:
        task = engine.ensure_running()
        engine.start_session()
        deadline = time.monotonic() + 5
        while engine.state is not SchedulerState.COMPLETED and time.monotonic() < deadline:
            await asyncio.sleep(0.02)
        engine.shutdown()
        await task

    asyncio.run(scenario())

    assert engine.state is SchedulerState.COMPLETED
    assert engine.session.execution_count == 1
    assert engine.snapshot().progress == 1.0


def test_operations_from_other_threads_run_on_the_loop_thread() -> None:
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()
    engine, _, _, _ = make_engine(tick_interval=60.0)
    delivered_on: list[int] = []
    engine.subscribe(lambda _: delivered_on.append(threading.get_ident()))

    async def boot() -> None:
        engine.ensure_running()

    try:
        asyncio.run_coroutine_threadsafe(boot(), loop).result(timeout=5)
        result = engine.start_session()
        engine.pause_session()
        engine.shutdown()
        asyncio.run_coroutine_threadsafe(asyncio.sleep(0.05), loop).result(timeout=5)
    finally:
        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout=5)
        loop.close()

    assert result.accepted
    assert engine.state is SchedulerState.PAUSED
    assert delivered_on and set(delivered_on) == {thread.ident}


def test_call_from_other_thread_gives_up_when_loop_is_blocked(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(engine_module, "MARSHAL_TIMEOUT", 0.1)
    loop = asyncio.new_event_loop()
    thread = threading.Thread(target=loop.run_forever, daemon=True)
    thread.start()
    engine, _, _, _ = make_engine(tick_interval=60.0)
    release = threading.Event()

    async def boot() -> None:
        engine.ensure_running()

    try:
        asyncio.run_coroutine_threadsafe(boot(), loop).result(timeout=5)
        loop.call_soon_threadsafe(release.wait, 5)
        with pytest.raises(EngineUnavailableError):
            engine.start_session()
        release.set()
        asyncio.run_coroutine_threadsafe(asyncio.sleep(0.05), loop).result(timeout=5)
        engine.shutdown()
        asyncio.run_coroutine_threadsafe(asyncio.sleep(0.05), loop).result(timeout=5)
    finally:
        release.set()
        loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout=5)
        loop.close()

    assert engine.state is SchedulerState.IDLE
    assert engine.session is None
