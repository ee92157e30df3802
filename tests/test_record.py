from __future__ import annotations

from datetime import datetime, timezone

import pytest

from session_scheduler.session.record import SessionRecord, SessionState, SleepWakeType

START = 1_700_000_000.0


def make_record(**overrides) -> SessionRecord:
    payload = {"planned_duration": 100.0, "actual_start_time": START}
    payload.update(overrides)
    return SessionRecord(**payload)


def test_elapsed_excludes_paused_time_and_drift() -> None:
    record = make_record(accumulated_paused_time=10.0, precision_drift_seconds=0.5)

    assert record.wall_elapsed(START + 40) == 30.0
    assert record.elapsed(START + 40) == pytest.approx(29.5)
    assert record.progress(START + 40) == pytest.approx(0.295)
    assert record.time_remaining(START + 40) == pytest.approx(70.5)


def test_elapsed_is_clamped_to_planned_duration() -> None:
    record = make_record(precision_drift_seconds=-3.0)

    assert record.elapsed(START - 50) == 0.0
    assert record.elapsed(START + 500) == 100.0
    assert record.time_remaining(START + 500) == 0.0


def test_open_pause_freezes_elapsed() -> None:
    record = make_record()
    record.open_pause(START + 20)

    assert record.state is SessionState.PAUSED
    assert record.elapsed(START + 20) == record.elapsed(START + 80) == 20.0

    record.open_pause(START + 30)
    assert record.pause_started_at == START + 20

    paused_for = record.close_pause(START + 80)
    assert paused_for == 60.0
    assert record.state is SessionState.RUNNING
    assert record.accumulated_paused_time == 60.0
    assert record.elapsed(START + 85) == 25.0


def test_close_pause_without_open_pause_is_noop() -> None:
    record = make_record()

    assert record.close_pause(START + 5) == 0.0
    assert record.accumulated_paused_time == 0.0


def test_record_execution_and_completion() -> None:
    record = make_record()
    at = datetime(2025, 1, 1, tzinfo=timezone.utc)

    record.record_execution(at)
    record.record_sleep_wake(SleepWakeType.SLEEP, at)
    record.open_pause(START + 1)
    record.complete(at)

    assert record.execution_count == 1
    assert record.last_execution_at == at
    assert [event.type for event in record.sleep_wake_log] == [SleepWakeType.SLEEP]
    assert record.state is SessionState.COMPLETED and record.state.is_terminal
    assert record.pause_started_at is None
    assert record.ended_at == at
