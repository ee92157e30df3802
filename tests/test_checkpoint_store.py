from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from session_scheduler.session.record import SessionRecord, SleepWakeType
from session_scheduler.storage import (
    CheckpointStore,
    LoadStatus,
    MemoryStore,
    StoreWriteError,
    compute_checksum,
)

FIXED_NOW = datetime(2025, 1, 1, tzinfo=timezone.utc)


def make_record(**overrides) -> SessionRecord:
    payload = {
        "planned_duration": 600.0,
        "actual_start_time": 1_700_000_000.0,
        "accumulated_paused_time": 12.5,
        "precision_drift_seconds": 0.25,
        "execution_count": 2,
        "next_execution_elapsed": 120.0,
    }
    payload.update(overrides)
    return SessionRecord(**payload)


def test_save_then_load_round_trip(tmp_path: Path) -> None:
    store = CheckpointStore(tmp_path / "state" / "session.json", clock=lambda: FIXED_NOW)
    record = make_record()
    record.record_sleep_wake(SleepWakeType.SLEEP, FIXED_NOW)

    saved = store.save(record)
    result = store.load()

    assert result.status is LoadStatus.LOADED
    assert result.document is not None
    assert result.document.checksum == saved.checksum == compute_checksum(record)
    assert result.document.persistence_timestamp == FIXED_NOW
    assert result.record == record
    assert not (tmp_path / "state" / "session.json.tmp").exists()


def test_load_absent_checkpoint(tmp_path: Path) -> None:
    assert CheckpointStore(tmp_path / "missing.json").load().status is LoadStatus.ABSENT


def test_load_detects_checksum_mismatch(tmp_path: Path) -> None:
    path = tmp_path / "session.json"
    store = CheckpointStore(path)
    store.save(make_record())

    document = json.loads(path.read_text(encoding="utf-8"))
    document["record"]["planned_duration"] = 900.0
    path.write_text(json.dumps(document), encoding="utf-8")

    result = store.load()

    assert result.status is LoadStatus.CORRUPTED
    assert result.reason == "checksum mismatch"


def test_load_rejects_garbage(tmp_path: Path) -> None:
    path = tmp_path / "session.json"
    path.write_text("{not json", encoding="utf-8")

    result = CheckpointStore(path).load()

    assert result.status is LoadStatus.CORRUPTED
    assert result.record is None


def test_load_rejects_undecodable_bytes(tmp_path: Path) -> None:
    path = tmp_path / "session.json"
    path.write_bytes(b"\xff\xfe\x00garbage")

    result = CheckpointStore(path).load()

    assert result.status is LoadStatus.CORRUPTED
    assert result.record is None
    assert "invalid checkpoint document" in result.reason


def test_clear_is_idempotent(tmp_path: Path) -> None:
    path = tmp_path / "session.json"
    store = CheckpointStore(path)
    store.save(make_record())

    store.clear()
    store.clear()

    assert not path.exists()


def test_save_failure_raises_store_write_error(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("file, not a directory", encoding="utf-8")
    store = CheckpointStore(blocker / "session.json")

    with pytest.raises(StoreWriteError):
        store.save(make_record())


def test_checksum_covers_identity_fields() -> None:
    record = make_record()
    moved = make_record(id=record.id, actual_start_time=record.actual_start_time + 1)

    assert compute_checksum(record) == compute_checksum(record.model_copy(update={"execution_count": 9}))
    assert compute_checksum(record) != compute_checksum(moved)


def test_memory_store_matches_file_store_contract() -> None:
    store = MemoryStore()
    record = make_record()

    assert store.load().status is LoadStatus.ABSENT
    store.save(record)
    assert store.saves == 1
    assert store.load().record == record

    store.raw = store.raw.replace(record.id, "tampered")
    assert store.load().status is LoadStatus.CORRUPTED

    store.clear()
    assert store.load().status is LoadStatus.ABSENT
