"""Session scheduler diagnostics CLI."""

from __future__ import annotations

import argparse
import json
from datetime import datetime
from pathlib import Path

from session_scheduler.config import SchedulerAppSettings
from session_scheduler.session.clock import TimingAccuracy
from session_scheduler.storage import CheckpointStore, LoadResult, LoadStatus


def load_store(args: argparse.Namespace) -> CheckpointStore:
    path = Path(args.state_path) if args.state_path else SchedulerAppSettings().state_path
    return CheckpointStore(path.expanduser())


def load_checkpoint(store: CheckpointStore) -> LoadResult:
    result = store.load()
    if result.status is LoadStatus.ABSENT:
        print(f"No checkpoint at {store.path}")
        raise SystemExit(0)
    if result.status is LoadStatus.CORRUPTED:
        print(f"Checkpoint corrupted: {result.reason}")
        raise SystemExit(1)
    return result


def cmd_status(args: argparse.Namespace) -> None:
    store = load_store(args)
    result = load_checkpoint(store)
    record = result.record
    assert record is not None and result.document is not None

    # elapsed as of the last checkpoint, not now
    checkpoint_at = result.document.persistence_timestamp.timestamp()
    as_of = record.last_precision_check or checkpoint_at
    elapsed = record.elapsed(as_of)
    payload = {
        "session_id": record.id,
        "state": record.state.value,
        "planned_duration": record.planned_duration,
        "elapsed": round(elapsed, 3),
        "progress": round(elapsed / record.planned_duration, 4),
        "paused_seconds": round(record.accumulated_paused_time, 3),
        "drift_seconds": round(record.precision_drift_seconds, 3),
        "timing_accuracy": TimingAccuracy.classify(record.precision_drift_seconds).value,
        "execution_count": record.execution_count,
        "last_error": record.last_error.model_dump(mode="json") if record.last_error else None,
        "persisted_at": result.document.persistence_timestamp.isoformat(),
    }
    if args.json:
        print(json.dumps(payload, indent=2))
    else:
        for key, value in payload.items():
            print(f"{key}: {value}")


def cmd_verify(args: argparse.Namespace) -> None:
    store = load_store(args)
    result = load_checkpoint(store)
    assert result.document is not None
    print(f"Checkpoint OK: {result.document.record.id} ({result.document.checksum[:12]})")


def cmd_events(args: argparse.Namespace) -> None:
    store = load_store(args)
    record = load_checkpoint(store).record
    assert record is not None

    events = sorted(record.sleep_wake_log, key=lambda event: event.timestamp)
    if args.limit is not None and args.limit > 0:
        events = events[-args.limit :]
    payload = [
        {"type": event.type.value, "timestamp": event.timestamp.isoformat()}
        for event in events
    ]
    print(json.dumps(payload, indent=2))


def cmd_clear(args: argparse.Namespace) -> None:
    store = load_store(args)
    if not args.yes:
        print(f"Refusing to clear {store.path} without --yes")
        raise SystemExit(2)
    existed = store.path.exists()
    store.clear()
    stamp = datetime.now().isoformat(timespec="seconds")
    print(f"Cleared {store.path} at {stamp}" if existed else f"No checkpoint at {store.path}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Session scheduler diagnostics")
    parser.add_argument(
        "--state-path",
        default=None,
        help="Checkpoint file (defaults to SCHEDULER_STATE_PATH)",
    )
    sub = parser.add_subparsers(dest="cmd")

    p_status = sub.add_parser("status", help="Summarize the persisted session")
    p_status.add_argument("--json", action="store_true", help="Output JSON")
    p_status.set_defaults(func=cmd_status)

    p_verify = sub.add_parser("verify", help="Check the checkpoint checksum")
    p_verify.set_defaults(func=cmd_verify)

    p_events = sub.add_parser("events", help="List recorded sleep/wake events")
    p_events.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N events",
    )
    p_events.set_defaults(func=cmd_events)

    p_clear = sub.add_parser("clear", help="Delete the checkpoint file")
    p_clear.add_argument("--yes", action="store_true", help="Confirm deletion")
    p_clear.set_defaults(func=cmd_clear)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
