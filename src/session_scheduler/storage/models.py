"""Data models for persisted checkpoints."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import BaseModel

from ..session.record import SessionRecord


def compute_checksum(record: SessionRecord) -> str:
    payload = f"{record.id}|{record.actual_start_time!r}|{record.planned_duration!r}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class CheckpointDocument(BaseModel):
    record: SessionRecord
    persistence_timestamp: datetime
    checksum: str

    @property
    def is_valid(self) -> bool:
        return self.checksum == compute_checksum(self.record)


class LoadStatus(str, Enum):
    ABSENT = "absent"
    CORRUPTED = "corrupted"
    LOADED = "loaded"


@dataclass(slots=True)
class LoadResult:
    status: LoadStatus
    document: CheckpointDocument | None = None
    reason: str | None = None

    @property
    def record(self) -> SessionRecord | None:
        return self.document.record if self.document is not None else None


__all__ = [
    "CheckpointDocument",
    "LoadResult",
    "LoadStatus",
    "compute_checksum",
]
