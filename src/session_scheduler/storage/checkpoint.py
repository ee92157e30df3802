"""Single-record JSON checkpoint store."""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Protocol

from pydantic import ValidationError

from ..session.record import SessionRecord
from .models import CheckpointDocument, LoadResult, LoadStatus, compute_checksum

logger = logging.getLogger(__name__)


class StoreWriteError(RuntimeError):
    """Raised when a checkpoint cannot be written to disk."""


class PersistenceStore(Protocol):
    """Protocol for the durable store the scheduler engine checkpoints into."""

    def save(self, record: SessionRecord) -> CheckpointDocument:
        ...

    def load(self) -> LoadResult:
        ...

    def clear(self) -> None:
        ...


class CheckpointStore:
    """Persist the live session record as one JSON document with a checksum."""

    def __init__(
        self,
        path: Path,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def path(self) -> Path:
        return self._path

    def save(self, record: SessionRecord) -> CheckpointDocument:
        document = CheckpointDocument(
            record=record.model_copy(deep=True),
            persistence_timestamp=self._clock(),
            checksum=compute_checksum(record),
        )
        tmp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(document.model_dump_json(indent=2), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as exc:
            raise StoreWriteError(f"Failed to write checkpoint {self._path}: {exc}") from exc
        return document

    def load(self) -> LoadResult:
        try:
            raw = self._path.read_bytes()
        except FileNotFoundError:
            return LoadResult(LoadStatus.ABSENT)
        except OSError as exc:
            logger.error("Checkpoint unreadable", extra={"path": str(self._path), "error": str(exc)})
            return LoadResult(LoadStatus.CORRUPTED, reason=str(exc))

        try:
            document = CheckpointDocument.model_validate(json.loads(raw.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as exc:
            return LoadResult(LoadStatus.CORRUPTED, reason=f"invalid checkpoint document: {exc}")

        if not document.is_valid:
            return LoadResult(LoadStatus.CORRUPTED, document=document, reason="checksum mismatch")
        return LoadResult(LoadStatus.LOADED, document=document)

    def clear(self) -> None:
        try:
            self._path.unlink()
        except FileNotFoundError:
            return


class MemoryStore:
    """In-memory store with the same contract, holding the serialized document."""

    def __init__(self) -> None:
        self.raw: str | None = None
        self.saves = 0

    def save(self, record: SessionRecord) -> CheckpointDocument:
        document = CheckpointDocument(
            record=record.model_copy(deep=True),
            persistence_timestamp=datetime.now(timezone.utc),
            checksum=compute_checksum(record),
        )
        self.raw = document.model_dump_json()
        self.saves += 1
        return document

    def load(self) -> LoadResult:
        if self.raw is None:
            return LoadResult(LoadStatus.ABSENT)
        try:
            document = CheckpointDocument.model_validate_json(self.raw)
        except ValidationError as exc:
            return LoadResult(LoadStatus.CORRUPTED, reason=str(exc))
        if not document.is_valid:
            return LoadResult(LoadStatus.CORRUPTED, document=document, reason="checksum mismatch")
        return LoadResult(LoadStatus.LOADED, document=document)

    def clear(self) -> None:
        self.raw = None


__all__ = ["CheckpointStore", "MemoryStore", "PersistenceStore", "StoreWriteError"]
