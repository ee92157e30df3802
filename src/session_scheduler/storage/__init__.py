"""Checkpoint persistence for the live session."""

from .checkpoint import CheckpointStore, MemoryStore, PersistenceStore, StoreWriteError
from .models import CheckpointDocument, LoadResult, LoadStatus, compute_checksum

__all__ = [
    "CheckpointDocument",
    "CheckpointStore",
    "LoadResult",
    "LoadStatus",
    "MemoryStore",
    "PersistenceStore",
    "StoreWriteError",
    "compute_checksum",
]
