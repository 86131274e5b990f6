"""Sync layer - Record normalization and session-state extraction."""

from offline_ledger_sync.sync.extractor import ExtractionError, SessionStateExtractor
from offline_ledger_sync.sync.records import (
    RecordValidationError,
    SyncBatch,
    SyncResult,
    SyncSource,
    SyncStatus,
)

__all__ = [
    "ExtractionError",
    "RecordValidationError",
    "SessionStateExtractor",
    "SyncBatch",
    "SyncResult",
    "SyncSource",
    "SyncStatus",
]
