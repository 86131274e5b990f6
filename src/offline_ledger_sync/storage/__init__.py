"""Storage layer - Local store schema, views and repositories."""

from offline_ledger_sync.storage.database import (
    DatabaseManager,
    StoreBusyError,
    StoreUnavailableError,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from offline_ledger_sync.storage.models import Base
from offline_ledger_sync.storage.repos import (
    ReadViewRepository,
    RecordConflictError,
    SyncLedgerEntryDTO,
    SyncLedgerRepository,
)
from offline_ledger_sync.storage.views import VIEW_DEFINITIONS

__all__ = [
    "Base",
    "DatabaseManager",
    "ReadViewRepository",
    "RecordConflictError",
    "StoreBusyError",
    "StoreUnavailableError",
    "SyncLedgerEntryDTO",
    "SyncLedgerRepository",
    "VIEW_DEFINITIONS",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
