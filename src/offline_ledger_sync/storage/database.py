"""Database connection and session management.

This module provides the async engine, session factory and schema setup
for the local SQLite store.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Importing views registers their DDL on the metadata.
from offline_ledger_sync.storage import views  # noqa: F401
from offline_ledger_sync.storage.models import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)


class StoreUnavailableError(Exception):
    """Raised when the local store cannot be read or written."""


class StoreBusyError(StoreUnavailableError):
    """Raised when the store stays locked past the busy timeout."""


def as_store_error(exc: BaseException) -> StoreUnavailableError:
    """Map a driver-level failure to the store error hierarchy."""
    if isinstance(exc, StoreUnavailableError):
        return exc
    message = str(getattr(exc, "orig", None) or exc)
    lowered = message.lower()
    if isinstance(exc, OperationalError) and ("locked" in lowered or "busy" in lowered):
        return StoreBusyError(message)
    return StoreUnavailableError(message)


def _ensure_sqlite_directory(database_url: str) -> None:
    url = make_url(database_url)
    database = url.database
    if not database or database == ":memory:" or database.startswith("file:"):
        return
    Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)


def create_async_db_engine(
    database_url: str, *, busy_timeout_seconds: float = 5.0, **kwargs: Any
) -> AsyncEngine:
    """Create an async SQLite engine with working SAVEPOINT support.

    pysqlite's implicit transaction handling defeats SAVEPOINT, so the
    driver is switched to autocommit mode and the engine emits its own
    ``BEGIN`` for every transaction.

    Args:
        database_url: Database connection URL (``sqlite+aiosqlite://...``).
        busy_timeout_seconds: How long a write waits on another writer's lock.
        **kwargs: Additional engine options.

    Returns:
        SQLAlchemy AsyncEngine instance.
    """
    _ensure_sqlite_directory(database_url)
    connect_args = dict(kwargs.pop("connect_args", {}))
    connect_args.setdefault("timeout", busy_timeout_seconds)
    engine = create_async_engine(database_url, connect_args=connect_args, **kwargs)

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")

    return engine


def create_async_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an asynchronous session factory.

    Args:
        engine: SQLAlchemy AsyncEngine instance.

    Returns:
        Async session factory.
    """
    return async_sessionmaker(bind=engine, expire_on_commit=False)


async def init_async_db(engine: AsyncEngine) -> None:
    """Create all tables and read views that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema initialized")


class DatabaseManager:
    """Owns the engine and session factory for the local store."""

    def __init__(
        self,
        database_url: str,
        *,
        busy_timeout_seconds: float = 5.0,
        echo: bool = False,
    ) -> None:
        """Initialize database manager.

        Args:
            database_url: Database connection URL.
            busy_timeout_seconds: SQLite busy timeout for lock waits.
            echo: Echo SQL statements for debugging.
        """
        self.database_url = database_url
        self.busy_timeout_seconds = busy_timeout_seconds
        self._echo = echo

        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        """Get or create the asynchronous engine."""
        if self._engine is None:
            self._engine = create_async_db_engine(
                self.database_url,
                busy_timeout_seconds=self.busy_timeout_seconds,
                echo=self._echo,
            )
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = create_async_session_factory(self.engine)
        return self._session_factory

    async def init_schema(self) -> None:
        """Initialize database schema.

        Raises:
            StoreUnavailableError: If the database cannot be opened or written.
        """
        try:
            await init_async_db(self.engine)
        except (OperationalError, OSError) as e:
            raise as_store_error(e) from e

    async def dispose(self) -> None:
        """Dispose of all database connections."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
        logger.info("Database connections disposed")
