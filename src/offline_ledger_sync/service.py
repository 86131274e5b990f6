"""Offline sync service.

This module provides the OfflineSyncService class that wires together the
local store, the session-state extractor, the remote fetcher, the sync
orchestrator and the read cache.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from offline_ledger_sync.cache.local import SHARED_SCOPE, CacheRegistry, LocalCacheFacade
from offline_ledger_sync.config import Settings, get_settings
from offline_ledger_sync.ingestor.fetcher import RemoteFetcher
from offline_ledger_sync.ingestor.indexer_client import IndexerClient
from offline_ledger_sync.storage.database import DatabaseManager
from offline_ledger_sync.storage.repos import MarketDTO, SyncLedgerEntryDTO
from offline_ledger_sync.sync.extractor import SessionStateExtractor
from offline_ledger_sync.sync.orchestrator import SyncOrchestrator
from offline_ledger_sync.sync.records import (
    DataCategory,
    SyncResult,
    SyncSource,
    utc_now,
)

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    """Service lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class ServiceStats:
    """Statistics for the service."""

    started_at: datetime | None = None
    session_syncs: int = 0
    ledger_syncs: int = 0
    failed_syncs: int = 0
    last_sync_time: datetime | None = None
    last_error: str | None = None


class OfflineSyncService:
    """Entry point for sync passes and cached reads.

    Example:
        ```python
        from offline_ledger_sync.config import get_settings
        from offline_ledger_sync.service import OfflineSyncService

        async with OfflineSyncService(get_settings()) as service:
            result = await service.sync_ledger("blackbottle1...")
            account = await service.get_account("blackbottle1...")
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        db_manager: DatabaseManager | None = None,
        indexer_client: IndexerClient | None = None,
        clock: Callable[[], datetime] = utc_now,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the service.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            db_manager: Optional pre-built database manager.
            indexer_client: Optional pre-built indexer client.
            clock: Wall clock for ledger timestamps and staleness.
            timer: Monotonic timer for cache expiry.
        """
        self._settings = settings or get_settings()
        self._clock = clock
        self._timer = timer
        self._owns_indexer_client = indexer_client is None

        self._state = ServiceState.STOPPED
        self._stats = ServiceStats()

        self._db_manager = db_manager or DatabaseManager(
            self._settings.database.url,
            busy_timeout_seconds=self._settings.database.busy_timeout_seconds,
            echo=self._settings.database.echo,
        )
        self._indexer_client = indexer_client

        # Components (initialized in start())
        self._extractor: SessionStateExtractor | None = None
        self._fetcher: RemoteFetcher | None = None
        self._orchestrator: SyncOrchestrator | None = None
        self._cache: CacheRegistry | None = None

    @property
    def state(self) -> ServiceState:
        """Current service state."""
        return self._state

    @property
    def stats(self) -> ServiceStats:
        """Current service statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == ServiceState.RUNNING

    @property
    def db_manager(self) -> DatabaseManager:
        return self._db_manager

    @property
    def orchestrator(self) -> SyncOrchestrator:
        return self._require(self._orchestrator)

    @property
    def cache(self) -> CacheRegistry:
        return self._require(self._cache)

    async def start(self) -> None:
        """Open the store and build the sync components.

        Raises:
            RuntimeError: If the service is already running.
            StoreUnavailableError: If the local store cannot be opened.
        """
        if self._state != ServiceState.STOPPED:
            raise RuntimeError(f"Cannot start service in state {self._state}")

        self._state = ServiceState.STARTING
        logger.info("Starting offline sync service...")
        try:
            await self._db_manager.init_schema()
            self._initialize_components()
        except Exception as e:
            self._state = ServiceState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start service: %s", e)
            await self._cleanup()
            raise

        self._stats.started_at = self._clock()
        self._state = ServiceState.RUNNING
        logger.info("Offline sync service started")

    async def stop(self) -> None:
        """Release the indexer client and database connections."""
        if self._state == ServiceState.STOPPED:
            return

        self._state = ServiceState.STOPPING
        logger.info("Stopping offline sync service...")
        await self._cleanup()
        self._state = ServiceState.STOPPED
        logger.info("Offline sync service stopped")

    def _initialize_components(self) -> None:
        settings = self._settings
        session_factory = self._db_manager.session_factory

        if self._indexer_client is None:
            self._indexer_client = IndexerClient(
                base_url=settings.indexer.base_url,
                timeout_seconds=settings.indexer.timeout_seconds,
                max_retries=settings.indexer.max_retries,
                requests_per_second=settings.indexer.requests_per_second,
                page_limit=settings.indexer.page_limit,
            )

        self._extractor = SessionStateExtractor(
            key_prefix=settings.session.key_prefix,
            ledger_chain_id=settings.indexer.ledger_chain_id,
        )
        self._fetcher = RemoteFetcher(
            self._indexer_client,
            ledger_chain_id=settings.indexer.ledger_chain_id,
            sub_fetch_timeout_seconds=settings.indexer.sub_fetch_timeout_seconds,
        )
        self._cache = CacheRegistry(
            session_factory,
            ttl_seconds=settings.cache.ttl_seconds,
            maxsize=settings.cache.max_entries,
            stale_after_seconds=settings.cache.stale_after_seconds,
            timer=self._timer,
            clock=self._clock,
        )
        self._orchestrator = SyncOrchestrator(session_factory, clock=self._clock)
        self._orchestrator.add_listener(self._cache.on_sync_complete)

    async def _cleanup(self) -> None:
        if self._indexer_client is not None and self._owns_indexer_client:
            await self._indexer_client.aclose()
            self._indexer_client = None
        await self._db_manager.dispose()
        logger.debug("Resources cleaned up")

    @staticmethod
    def _require(component: Any) -> Any:
        if component is None:
            raise RuntimeError("Service is not running; call start() first")
        return component

    def _record_outcome(self, source: SyncSource, result: SyncResult) -> None:
        if source is SyncSource.SESSION_STATE:
            self._stats.session_syncs += 1
        else:
            self._stats.ledger_syncs += 1
        if not result.success:
            self._stats.failed_syncs += 1
            self._stats.last_error = result.errors[-1] if result.errors else None
        self._stats.last_sync_time = result.timestamp

    # ------------------------------------------------------------------
    # Sync passes
    # ------------------------------------------------------------------

    async def sync_session_state(self, payload: Mapping[str, Any]) -> SyncResult:
        """Extract a session-state snapshot and apply it.

        Raises:
            ExtractionError: If the snapshot is malformed or has no owner.
        """
        extractor: SessionStateExtractor = self._require(self._extractor)
        batch = extractor.extract_payload(payload)
        result = await self.orchestrator.run_sync(
            SyncSource.SESSION_STATE, batch.account_id, batch
        )
        self._record_outcome(SyncSource.SESSION_STATE, result)
        return result

    async def sync_ledger(self, account_id: str, service_base_url: str | None = None) -> SyncResult:
        """Fetch ledger data for ``account_id`` and apply it.

        Sub-fetch failures are carried into the result's errors.

        Raises:
            ValueError: If ``account_id`` is empty.
        """
        if not account_id:
            raise ValueError("accountId is required")

        fetcher: RemoteFetcher = self._require(self._fetcher)
        fetched = await fetcher.fetch_all(account_id, service_base_url)
        result = await self.orchestrator.run_sync(
            SyncSource.LEDGER,
            account_id,
            fetched.to_batch(account_id),
            prior_errors=fetched.error_messages(),
        )
        self._record_outcome(SyncSource.LEDGER, result)
        return result

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def facade(self, account_id: str) -> LocalCacheFacade:
        return self.cache.facade(account_id)

    async def get_sync_status(self, account_id: str) -> list[SyncLedgerEntryDTO]:
        return await self.facade(account_id).get_sync_status()

    async def get_account(self, account_id: str) -> dict[str, Any]:
        return await self.facade(account_id).get_account_data()

    async def get_portfolio(self, account_id: str) -> list[Any]:
        return await self.facade(account_id).get_portfolio_summary()

    async def get_markets(self) -> list[MarketDTO]:
        return await self.facade(SHARED_SCOPE).get_markets()

    async def needs_sync(
        self,
        account_id: str,
        category: DataCategory | str,
        interval: timedelta | float | None = None,
    ) -> bool:
        return await self.facade(account_id).needs_sync(category, interval)

    async def __aenter__(self) -> OfflineSyncService:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.stop()
