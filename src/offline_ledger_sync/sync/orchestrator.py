"""Sync orchestrator.

Applies one normalized batch to the local store in a single transaction.
Each record is written inside its own SAVEPOINT so a malformed record or
a constraint violation is reported for that record only. The sync ledger
row is the last write of the transaction; if the transaction cannot
commit, everything is rolled back and a ``failed`` ledger row is written
separately.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from offline_ledger_sync.storage.database import StoreUnavailableError, as_store_error
from offline_ledger_sync.storage.repos import (
    AffiliateRepository,
    BalanceRepository,
    DismissedItemRepository,
    FillRepository,
    MarketRepository,
    OrderRepository,
    PositionRepository,
    PreferencesRepository,
    RecordConflictError,
    SwapRepository,
    SyncLedgerRepository,
    TradingPreferencesRepository,
    TransferRepository,
    WalletLinkRepository,
)
from offline_ledger_sync.sync.records import (
    RecordCategory,
    RecordValidationError,
    SyncBatch,
    SyncRecord,
    SyncResult,
    SyncSource,
    SyncStatus,
    utc_now,
    validate_record,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

MAX_LEDGER_ERROR_LENGTH = 2000

CATEGORY_LABELS: dict[RecordCategory, str] = {
    RecordCategory.WALLETS: "Wallet",
    RecordCategory.PREFERENCES: "Preferences",
    RecordCategory.TRADING_PREFERENCES: "Trading preferences",
    RecordCategory.DISMISSED_ITEMS: "Dismissed item",
    RecordCategory.AFFILIATES: "Affiliate",
    RecordCategory.BALANCES: "Balance",
    RecordCategory.POSITIONS: "Position",
    RecordCategory.ORDERS: "Order",
    RecordCategory.FILLS: "Fill",
    RecordCategory.TRANSFERS: "Transfer",
    RecordCategory.SWAPS: "Swap",
    RecordCategory.MARKETS: "Market",
}

# Type alias for completion listeners
SyncListener = Callable[[str, SyncResult], Awaitable[None]]


@dataclass
class SyncStats:
    """Counters across all passes run by one orchestrator."""

    total_passes: int = 0
    successful_passes: int = 0
    partial_passes: int = 0
    failed_passes: int = 0
    last_pass_time: datetime | None = None
    last_error: str | None = None


def determine_status(errors: list[str]) -> SyncStatus:
    """Status of a committed pass. Only an uncommitted pass is ``failed``."""
    return SyncStatus.PARTIAL if errors else SyncStatus.SUCCESS


def _error_text(exc: Exception) -> str:
    if isinstance(exc, IntegrityError) and exc.orig is not None:
        return str(exc.orig)
    return str(exc)


class _RecordWriter:
    """Dispatches each record to the write rule of its category."""

    def __init__(self, session: AsyncSession, account_id: str) -> None:
        self._account_id = account_id
        wallets = WalletLinkRepository(session)
        self._handlers: dict[RecordCategory, Callable[[Any], Awaitable[bool]]] = {
            RecordCategory.WALLETS: lambda r: wallets.upsert(r, owner_address=account_id),
            RecordCategory.PREFERENCES: PreferencesRepository(session).upsert,
            RecordCategory.TRADING_PREFERENCES: TradingPreferencesRepository(session).upsert,
            RecordCategory.DISMISSED_ITEMS: DismissedItemRepository(session).insert_if_absent,
            RecordCategory.AFFILIATES: AffiliateRepository(session).upsert,
            RecordCategory.BALANCES: BalanceRepository(session).upsert,
            RecordCategory.POSITIONS: PositionRepository(session).upsert,
            RecordCategory.ORDERS: OrderRepository(session).upsert,
            RecordCategory.FILLS: FillRepository(session).insert_if_absent,
            RecordCategory.TRANSFERS: TransferRepository(session).upsert,
            RecordCategory.SWAPS: SwapRepository(session).upsert,
            RecordCategory.MARKETS: MarketRepository(session).upsert,
        }

    async def write(self, record: SyncRecord) -> bool:
        owner = getattr(record, "wallet_address", self._account_id)
        if not owner:
            raise RecordValidationError("record has no owning wallet address")
        validate_record(record)
        return await self._handlers[record.category](record)


class SyncOrchestrator:
    """Runs sync passes against the local store.

    Example:
        ```python
        orchestrator = SyncOrchestrator(db.session_factory)
        orchestrator.add_listener(cache_registry.on_sync_complete)
        result = await orchestrator.run_sync(SyncSource.LEDGER, account_id, batch)
        ```
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self._listeners: list[SyncListener] = []
        self._stats = SyncStats()

    @property
    def stats(self) -> SyncStats:
        return self._stats

    def add_listener(self, listener: SyncListener) -> None:
        """Register a coroutine awaited after every success or partial pass."""
        self._listeners.append(listener)

    async def run_sync(
        self,
        source: SyncSource,
        account_id: str,
        batch: SyncBatch,
        *,
        prior_errors: Iterable[str] = (),
    ) -> SyncResult:
        """Apply ``batch`` for ``account_id`` and record the outcome.

        Per-record failures and ``prior_errors`` (for example failed remote
        sub-fetches) are returned in the result. Storage failures make the
        pass ``failed`` with nothing applied.

        Raises:
            ValueError: If the batch belongs to a different account or source.
        """
        if batch.account_id != account_id:
            raise ValueError(f"batch for {batch.account_id} cannot be synced as {account_id}")
        if batch.source is not source:
            raise ValueError(f"batch from {batch.source.value} cannot be synced as {source.value}")

        data_category = source.data_category.value
        synced: dict[str, int] = {c.value: 0 for c in batch.expected_categories()}
        errors: list[str] = [*prior_errors, *batch.errors]
        logger.info(
            "Starting %s sync for %s (%d records)", source.value, account_id, len(batch)
        )

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    writer = _RecordWriter(session, account_id)
                    for category, records in batch.by_category():
                        label = CATEGORY_LABELS[category]
                        synced.setdefault(category.value, 0)
                        for record in records:
                            try:
                                async with session.begin_nested():
                                    written = await writer.write(record)
                            except (IntegrityError, RecordConflictError, RecordValidationError) as e:
                                logger.warning("%s %s rejected: %s", label, record.key, _error_text(e))
                                errors.append(f"{label} {record.key}: {_error_text(e)}")
                                continue
                            if written:
                                synced[category.value] += 1

                    total = sum(synced.values())
                    status = determine_status(errors)
                    timestamp = self._clock()
                    await SyncLedgerRepository(session).record(
                        account_id,
                        data_category,
                        status=status,
                        record_count=total,
                        last_error=self._ledger_error(errors),
                        synced_at=timestamp,
                    )
        except (SQLAlchemyError, StoreUnavailableError) as e:
            store_error = as_store_error(e)
            logger.error("%s sync for %s failed: %s", source.value, account_id, store_error)
            timestamp = self._clock()
            errors.append(f"Transaction failed: {store_error}")
            await self._record_failure(account_id, data_category, str(store_error), timestamp)
            result = SyncResult(
                success=False,
                timestamp=timestamp,
                synced={category: 0 for category in synced},
                errors=errors,
                status=SyncStatus.FAILED,
            )
            self._update_stats(result)
            return result

        result = SyncResult(
            success=True,
            timestamp=timestamp,
            synced=synced,
            errors=errors,
            status=status,
        )
        logger.info(
            "%s sync for %s finished: status=%s synced=%s errors=%d",
            source.value,
            account_id,
            status.value,
            synced,
            len(errors),
        )
        self._update_stats(result)
        await self._notify(account_id, result)
        return result

    @staticmethod
    def _ledger_error(errors: list[str]) -> str | None:
        if not errors:
            return None
        return "; ".join(errors)[:MAX_LEDGER_ERROR_LENGTH]

    async def _record_failure(
        self, account_id: str, data_category: str, message: str, timestamp: datetime
    ) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await SyncLedgerRepository(session).record(
                        account_id,
                        data_category,
                        status=SyncStatus.FAILED,
                        record_count=0,
                        last_error=message[:MAX_LEDGER_ERROR_LENGTH],
                        synced_at=timestamp,
                    )
        except SQLAlchemyError:
            logger.exception("Could not record failed sync for %s", account_id)

    async def _notify(self, account_id: str, result: SyncResult) -> None:
        for listener in self._listeners:
            try:
                await listener(account_id, result)
            except Exception:
                logger.exception("Sync listener failed for %s", account_id)

    def _update_stats(self, result: SyncResult) -> None:
        self._stats.total_passes += 1
        self._stats.last_pass_time = result.timestamp
        if result.status is SyncStatus.SUCCESS:
            self._stats.successful_passes += 1
        elif result.status is SyncStatus.PARTIAL:
            self._stats.partial_passes += 1
        else:
            self._stats.failed_passes += 1
        if result.errors:
            self._stats.last_error = result.errors[-1]
