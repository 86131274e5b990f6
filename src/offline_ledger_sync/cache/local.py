"""Read-through cache over the local store.

``TimedCache`` holds query results keyed by ``(account_id, query_name)``
with a fixed TTL. ``LocalCacheFacade`` binds one account to a cache and
a session factory and answers account-scoped queries through it.
``CacheRegistry`` owns the shared cache and invalidates one account's
entries whenever the orchestrator finishes a pass for that account.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, TypeVar

from cachetools import TTLCache
from sqlalchemy.exc import SQLAlchemyError

from offline_ledger_sync.storage.database import as_store_error
from offline_ledger_sync.storage.repos import (
    AffiliateRepository,
    BalanceRepository,
    DismissedItemRepository,
    MarketRepository,
    OrderRepository,
    PositionRepository,
    PreferencesRepository,
    ReadViewRepository,
    SwapRepository,
    SyncLedgerRepository,
    TradingPreferencesRepository,
    TransferRepository,
    WalletLinkRepository,
)
from offline_ledger_sync.sync.records import (
    DataCategory,
    RecordCategory,
    SyncResult,
    SyncStatus,
    utc_now,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from offline_ledger_sync.storage.repos import SyncLedgerEntryDTO

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default configuration
DEFAULT_TTL_SECONDS = 60.0
DEFAULT_MAX_ENTRIES = 1024
DEFAULT_STALE_AFTER_SECONDS = 300.0
RECENT_HISTORY_LIMIT = 50

# Cache scope for reads that are not owned by one account.
SHARED_SCOPE = "*"

CacheKey = tuple[str, str]


class TimedCache:
    """TTL cache for async loaders with per-account invalidation.

    A value loaded while its account was being invalidated is returned to
    the caller but not stored, so a read never repopulates the cache with
    data that predates the invalidation.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        maxsize: int = DEFAULT_MAX_ENTRIES,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self._cache: TTLCache[CacheKey, Any] = TTLCache(maxsize=maxsize, ttl=ttl_seconds, timer=timer)
        self._generations: dict[str, int] = {}

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._cache

    def __len__(self) -> int:
        return len(self._cache)

    async def get(self, key: CacheKey, loader: Callable[[], Awaitable[T]]) -> T:
        """Return the cached value for ``key`` or load, store and return it."""
        try:
            return self._cache[key]
        except KeyError:
            pass

        account_id = key[0]
        generation = self._generations.get(account_id, 0)
        value = await loader()
        if self._generations.get(account_id, 0) == generation:
            self._cache[key] = value
        return value

    def invalidate_account(self, account_id: str) -> int:
        """Drop every entry of one account. Returns the number removed."""
        self._generations[account_id] = self._generations.get(account_id, 0) + 1
        keys = [key for key in list(self._cache.keys()) if key[0] == account_id]
        for key in keys:
            self._cache.pop(key, None)
        return len(keys)

    def clear(self) -> None:
        accounts = set(self._generations) | {key[0] for key in list(self._cache.keys())}
        for account_id in accounts:
            self._generations[account_id] = self._generations.get(account_id, 0) + 1
        self._cache.clear()


class LocalCacheFacade:
    """Account-scoped reads through a shared ``TimedCache``."""

    def __init__(
        self,
        account_id: str,
        session_factory: async_sessionmaker[AsyncSession],
        cache: TimedCache,
        *,
        stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.account_id = account_id
        self._session_factory = session_factory
        self._cache = cache
        self._stale_after = timedelta(seconds=stale_after_seconds)
        self._clock = clock

    async def _read(self, fetch: Callable[[AsyncSession], Awaitable[T]]) -> T:
        try:
            async with self._session_factory() as session:
                return await fetch(session)
        except SQLAlchemyError as e:
            raise as_store_error(e) from e

    async def _query(
        self,
        name: str,
        fetch: Callable[[AsyncSession], Awaitable[T]],
        *,
        scope: str | None = None,
    ) -> T:
        return await self._cache.get(
            (scope or self.account_id, name), lambda: self._read(fetch)
        )

    async def get_account_data(self) -> dict[str, Any]:
        """Everything stored for the account, in one read."""

        async def fetch(session: AsyncSession) -> dict[str, Any]:
            account_id = self.account_id
            return {
                "accountId": account_id,
                "wallets": await WalletLinkRepository(session).list_for_account(account_id),
                "preferences": await PreferencesRepository(session).get(account_id),
                "tradingPreferences": await TradingPreferencesRepository(session).get(account_id),
                "dismissedItems": await DismissedItemRepository(session).list_by_wallet(account_id),
                "affiliate": await AffiliateRepository(session).get(account_id),
                "balances": await BalanceRepository(session).list_by_wallet(account_id),
                "positions": await PositionRepository(session).list_open(account_id),
                "orders": await OrderRepository(session).list_active(account_id),
                "transfers": await TransferRepository(session).list_recent(
                    account_id, limit=RECENT_HISTORY_LIMIT
                ),
                "swaps": await SwapRepository(session).list_recent(
                    account_id, limit=RECENT_HISTORY_LIMIT
                ),
            }

        return await self._query("account", fetch)

    async def get_balances(self) -> list[Any]:
        return await self._query(
            "balances", lambda s: BalanceRepository(s).list_by_wallet(self.account_id)
        )

    async def get_positions(self) -> list[Any]:
        return await self._query(
            "positions", lambda s: PositionRepository(s).list_open(self.account_id)
        )

    async def get_orders(self) -> list[Any]:
        return await self._query("orders", lambda s: OrderRepository(s).list_active(self.account_id))

    async def get_transfers(self) -> list[Any]:
        return await self._query(
            "transfers",
            lambda s: TransferRepository(s).list_recent(self.account_id, limit=RECENT_HISTORY_LIMIT),
        )

    async def get_swaps(self) -> list[Any]:
        return await self._query(
            "swaps",
            lambda s: SwapRepository(s).list_recent(self.account_id, limit=RECENT_HISTORY_LIMIT),
        )

    async def get_preferences(self) -> Any:
        return await self._query(
            "preferences", lambda s: PreferencesRepository(s).get(self.account_id)
        )

    async def get_trading_preferences(self) -> Any:
        return await self._query(
            "tradingPreferences", lambda s: TradingPreferencesRepository(s).get(self.account_id)
        )

    async def get_markets(self) -> list[Any]:
        """Markets are global and cached under the shared scope."""
        return await self._query(
            "markets", lambda s: MarketRepository(s).list_all(), scope=SHARED_SCOPE
        )

    async def get_portfolio_summary(self) -> list[Any]:
        return await self._query(
            "portfolio", lambda s: ReadViewRepository(s).portfolio_summary(self.account_id)
        )

    async def get_sync_status(self) -> list[SyncLedgerEntryDTO]:
        """Ledger entries are read directly; staleness must never be cached."""
        return await self._read(lambda s: SyncLedgerRepository(s).get_status(self.account_id))

    async def _ledger_entry(self, category: DataCategory | str) -> SyncLedgerEntryDTO | None:
        data_category = DataCategory(category).value
        return await self._read(
            lambda s: SyncLedgerRepository(s).get_entry(self.account_id, data_category)
        )

    async def last_sync_timestamp(self, category: DataCategory | str) -> datetime | None:
        entry = await self._ledger_entry(category)
        return entry.last_synced_at if entry else None

    async def needs_sync(
        self, category: DataCategory | str, interval: timedelta | float | None = None
    ) -> bool:
        """True if the category was never synced successfully or is stale.

        ``interval`` may be a timedelta or seconds; it defaults to the
        facade's configured staleness window.
        """
        if interval is None:
            window = self._stale_after
        elif isinstance(interval, timedelta):
            window = interval
        else:
            window = timedelta(seconds=interval)

        entry = await self._ledger_entry(category)
        if entry is None or entry.status == SyncStatus.FAILED.value:
            return True
        return self._clock() - entry.last_synced_at > window

    def invalidate_all(self) -> int:
        removed = self._cache.invalidate_account(self.account_id)
        logger.debug("Invalidated %d cache entries for %s", removed, self.account_id)
        return removed


class CacheRegistry:
    """Owns the shared cache and hands out per-account facades."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        maxsize: int = DEFAULT_MAX_ENTRIES,
        stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
        timer: Callable[[], float] = time.monotonic,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._stale_after_seconds = stale_after_seconds
        self._clock = clock
        self.cache = TimedCache(ttl_seconds=ttl_seconds, maxsize=maxsize, timer=timer)

    def facade(self, account_id: str) -> LocalCacheFacade:
        return LocalCacheFacade(
            account_id,
            self._session_factory,
            self.cache,
            stale_after_seconds=self._stale_after_seconds,
            clock=self._clock,
        )

    async def on_sync_complete(self, account_id: str, result: SyncResult) -> None:
        """Orchestrator listener: drop the synced account's entries.

        Shared entries are dropped too when the pass wrote markets.
        """
        removed = self.cache.invalidate_account(account_id)
        if result.synced.get(RecordCategory.MARKETS.value):
            removed += self.cache.invalidate_account(SHARED_SCOPE)
        logger.debug(
            "Sync %s for %s invalidated %d cache entries", result.status.value, account_id, removed
        )

    def clear(self) -> None:
        self.cache.clear()
