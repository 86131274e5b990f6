"""Tests for the read-through cache."""

from datetime import timedelta

import pytest
import sqlalchemy as sa

from offline_ledger_sync.cache.local import SHARED_SCOPE, CacheRegistry, TimedCache
from offline_ledger_sync.storage.database import StoreUnavailableError
from offline_ledger_sync.storage.repos import BalanceRepository, SyncLedgerRepository
from offline_ledger_sync.sync.orchestrator import SyncOrchestrator
from offline_ledger_sync.sync.records import (
    BalanceRecord,
    DataCategory,
    MarketRecord,
    SyncBatch,
    SyncResult,
    SyncSource,
    SyncStatus,
)

CHAIN = "blackbottle-mainnet-1"


class CountingLoader:
    def __init__(self, value: object = "value") -> None:
        self.value = value
        self.calls = 0

    async def __call__(self) -> object:
        self.calls += 1
        return self.value


@pytest.fixture
def registry(session_factory, timer, clock) -> CacheRegistry:
    return CacheRegistry(
        session_factory, ttl_seconds=60, stale_after_seconds=300, timer=timer, clock=clock
    )


async def _record_ledger(session_factory, account_id: str, status: SyncStatus, synced_at) -> None:
    async with session_factory() as session:
        async with session.begin():
            await SyncLedgerRepository(session).record(
                account_id, "ledger_data", status=status, record_count=1, synced_at=synced_at
            )


# ============================================================================
# TimedCache
# ============================================================================


class TestTimedCache:
    """Tests for TimedCache."""

    @pytest.mark.asyncio
    async def test_hit_within_ttl(self, timer) -> None:
        cache = TimedCache(ttl_seconds=60, timer=timer)
        loader = CountingLoader()

        await cache.get(("a", "q"), loader)
        timer.advance(59)
        await cache.get(("a", "q"), loader)

        assert loader.calls == 1

    @pytest.mark.asyncio
    async def test_reload_after_ttl(self, timer) -> None:
        cache = TimedCache(ttl_seconds=60, timer=timer)
        loader = CountingLoader()

        await cache.get(("a", "q"), loader)
        timer.advance(61)
        await cache.get(("a", "q"), loader)

        assert loader.calls == 2

    @pytest.mark.asyncio
    async def test_invalidate_one_account(self, timer) -> None:
        """Invalidating account A leaves account B's entries in place."""
        cache = TimedCache(ttl_seconds=60, timer=timer)
        await cache.get(("a", "q1"), CountingLoader())
        await cache.get(("a", "q2"), CountingLoader())
        await cache.get(("b", "q1"), CountingLoader())

        assert cache.invalidate_account("a") == 2
        assert ("a", "q1") not in cache
        assert ("b", "q1") in cache
        assert len(cache) == 1

    @pytest.mark.asyncio
    async def test_load_racing_invalidation_not_stored(self, timer) -> None:
        cache = TimedCache(ttl_seconds=60, timer=timer)

        async def loader() -> str:
            cache.invalidate_account("a")
            return "stale"

        assert await cache.get(("a", "q"), loader) == "stale"
        assert ("a", "q") not in cache

    @pytest.mark.asyncio
    async def test_clear(self, timer) -> None:
        cache = TimedCache(ttl_seconds=60, timer=timer)
        await cache.get(("a", "q"), CountingLoader())
        await cache.get(("b", "q"), CountingLoader())

        cache.clear()

        assert len(cache) == 0


# ============================================================================
# Facade
# ============================================================================


class TestLocalCacheFacade:
    """Tests for LocalCacheFacade reads."""

    @pytest.mark.asyncio
    async def test_reads_are_cached_until_sync(
        self, registry: CacheRegistry, session_factory, account_id: str, clock
    ) -> None:
        orchestrator = SyncOrchestrator(session_factory, clock=clock)
        orchestrator.add_listener(registry.on_sync_complete)
        facade = registry.facade(account_id)

        await orchestrator.run_sync(
            SyncSource.LEDGER,
            account_id,
            SyncBatch(
                source=SyncSource.LEDGER,
                account_id=account_id,
                records=[BalanceRecord(account_id, CHAIN, "USDC", "10")],
            ),
        )
        first = await facade.get_balances()

        # Written behind the cache's back: not visible yet.
        async with session_factory() as session:
            async with session.begin():
                await BalanceRepository(session).upsert(
                    BalanceRecord(account_id, CHAIN, "USDC", "99")
                )
        cached = await facade.get_balances()

        await orchestrator.run_sync(
            SyncSource.LEDGER,
            account_id,
            SyncBatch(
                source=SyncSource.LEDGER,
                account_id=account_id,
                records=[BalanceRecord(account_id, CHAIN, "USDC", "25")],
            ),
        )
        fresh = await facade.get_balances()

        assert first[0].balance == "10"
        assert cached[0].balance == "10"
        assert fresh[0].balance == "25"

    @pytest.mark.asyncio
    async def test_sync_of_other_account_keeps_entries(
        self, registry: CacheRegistry, account_id: str, other_account_id: str, clock
    ) -> None:
        await registry.facade(account_id).get_balances()
        await registry.facade(other_account_id).get_balances()

        result = SyncResult(
            success=True, timestamp=clock.now, synced={}, errors=[], status=SyncStatus.SUCCESS
        )
        await registry.on_sync_complete(other_account_id, result)

        assert (account_id, "balances") in registry.cache
        assert (other_account_id, "balances") not in registry.cache

    @pytest.mark.asyncio
    async def test_account_data_shape(self, registry: CacheRegistry, account_id: str) -> None:
        data = await registry.facade(account_id).get_account_data()

        assert set(data) == {
            "accountId",
            "wallets",
            "preferences",
            "tradingPreferences",
            "dismissedItems",
            "affiliate",
            "balances",
            "positions",
            "orders",
            "transfers",
            "swaps",
        }
        assert data["accountId"] == account_id
        assert data["preferences"] is None
        assert data["balances"] == []

    @pytest.mark.asyncio
    async def test_markets_shared_and_refreshed_by_market_sync(
        self, registry: CacheRegistry, session_factory, account_id: str, other_account_id: str
    ) -> None:
        orchestrator = SyncOrchestrator(session_factory)
        orchestrator.add_listener(registry.on_sync_complete)
        facade = registry.facade(account_id)

        assert await facade.get_markets() == []
        assert (SHARED_SCOPE, "markets") in registry.cache
        assert (account_id, "markets") not in registry.cache

        await orchestrator.run_sync(
            SyncSource.LEDGER,
            other_account_id,
            SyncBatch(
                source=SyncSource.LEDGER,
                account_id=other_account_id,
                records=[MarketRecord("BTC-USD", "BTC", "USD", "1", "0.0001", "0.0001")],
            ),
        )

        markets = await facade.get_markets()
        assert [m.market_id for m in markets] == ["BTC-USD"]

    @pytest.mark.asyncio
    async def test_store_failure_raises_store_error(
        self, registry: CacheRegistry, session_factory, account_id: str
    ) -> None:
        async with session_factory() as session:
            async with session.begin():
                await session.execute(sa.text("DROP TABLE account_balances"))
        facade = registry.facade(account_id)

        with pytest.raises(StoreUnavailableError):
            await facade.get_balances()
        with pytest.raises(StoreUnavailableError):
            await facade.get_account_data()
        assert (account_id, "balances") not in registry.cache

    @pytest.mark.asyncio
    async def test_ledger_failure_raises_store_error(
        self, registry: CacheRegistry, session_factory, account_id: str
    ) -> None:
        async with session_factory() as session:
            async with session.begin():
                await session.execute(sa.text("DROP TABLE sync_ledger"))
        facade = registry.facade(account_id)

        with pytest.raises(StoreUnavailableError):
            await facade.get_sync_status()
        with pytest.raises(StoreUnavailableError):
            await facade.needs_sync(DataCategory.LEDGER_DATA)


class TestNeedsSync:
    """Tests for staleness checks."""

    @pytest.mark.asyncio
    async def test_never_synced(self, registry: CacheRegistry, account_id: str) -> None:
        facade = registry.facade(account_id)

        assert await facade.needs_sync(DataCategory.LEDGER_DATA) is True
        assert await facade.last_sync_timestamp("ledger_data") is None

    @pytest.mark.asyncio
    async def test_stale_after_interval(
        self, registry: CacheRegistry, session_factory, account_id: str, clock
    ) -> None:
        await _record_ledger(session_factory, account_id, SyncStatus.SUCCESS, clock.now)
        clock.advance(minutes=10)
        facade = registry.facade(account_id)

        assert await facade.needs_sync(DataCategory.LEDGER_DATA, timedelta(minutes=5)) is True
        assert await facade.needs_sync("ledger_data", 15 * 60) is False
        # Default window is five minutes.
        assert await facade.needs_sync("ledger_data") is True

    @pytest.mark.asyncio
    async def test_fresh_within_interval(
        self, registry: CacheRegistry, session_factory, account_id: str, clock
    ) -> None:
        await _record_ledger(session_factory, account_id, SyncStatus.PARTIAL, clock.now)
        clock.advance(minutes=1)
        facade = registry.facade(account_id)

        assert await facade.needs_sync(DataCategory.LEDGER_DATA, timedelta(minutes=5)) is False
        assert await facade.needs_sync(DataCategory.SESSION_STATE) is True

    @pytest.mark.asyncio
    async def test_failed_sync_needs_sync(
        self, registry: CacheRegistry, session_factory, account_id: str, clock
    ) -> None:
        await _record_ledger(session_factory, account_id, SyncStatus.FAILED, clock.now)

        assert await registry.facade(account_id).needs_sync(
            DataCategory.LEDGER_DATA, timedelta(hours=1)
        ) is True

    @pytest.mark.asyncio
    async def test_status_not_cached(
        self, registry: CacheRegistry, session_factory, account_id: str, clock
    ) -> None:
        facade = registry.facade(account_id)
        assert await facade.get_sync_status() == []

        await _record_ledger(session_factory, account_id, SyncStatus.SUCCESS, clock.now)

        [entry] = await facade.get_sync_status()
        assert entry.status == "success"
        assert await facade.last_sync_timestamp(DataCategory.LEDGER_DATA) == clock.now
