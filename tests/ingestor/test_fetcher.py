"""Tests for the remote ledger fetcher."""

import httpx
import pytest

from offline_ledger_sync.ingestor.fetcher import (
    USDC_DENOM,
    FetchResult,
    RemoteFetcher,
    map_balance,
    map_fill,
    map_market,
    map_order,
    map_position,
    map_transfer,
)
from offline_ledger_sync.ingestor.indexer_client import IndexerClient
from offline_ledger_sync.sync.records import (
    BalanceRecord,
    RecordValidationError,
    SyncSource,
)

CHAIN = "blackbottle-mainnet-1"


def _routes(account_id: str) -> dict[str, object]:
    return {
        f"/v4/addresses/{account_id}": {
            "subaccounts": [
                {
                    "address": "sub-0",
                    "equity": "1000.5",
                    "freeCollateral": "800",
                    "openPerpetualPositions": {
                        "BTC-USD": {"size": "-0.25", "entryPrice": "64000", "unrealizedPnl": "12.5"},
                    },
                },
                {"address": "sub-1", "equity": "20", "openPerpetualPositions": {}},
            ]
        },
        "/v4/orders": [
            {
                "id": "order-1",
                "ticker": "BTC-USD",
                "side": "SELL",
                "type": "LIMIT",
                "status": "OPEN",
                "size": "0.25",
                "price": "70000",
                "goodTilBlock": "123",
            }
        ],
        "/v4/fills": {
            "fills": [
                {
                    "id": "fill-1",
                    "orderId": "order-0",
                    "market": "BTC-USD",
                    "side": "SELL",
                    "size": "0.25",
                    "price": "64000",
                    "fee": "1.6",
                    "liquidity": "TAKER",
                    "createdAt": "2026-02-28T10:00:00.000Z",
                }
            ]
        },
        "/v4/transfers": {
            "transfers": [
                {
                    "id": "t-1",
                    "transactionHash": "0xdeposit",
                    "type": "DEPOSIT",
                    "size": "1000",
                    "symbol": "USDC",
                    "sender": {"address": "noble1abc"},
                    "recipient": {"address": account_id},
                    "createdAt": "2026-02-27T09:00:00Z",
                }
            ]
        },
        "/v4/perpetualMarkets": {
            "markets": {
                "BTC-USD": {"tickSize": "1", "stepSize": "0.0001", "status": "ACTIVE"},
                "ETH-USD": {"tickSize": "0.1", "stepSize": "0.001", "initialMarginFraction": "0.05"},
            }
        },
    }


def _fetcher(routes: dict[str, object], failing: dict[str, int] | None = None) -> RemoteFetcher:
    failing = failing or {}

    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/v4/orders" and request.url.params.get("address") in failing:
            return httpx.Response(failing[request.url.params["address"]])
        if path in failing:
            return httpx.Response(failing[path])
        if path not in routes:
            return httpx.Response(404)
        return httpx.Response(200, json=routes[path])

    client = IndexerClient(
        base_url="https://indexer.test",
        max_retries=1,
        retry_base_delay=0,
        requests_per_second=1000,
        transport=httpx.MockTransport(handler),
    )
    return RemoteFetcher(client, ledger_chain_id=CHAIN, sub_fetch_timeout_seconds=5)


# ============================================================================
# Mappers
# ============================================================================


class TestMappers:
    """Tests for indexer response mappers."""

    def test_balance_sums_subaccounts(self, account_id: str) -> None:
        [balance] = map_balance(
            account_id,
            [{"equity": "100.10", "freeCollateral": "50"}, {"equity": "0.20"}],
            chain_id=CHAIN,
        )

        assert balance.balance == "100.30"
        assert balance.available_balance == "50.20"
        assert balance.locked_balance == "0"
        assert balance.token_denom == USDC_DENOM

    def test_balance_without_equity(self, account_id: str) -> None:
        assert map_balance(account_id, [{"address": "sub-0"}], chain_id=CHAIN) == []

    def test_position_side_from_sign(self, account_id: str) -> None:
        short = map_position(account_id, "sub-0", "ETH-USD", {"size": "-2", "entryPrice": "3000"})
        long = map_position(account_id, "sub-0", "BTC-USD", {"size": "0.5"})

        assert short.side == "SHORT"
        assert short.size == "2"
        assert short.position_id == "sub-0-ETH-USD"
        assert long.side == "LONG"

    def test_order_defaults(self, account_id: str) -> None:
        order = map_order(
            account_id,
            {"id": "o", "market": "BTC-USD", "side": "BUY", "type": "MARKET", "status": "FILLED", "size": "1"},
        )

        assert order.remaining_size == "1"
        assert order.good_til_block is None
        assert order.post_only is False

    def test_order_requires_id(self, account_id: str) -> None:
        with pytest.raises(RecordValidationError):
            map_order(account_id, {"ticker": "BTC-USD", "side": "BUY", "type": "LIMIT", "status": "OPEN"})

    def test_fill(self, account_id: str) -> None:
        fill = map_fill(
            account_id,
            {"id": "f", "orderId": "o", "ticker": "BTC-USD", "side": "BUY", "size": "1", "price": "2"},
        )

        assert fill.market == "BTC-USD"
        assert fill.fee == "0"

    def test_transfer_needs_a_key(self, account_id: str) -> None:
        with pytest.raises(RecordValidationError):
            map_transfer(account_id, {"size": "1"}, chain_id=CHAIN)

    def test_transfer_chains_default_to_ledger(self, account_id: str) -> None:
        transfer = map_transfer(account_id, {"id": "t", "size": "5"}, chain_id=CHAIN)

        assert transfer.from_chain == CHAIN
        assert transfer.to_chain == CHAIN
        assert transfer.status == "CONFIRMED"

    def test_market_assets_from_id(self) -> None:
        market = map_market("SOL-USD", {"tickSize": "0.01", "stepSize": "0.1"})

        assert market.base_asset == "SOL"
        assert market.quote_asset == "USD"
        assert market.min_order_size == "0.1"


# ============================================================================
# Fetching
# ============================================================================


class TestFetchResult:
    """Tests for FetchResult."""

    def test_error_messages(self) -> None:
        result = FetchResult(errors={"fills": "boom"}, item_errors=["Order: id is required"])

        assert result.error_messages() == ["fills: fetch failed: boom", "Order: id is required"]

    def test_to_batch(self, account_id: str) -> None:
        balance = BalanceRecord(account_id, CHAIN, "USDC", "1")
        batch = FetchResult(balances=[balance]).to_batch(account_id)

        assert batch.source is SyncSource.LEDGER
        assert batch.account_id == account_id
        assert batch.records == [balance]


class TestRemoteFetcher:
    """Tests for RemoteFetcher.fetch_all."""

    @pytest.mark.asyncio
    async def test_fetch_all(self, account_id: str) -> None:
        fetcher = _fetcher(_routes(account_id))
        try:
            result = await fetcher.fetch_all(account_id)
        finally:
            await fetcher._client.aclose()

        assert result.errors == {}
        assert result.counts() == {
            "balances": 1,
            "positions": 1,
            "orders": 1,
            "fills": 1,
            "transfers": 1,
            "markets": 2,
        }
        assert result.balances[0].balance == "1020.5"
        assert result.balances[0].available_balance == "820"
        assert result.positions[0].side == "SHORT"
        assert result.orders[0].good_til_block == 123
        assert result.transfers[0].tx_hash == "0xdeposit"

    @pytest.mark.asyncio
    async def test_failed_category_is_isolated(self, account_id: str) -> None:
        """A failing endpoint empties its category; the others still arrive."""
        fetcher = _fetcher(_routes(account_id), failing={"/v4/transfers": 500})
        try:
            result = await fetcher.fetch_all(account_id)
        finally:
            await fetcher._client.aclose()

        assert result.transfers == []
        assert set(result.errors) == {"transfers"}
        assert result.error_messages()[0].startswith("transfers: fetch failed:")
        assert len(result.fills) == 1
        assert len(result.markets) == 2

    @pytest.mark.asyncio
    async def test_missing_account_fails_dependent_categories(self, account_id: str) -> None:
        routes = _routes(account_id)
        del routes[f"/v4/addresses/{account_id}"]
        fetcher = _fetcher(routes)
        try:
            result = await fetcher.fetch_all(account_id)
        finally:
            await fetcher._client.aclose()

        assert set(result.errors) == {"balances", "positions", "orders"}
        assert len(result.fills) == 1

    @pytest.mark.asyncio
    async def test_failed_subaccount_orders_skipped(self, account_id: str) -> None:
        fetcher = _fetcher(_routes(account_id), failing={"sub-1": 503})
        try:
            result = await fetcher.fetch_all(account_id)
        finally:
            await fetcher._client.aclose()

        assert "orders" not in result.errors
        assert [o.order_id for o in result.orders] == ["order-1"]

    @pytest.mark.asyncio
    async def test_malformed_items_reported(self, account_id: str) -> None:
        routes = _routes(account_id)
        routes["/v4/fills"] = {"fills": [{"id": "bad", "market": "BTC-USD", "side": "BUY", "size": "x"}]}
        fetcher = _fetcher(routes)
        try:
            result = await fetcher.fetch_all(account_id)
        finally:
            await fetcher._client.aclose()

        assert result.fills == []
        assert result.item_errors and result.item_errors[0].startswith("Fill:")

    @pytest.mark.asyncio
    async def test_out_of_range_timestamp_skips_one_item(self, account_id: str) -> None:
        routes = _routes(account_id)
        good = routes["/v4/transfers"]["transfers"][0]
        routes["/v4/transfers"] = {
            "transfers": [good, {**good, "id": "t-2", "transactionHash": "0xbad", "createdAt": 10**20}]
        }
        fetcher = _fetcher(routes)
        try:
            result = await fetcher.fetch_all(account_id)
        finally:
            await fetcher._client.aclose()

        assert "transfers" not in result.errors
        assert [t.transfer_id for t in result.transfers] == ["t-1"]
        assert len(result.item_errors) == 1
        assert "out of range" in result.item_errors[0]
