"""Tests for the HTTP API."""

import httpx
import pytest
import sqlalchemy as sa

from offline_ledger_sync.api.app import create_app
from offline_ledger_sync.config import Settings, clear_settings_cache
from offline_ledger_sync.ingestor.indexer_client import IndexerClient
from offline_ledger_sync.service import OfflineSyncService
from offline_ledger_sync.storage.database import DatabaseManager


def _indexer_routes(account_id: str) -> dict[str, object]:
    return {
        f"/v4/addresses/{account_id}": {
            "subaccounts": [
                {
                    "address": account_id,
                    "equity": "250.75",
                    "freeCollateral": "200",
                    "openPerpetualPositions": {"ETH-USD": {"size": "1.5", "entryPrice": "3000"}},
                }
            ]
        },
        "/v4/orders": [],
        "/v4/fills": {"fills": []},
        "/v4/transfers": {"transfers": []},
        "/v4/perpetualMarkets": {
            "markets": {
                "BTC-USD": {"tickSize": "1", "stepSize": "0.0001"},
                "ETH-USD": {"tickSize": "0.1", "stepSize": "0.001"},
            }
        },
    }


@pytest.fixture
async def service(tmp_path, monkeypatch, account_id, clock, timer):
    """A running service over a temporary store and a fake indexer."""
    monkeypatch.chdir(tmp_path)
    clear_settings_cache()
    routes = _indexer_routes(account_id)

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "down.test":
            return httpx.Response(503)
        if request.url.path not in routes:
            return httpx.Response(404)
        return httpx.Response(200, json=routes[request.url.path])

    indexer = IndexerClient(
        base_url="https://indexer.test",
        max_retries=0,
        requests_per_second=1000,
        transport=httpx.MockTransport(handler),
    )
    svc = OfflineSyncService(
        Settings(),
        db_manager=DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'api.sqlite'}"),
        indexer_client=indexer,
        clock=clock,
        timer=timer,
    )
    await svc.start()
    yield svc
    await svc.stop()
    await indexer.aclose()


@pytest.fixture
async def client(service):
    transport = httpx.ASGITransport(app=create_app(service))
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


def _session_payload(account_id: str) -> dict[str, object]:
    return {
        "localStorage": {"blackbottle.SelectedLocale": '"ja"'},
        "persistedState": {
            "wallet": {"dydxAddress": account_id, "evmAddress": "0xabc"},
            "dismissable": {"hasSeenTradingRewards": True},
        },
    }


# ============================================================================
# Health and request validation
# ============================================================================


class TestRequestValidation:
    """Tests for malformed requests."""

    @pytest.mark.asyncio
    async def test_health(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"ok": True}

    @pytest.mark.asyncio
    async def test_invalid_json(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/sync/session-state",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_body_must_be_object(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/sync/ledger-data", json=["blackbottle1abc"])

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_ledger_sync_requires_account(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/sync/ledger-data", json={})

        assert response.status_code == 400
        assert response.json()["detail"] == "accountId required"

    @pytest.mark.asyncio
    async def test_session_without_wallet(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/sync/session-state", json={"localStorage": {"blackbottle.SelectedLocale": '"en"'}}
        )

        assert response.status_code == 400
        assert "No wallet address" in response.json()["detail"]


# ============================================================================
# Sync endpoints
# ============================================================================


class TestSessionStateSync:
    """Tests for POST /sync/session-state."""

    @pytest.mark.asyncio
    async def test_sync_then_read_account(self, client: httpx.AsyncClient, account_id: str) -> None:
        response = await client.post("/sync/session-state", json=_session_payload(account_id))

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["status"] == "success"
        assert body["synced"]["wallets"] == 2
        assert body["synced"]["dismissedItems"] == 1

        account = (await client.get(f"/account/{account_id}")).json()
        assert account["accountId"] == account_id
        assert account["preferences"]["locale"] == "ja"
        assert {w["address"] for w in account["wallets"]} == {account_id, "0xabc"}
        assert [d["item_key"] for d in account["dismissedItems"]] == ["hasSeenTradingRewards"]

        status = (await client.get(f"/sync/status/{account_id}")).json()
        assert [e["data_category"] for e in status] == ["session_state"]

    @pytest.mark.asyncio
    async def test_bad_transfer_timestamp_is_reported(
        self, client: httpx.AsyncClient, account_id: str
    ) -> None:
        payload = _session_payload(account_id)
        payload["persistedState"]["transfers"] = [
            {"id": "t1", "amount": "5", "createdAt": 10**20},
        ]

        response = await client.post("/sync/session-state", json=payload)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "partial"
        assert body["synced"]["transfers"] == 0
        assert body["synced"]["wallets"] == 2
        assert body["errors"][0].startswith("Transfer t1:")


class TestLedgerSync:
    """Tests for POST /sync/ledger-data."""

    @pytest.mark.asyncio
    async def test_sync_then_read(self, client: httpx.AsyncClient, account_id: str) -> None:
        assert (await client.get("/markets")).json() == []

        response = await client.post("/sync/ledger-data", json={"accountId": account_id})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["synced"] == {
            "balances": 1,
            "positions": 1,
            "orders": 0,
            "fills": 0,
            "transfers": 0,
            "markets": 2,
        }

        portfolio = (await client.get(f"/account/{account_id}/portfolio")).json()
        assert portfolio[0]["total_balance"] == "250.75"

        account = (await client.get(f"/account/{account_id}")).json()
        assert account["positions"][0]["market"] == "ETH-USD"
        assert account["balances"][0]["available_balance"] == "200"

        markets = (await client.get("/markets")).json()
        assert [m["market_id"] for m in markets] == ["BTC-USD", "ETH-USD"]

        [entry] = (await client.get(f"/sync/status/{account_id}")).json()
        assert entry["data_category"] == "ledger_data"
        assert entry["status"] == "success"

    @pytest.mark.asyncio
    async def test_unreachable_indexer(self, client: httpx.AsyncClient, account_id: str) -> None:
        """Failing sub-fetches are reported but the pass still commits."""
        response = await client.post(
            "/sync/ledger-data",
            json={"accountId": account_id, "serviceBaseUrl": "http://down.test"},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["status"] == "partial"
        assert len(body["errors"]) == 6
        assert all(count == 0 for count in body["synced"].values())

        [entry] = (await client.get(f"/sync/status/{account_id}")).json()
        assert entry["status"] == "partial"

    @pytest.mark.asyncio
    async def test_unknown_account_is_empty(self, client: httpx.AsyncClient) -> None:
        account = (await client.get("/account/blackbottle1nobody")).json()

        assert account["balances"] == []
        assert account["preferences"] is None

    @pytest.mark.asyncio
    async def test_store_failure_is_500(
        self, client: httpx.AsyncClient, service: OfflineSyncService, account_id: str
    ) -> None:
        async with service.db_manager.session_factory() as session:
            async with session.begin():
                await session.execute(sa.text("DROP TABLE positions"))

        response = await client.post("/sync/ledger-data", json={"accountId": account_id})

        assert response.status_code == 500
        body = response.json()
        assert body["success"] is False
        assert body["status"] == "failed"
        assert body["errors"][-1].startswith("Transaction failed:")

        [entry] = (await client.get(f"/sync/status/{account_id}")).json()
        assert entry["status"] == "failed"


# ============================================================================
# Reads
# ============================================================================


class TestReads:
    """Tests for read endpoints against a broken store."""

    @pytest.mark.asyncio
    async def test_missing_table_is_503(
        self, client: httpx.AsyncClient, service: OfflineSyncService, account_id: str
    ) -> None:
        async with service.db_manager.session_factory() as session:
            async with session.begin():
                await session.execute(sa.text("DROP TABLE account_balances"))

        response = await client.get(f"/account/{account_id}")

        assert response.status_code == 503
        body = response.json()
        assert body["success"] is False
        assert "account_balances" in body["error"]

    @pytest.mark.asyncio
    async def test_missing_ledger_is_503(
        self, client: httpx.AsyncClient, service: OfflineSyncService, account_id: str
    ) -> None:
        async with service.db_manager.session_factory() as session:
            async with session.begin():
                await session.execute(sa.text("DROP TABLE sync_ledger"))

        response = await client.get(f"/sync/status/{account_id}")

        assert response.status_code == 503
