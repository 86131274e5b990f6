"""Remote ledger fetcher.

Pulls balances, positions, orders, fills, transfers and markets for one
account from the indexer and maps them to sync records. Sub-fetches run
concurrently; each has its own timeout, and a failing sub-fetch yields
an empty category plus an error message instead of failing the pass.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from offline_ledger_sync.ingestor.indexer_client import IndexerClient
from offline_ledger_sync.sync.records import (
    BalanceRecord,
    FillRecord,
    MarketRecord,
    OrderRecord,
    PositionRecord,
    RecordValidationError,
    SyncBatch,
    SyncRecord,
    SyncSource,
    TransferRecord,
    decimal_string,
    optional_text,
    parse_timestamp,
    required_text,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_LEDGER_CHAIN_ID = "blackbottle-mainnet-1"
USDC_DENOM = "ibc/8E27BA2D5493AF5636760E354E46004562C46AB7EC0CC4C1CA14E9E20E2545B5"
DEFAULT_SUB_FETCH_TIMEOUT_SECONDS = 30.0

FETCH_CATEGORIES: tuple[str, ...] = (
    "balances",
    "positions",
    "orders",
    "fills",
    "transfers",
    "markets",
)


@dataclass
class FetchResult:
    """Records fetched for one account, plus per-category failures."""

    balances: list[BalanceRecord] = field(default_factory=list)
    positions: list[PositionRecord] = field(default_factory=list)
    orders: list[OrderRecord] = field(default_factory=list)
    fills: list[FillRecord] = field(default_factory=list)
    transfers: list[TransferRecord] = field(default_factory=list)
    markets: list[MarketRecord] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    item_errors: list[str] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {category: len(getattr(self, category)) for category in FETCH_CATEGORIES}

    def error_messages(self) -> list[str]:
        """Fetch failures formatted for a sync result."""
        messages = [f"{category}: fetch failed: {message}" for category, message in self.errors.items()]
        return messages + list(self.item_errors)

    def to_batch(self, account_id: str) -> SyncBatch:
        records: list[SyncRecord] = []
        for category in FETCH_CATEGORIES:
            records.extend(getattr(self, category))
        return SyncBatch(source=SyncSource.LEDGER, account_id=account_id, records=records)


# ============================================================================
# Mapping
# ============================================================================


def map_balance(account_id: str, subaccounts: list[dict[str, Any]], *, chain_id: str) -> list[BalanceRecord]:
    """Collapse sub-account equity into one USDC balance row.

    Available balance falls back to equity when ``freeCollateral`` is
    missing; nothing is reported as locked.
    """
    equities = [s for s in subaccounts if s.get("equity") not in (None, "")]
    if not equities:
        return []
    balance = Decimal("0")
    available = Decimal("0")
    for sub in equities:
        equity = Decimal(decimal_string(sub.get("equity"), "equity"))
        balance += equity
        free = decimal_string(sub.get("freeCollateral"), "freeCollateral", default=None)
        available += Decimal(free) if free is not None else equity
    return [
        BalanceRecord(
            wallet_address=account_id,
            chain_id=chain_id,
            token_symbol="USDC",
            token_denom=USDC_DENOM,
            balance=str(balance),
            available_balance=str(available),
            locked_balance="0",
        )
    ]


def map_position(account_id: str, subaccount_address: str, market: str, raw: dict[str, Any]) -> PositionRecord:
    """Side comes from the sign of size; the stored size is absolute."""
    size = Decimal(decimal_string(raw.get("size"), "size"))
    now = utc_now()
    return PositionRecord(
        wallet_address=account_id,
        position_id=f"{subaccount_address}-{market}",
        market=market,
        side="LONG" if size > 0 else "SHORT",
        status="OPEN",
        size=str(abs(size)),
        max_size=decimal_string(raw.get("maxSize") or raw.get("size"), "maxSize"),
        entry_price=decimal_string(raw.get("entryPrice"), "entryPrice"),
        realized_pnl=decimal_string(raw.get("realizedPnl"), "realizedPnl"),
        unrealized_pnl=decimal_string(raw.get("unrealizedPnl"), "unrealizedPnl"),
        created_at=parse_timestamp(raw.get("createdAt"), default=now),
        updated_at=now,
    )


def map_order(account_id: str, raw: dict[str, Any]) -> OrderRecord:
    now = utc_now()
    size = decimal_string(raw.get("size"), "size")
    good_til_block = raw.get("goodTilBlock")
    return OrderRecord(
        wallet_address=account_id,
        order_id=required_text(raw.get("id"), "id"),
        client_id=optional_text(raw.get("clientId")),
        market=required_text(raw.get("ticker") or raw.get("market"), "ticker"),
        side=required_text(raw.get("side"), "side"),
        type=required_text(raw.get("type"), "type"),
        status=required_text(raw.get("status"), "status"),
        price=decimal_string(raw.get("price"), "price"),
        trigger_price=decimal_string(raw.get("triggerPrice"), "triggerPrice", default=None),
        size=size,
        remaining_size=decimal_string(raw.get("remainingSize"), "remainingSize", default=size),
        post_only=bool(raw.get("postOnly")),
        reduce_only=bool(raw.get("reduceOnly")),
        time_in_force=optional_text(raw.get("timeInForce")),
        good_til_block=int(good_til_block) if good_til_block not in (None, "") else None,
        created_at=parse_timestamp(raw.get("createdAt") or raw.get("updatedAt"), default=now),
        updated_at=parse_timestamp(raw.get("updatedAt"), default=now),
    )


def map_fill(account_id: str, raw: dict[str, Any]) -> FillRecord:
    return FillRecord(
        wallet_address=account_id,
        fill_id=required_text(raw.get("id"), "id"),
        order_id=optional_text(raw.get("orderId")) or "",
        market=required_text(raw.get("market") or raw.get("ticker"), "market"),
        side=required_text(raw.get("side"), "side"),
        size=decimal_string(raw.get("size"), "size"),
        price=decimal_string(raw.get("price"), "price"),
        fee=decimal_string(raw.get("fee"), "fee"),
        liquidity=optional_text(raw.get("liquidity") or raw.get("type")),
        created_at=parse_timestamp(raw.get("createdAt"), default=utc_now()),
    )


def map_transfer(account_id: str, raw: dict[str, Any], *, chain_id: str) -> TransferRecord:
    sender = raw.get("sender") if isinstance(raw.get("sender"), dict) else {}
    recipient = raw.get("recipient") if isinstance(raw.get("recipient"), dict) else {}
    created_at = parse_timestamp(raw.get("createdAt"), default=utc_now())
    transfer_id = optional_text(raw.get("id"))
    tx_hash = optional_text(raw.get("transactionHash"))
    if transfer_id is None and tx_hash is None:
        raise RecordValidationError("transfer has neither id nor transactionHash")
    return TransferRecord(
        wallet_address=account_id,
        transfer_id=transfer_id,
        tx_hash=tx_hash,
        type=optional_text(raw.get("type")) or "TRANSFER",
        status=optional_text(raw.get("status")) or "CONFIRMED",
        from_address=optional_text(sender.get("address")),
        to_address=optional_text(recipient.get("address")),
        from_chain=optional_text(sender.get("chain")) or chain_id,
        to_chain=optional_text(recipient.get("chain")) or chain_id,
        amount=decimal_string(raw.get("size") or raw.get("amount"), "size"),
        token_symbol=optional_text(raw.get("symbol")) or "USDC",
        token_denom=optional_text(raw.get("denom")),
        fee=decimal_string(raw.get("fee"), "fee", default=None),
        created_at=created_at,
        updated_at=parse_timestamp(raw.get("updatedAt"), default=created_at),
    )


def map_market(market_id: str, raw: dict[str, Any]) -> MarketRecord:
    base, _, quote = market_id.partition("-")
    step_size = decimal_string(raw.get("stepSize"), "stepSize")
    return MarketRecord(
        market_id=market_id,
        base_asset=optional_text(raw.get("baseAsset")) or base,
        quote_asset=optional_text(raw.get("quoteAsset")) or quote or "USD",
        tick_size=decimal_string(raw.get("tickSize"), "tickSize"),
        step_size=step_size,
        min_order_size=decimal_string(raw.get("minOrderSize"), "minOrderSize", default=step_size),
        initial_margin_fraction=decimal_string(
            raw.get("initialMarginFraction"), "initialMarginFraction", default=None
        ),
        maintenance_margin_fraction=decimal_string(
            raw.get("maintenanceMarginFraction"), "maintenanceMarginFraction", default=None
        ),
        status=optional_text(raw.get("status")) or "ACTIVE",
    )


# ============================================================================
# Fetcher
# ============================================================================


class RemoteFetcher:
    """Fetches one account's ledger data from the indexer."""

    def __init__(
        self,
        client: IndexerClient,
        *,
        ledger_chain_id: str = DEFAULT_LEDGER_CHAIN_ID,
        sub_fetch_timeout_seconds: float = DEFAULT_SUB_FETCH_TIMEOUT_SECONDS,
    ) -> None:
        self._client = client
        self.ledger_chain_id = ledger_chain_id
        self.sub_fetch_timeout_seconds = sub_fetch_timeout_seconds

    async def fetch_all(self, account_id: str, service_base_url: str | None = None) -> FetchResult:
        """Fetch every category concurrently.

        The account document is requested once and shared by the balance,
        position and order sub-fetches.
        """
        result = FetchResult()
        account_task = asyncio.ensure_future(
            self._client.get_account(account_id, base_url=service_base_url)
        )

        async def subaccounts() -> list[dict[str, Any]]:
            account = await asyncio.shield(account_task)
            subs = account.get("subaccounts") or []
            return [s for s in subs if isinstance(s, dict)]

        fetchers: dict[str, Callable[[], Awaitable[list[Any]]]] = {
            "balances": lambda: self._balances(account_id, subaccounts),
            "positions": lambda: self._positions(account_id, subaccounts, result),
            "orders": lambda: self._orders(account_id, subaccounts, service_base_url, result),
            "fills": lambda: self._fills(account_id, service_base_url, result),
            "transfers": lambda: self._transfers(account_id, service_base_url, result),
            "markets": lambda: self._markets(service_base_url, result),
        }
        try:
            outcomes = await asyncio.gather(
                *(self._run(category, fetch) for category, fetch in fetchers.items())
            )
        finally:
            if not account_task.done():
                account_task.cancel()
            elif not account_task.cancelled():
                account_task.exception()

        for category, (records, error) in zip(fetchers, outcomes, strict=True):
            setattr(result, category, records)
            if error is not None:
                result.errors[category] = error

        logger.info(
            "Fetched ledger data for %s: %s (errors: %d)",
            account_id,
            result.counts(),
            len(result.errors) + len(result.item_errors),
        )
        return result

    async def _run(
        self, category: str, fetch: Callable[[], Awaitable[list[Any]]]
    ) -> tuple[list[Any], str | None]:
        try:
            async with asyncio.timeout(self.sub_fetch_timeout_seconds):
                return await fetch(), None
        except TimeoutError:
            logger.warning("Fetching %s timed out after %.1fs", category, self.sub_fetch_timeout_seconds)
            return [], f"timed out after {self.sub_fetch_timeout_seconds:g}s"
        except Exception as e:
            logger.warning("Fetching %s failed: %s", category, e)
            return [], str(e) or type(e).__name__

    @staticmethod
    def _map_each(
        result: FetchResult, label: str, items: list[Any], mapper: Callable[[Any], Any]
    ) -> list[Any]:
        records = []
        for item in items:
            try:
                records.append(mapper(item))
            except (RecordValidationError, ValueError, TypeError) as e:
                logger.warning("Skipping malformed %s item: %s", label, e)
                result.item_errors.append(f"{label}: {e}")
        return records

    async def _balances(
        self, account_id: str, subaccounts: Callable[[], Awaitable[list[dict[str, Any]]]]
    ) -> list[BalanceRecord]:
        return map_balance(account_id, await subaccounts(), chain_id=self.ledger_chain_id)

    async def _positions(
        self,
        account_id: str,
        subaccounts: Callable[[], Awaitable[list[dict[str, Any]]]],
        result: FetchResult,
    ) -> list[PositionRecord]:
        items: list[tuple[str, str, dict[str, Any]]] = []
        for sub in await subaccounts():
            sub_address = optional_text(sub.get("address")) or account_id
            open_positions = sub.get("openPerpetualPositions") or {}
            if isinstance(open_positions, dict):
                for market, raw in open_positions.items():
                    if isinstance(raw, dict):
                        items.append((sub_address, market, raw))
        return self._map_each(
            result, "Position", items, lambda item: map_position(account_id, *item)
        )

    async def _orders(
        self,
        account_id: str,
        subaccounts: Callable[[], Awaitable[list[dict[str, Any]]]],
        base_url: str | None,
        result: FetchResult,
    ) -> list[OrderRecord]:
        addresses: list[str] = []
        for sub in await subaccounts():
            address = optional_text(sub.get("address")) or account_id
            if address not in addresses:
                addresses.append(address)

        async def for_subaccount(address: str) -> list[dict[str, Any]]:
            try:
                return await self._client.get_orders(address, base_url=base_url)
            except Exception as e:
                # A failed sub-account is skipped; its orders are simply absent.
                logger.warning("Failed to fetch orders for sub-account %s: %s", address, e)
                return []

        batches = await asyncio.gather(*(for_subaccount(a) for a in addresses))
        seen: set[Any] = set()
        raw_orders = []
        for batch in batches:
            for raw in batch:
                if raw.get("id") not in seen:
                    seen.add(raw.get("id"))
                    raw_orders.append(raw)
        return self._map_each(result, "Order", raw_orders, lambda raw: map_order(account_id, raw))

    async def _fills(self, account_id: str, base_url: str | None, result: FetchResult) -> list[FillRecord]:
        raw_fills = await self._client.get_fills(account_id, base_url=base_url)
        return self._map_each(result, "Fill", raw_fills, lambda raw: map_fill(account_id, raw))

    async def _transfers(
        self, account_id: str, base_url: str | None, result: FetchResult
    ) -> list[TransferRecord]:
        raw_transfers = await self._client.get_transfers(account_id, base_url=base_url)
        return self._map_each(
            result,
            "Transfer",
            raw_transfers,
            lambda raw: map_transfer(account_id, raw, chain_id=self.ledger_chain_id),
        )

    async def _markets(self, base_url: str | None, result: FetchResult) -> list[MarketRecord]:
        raw_markets = await self._client.get_perpetual_markets(base_url=base_url)
        return self._map_each(
            result, "Market", list(raw_markets.items()), lambda item: map_market(*item)
        )
