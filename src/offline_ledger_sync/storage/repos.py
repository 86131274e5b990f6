"""Repository pattern implementations for data access.

This module provides data access for wallet links, session-state
preferences, ledger data from the indexer, the sync ledger and the
derived read views. Writers take normalized sync records and return
whether a row was written; readers return DTOs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import or_, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from offline_ledger_sync.storage.models import (
    AffiliateModel,
    BalanceModel,
    DismissedItemModel,
    FillModel,
    MarketModel,
    OrderModel,
    PositionModel,
    SwapModel,
    SyncLedgerModel,
    TradingPreferencesModel,
    TransferModel,
    UserPreferencesModel,
    WalletLinkModel,
)
from offline_ledger_sync.storage.views import ACTIVE_ORDER_STATUSES
from offline_ledger_sync.sync.records import (
    AffiliateRecord,
    BalanceRecord,
    DismissedItemRecord,
    FillRecord,
    MarketRecord,
    OrderRecord,
    PositionRecord,
    PreferencesRecord,
    RecordValidationError,
    SwapRecord,
    SyncStatus,
    TradingPreferencesRecord,
    TransferRecord,
    WalletLinkRecord,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class RecordConflictError(Exception):
    """Raised when a globally keyed row already belongs to another wallet."""


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite returns naive datetimes; stored values are always UTC."""
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=UTC)


# ============================================================================
# DTOs
# ============================================================================


@dataclass
class WalletLinkDTO:
    """Data transfer object for linked wallets."""

    wallet_type: str
    address: str
    chain_id: str | None
    owner_address: str
    is_primary: bool
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: WalletLinkModel) -> WalletLinkDTO:
        return cls(
            wallet_type=model.wallet_type,
            address=model.address,
            chain_id=model.chain_id or None,
            owner_address=model.owner_address,
            is_primary=model.is_primary,
            created_at=as_utc(model.created_at),
            updated_at=as_utc(model.updated_at),
        )


@dataclass
class PreferencesDTO:
    wallet_address: str
    locale: str | None
    selected_network: str | None
    color_mode: str | None
    has_acknowledged_terms: bool
    notifications_enabled: bool
    gas_preferences: str | None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: UserPreferencesModel) -> PreferencesDTO:
        return cls(
            wallet_address=model.wallet_address,
            locale=model.locale,
            selected_network=model.selected_network,
            color_mode=model.color_mode,
            has_acknowledged_terms=model.has_acknowledged_terms,
            notifications_enabled=model.notifications_enabled,
            gas_preferences=model.gas_preferences,
            updated_at=as_utc(model.updated_at),
        )


@dataclass
class TradingPreferencesDTO:
    wallet_address: str
    default_slippage: str | None
    trade_layout: str
    chart_preferences: str
    order_side_preference: str | None
    display_unit: str
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TradingPreferencesModel) -> TradingPreferencesDTO:
        return cls(
            wallet_address=model.wallet_address,
            default_slippage=model.default_slippage,
            trade_layout=model.trade_layout,
            chart_preferences=model.chart_preferences,
            order_side_preference=model.order_side_preference,
            display_unit=model.display_unit,
            updated_at=as_utc(model.updated_at),
        )


@dataclass
class DismissedItemDTO:
    wallet_address: str
    item_key: str
    dismissed_at: datetime | None

    @classmethod
    def from_model(cls, model: DismissedItemModel) -> DismissedItemDTO:
        return cls(
            wallet_address=model.wallet_address,
            item_key=model.item_key,
            dismissed_at=as_utc(model.dismissed_at),
        )


@dataclass
class AffiliateDTO:
    wallet_address: str
    affiliate_address: str | None
    affiliate_metadata: str
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: AffiliateModel) -> AffiliateDTO:
        return cls(
            wallet_address=model.wallet_address,
            affiliate_address=model.affiliate_address,
            affiliate_metadata=model.affiliate_metadata,
            updated_at=as_utc(model.updated_at),
        )


@dataclass
class BalanceDTO:
    """Data transfer object for balance snapshots."""

    wallet_address: str
    chain_id: str
    token_symbol: str
    token_denom: str | None
    balance: str
    available_balance: str | None
    locked_balance: str | None
    last_updated: datetime | None = None

    @classmethod
    def from_model(cls, model: BalanceModel) -> BalanceDTO:
        return cls(
            wallet_address=model.wallet_address,
            chain_id=model.chain_id,
            token_symbol=model.token_symbol,
            token_denom=model.token_denom or None,
            balance=model.balance,
            available_balance=model.available_balance,
            locked_balance=model.locked_balance,
            last_updated=as_utc(model.last_updated),
        )


@dataclass
class PositionDTO:
    wallet_address: str
    position_id: str
    market: str
    side: str
    status: str
    size: str
    max_size: str | None
    entry_price: str | None
    exit_price: str | None
    realized_pnl: str | None
    unrealized_pnl: str | None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    closed_at: datetime | None = None

    @classmethod
    def from_model(cls, model: PositionModel) -> PositionDTO:
        return cls(
            wallet_address=model.wallet_address,
            position_id=model.position_id,
            market=model.market,
            side=model.side,
            status=model.status,
            size=model.size,
            max_size=model.max_size,
            entry_price=model.entry_price,
            exit_price=model.exit_price,
            realized_pnl=model.realized_pnl,
            unrealized_pnl=model.unrealized_pnl,
            created_at=as_utc(model.created_at),
            updated_at=as_utc(model.updated_at),
            closed_at=as_utc(model.closed_at),
        )


@dataclass
class OrderDTO:
    order_id: str
    wallet_address: str
    client_id: str | None
    market: str
    side: str
    type: str
    status: str
    price: str | None
    trigger_price: str | None
    size: str
    remaining_size: str | None
    post_only: bool
    reduce_only: bool
    time_in_force: str | None
    good_til_block: int | None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: OrderModel) -> OrderDTO:
        return cls(
            order_id=model.order_id,
            wallet_address=model.wallet_address,
            client_id=model.client_id,
            market=model.market,
            side=model.side,
            type=model.type,
            status=model.status,
            price=model.price,
            trigger_price=model.trigger_price,
            size=model.size,
            remaining_size=model.remaining_size,
            post_only=model.post_only,
            reduce_only=model.reduce_only,
            time_in_force=model.time_in_force,
            good_til_block=model.good_til_block,
            created_at=as_utc(model.created_at),
            updated_at=as_utc(model.updated_at),
        )


@dataclass
class FillDTO:
    fill_id: str
    wallet_address: str
    order_id: str
    market: str
    side: str
    size: str
    price: str
    fee: str
    liquidity: str | None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: FillModel) -> FillDTO:
        return cls(
            fill_id=model.fill_id,
            wallet_address=model.wallet_address,
            order_id=model.order_id,
            market=model.market,
            side=model.side,
            size=model.size,
            price=model.price,
            fee=model.fee,
            liquidity=model.liquidity,
            created_at=as_utc(model.created_at),
        )


@dataclass
class TransferDTO:
    wallet_address: str
    transfer_id: str | None
    tx_hash: str | None
    type: str
    status: str
    from_address: str | None
    to_address: str | None
    from_chain: str | None
    to_chain: str | None
    amount: str
    token_symbol: str
    token_denom: str | None
    fee: str | None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TransferModel) -> TransferDTO:
        return cls(
            wallet_address=model.wallet_address,
            transfer_id=model.transfer_id,
            tx_hash=model.tx_hash,
            type=model.type,
            status=model.status,
            from_address=model.from_address,
            to_address=model.to_address,
            from_chain=model.from_chain,
            to_chain=model.to_chain,
            amount=model.amount,
            token_symbol=model.token_symbol,
            token_denom=model.token_denom,
            fee=model.fee,
            created_at=as_utc(model.created_at),
            updated_at=as_utc(model.updated_at),
        )


@dataclass
class SwapDTO:
    wallet_address: str
    swap_id: str | None
    tx_hash: str | None
    from_chain: str
    to_chain: str
    from_token: str
    to_token: str
    from_amount: str
    to_amount: str | None
    estimated_to_amount: str | None
    route_data: str
    status: str
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: SwapModel) -> SwapDTO:
        return cls(
            wallet_address=model.wallet_address,
            swap_id=model.swap_id,
            tx_hash=model.tx_hash,
            from_chain=model.from_chain,
            to_chain=model.to_chain,
            from_token=model.from_token,
            to_token=model.to_token,
            from_amount=model.from_amount,
            to_amount=model.to_amount,
            estimated_to_amount=model.estimated_to_amount,
            route_data=model.route_data,
            status=model.status,
            created_at=as_utc(model.created_at),
            updated_at=as_utc(model.updated_at),
        )


@dataclass
class MarketDTO:
    market_id: str
    base_asset: str
    quote_asset: str
    tick_size: str
    step_size: str
    min_order_size: str
    initial_margin_fraction: str | None
    maintenance_margin_fraction: str | None
    status: str
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: MarketModel) -> MarketDTO:
        return cls(
            market_id=model.market_id,
            base_asset=model.base_asset,
            quote_asset=model.quote_asset,
            tick_size=model.tick_size,
            step_size=model.step_size,
            min_order_size=model.min_order_size,
            initial_margin_fraction=model.initial_margin_fraction,
            maintenance_margin_fraction=model.maintenance_margin_fraction,
            status=model.status,
            updated_at=as_utc(model.updated_at),
        )


@dataclass
class SyncLedgerEntryDTO:
    """Most recent sync outcome for one (wallet, data category)."""

    wallet_address: str
    data_category: str
    last_synced_at: datetime
    status: str
    record_count: int
    last_error: str | None = None

    @classmethod
    def from_model(cls, model: SyncLedgerModel) -> SyncLedgerEntryDTO:
        return cls(
            wallet_address=model.wallet_address,
            data_category=model.data_category,
            last_synced_at=as_utc(model.last_synced_at),  # type: ignore[arg-type]
            status=model.status,
            record_count=model.record_count,
            last_error=model.last_error,
        )


@dataclass
class PortfolioSummaryDTO:
    """Per-chain balance summary; ``total_balance`` is summed as Decimal."""

    wallet_address: str
    chain_id: str
    token_count: int
    total_balance: str
    last_updated: datetime | None = None


# ============================================================================
# Session-state repositories
# ============================================================================


class WalletLinkRepository:
    """Repository for wallet links. Links are never deleted."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, record: WalletLinkRecord, *, owner_address: str) -> bool:
        """Insert a link or refresh its primary flag.

        The owner of an existing link is kept; only ``is_primary`` changes.
        """
        now = datetime.now(UTC)
        stmt = sqlite_insert(WalletLinkModel).values(
            wallet_type=record.wallet_type,
            address=record.address,
            chain_id=record.chain_id or "",
            owner_address=owner_address,
            is_primary=record.is_primary,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["wallet_type", "address", "chain_id"],
            set_={"is_primary": stmt.excluded.is_primary, "updated_at": now},
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return True

    async def list_by_address(self, address: str) -> list[WalletLinkDTO]:
        result = await self.session.execute(
            select(WalletLinkModel)
            .where(WalletLinkModel.address == address)
            .order_by(WalletLinkModel.wallet_type)
        )
        return [WalletLinkDTO.from_model(m) for m in result.scalars().all()]

    async def list_for_account(self, account_id: str) -> list[WalletLinkDTO]:
        """All links owned by an account, including its own address."""
        result = await self.session.execute(
            select(WalletLinkModel)
            .where(
                or_(
                    WalletLinkModel.owner_address == account_id,
                    WalletLinkModel.address == account_id,
                )
            )
            .order_by(WalletLinkModel.is_primary.desc(), WalletLinkModel.wallet_type)
        )
        return [WalletLinkDTO.from_model(m) for m in result.scalars().all()]


class PreferencesRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, record: PreferencesRecord) -> bool:
        """Replace preferences wholesale (last write wins)."""
        now = datetime.now(UTC)
        values = {
            "locale": record.locale,
            "selected_network": record.selected_network,
            "color_mode": record.color_mode,
            "has_acknowledged_terms": record.has_acknowledged_terms,
            "notifications_enabled": record.notifications_enabled,
            "gas_preferences": record.gas_preferences,
        }
        stmt = sqlite_insert(UserPreferencesModel).values(
            wallet_address=record.wallet_address, created_at=now, updated_at=now, **values
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["wallet_address"],
            set_={**{k: getattr(stmt.excluded, k) for k in values}, "updated_at": now},
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return True

    async def get(self, wallet_address: str) -> PreferencesDTO | None:
        model = await self.session.get(UserPreferencesModel, wallet_address)
        return PreferencesDTO.from_model(model) if model else None


class TradingPreferencesRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, record: TradingPreferencesRecord) -> bool:
        now = datetime.now(UTC)
        values = {
            "default_slippage": record.default_slippage,
            "trade_layout": record.trade_layout,
            "chart_preferences": record.chart_preferences,
            "order_side_preference": record.order_side_preference,
            "display_unit": record.display_unit,
        }
        stmt = sqlite_insert(TradingPreferencesModel).values(
            wallet_address=record.wallet_address, created_at=now, updated_at=now, **values
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["wallet_address"],
            set_={**{k: getattr(stmt.excluded, k) for k in values}, "updated_at": now},
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return True

    async def get(self, wallet_address: str) -> TradingPreferencesDTO | None:
        model = await self.session.get(TradingPreferencesModel, wallet_address)
        return TradingPreferencesDTO.from_model(model) if model else None


class DismissedItemRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_if_absent(self, record: DismissedItemRecord) -> bool:
        """Returns False when the item was already dismissed."""
        stmt = sqlite_insert(DismissedItemModel).values(
            wallet_address=record.wallet_address,
            item_key=record.item_key,
            dismissed_at=record.dismissed_at,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["wallet_address", "item_key"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        return result.rowcount == 1

    async def list_by_wallet(self, wallet_address: str) -> list[DismissedItemDTO]:
        result = await self.session.execute(
            select(DismissedItemModel)
            .where(DismissedItemModel.wallet_address == wallet_address)
            .order_by(DismissedItemModel.item_key)
        )
        return [DismissedItemDTO.from_model(m) for m in result.scalars().all()]


class AffiliateRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, record: AffiliateRecord) -> bool:
        now = datetime.now(UTC)
        stmt = sqlite_insert(AffiliateModel).values(
            wallet_address=record.wallet_address,
            affiliate_address=record.affiliate_address,
            affiliate_metadata=record.affiliate_metadata,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["wallet_address"],
            set_={
                "affiliate_address": stmt.excluded.affiliate_address,
                "affiliate_metadata": stmt.excluded.affiliate_metadata,
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return True

    async def get(self, wallet_address: str) -> AffiliateDTO | None:
        model = await self.session.get(AffiliateModel, wallet_address)
        return AffiliateDTO.from_model(model) if model else None


# ============================================================================
# Ledger repositories
# ============================================================================


class BalanceRepository:
    """Repository for balance snapshots keyed by (wallet, chain, token, denom)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, record: BalanceRecord) -> bool:
        now = datetime.now(UTC)
        stmt = sqlite_insert(BalanceModel).values(
            wallet_address=record.wallet_address,
            chain_id=record.chain_id,
            token_symbol=record.token_symbol,
            token_denom=record.token_denom or "",
            balance=record.balance,
            available_balance=record.available_balance,
            locked_balance=record.locked_balance,
            last_updated=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["wallet_address", "chain_id", "token_symbol", "token_denom"],
            set_={
                "balance": stmt.excluded.balance,
                "available_balance": stmt.excluded.available_balance,
                "locked_balance": stmt.excluded.locked_balance,
                "last_updated": now,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return True

    async def list_by_wallet(self, wallet_address: str) -> list[BalanceDTO]:
        result = await self.session.execute(
            select(BalanceModel)
            .where(BalanceModel.wallet_address == wallet_address)
            .order_by(BalanceModel.chain_id, BalanceModel.token_symbol)
        )
        return [BalanceDTO.from_model(m) for m in result.scalars().all()]


class PositionRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, record: PositionRecord) -> bool:
        """Insert a position or merge size, unrealized PnL and update time.

        Creation metadata, side and status of an existing row are kept.
        """
        stmt = sqlite_insert(PositionModel).values(
            wallet_address=record.wallet_address,
            position_id=record.position_id,
            market=record.market,
            side=record.side,
            status=record.status,
            size=record.size,
            max_size=record.max_size,
            entry_price=record.entry_price,
            exit_price=record.exit_price,
            realized_pnl=record.realized_pnl,
            unrealized_pnl=record.unrealized_pnl,
            created_at=record.created_at,
            updated_at=record.updated_at,
            closed_at=record.closed_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["wallet_address", "position_id"],
            set_={
                "size": stmt.excluded.size,
                "unrealized_pnl": stmt.excluded.unrealized_pnl,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return True

    async def list_open(self, wallet_address: str) -> list[PositionDTO]:
        result = await self.session.execute(
            select(PositionModel)
            .where(PositionModel.wallet_address == wallet_address)
            .where(PositionModel.status == "OPEN")
            .order_by(PositionModel.created_at.desc())
        )
        return [PositionDTO.from_model(m) for m in result.scalars().all()]

    async def list_by_wallet(self, wallet_address: str) -> list[PositionDTO]:
        result = await self.session.execute(
            select(PositionModel)
            .where(PositionModel.wallet_address == wallet_address)
            .order_by(PositionModel.created_at.desc())
        )
        return [PositionDTO.from_model(m) for m in result.scalars().all()]


class OrderRepository:
    """Orders are keyed globally; an id owned by another wallet is a conflict."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, record: OrderRecord) -> bool:
        stmt = sqlite_insert(OrderModel).values(
            order_id=record.order_id,
            wallet_address=record.wallet_address,
            client_id=record.client_id,
            market=record.market,
            side=record.side,
            type=record.type,
            status=record.status,
            price=record.price,
            trigger_price=record.trigger_price,
            size=record.size,
            remaining_size=record.remaining_size,
            post_only=record.post_only,
            reduce_only=record.reduce_only,
            time_in_force=record.time_in_force,
            good_til_block=record.good_til_block,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["order_id"],
            set_={
                "status": stmt.excluded.status,
                "remaining_size": stmt.excluded.remaining_size,
                "updated_at": stmt.excluded.updated_at,
            },
            where=OrderModel.wallet_address == stmt.excluded.wallet_address,
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        if result.rowcount == 0:
            raise RecordConflictError(
                f"order {record.order_id} belongs to another wallet than {record.wallet_address}"
            )
        return True

    async def get(self, order_id: str) -> OrderDTO | None:
        model = await self.session.get(OrderModel, order_id)
        return OrderDTO.from_model(model) if model else None

    async def list_active(self, wallet_address: str) -> list[OrderDTO]:
        result = await self.session.execute(
            select(OrderModel)
            .where(OrderModel.wallet_address == wallet_address)
            .where(OrderModel.status.in_(ACTIVE_ORDER_STATUSES))
            .order_by(OrderModel.created_at.desc())
        )
        return [OrderDTO.from_model(m) for m in result.scalars().all()]


class FillRepository:
    """Append-only fills."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_if_absent(self, record: FillRecord) -> bool:
        """Insert a fill once.

        Returns:
            True if inserted, False if the same wallet already had it.

        Raises:
            RecordConflictError: If the fill id belongs to another wallet.
        """
        stmt = sqlite_insert(FillModel).values(
            fill_id=record.fill_id,
            wallet_address=record.wallet_address,
            order_id=record.order_id,
            market=record.market,
            side=record.side,
            size=record.size,
            price=record.price,
            fee=record.fee,
            liquidity=record.liquidity,
            created_at=record.created_at,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["fill_id"])
        result = await self.session.execute(stmt)
        await self.session.flush()
        if result.rowcount == 1:
            return True

        owner = await self.session.scalar(
            select(FillModel.wallet_address).where(FillModel.fill_id == record.fill_id)
        )
        if owner is not None and owner != record.wallet_address:
            raise RecordConflictError(
                f"fill {record.fill_id} belongs to another wallet than {record.wallet_address}"
            )
        return False

    async def list_by_wallet(self, wallet_address: str, *, limit: int | None = None) -> list[FillDTO]:
        stmt = (
            select(FillModel)
            .where(FillModel.wallet_address == wallet_address)
            .order_by(FillModel.created_at.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return [FillDTO.from_model(m) for m in result.scalars().all()]


class TransferRepository:
    """Transfers keyed by tx hash, or by (wallet, transfer id) before one is known."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, record: TransferRecord) -> bool:
        if not record.tx_hash and not record.transfer_id:
            raise RecordValidationError("transfer needs a tx_hash or a transfer_id")

        if record.tx_hash and record.transfer_id:
            # A row first seen without a hash adopts it so both keys agree.
            await self.session.execute(
                update(TransferModel)
                .where(TransferModel.wallet_address == record.wallet_address)
                .where(TransferModel.transfer_id == record.transfer_id)
                .where(TransferModel.tx_hash.is_(None))
                .values(tx_hash=record.tx_hash)
            )

        stmt = sqlite_insert(TransferModel).values(
            wallet_address=record.wallet_address,
            transfer_id=record.transfer_id,
            tx_hash=record.tx_hash,
            type=record.type,
            status=record.status,
            from_address=record.from_address,
            to_address=record.to_address,
            from_chain=record.from_chain,
            to_chain=record.to_chain,
            amount=record.amount,
            token_symbol=record.token_symbol,
            token_denom=record.token_denom,
            fee=record.fee,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
        conflict_cols = ["tx_hash"] if record.tx_hash else ["wallet_address", "transfer_id"]
        stmt = stmt.on_conflict_do_update(
            index_elements=conflict_cols,
            set_={"status": stmt.excluded.status, "updated_at": stmt.excluded.updated_at},
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return True

    async def get_by_tx_hash(self, tx_hash: str) -> TransferDTO | None:
        model = await self.session.scalar(select(TransferModel).where(TransferModel.tx_hash == tx_hash))
        return TransferDTO.from_model(model) if model else None

    async def list_recent(self, wallet_address: str, *, limit: int = 50) -> list[TransferDTO]:
        result = await self.session.execute(
            select(TransferModel)
            .where(TransferModel.wallet_address == wallet_address)
            .order_by(TransferModel.created_at.desc(), TransferModel.id.desc())
            .limit(limit)
        )
        return [TransferDTO.from_model(m) for m in result.scalars().all()]


class SwapRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, record: SwapRecord) -> bool:
        if not record.tx_hash and not record.swap_id:
            raise RecordValidationError("swap needs a tx_hash or a swap_id")

        if record.tx_hash and record.swap_id:
            await self.session.execute(
                update(SwapModel)
                .where(SwapModel.wallet_address == record.wallet_address)
                .where(SwapModel.swap_id == record.swap_id)
                .where(SwapModel.tx_hash.is_(None))
                .values(tx_hash=record.tx_hash)
            )

        stmt = sqlite_insert(SwapModel).values(
            wallet_address=record.wallet_address,
            swap_id=record.swap_id,
            tx_hash=record.tx_hash,
            from_chain=record.from_chain,
            to_chain=record.to_chain,
            from_token=record.from_token,
            to_token=record.to_token,
            from_amount=record.from_amount,
            to_amount=record.to_amount,
            estimated_to_amount=record.estimated_to_amount,
            route_data=record.route_data,
            status=record.status,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )
        conflict_cols = ["tx_hash"] if record.tx_hash else ["wallet_address", "swap_id"]
        stmt = stmt.on_conflict_do_update(
            index_elements=conflict_cols,
            set_={"status": stmt.excluded.status, "updated_at": stmt.excluded.updated_at},
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return True

    async def list_recent(self, wallet_address: str, *, limit: int = 50) -> list[SwapDTO]:
        result = await self.session.execute(
            select(SwapModel)
            .where(SwapModel.wallet_address == wallet_address)
            .order_by(SwapModel.created_at.desc(), SwapModel.id.desc())
            .limit(limit)
        )
        return [SwapDTO.from_model(m) for m in result.scalars().all()]


class MarketRepository:
    """Global market definitions."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert(self, record: MarketRecord) -> bool:
        now = datetime.now(UTC)
        stmt = sqlite_insert(MarketModel).values(
            market_id=record.market_id,
            base_asset=record.base_asset,
            quote_asset=record.quote_asset,
            tick_size=record.tick_size,
            step_size=record.step_size,
            min_order_size=record.min_order_size,
            initial_margin_fraction=record.initial_margin_fraction,
            maintenance_margin_fraction=record.maintenance_margin_fraction,
            status=record.status,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["market_id"],
            set_={
                "tick_size": stmt.excluded.tick_size,
                "step_size": stmt.excluded.step_size,
                "min_order_size": stmt.excluded.min_order_size,
                "initial_margin_fraction": stmt.excluded.initial_margin_fraction,
                "maintenance_margin_fraction": stmt.excluded.maintenance_margin_fraction,
                "status": stmt.excluded.status,
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()
        return True

    async def list_all(self) -> list[MarketDTO]:
        result = await self.session.execute(select(MarketModel).order_by(MarketModel.market_id))
        return [MarketDTO.from_model(m) for m in result.scalars().all()]


# ============================================================================
# Sync ledger and read views
# ============================================================================


class SyncLedgerRepository:
    """One row per (wallet, data category); written last in every pass."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def record(
        self,
        wallet_address: str,
        data_category: str,
        *,
        status: SyncStatus,
        record_count: int,
        last_error: str | None = None,
        synced_at: datetime | None = None,
    ) -> None:
        synced_at = synced_at or datetime.now(UTC)
        stmt = sqlite_insert(SyncLedgerModel).values(
            wallet_address=wallet_address,
            data_category=data_category,
            last_synced_at=synced_at,
            status=status.value,
            record_count=record_count,
            last_error=last_error,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["wallet_address", "data_category"],
            set_={
                "last_synced_at": stmt.excluded.last_synced_at,
                "status": stmt.excluded.status,
                "record_count": stmt.excluded.record_count,
                "last_error": stmt.excluded.last_error,
            },
        )
        await self.session.execute(stmt)
        await self.session.flush()

    async def get_entry(self, wallet_address: str, data_category: str) -> SyncLedgerEntryDTO | None:
        model = await self.session.get(SyncLedgerModel, (wallet_address, data_category))
        return SyncLedgerEntryDTO.from_model(model) if model else None

    async def get_status(self, wallet_address: str) -> list[SyncLedgerEntryDTO]:
        result = await self.session.execute(
            select(SyncLedgerModel)
            .where(SyncLedgerModel.wallet_address == wallet_address)
            .order_by(SyncLedgerModel.last_synced_at.desc())
        )
        return [SyncLedgerEntryDTO.from_model(m) for m in result.scalars().all()]


def _sum_decimal(values: list[str]) -> str:
    total = Decimal("0")
    for value in values:
        try:
            total += Decimal(value)
        except (InvalidOperation, TypeError):
            logger.warning("Skipping non-decimal balance %r in portfolio total", value)
    return str(total)


class ReadViewRepository:
    """Queries over the derived read views."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _rows(self, sql: str, columns: dict[str, Any], **params: Any) -> list[dict[str, Any]]:
        stmt = sa.text(sql).columns(**columns)
        result = await self.session.execute(stmt, params)
        return [dict(row) for row in result.mappings().all()]

    async def portfolio_summary(self, wallet_address: str) -> list[PortfolioSummaryDTO]:
        rows = await self._rows(
            "SELECT wallet_address, chain_id, token_count, last_updated "
            "FROM v_portfolio_summary WHERE wallet_address = :wallet ORDER BY chain_id",
            {
                "wallet_address": sa.String,
                "chain_id": sa.String,
                "token_count": sa.Integer,
                "last_updated": sa.DateTime(timezone=True),
            },
            wallet=wallet_address,
        )
        balances = await self.session.execute(
            select(BalanceModel.chain_id, BalanceModel.balance).where(
                BalanceModel.wallet_address == wallet_address
            )
        )
        by_chain: dict[str, list[str]] = {}
        for chain_id, balance in balances.all():
            by_chain.setdefault(chain_id, []).append(balance)

        return [
            PortfolioSummaryDTO(
                wallet_address=row["wallet_address"],
                chain_id=row["chain_id"],
                token_count=row["token_count"],
                total_balance=_sum_decimal(by_chain.get(row["chain_id"], [])),
                last_updated=as_utc(row["last_updated"]),
            )
            for row in rows
        ]

    async def open_positions(self, wallet_address: str) -> list[dict[str, Any]]:
        return await self._rows(
            "SELECT * FROM v_open_positions WHERE wallet_address = :wallet "
            "ORDER BY created_at DESC",
            {"created_at": sa.DateTime(timezone=True)},
            wallet=wallet_address,
        )

    async def active_orders(self, wallet_address: str) -> list[dict[str, Any]]:
        return await self._rows(
            "SELECT * FROM v_active_orders WHERE wallet_address = :wallet "
            "ORDER BY created_at DESC",
            {"created_at": sa.DateTime(timezone=True)},
            wallet=wallet_address,
        )

    async def recent_transfers(self, wallet_address: str, *, limit: int = 50) -> list[dict[str, Any]]:
        return await self._rows(
            "SELECT * FROM v_recent_transfers WHERE wallet_address = :wallet "
            "ORDER BY created_at DESC LIMIT :limit",
            {"created_at": sa.DateTime(timezone=True)},
            wallet=wallet_address,
            limit=limit,
        )
