"""SQLAlchemy models for persistent storage.

This module defines the database schema for wallet links, session-state
preferences, ledger data pulled from the indexer, and the sync ledger.
Amounts are stored as strings to preserve precision.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _now() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class WalletLinkModel(Base):
    """One address on one chain, linked to the account that synced it."""

    __tablename__ = "wallet_links"

    wallet_type: Mapped[str] = mapped_column(String(20), primary_key=True)
    address: Mapped[str] = mapped_column(String(128), primary_key=True)
    # Empty string when the chain is unknown so the composite key stays comparable.
    chain_id: Mapped[str] = mapped_column(String(64), primary_key=True, default="")

    owner_address: Mapped[str] = mapped_column(String(128), nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )

    __table_args__ = (
        Index("idx_wallet_links_address", "address"),
        Index("idx_wallet_links_owner", "owner_address"),
    )


class UserPreferencesModel(Base):
    __tablename__ = "user_preferences"

    wallet_address: Mapped[str] = mapped_column(String(128), primary_key=True)

    locale: Mapped[str | None] = mapped_column(String(16), nullable=True)
    selected_network: Mapped[str | None] = mapped_column(String(32), nullable=True)
    color_mode: Mapped[str | None] = mapped_column(String(16), nullable=True)
    has_acknowledged_terms: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    notifications_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    gas_preferences: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )


class TradingPreferencesModel(Base):
    __tablename__ = "trading_preferences"

    wallet_address: Mapped[str] = mapped_column(String(128), primary_key=True)

    default_slippage: Mapped[str | None] = mapped_column(String(40), nullable=True)
    trade_layout: Mapped[str] = mapped_column(Text, nullable=False, default="{}")  # JSON
    chart_preferences: Mapped[str] = mapped_column(Text, nullable=False, default="{}")  # JSON
    order_side_preference: Mapped[str | None] = mapped_column(String(8), nullable=True)
    display_unit: Mapped[str] = mapped_column(String(8), nullable=False, default="ASSET")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )


class DismissedItemModel(Base):
    """Dismissed UI items; set semantics, never updated by sync."""

    __tablename__ = "dismissed_items"

    wallet_address: Mapped[str] = mapped_column(String(128), primary_key=True)
    item_key: Mapped[str] = mapped_column(String(128), primary_key=True)
    dismissed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class AffiliateModel(Base):
    __tablename__ = "affiliates"

    wallet_address: Mapped[str] = mapped_column(String(128), primary_key=True)
    affiliate_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    affiliate_metadata: Mapped[str] = mapped_column(Text, nullable=False, default="{}")  # JSON

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_now, onupdate=_now
    )


class BalanceModel(Base):
    """Current balance snapshot per (wallet, chain, token, denom)."""

    __tablename__ = "account_balances"

    wallet_address: Mapped[str] = mapped_column(String(128), primary_key=True)
    chain_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    token_symbol: Mapped[str] = mapped_column(String(32), primary_key=True)
    token_denom: Mapped[str] = mapped_column(String(128), primary_key=True, default="")

    balance: Mapped[str] = mapped_column(String(80), nullable=False)
    available_balance: Mapped[str | None] = mapped_column(String(80), nullable=True)
    locked_balance: Mapped[str | None] = mapped_column(String(80), nullable=True)

    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        Index("idx_account_balances_wallet", "wallet_address"),
        Index("idx_account_balances_chain", "chain_id"),
    )


class PositionModel(Base):
    __tablename__ = "positions"

    wallet_address: Mapped[str] = mapped_column(String(128), primary_key=True)
    position_id: Mapped[str] = mapped_column(String(160), primary_key=True)

    market: Mapped[str] = mapped_column(String(40), nullable=False)
    side: Mapped[str] = mapped_column(String(8), nullable=False)  # LONG/SHORT
    status: Mapped[str] = mapped_column(String(16), nullable=False)  # OPEN/CLOSED/LIQUIDATED
    size: Mapped[str] = mapped_column(String(80), nullable=False)
    max_size: Mapped[str | None] = mapped_column(String(80), nullable=True)
    entry_price: Mapped[str | None] = mapped_column(String(80), nullable=True)
    exit_price: Mapped[str | None] = mapped_column(String(80), nullable=True)
    realized_pnl: Mapped[str | None] = mapped_column(String(80), nullable=True)
    unrealized_pnl: Mapped[str | None] = mapped_column(String(80), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_positions_market", "market"),
        Index("idx_positions_status", "status"),
    )


class OrderModel(Base):
    """Orders keyed globally by order id."""

    __tablename__ = "orders"

    order_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    wallet_address: Mapped[str] = mapped_column(String(128), nullable=False)
    client_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    market: Mapped[str] = mapped_column(String(40), nullable=False)
    side: Mapped[str] = mapped_column(String(4), nullable=False)  # BUY/SELL
    type: Mapped[str] = mapped_column(String(24), nullable=False)
    status: Mapped[str] = mapped_column(String(24), nullable=False)

    price: Mapped[str | None] = mapped_column(String(80), nullable=True)
    trigger_price: Mapped[str | None] = mapped_column(String(80), nullable=True)
    size: Mapped[str] = mapped_column(String(80), nullable=False)
    remaining_size: Mapped[str | None] = mapped_column(String(80), nullable=True)

    post_only: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reduce_only: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    time_in_force: Mapped[str | None] = mapped_column(String(8), nullable=True)
    good_til_block: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        Index("idx_orders_wallet", "wallet_address"),
        Index("idx_orders_market", "market"),
        Index("idx_orders_status", "status"),
        Index("idx_orders_client_id", "client_id"),
    )


class FillModel(Base):
    """Executed fills. Append-only."""

    __tablename__ = "fills"

    fill_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    wallet_address: Mapped[str] = mapped_column(String(128), nullable=False)
    order_id: Mapped[str] = mapped_column(String(128), nullable=False)

    market: Mapped[str] = mapped_column(String(40), nullable=False)
    side: Mapped[str] = mapped_column(String(4), nullable=False)
    size: Mapped[str] = mapped_column(String(80), nullable=False)
    price: Mapped[str] = mapped_column(String(80), nullable=False)
    fee: Mapped[str] = mapped_column(String(80), nullable=False)
    liquidity: Mapped[str | None] = mapped_column(String(8), nullable=True)  # TAKER/MAKER

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        Index("idx_fills_wallet", "wallet_address"),
        Index("idx_fills_order", "order_id"),
        Index("idx_fills_market", "market"),
    )


class TransferModel(Base):
    """Deposits, withdrawals and transfers; keyed by tx hash when known."""

    __tablename__ = "transfers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_address: Mapped[str] = mapped_column(String(128), nullable=False)
    transfer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)

    type: Mapped[str] = mapped_column(String(24), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    from_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    to_address: Mapped[str | None] = mapped_column(String(128), nullable=True)
    from_chain: Mapped[str | None] = mapped_column(String(64), nullable=True)
    to_chain: Mapped[str | None] = mapped_column(String(64), nullable=True)
    amount: Mapped[str] = mapped_column(String(80), nullable=False)
    token_symbol: Mapped[str] = mapped_column(String(32), nullable=False)
    token_denom: Mapped[str | None] = mapped_column(String(128), nullable=True)
    fee: Mapped[str | None] = mapped_column(String(80), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        UniqueConstraint("tx_hash", name="uq_transfers_tx_hash"),
        UniqueConstraint("wallet_address", "transfer_id", name="uq_transfers_wallet_transfer"),
        Index("idx_transfers_wallet_created", "wallet_address", "created_at"),
        Index("idx_transfers_status", "status"),
    )


class SwapModel(Base):
    __tablename__ = "swaps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    wallet_address: Mapped[str] = mapped_column(String(128), nullable=False)
    swap_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tx_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)

    from_chain: Mapped[str] = mapped_column(String(64), nullable=False)
    to_chain: Mapped[str] = mapped_column(String(64), nullable=False)
    from_token: Mapped[str] = mapped_column(String(128), nullable=False)
    to_token: Mapped[str] = mapped_column(String(128), nullable=False)
    from_amount: Mapped[str] = mapped_column(String(80), nullable=False)
    to_amount: Mapped[str | None] = mapped_column(String(80), nullable=True)
    estimated_to_amount: Mapped[str | None] = mapped_column(String(80), nullable=True)
    route_data: Mapped[str] = mapped_column(Text, nullable=False, default="{}")  # JSON
    status: Mapped[str] = mapped_column(String(16), nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)

    __table_args__ = (
        UniqueConstraint("tx_hash", name="uq_swaps_tx_hash"),
        UniqueConstraint("wallet_address", "swap_id", name="uq_swaps_wallet_swap"),
        Index("idx_swaps_wallet_created", "wallet_address", "created_at"),
    )


class MarketModel(Base):
    """Perpetual market definitions (global, not per wallet)."""

    __tablename__ = "markets"

    market_id: Mapped[str] = mapped_column(String(40), primary_key=True)
    base_asset: Mapped[str] = mapped_column(String(32), nullable=False)
    quote_asset: Mapped[str] = mapped_column(String(32), nullable=False)
    tick_size: Mapped[str] = mapped_column(String(80), nullable=False)
    step_size: Mapped[str] = mapped_column(String(80), nullable=False)
    min_order_size: Mapped[str] = mapped_column(String(80), nullable=False)
    initial_margin_fraction: Mapped[str | None] = mapped_column(String(80), nullable=True)
    maintenance_margin_fraction: Mapped[str | None] = mapped_column(String(80), nullable=True)
    status: Mapped[str] = mapped_column(String(24), nullable=False, default="ACTIVE")

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now)


class SyncLedgerModel(Base):
    """Outcome of the most recent sync attempt per (wallet, data category)."""

    __tablename__ = "sync_ledger"

    wallet_address: Mapped[str] = mapped_column(String(128), primary_key=True)
    data_category: Mapped[str] = mapped_column(String(20), primary_key=True)  # session_state/ledger_data

    last_synced_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(10), nullable=False)  # success/partial/failed
    record_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("idx_sync_ledger_synced_at", "last_synced_at"),)
