"""Initial schema: wallet links, session state, ledger data, sync ledger and views.

Revision ID: 001_initial
Revises:
Create Date: 2026-03-01 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

from offline_ledger_sync.storage.views import VIEW_DEFINITIONS, create_view_sql, drop_view_sql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    # Wallet links
    op.create_table(
        "wallet_links",
        sa.Column("wallet_type", sa.String(20), nullable=False),
        sa.Column("address", sa.String(128), nullable=False),
        sa.Column("chain_id", sa.String(64), nullable=False),
        sa.Column("owner_address", sa.String(128), nullable=False),
        sa.Column("is_primary", sa.Boolean(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("wallet_type", "address", "chain_id"),
    )
    op.create_index("idx_wallet_links_address", "wallet_links", ["address"])
    op.create_index("idx_wallet_links_owner", "wallet_links", ["owner_address"])

    # Session-state preferences
    op.create_table(
        "user_preferences",
        sa.Column("wallet_address", sa.String(128), nullable=False),
        sa.Column("locale", sa.String(16), nullable=True),
        sa.Column("selected_network", sa.String(32), nullable=True),
        sa.Column("color_mode", sa.String(16), nullable=True),
        sa.Column("has_acknowledged_terms", sa.Boolean(), nullable=False),
        sa.Column("notifications_enabled", sa.Boolean(), nullable=False),
        sa.Column("gas_preferences", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("wallet_address"),
    )
    op.create_table(
        "trading_preferences",
        sa.Column("wallet_address", sa.String(128), nullable=False),
        sa.Column("default_slippage", sa.String(40), nullable=True),
        sa.Column("trade_layout", sa.Text(), nullable=False),
        sa.Column("chart_preferences", sa.Text(), nullable=False),
        sa.Column("order_side_preference", sa.String(8), nullable=True),
        sa.Column("display_unit", sa.String(8), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("wallet_address"),
    )
    op.create_table(
        "dismissed_items",
        sa.Column("wallet_address", sa.String(128), nullable=False),
        sa.Column("item_key", sa.String(128), nullable=False),
        sa.Column("dismissed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("wallet_address", "item_key"),
    )
    op.create_table(
        "affiliates",
        sa.Column("wallet_address", sa.String(128), nullable=False),
        sa.Column("affiliate_address", sa.String(128), nullable=True),
        sa.Column("affiliate_metadata", sa.Text(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("wallet_address"),
    )

    # Ledger data
    op.create_table(
        "account_balances",
        sa.Column("wallet_address", sa.String(128), nullable=False),
        sa.Column("chain_id", sa.String(64), nullable=False),
        sa.Column("token_symbol", sa.String(32), nullable=False),
        sa.Column("token_denom", sa.String(128), nullable=False),
        sa.Column("balance", sa.String(80), nullable=False),
        sa.Column("available_balance", sa.String(80), nullable=True),
        sa.Column("locked_balance", sa.String(80), nullable=True),
        sa.Column("last_updated", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("wallet_address", "chain_id", "token_symbol", "token_denom"),
    )
    op.create_index("idx_account_balances_wallet", "account_balances", ["wallet_address"])
    op.create_index("idx_account_balances_chain", "account_balances", ["chain_id"])

    op.create_table(
        "positions",
        sa.Column("wallet_address", sa.String(128), nullable=False),
        sa.Column("position_id", sa.String(160), nullable=False),
        sa.Column("market", sa.String(40), nullable=False),
        sa.Column("side", sa.String(8), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("size", sa.String(80), nullable=False),
        sa.Column("max_size", sa.String(80), nullable=True),
        sa.Column("entry_price", sa.String(80), nullable=True),
        sa.Column("exit_price", sa.String(80), nullable=True),
        sa.Column("realized_pnl", sa.String(80), nullable=True),
        sa.Column("unrealized_pnl", sa.String(80), nullable=True),
        *_timestamps(),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("wallet_address", "position_id"),
    )
    op.create_index("idx_positions_market", "positions", ["market"])
    op.create_index("idx_positions_status", "positions", ["status"])

    op.create_table(
        "orders",
        sa.Column("order_id", sa.String(128), nullable=False),
        sa.Column("wallet_address", sa.String(128), nullable=False),
        sa.Column("client_id", sa.String(64), nullable=True),
        sa.Column("market", sa.String(40), nullable=False),
        sa.Column("side", sa.String(4), nullable=False),
        sa.Column("type", sa.String(24), nullable=False),
        sa.Column("status", sa.String(24), nullable=False),
        sa.Column("price", sa.String(80), nullable=True),
        sa.Column("trigger_price", sa.String(80), nullable=True),
        sa.Column("size", sa.String(80), nullable=False),
        sa.Column("remaining_size", sa.String(80), nullable=True),
        sa.Column("post_only", sa.Boolean(), nullable=False),
        sa.Column("reduce_only", sa.Boolean(), nullable=False),
        sa.Column("time_in_force", sa.String(8), nullable=True),
        sa.Column("good_til_block", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("order_id"),
    )
    op.create_index("idx_orders_wallet", "orders", ["wallet_address"])
    op.create_index("idx_orders_market", "orders", ["market"])
    op.create_index("idx_orders_status", "orders", ["status"])
    op.create_index("idx_orders_client_id", "orders", ["client_id"])

    op.create_table(
        "fills",
        sa.Column("fill_id", sa.String(128), nullable=False),
        sa.Column("wallet_address", sa.String(128), nullable=False),
        sa.Column("order_id", sa.String(128), nullable=False),
        sa.Column("market", sa.String(40), nullable=False),
        sa.Column("side", sa.String(4), nullable=False),
        sa.Column("size", sa.String(80), nullable=False),
        sa.Column("price", sa.String(80), nullable=False),
        sa.Column("fee", sa.String(80), nullable=False),
        sa.Column("liquidity", sa.String(8), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("fill_id"),
    )
    op.create_index("idx_fills_wallet", "fills", ["wallet_address"])
    op.create_index("idx_fills_order", "fills", ["order_id"])
    op.create_index("idx_fills_market", "fills", ["market"])

    op.create_table(
        "transfers",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("wallet_address", sa.String(128), nullable=False),
        sa.Column("transfer_id", sa.String(128), nullable=True),
        sa.Column("tx_hash", sa.String(128), nullable=True),
        sa.Column("type", sa.String(24), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("from_address", sa.String(128), nullable=True),
        sa.Column("to_address", sa.String(128), nullable=True),
        sa.Column("from_chain", sa.String(64), nullable=True),
        sa.Column("to_chain", sa.String(64), nullable=True),
        sa.Column("amount", sa.String(80), nullable=False),
        sa.Column("token_symbol", sa.String(32), nullable=False),
        sa.Column("token_denom", sa.String(128), nullable=True),
        sa.Column("fee", sa.String(80), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tx_hash", name="uq_transfers_tx_hash"),
        sa.UniqueConstraint("wallet_address", "transfer_id", name="uq_transfers_wallet_transfer"),
    )
    op.create_index("idx_transfers_wallet_created", "transfers", ["wallet_address", "created_at"])
    op.create_index("idx_transfers_status", "transfers", ["status"])

    op.create_table(
        "swaps",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("wallet_address", sa.String(128), nullable=False),
        sa.Column("swap_id", sa.String(128), nullable=True),
        sa.Column("tx_hash", sa.String(128), nullable=True),
        sa.Column("from_chain", sa.String(64), nullable=False),
        sa.Column("to_chain", sa.String(64), nullable=False),
        sa.Column("from_token", sa.String(128), nullable=False),
        sa.Column("to_token", sa.String(128), nullable=False),
        sa.Column("from_amount", sa.String(80), nullable=False),
        sa.Column("to_amount", sa.String(80), nullable=True),
        sa.Column("estimated_to_amount", sa.String(80), nullable=True),
        sa.Column("route_data", sa.Text(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tx_hash", name="uq_swaps_tx_hash"),
        sa.UniqueConstraint("wallet_address", "swap_id", name="uq_swaps_wallet_swap"),
    )
    op.create_index("idx_swaps_wallet_created", "swaps", ["wallet_address", "created_at"])

    op.create_table(
        "markets",
        sa.Column("market_id", sa.String(40), nullable=False),
        sa.Column("base_asset", sa.String(32), nullable=False),
        sa.Column("quote_asset", sa.String(32), nullable=False),
        sa.Column("tick_size", sa.String(80), nullable=False),
        sa.Column("step_size", sa.String(80), nullable=False),
        sa.Column("min_order_size", sa.String(80), nullable=False),
        sa.Column("initial_margin_fraction", sa.String(80), nullable=True),
        sa.Column("maintenance_margin_fraction", sa.String(80), nullable=True),
        sa.Column("status", sa.String(24), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("market_id"),
    )

    # Sync ledger
    op.create_table(
        "sync_ledger",
        sa.Column("wallet_address", sa.String(128), nullable=False),
        sa.Column("data_category", sa.String(20), nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(10), nullable=False),
        sa.Column("record_count", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("wallet_address", "data_category"),
    )
    op.create_index("idx_sync_ledger_synced_at", "sync_ledger", ["last_synced_at"])

    for name in VIEW_DEFINITIONS:
        op.execute(create_view_sql(name))


def downgrade() -> None:
    for name in reversed(list(VIEW_DEFINITIONS)):
        op.execute(drop_view_sql(name))

    op.drop_index("idx_sync_ledger_synced_at", table_name="sync_ledger")
    op.drop_table("sync_ledger")
    op.drop_table("markets")
    op.drop_index("idx_swaps_wallet_created", table_name="swaps")
    op.drop_table("swaps")
    op.drop_index("idx_transfers_status", table_name="transfers")
    op.drop_index("idx_transfers_wallet_created", table_name="transfers")
    op.drop_table("transfers")
    op.drop_index("idx_fills_market", table_name="fills")
    op.drop_index("idx_fills_order", table_name="fills")
    op.drop_index("idx_fills_wallet", table_name="fills")
    op.drop_table("fills")
    op.drop_index("idx_orders_client_id", table_name="orders")
    op.drop_index("idx_orders_status", table_name="orders")
    op.drop_index("idx_orders_market", table_name="orders")
    op.drop_index("idx_orders_wallet", table_name="orders")
    op.drop_table("orders")
    op.drop_index("idx_positions_status", table_name="positions")
    op.drop_index("idx_positions_market", table_name="positions")
    op.drop_table("positions")
    op.drop_index("idx_account_balances_chain", table_name="account_balances")
    op.drop_index("idx_account_balances_wallet", table_name="account_balances")
    op.drop_table("account_balances")
    op.drop_table("affiliates")
    op.drop_table("dismissed_items")
    op.drop_table("trading_preferences")
    op.drop_table("user_preferences")
    op.drop_index("idx_wallet_links_owner", table_name="wallet_links")
    op.drop_index("idx_wallet_links_address", table_name="wallet_links")
    op.drop_table("wallet_links")
