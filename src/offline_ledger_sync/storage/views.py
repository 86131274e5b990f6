"""Derived read views.

The views are pure projections over the base tables. They are created
alongside the tables by ``Base.metadata.create_all`` and by the initial
Alembic revision, which imports ``VIEW_DEFINITIONS`` from here.

``v_portfolio_summary`` has no balance total; amounts are strings and
are summed with ``Decimal`` in the repository.
"""

from __future__ import annotations

from sqlalchemy import DDL, event

from offline_ledger_sync.storage.models import Base

ACTIVE_ORDER_STATUSES: tuple[str, ...] = ("PENDING", "OPEN", "UNTRIGGERED")

VIEW_DEFINITIONS: dict[str, str] = {
    "v_portfolio_summary": """
        SELECT
          ab.wallet_address AS wallet_address,
          ab.chain_id AS chain_id,
          COUNT(DISTINCT ab.token_symbol) AS token_count,
          MAX(ab.last_updated) AS last_updated
        FROM account_balances ab
        GROUP BY ab.wallet_address, ab.chain_id
    """,
    "v_open_positions": """
        SELECT
          p.wallet_address AS wallet_address,
          p.position_id AS position_id,
          p.market AS market,
          p.side AS side,
          p.size AS size,
          p.entry_price AS entry_price,
          p.unrealized_pnl AS unrealized_pnl,
          p.created_at AS created_at
        FROM positions p
        WHERE p.status = 'OPEN'
    """,
    "v_active_orders": """
        SELECT
          o.wallet_address AS wallet_address,
          o.order_id AS order_id,
          o.market AS market,
          o.side AS side,
          o.type AS type,
          o.status AS status,
          o.price AS price,
          o.size AS size,
          o.remaining_size AS remaining_size,
          o.created_at AS created_at
        FROM orders o
        WHERE o.status IN ({statuses})
    """.format(statuses=", ".join(f"'{s}'" for s in ACTIVE_ORDER_STATUSES)),
    "v_recent_transfers": """
        SELECT
          t.wallet_address AS wallet_address,
          t.type AS type,
          t.amount AS amount,
          t.token_symbol AS token_symbol,
          t.from_chain AS from_chain,
          t.to_chain AS to_chain,
          t.status AS status,
          t.tx_hash AS tx_hash,
          t.created_at AS created_at
        FROM transfers t
    """,
}


def create_view_sql(name: str) -> str:
    return f"CREATE VIEW IF NOT EXISTS {name} AS {VIEW_DEFINITIONS[name].strip()}"


def drop_view_sql(name: str) -> str:
    return f"DROP VIEW IF EXISTS {name}"


for _name in VIEW_DEFINITIONS:
    event.listen(Base.metadata, "after_create", DDL(create_view_sql(_name)))
    event.listen(Base.metadata, "before_drop", DDL(drop_view_sql(_name)))
