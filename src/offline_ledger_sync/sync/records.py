"""Normalized sync records.

Every record produced by the session-state extractor or the remote fetcher
is one of the frozen dataclasses below. Each class carries a ``category``
discriminant so the orchestrator can dispatch on it without inspecting the
record's shape.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar


class RecordValidationError(ValueError):
    """Raised when a record field cannot be normalized."""


class RecordCategory(str, Enum):
    """Discriminant for every record kind the store knows about."""

    WALLETS = "wallets"
    PREFERENCES = "preferences"
    TRADING_PREFERENCES = "tradingPreferences"
    DISMISSED_ITEMS = "dismissedItems"
    AFFILIATES = "affiliates"
    BALANCES = "balances"
    POSITIONS = "positions"
    ORDERS = "orders"
    FILLS = "fills"
    TRANSFERS = "transfers"
    SWAPS = "swaps"
    MARKETS = "markets"


class DataCategory(str, Enum):
    """Sync ledger bucket; one ledger row per (wallet, data category)."""

    SESSION_STATE = "session_state"
    LEDGER_DATA = "ledger_data"


class SyncSource(str, Enum):
    """Origin of a batch."""

    SESSION_STATE = "session_state"
    LEDGER = "ledger"

    @property
    def data_category(self) -> DataCategory:
        if self is SyncSource.SESSION_STATE:
            return DataCategory.SESSION_STATE
        return DataCategory.LEDGER_DATA


class SyncStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


# Write order within one pass. Orders precede fills so a fill never
# references an order that the same batch has not written yet.
CATEGORY_ORDER: tuple[RecordCategory, ...] = (
    RecordCategory.WALLETS,
    RecordCategory.PREFERENCES,
    RecordCategory.TRADING_PREFERENCES,
    RecordCategory.DISMISSED_ITEMS,
    RecordCategory.AFFILIATES,
    RecordCategory.MARKETS,
    RecordCategory.BALANCES,
    RecordCategory.POSITIONS,
    RecordCategory.ORDERS,
    RecordCategory.FILLS,
    RecordCategory.TRANSFERS,
    RecordCategory.SWAPS,
)

SESSION_STATE_CATEGORIES: tuple[RecordCategory, ...] = (
    RecordCategory.WALLETS,
    RecordCategory.PREFERENCES,
    RecordCategory.TRADING_PREFERENCES,
    RecordCategory.DISMISSED_ITEMS,
    RecordCategory.AFFILIATES,
    RecordCategory.TRANSFERS,
    RecordCategory.SWAPS,
)

LEDGER_CATEGORIES: tuple[RecordCategory, ...] = (
    RecordCategory.BALANCES,
    RecordCategory.POSITIONS,
    RecordCategory.ORDERS,
    RecordCategory.FILLS,
    RecordCategory.TRANSFERS,
    RecordCategory.MARKETS,
)


def utc_now() -> datetime:
    return datetime.now(UTC)


def decimal_string(value: Any, field_name: str, *, default: str | None = "0") -> str | None:
    """Normalize a numeric value to a decimal-safe string.

    Floats are converted through ``str`` so that ``0.1`` stays ``"0.1"``.
    Missing values fall back to ``default``.

    Raises:
        RecordValidationError: If the value is present but not numeric.
    """
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise RecordValidationError(f"{field_name} must be numeric, got bool")
    try:
        parsed = Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as e:
        raise RecordValidationError(f"{field_name} is not a decimal value: {value!r}") from e
    if not parsed.is_finite():
        raise RecordValidationError(f"{field_name} is not finite: {value!r}")
    return str(value).strip()


def required_text(value: Any, field_name: str) -> str:
    if value is None:
        raise RecordValidationError(f"{field_name} is required")
    text = str(value).strip()
    if not text:
        raise RecordValidationError(f"{field_name} is required")
    return text


def optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def json_text(value: Any) -> str:
    return json.dumps(value if value is not None else {}, sort_keys=True, default=str)


def parse_timestamp(value: Any, *, default: datetime | None = None) -> datetime | None:
    """Parse ISO-8601 strings or epoch milliseconds into aware datetimes."""
    if value is None or value == "":
        return default
    if isinstance(value, datetime):
        return value.astimezone(UTC) if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, int | float) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(float(value) / 1000.0, tz=UTC)
        except (OverflowError, OSError, ValueError) as e:
            raise RecordValidationError(f"timestamp out of range: {value!r}") from e
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as e:
        raise RecordValidationError(f"invalid timestamp: {value!r}") from e
    return parsed.astimezone(UTC) if parsed.tzinfo else parsed.replace(tzinfo=UTC)


@dataclass(frozen=True)
class WalletLinkRecord:
    category: ClassVar[RecordCategory] = RecordCategory.WALLETS

    wallet_type: str
    address: str
    chain_id: str | None = None
    is_primary: bool = False

    @property
    def key(self) -> str:
        return f"{self.wallet_type}:{self.address}:{self.chain_id or ''}"


@dataclass(frozen=True)
class PreferencesRecord:
    category: ClassVar[RecordCategory] = RecordCategory.PREFERENCES

    wallet_address: str
    locale: str | None = None
    selected_network: str | None = None
    color_mode: str | None = None
    has_acknowledged_terms: bool = False
    notifications_enabled: bool = True
    gas_preferences: str | None = None

    @property
    def key(self) -> str:
        return self.wallet_address


@dataclass(frozen=True)
class TradingPreferencesRecord:
    category: ClassVar[RecordCategory] = RecordCategory.TRADING_PREFERENCES

    wallet_address: str
    default_slippage: str | None = None
    trade_layout: str = "{}"
    chart_preferences: str = "{}"
    order_side_preference: str | None = None
    display_unit: str = "ASSET"

    @property
    def key(self) -> str:
        return self.wallet_address


@dataclass(frozen=True)
class DismissedItemRecord:
    category: ClassVar[RecordCategory] = RecordCategory.DISMISSED_ITEMS

    wallet_address: str
    item_key: str
    dismissed_at: datetime = field(default_factory=utc_now)

    @property
    def key(self) -> str:
        return self.item_key


@dataclass(frozen=True)
class AffiliateRecord:
    category: ClassVar[RecordCategory] = RecordCategory.AFFILIATES

    wallet_address: str
    affiliate_address: str | None = None
    affiliate_metadata: str = "{}"

    @property
    def key(self) -> str:
        return self.wallet_address


@dataclass(frozen=True)
class BalanceRecord:
    category: ClassVar[RecordCategory] = RecordCategory.BALANCES

    wallet_address: str
    chain_id: str
    token_symbol: str
    balance: str
    token_denom: str = ""
    available_balance: str | None = None
    locked_balance: str | None = None

    @property
    def key(self) -> str:
        if self.token_denom:
            return f"{self.chain_id}/{self.token_symbol}/{self.token_denom}"
        return f"{self.chain_id}/{self.token_symbol}"


@dataclass(frozen=True)
class PositionRecord:
    category: ClassVar[RecordCategory] = RecordCategory.POSITIONS

    wallet_address: str
    position_id: str
    market: str
    side: str
    size: str
    status: str = "OPEN"
    max_size: str | None = None
    entry_price: str | None = None
    exit_price: str | None = None
    realized_pnl: str = "0"
    unrealized_pnl: str = "0"
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    closed_at: datetime | None = None

    @property
    def key(self) -> str:
        return self.position_id


@dataclass(frozen=True)
class OrderRecord:
    category: ClassVar[RecordCategory] = RecordCategory.ORDERS

    wallet_address: str
    order_id: str
    market: str
    side: str
    type: str
    status: str
    size: str
    client_id: str | None = None
    price: str | None = None
    trigger_price: str | None = None
    remaining_size: str | None = None
    post_only: bool = False
    reduce_only: bool = False
    time_in_force: str | None = None
    good_til_block: int | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def key(self) -> str:
        return self.order_id


@dataclass(frozen=True)
class FillRecord:
    category: ClassVar[RecordCategory] = RecordCategory.FILLS

    wallet_address: str
    fill_id: str
    order_id: str
    market: str
    side: str
    size: str
    price: str
    fee: str = "0"
    liquidity: str | None = None
    created_at: datetime = field(default_factory=utc_now)

    @property
    def key(self) -> str:
        return self.fill_id


@dataclass(frozen=True)
class TransferRecord:
    category: ClassVar[RecordCategory] = RecordCategory.TRANSFERS

    wallet_address: str
    type: str
    status: str
    amount: str
    token_symbol: str
    transfer_id: str | None = None
    tx_hash: str | None = None
    from_address: str | None = None
    to_address: str | None = None
    from_chain: str | None = None
    to_chain: str | None = None
    token_denom: str | None = None
    fee: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def key(self) -> str:
        return self.tx_hash or self.transfer_id or "?"


@dataclass(frozen=True)
class SwapRecord:
    category: ClassVar[RecordCategory] = RecordCategory.SWAPS

    wallet_address: str
    from_chain: str
    to_chain: str
    from_token: str
    to_token: str
    from_amount: str
    status: str
    tx_hash: str | None = None
    swap_id: str | None = None
    to_amount: str | None = None
    estimated_to_amount: str | None = None
    route_data: str = "{}"
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def key(self) -> str:
        return self.tx_hash or self.swap_id or "?"


@dataclass(frozen=True)
class MarketRecord:
    category: ClassVar[RecordCategory] = RecordCategory.MARKETS

    market_id: str
    base_asset: str
    quote_asset: str
    tick_size: str
    step_size: str
    min_order_size: str
    initial_margin_fraction: str | None = None
    maintenance_margin_fraction: str | None = None
    status: str = "ACTIVE"

    @property
    def key(self) -> str:
        return self.market_id


SyncRecord = (
    WalletLinkRecord
    | PreferencesRecord
    | TradingPreferencesRecord
    | DismissedItemRecord
    | AffiliateRecord
    | BalanceRecord
    | PositionRecord
    | OrderRecord
    | FillRecord
    | TransferRecord
    | SwapRecord
    | MarketRecord
)

# Decimal-string fields checked before a record is written.
NUMERIC_FIELDS: dict[RecordCategory, tuple[str, ...]] = {
    RecordCategory.TRADING_PREFERENCES: ("default_slippage",),
    RecordCategory.BALANCES: ("balance", "available_balance", "locked_balance"),
    RecordCategory.POSITIONS: (
        "size",
        "max_size",
        "entry_price",
        "exit_price",
        "realized_pnl",
        "unrealized_pnl",
    ),
    RecordCategory.ORDERS: ("price", "trigger_price", "size", "remaining_size"),
    RecordCategory.FILLS: ("size", "price", "fee"),
    RecordCategory.TRANSFERS: ("amount", "fee"),
    RecordCategory.SWAPS: ("from_amount", "to_amount", "estimated_to_amount"),
    RecordCategory.MARKETS: (
        "tick_size",
        "step_size",
        "min_order_size",
        "initial_margin_fraction",
        "maintenance_margin_fraction",
    ),
}


def validate_record(record: SyncRecord) -> None:
    """Raise RecordValidationError if any numeric field is not a decimal."""
    for name in NUMERIC_FIELDS.get(record.category, ()):
        value = getattr(record, name)
        if value is not None:
            decimal_string(value, name)


@dataclass
class SyncBatch:
    """A normalized set of records destined for one account.

    ``errors`` holds items that could not be normalized at all; they are
    reported with the pass but never reach the store.
    """

    source: SyncSource
    account_id: str
    records: list[SyncRecord] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def extend(self, records: Iterable[SyncRecord]) -> None:
        self.records.extend(records)

    def by_category(self) -> list[tuple[RecordCategory, list[SyncRecord]]]:
        """Group records by category, in write order."""
        grouped: dict[RecordCategory, list[SyncRecord]] = {}
        for record in self.records:
            grouped.setdefault(record.category, []).append(record)
        return [(category, grouped[category]) for category in CATEGORY_ORDER if category in grouped]

    def expected_categories(self) -> tuple[RecordCategory, ...]:
        if self.source is SyncSource.SESSION_STATE:
            return SESSION_STATE_CATEGORIES
        return LEDGER_CATEGORIES

    def __len__(self) -> int:
        return len(self.records)


@dataclass
class SyncResult:
    """Outcome of one sync pass, returned to callers instead of raising."""

    success: bool
    timestamp: datetime
    synced: dict[str, int]
    errors: list[str]
    status: SyncStatus

    @property
    def total(self) -> int:
        return sum(self.synced.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "timestamp": self.timestamp.isoformat(),
            "synced": dict(self.synced),
            "errors": list(self.errors),
            "status": self.status.value,
        }
