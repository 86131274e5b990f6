"""Session-state extraction.

Turns a client session-state snapshot (namespaced flat key/value pairs
plus a persisted application-state blob) into a ``SyncBatch`` owned by
the snapshot's primary wallet.

Every extracted field is resolved from an ordered tuple of named
sources in ``FIELD_SOURCES``. The first source holding a value of an
accepted type wins, so a structured value from the persisted blob beats
the flat key, and a flat key is only used when the blob is missing or
holds something of the wrong shape.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from offline_ledger_sync.sync.records import (
    AffiliateRecord,
    DismissedItemRecord,
    PreferencesRecord,
    RecordValidationError,
    SwapRecord,
    SyncBatch,
    SyncSource,
    TradingPreferencesRecord,
    TransferRecord,
    WalletLinkRecord,
    decimal_string,
    json_text,
    optional_text,
    parse_timestamp,
    required_text,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "blackbottle."
DEFAULT_LEDGER_CHAIN_ID = "blackbottle-mainnet-1"

# Wallet types whose address is the account on the ledger chain.
LEDGER_WALLET_TYPES: tuple[str, ...] = ("dydx", "blackbottle")
EVM_WALLET_TYPE = "evm"

_MISSING: Any = object()


class ExtractionError(Exception):
    """Raised when a snapshot cannot be attributed to any wallet."""


@dataclass(frozen=True)
class FieldSource:
    """One named place a field value may come from.

    ``origin`` is ``persisted`` (the application-state blob), ``exported``
    (sections of a pre-digested export) or ``flat`` (namespaced key/value
    pairs, looked up without the namespace prefix).
    """

    origin: str
    path: tuple[str, ...]
    accepts: tuple[type, ...]

    @property
    def name(self) -> str:
        return f"{self.origin}:{'.'.join(self.path)}"

    def lookup(self, snapshot: SessionSnapshot) -> Any:
        node: Any = snapshot.section(self.origin)
        for part in self.path:
            if not isinstance(node, Mapping) or part not in node:
                return _MISSING
            node = node[part]
        if node is None or node == "":
            return _MISSING
        if isinstance(node, bool) and bool not in self.accepts:
            return _MISSING
        if not isinstance(node, self.accepts):
            return _MISSING
        return node


def _persisted(*path: str, accepts: tuple[type, ...]) -> FieldSource:
    return FieldSource("persisted", path, accepts)


def _exported(*path: str, accepts: tuple[type, ...]) -> FieldSource:
    return FieldSource("exported", path, accepts)


def _flat(key: str, accepts: tuple[type, ...]) -> FieldSource:
    return FieldSource("flat", (key,), accepts)


_TEXT = (str,)
_FLAG = (bool,)
_NUMBER = (str, int, float)
_OBJECT = (dict,)
_LIST = (list,)

FIELD_SOURCES: dict[str, tuple[FieldSource, ...]] = {
    # Wallet addresses
    "ledger_address": (
        _persisted("wallet", "blackbottleAddress", accepts=_TEXT),
        _persisted("wallet", "dydxAddress", accepts=_TEXT),
        _flat("DydxAddress", _TEXT),
    ),
    "evm_address": (
        _persisted("wallet", "evmAddress", accepts=_TEXT),
        _flat("EvmAddress", _TEXT),
    ),
    "evm_chain_id": (
        _persisted("wallet", "evmChainId", accepts=(str, int)),
        _flat("EvmChainId", (str, int)),
    ),
    "solana_address": (
        _persisted("wallet", "solAddress", accepts=_TEXT),
        _flat("SolAddress", _TEXT),
    ),
    "noble_address": (_persisted("wallet", "nobleAddress", accepts=_TEXT),),
    # Preferences
    "locale": (
        _exported("preferences", "locale", accepts=_TEXT),
        _flat("SelectedLocale", _TEXT),
    ),
    "selected_network": (
        _exported("preferences", "network", accepts=_TEXT),
        _flat("SelectedNetwork", _TEXT),
    ),
    "color_mode": (
        _persisted("appUiConfigs", "theme", accepts=_TEXT),
        _exported("preferences", "colorMode", accepts=_TEXT),
    ),
    "has_acknowledged_terms": (
        _exported("preferences", "hasAcknowledgedTerms", accepts=_FLAG),
        _flat("OnboardingHasAcknowledgedTerms", _FLAG),
    ),
    "notifications_enabled": (
        _exported("preferences", "notificationsEnabled", accepts=_FLAG),
        _flat("PushNotificationsEnabled", _FLAG),
    ),
    "gas_preferences": (
        _exported("preferences", "gasPreferences", accepts=_OBJECT),
        _flat("SelectedGasDenom", _TEXT),
    ),
    # Trading preferences
    "default_slippage": (
        _persisted("appUiConfigs", "defaultSlippage", accepts=_NUMBER),
        _exported("tradingPreferences", "defaultSlippage", accepts=_NUMBER),
    ),
    "trade_layout": (
        _persisted("appUiConfigs", "tradeLayout", accepts=(dict, str)),
        _exported("tradingPreferences", "tradeLayout", accepts=(dict, str)),
        _flat("SelectedTradeLayout", (dict, str)),
    ),
    "chart_preferences": (
        _persisted("tradingView", accepts=_OBJECT),
        _exported("tradingPreferences", "chartPreferences", accepts=_OBJECT),
    ),
    "display_unit": (
        _persisted("appUiConfigs", "displayUnit", accepts=_TEXT),
        _exported("tradingPreferences", "displayUnit", accepts=_TEXT),
    ),
    "order_side_preference": (
        _exported("tradingPreferences", "orderSidePreference", accepts=_TEXT),
    ),
    # Collections
    "affiliates": (
        _persisted("affiliates", accepts=_OBJECT),
        _exported("affiliates", accepts=_OBJECT),
    ),
    "dismissed_flags": (_persisted("dismissable", accepts=_OBJECT),),
    "dismissed_items": (_exported("dismissedItems", accepts=_LIST),),
    "transfers_by_account": (
        _persisted("transfers", "transfersByDydxAddress", accepts=_OBJECT),
        _exported("transfers", "transfersByDydxAddress", accepts=_OBJECT),
    ),
    "transfers": (
        _persisted("transfers", accepts=_LIST),
        _exported("transfers", accepts=_LIST),
    ),
    "swaps": (
        _persisted("swaps", accepts=_LIST),
        _persisted("swaps", "swaps", accepts=_LIST),
        _exported("swaps", accepts=_LIST),
    ),
    "wallets": (_exported("wallets", accepts=_LIST),),
}

_EXPORTED_SECTIONS = (
    "wallets",
    "preferences",
    "tradingPreferences",
    "dismissedItems",
    "affiliates",
    "transfers",
    "swaps",
)

_TRANSFER_STATUS = {
    "SUCCESS": "CONFIRMED",
    "ERROR": "FAILED",
    "IDLE": "PENDING",
}


def _decode(value: Any) -> Any:
    """Decode JSON-encoded strings, keeping plain strings as they are."""
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return value


@dataclass(frozen=True)
class SessionSnapshot:
    """A session-state snapshot split into its three origins."""

    flat: Mapping[str, Any] = field(default_factory=dict)
    persisted: Mapping[str, Any] = field(default_factory=dict)
    exported: Mapping[str, Any] = field(default_factory=dict)

    def section(self, origin: str) -> Mapping[str, Any]:
        if origin == "flat":
            return self.flat
        if origin == "persisted":
            return self.persisted
        if origin == "exported":
            return self.exported
        raise ValueError(f"unknown snapshot origin: {origin}")

    @classmethod
    def from_payload(
        cls, payload: Mapping[str, Any], *, key_prefix: str = DEFAULT_KEY_PREFIX
    ) -> SessionSnapshot:
        """Build a snapshot from a raw or exported payload.

        Raw payloads carry ``localStorage`` and ``persistedState``
        (``persist:root`` style; section values may be JSON strings).
        Exported payloads carry pre-digested sections such as ``wallets``
        and ``preferences`` and may also include ``localStorage``.

        Raises:
            ExtractionError: If the payload is not a JSON object.
        """
        if not isinstance(payload, Mapping):
            raise ExtractionError("session-state payload must be a JSON object")

        raw_flat = payload.get("localStorage") or {}
        if not isinstance(raw_flat, Mapping):
            raise ExtractionError("localStorage must be an object")
        flat: dict[str, Any] = {}
        for key, value in raw_flat.items():
            if isinstance(key, str) and key.startswith(key_prefix):
                flat[key[len(key_prefix) :]] = _decode(value)

        raw_persisted = _decode(payload.get("persistedState") or payload.get("persist:root") or {})
        if not isinstance(raw_persisted, Mapping):
            raise ExtractionError("persistedState must be an object")
        persisted = {
            key: _decode(value) for key, value in raw_persisted.items() if key != "_persist"
        }

        exported = {key: payload[key] for key in _EXPORTED_SECTIONS if key in payload}
        return cls(flat=flat, persisted=persisted, exported=exported)


class SessionStateExtractor:
    """Normalizes session-state snapshots into sync batches."""

    def __init__(
        self,
        *,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        ledger_chain_id: str = DEFAULT_LEDGER_CHAIN_ID,
        field_sources: Mapping[str, tuple[FieldSource, ...]] | None = None,
    ) -> None:
        self.key_prefix = key_prefix
        self.ledger_chain_id = ledger_chain_id
        self.field_sources = dict(field_sources or FIELD_SOURCES)

    def resolve(self, snapshot: SessionSnapshot, field_name: str, default: Any = None) -> Any:
        """Return the first accepted value for a field, in source order."""
        for source in self.field_sources.get(field_name, ()):
            value = source.lookup(snapshot)
            if value is not _MISSING:
                logger.debug("Field %s resolved from %s", field_name, source.name)
                return value
        return default

    def extract_payload(self, payload: Mapping[str, Any]) -> SyncBatch:
        return self.extract(SessionSnapshot.from_payload(payload, key_prefix=self.key_prefix))

    def extract(self, snapshot: SessionSnapshot) -> SyncBatch:
        """Extract a batch owned by the snapshot's primary wallet.

        Raises:
            ExtractionError: If no wallet address can be extracted.
        """
        wallets = self._wallet_candidates(snapshot)
        primary = self._choose_primary(wallets)
        if primary is None:
            raise ExtractionError("No wallet address found in session state")

        account_id = primary.address
        batch = SyncBatch(source=SyncSource.SESSION_STATE, account_id=account_id)
        batch.extend(
            WalletLinkRecord(
                wallet_type=w.wallet_type,
                address=w.address,
                chain_id=w.chain_id,
                is_primary=w.address == account_id,
            )
            for w in wallets
        )

        self._collect(batch, "Preferences", lambda: [self._preferences(snapshot, account_id)])
        self._collect(
            batch, "Trading preferences", lambda: [self._trading_preferences(snapshot, account_id)]
        )
        batch.extend(self._dismissed_items(snapshot, account_id))
        affiliate = self._affiliate(snapshot, account_id)
        if affiliate is not None:
            batch.extend([affiliate])

        for item in self._transfer_items(snapshot, account_id):
            self._collect(
                batch,
                f"Transfer {item.get('id', '?')}",
                lambda item=item: [self._transfer(item, account_id)],
            )
        for item in self.resolve(snapshot, "swaps", default=[]):
            self._collect(
                batch,
                f"Swap {item.get('id', '?') if isinstance(item, Mapping) else '?'}",
                lambda item=item: [self._swap(item, account_id)],
            )

        logger.info(
            "Extracted %d records (%d wallets) for %s", len(batch), len(wallets), account_id
        )
        return batch

    def _collect(self, batch: SyncBatch, label: str, build: Any) -> None:
        try:
            records = build()
        except (RecordValidationError, TypeError, AttributeError) as e:
            logger.warning("Skipping %s: %s", label, e)
            batch.errors.append(f"{label}: {e}")
            return
        batch.extend(r for r in records if r is not None)

    # ------------------------------------------------------------------
    # Wallets
    # ------------------------------------------------------------------

    def _wallet_candidates(self, snapshot: SessionSnapshot) -> list[WalletLinkRecord]:
        candidates: list[WalletLinkRecord] = []

        for item in self.resolve(snapshot, "wallets", default=[]):
            if not isinstance(item, Mapping):
                continue
            address = optional_text(item.get("address"))
            wallet_type = optional_text(item.get("type"))
            if address and wallet_type:
                candidates.append(
                    WalletLinkRecord(
                        wallet_type=wallet_type,
                        address=address,
                        chain_id=optional_text(item.get("chainId")),
                    )
                )

        evm_chain = optional_text(self.resolve(snapshot, "evm_chain_id")) or "1"
        derived = (
            ("blackbottle", "ledger_address", self.ledger_chain_id),
            (EVM_WALLET_TYPE, "evm_address", evm_chain),
            ("solana", "solana_address", "mainnet-beta"),
            ("cosmos", "noble_address", "noble-1"),
        )
        for wallet_type, field_name, chain_id in derived:
            address = optional_text(self.resolve(snapshot, field_name))
            if address:
                candidates.append(
                    WalletLinkRecord(wallet_type=wallet_type, address=address, chain_id=chain_id)
                )

        seen: set[tuple[str, str]] = set()
        unique: list[WalletLinkRecord] = []
        for wallet in candidates:
            marker = (wallet.wallet_type, wallet.address)
            if marker not in seen:
                seen.add(marker)
                unique.append(wallet)
        return unique

    @staticmethod
    def _choose_primary(wallets: list[WalletLinkRecord]) -> WalletLinkRecord | None:
        for wallet in wallets:
            if wallet.wallet_type in LEDGER_WALLET_TYPES:
                return wallet
        for wallet in wallets:
            if wallet.wallet_type == EVM_WALLET_TYPE:
                return wallet
        return wallets[0] if wallets else None

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------

    def _preferences(self, snapshot: SessionSnapshot, account_id: str) -> PreferencesRecord | None:
        names = (
            "locale",
            "selected_network",
            "color_mode",
            "has_acknowledged_terms",
            "notifications_enabled",
            "gas_preferences",
        )
        values = {name: self.resolve(snapshot, name) for name in names}
        if all(v is None for v in values.values()):
            return None

        gas = values["gas_preferences"]
        if isinstance(gas, str):
            gas = {"denom": gas}
        return PreferencesRecord(
            wallet_address=account_id,
            locale=values["locale"],
            selected_network=values["selected_network"],
            color_mode=values["color_mode"],
            has_acknowledged_terms=bool(values["has_acknowledged_terms"]),
            notifications_enabled=(
                True if values["notifications_enabled"] is None else values["notifications_enabled"]
            ),
            gas_preferences=json_text(gas) if gas is not None else None,
        )

    def _trading_preferences(
        self, snapshot: SessionSnapshot, account_id: str
    ) -> TradingPreferencesRecord | None:
        slippage = self.resolve(snapshot, "default_slippage")
        layout = self.resolve(snapshot, "trade_layout")
        chart = self.resolve(snapshot, "chart_preferences")
        display_unit = self.resolve(snapshot, "display_unit")
        side = self.resolve(snapshot, "order_side_preference")
        if all(v is None for v in (slippage, layout, chart, display_unit, side)):
            return None

        if isinstance(layout, str):
            layout = {"layout": layout}
        return TradingPreferencesRecord(
            wallet_address=account_id,
            default_slippage=decimal_string(slippage, "defaultSlippage", default=None),
            trade_layout=json_text(layout),
            chart_preferences=json_text(chart),
            order_side_preference=side,
            display_unit=display_unit or "ASSET",
        )

    def _dismissed_items(
        self, snapshot: SessionSnapshot, account_id: str
    ) -> Iterable[DismissedItemRecord]:
        now = utc_now()
        keys: dict[str, Any] = {}
        flags = self.resolve(snapshot, "dismissed_flags", default={})
        for key, value in flags.items():
            if value is True:
                keys.setdefault(str(key), now)
        for item in self.resolve(snapshot, "dismissed_items", default=[]):
            if isinstance(item, Mapping) and optional_text(item.get("key")):
                try:
                    dismissed_at = parse_timestamp(item.get("dismissedAt"), default=now)
                except RecordValidationError:
                    dismissed_at = now
                keys.setdefault(str(item["key"]).strip(), dismissed_at)
        return [
            DismissedItemRecord(wallet_address=account_id, item_key=key, dismissed_at=at)
            for key, at in keys.items()
        ]

    def _affiliate(self, snapshot: SessionSnapshot, account_id: str) -> AffiliateRecord | None:
        data = self.resolve(snapshot, "affiliates")
        if not data:
            return None
        return AffiliateRecord(
            wallet_address=account_id,
            affiliate_address=optional_text(data.get("address")),
            affiliate_metadata=json_text(data),
        )

    # ------------------------------------------------------------------
    # Transfers and swaps
    # ------------------------------------------------------------------

    def _transfer_items(self, snapshot: SessionSnapshot, account_id: str) -> list[Mapping[str, Any]]:
        by_account = self.resolve(snapshot, "transfers_by_account")
        if by_account is not None:
            if isinstance(by_account.get(account_id), list):
                items = by_account[account_id]
            else:
                items = [t for group in by_account.values() if isinstance(group, list) for t in group]
        else:
            items = self.resolve(snapshot, "transfers", default=[])
        return [item for item in items if isinstance(item, Mapping)]

    def _transfer(self, item: Mapping[str, Any], account_id: str) -> TransferRecord:
        now = utc_now()
        tx_hash = optional_text(item.get("txHash") or item.get("txSignature"))
        if tx_hash is None:
            for sub in item.get("transactions") or []:
                if isinstance(sub, Mapping) and optional_text(sub.get("txHash")):
                    tx_hash = optional_text(sub["txHash"])
                    break

        token = item.get("token")
        if isinstance(token, Mapping):
            token_symbol = optional_text(token.get("symbol"))
            token_denom = optional_text(token.get("denom"))
        else:
            token_symbol = optional_text(token)
            token_denom = optional_text(item.get("denom"))

        status = (optional_text(item.get("status")) or "PENDING").upper()
        created_at = parse_timestamp(item.get("createdAt") or item.get("updatedAt"), default=now)
        return TransferRecord(
            wallet_address=account_id,
            transfer_id=optional_text(item.get("id")),
            tx_hash=tx_hash,
            type=(optional_text(item.get("type")) or "TRANSFER").upper(),
            status=_TRANSFER_STATUS.get(status, status),
            from_address=optional_text(item.get("fromAddress")),
            to_address=optional_text(item.get("toAddress") or item.get("destinationAddress")),
            from_chain=optional_text(item.get("fromChainId") or item.get("chainId")),
            to_chain=optional_text(item.get("toChainId") or item.get("destinationChainId")),
            amount=decimal_string(
                item.get("amount") or item.get("tokenAmount") or item.get("size"), "amount"
            ),
            token_symbol=token_symbol or optional_text(item.get("symbol")) or "USDC",
            token_denom=token_denom,
            fee=decimal_string(item.get("fee"), "fee", default=None),
            created_at=created_at,
            updated_at=parse_timestamp(item.get("updatedAt"), default=created_at),
        )

    def _swap(self, item: Mapping[str, Any], account_id: str) -> SwapRecord:
        now = utc_now()
        created_at = parse_timestamp(item.get("createdAt") or item.get("updatedAt"), default=now)
        return SwapRecord(
            wallet_address=account_id,
            swap_id=optional_text(item.get("id")),
            tx_hash=optional_text(item.get("txHash")),
            from_chain=required_text(item.get("fromChainId"), "fromChainId"),
            to_chain=required_text(item.get("toChainId"), "toChainId"),
            from_token=required_text(item.get("fromToken"), "fromToken"),
            to_token=required_text(item.get("toToken"), "toToken"),
            from_amount=decimal_string(item.get("fromAmount"), "fromAmount"),
            to_amount=decimal_string(item.get("toAmount"), "toAmount", default=None),
            estimated_to_amount=decimal_string(
                item.get("estimatedToAmount"), "estimatedToAmount", default=None
            ),
            route_data=json_text(item.get("route")),
            status=(optional_text(item.get("status")) or "PENDING").upper(),
            created_at=created_at,
            updated_at=parse_timestamp(item.get("updatedAt"), default=created_at),
        )
