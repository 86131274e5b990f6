"""Tests for session-state extraction."""

import json

import pytest

from offline_ledger_sync.sync.extractor import (
    ExtractionError,
    SessionSnapshot,
    SessionStateExtractor,
)
from offline_ledger_sync.sync.records import (
    AffiliateRecord,
    DismissedItemRecord,
    PreferencesRecord,
    SwapRecord,
    SyncSource,
    TradingPreferencesRecord,
    TransferRecord,
    WalletLinkRecord,
)


def _of_type(batch, cls):
    return [r for r in batch.records if isinstance(r, cls)]


@pytest.fixture
def extractor() -> SessionStateExtractor:
    return SessionStateExtractor()


# ============================================================================
# Snapshot parsing
# ============================================================================


class TestSessionSnapshot:
    """Tests for SessionSnapshot.from_payload."""

    def test_prefix_stripped_and_values_decoded(self) -> None:
        snapshot = SessionSnapshot.from_payload(
            {
                "localStorage": {
                    "blackbottle.SelectedLocale": '"de"',
                    "blackbottle.OnboardingHasAcknowledgedTerms": "true",
                    "blackbottle.SelectedNetwork": "mainnet",
                    "someoneElse.Key": "ignored",
                }
            }
        )

        assert snapshot.flat == {
            "SelectedLocale": "de",
            "OnboardingHasAcknowledgedTerms": True,
            "SelectedNetwork": "mainnet",
        }

    def test_persisted_sections_decoded(self) -> None:
        """persist:root stores every section as a JSON string."""
        snapshot = SessionSnapshot.from_payload(
            {
                "persist:root": json.dumps(
                    {
                        "wallet": json.dumps({"dydxAddress": "blackbottle1abc"}),
                        "_persist": json.dumps({"version": 3}),
                    }
                )
            }
        )

        assert snapshot.persisted == {"wallet": {"dydxAddress": "blackbottle1abc"}}

    def test_non_object_payload_rejected(self) -> None:
        with pytest.raises(ExtractionError):
            SessionSnapshot.from_payload(["not", "an", "object"])  # type: ignore[arg-type]

    def test_non_object_local_storage_rejected(self) -> None:
        with pytest.raises(ExtractionError):
            SessionSnapshot.from_payload({"localStorage": "nope"})


# ============================================================================
# Wallets
# ============================================================================


class TestWallets:
    """Tests for wallet resolution and primary selection."""

    def test_persisted_address_beats_flat_key(
        self, extractor: SessionStateExtractor, account_id: str, other_account_id: str
    ) -> None:
        batch = extractor.extract_payload(
            {
                "localStorage": {"blackbottle.DydxAddress": json.dumps(other_account_id)},
                "persistedState": {"wallet": {"dydxAddress": account_id}},
            }
        )

        assert batch.account_id == account_id
        assert batch.source is SyncSource.SESSION_STATE

    def test_flat_key_used_when_blob_missing(
        self, extractor: SessionStateExtractor, account_id: str
    ) -> None:
        batch = extractor.extract_payload(
            {"localStorage": {"blackbottle.DydxAddress": json.dumps(account_id)}}
        )

        assert batch.account_id == account_id

    def test_wrong_shape_falls_through(
        self, extractor: SessionStateExtractor, account_id: str
    ) -> None:
        """A persisted value of the wrong type does not shadow the flat key."""
        batch = extractor.extract_payload(
            {
                "localStorage": {"blackbottle.DydxAddress": json.dumps(account_id)},
                "persistedState": {"wallet": {"dydxAddress": {"unexpected": True}}},
            }
        )

        assert batch.account_id == account_id

    def test_ledger_wallet_is_primary(
        self, extractor: SessionStateExtractor, account_id: str
    ) -> None:
        batch = extractor.extract_payload(
            {
                "localStorage": {"blackbottle.EvmChainId": "42161"},
                "persistedState": {
                    "wallet": {"evmAddress": "0xAbC", "dydxAddress": account_id},
                },
            }
        )

        links = {link.wallet_type: link for link in _of_type(batch, WalletLinkRecord)}
        assert batch.account_id == account_id
        assert links["blackbottle"].is_primary is True
        assert links["blackbottle"].chain_id == "blackbottle-mainnet-1"
        assert links["evm"].is_primary is False
        assert links["evm"].chain_id == "42161"

    def test_persisted_evm_chain_beats_flat_key(
        self, extractor: SessionStateExtractor, account_id: str
    ) -> None:
        batch = extractor.extract_payload(
            {
                "localStorage": {"blackbottle.EvmChainId": "42161"},
                "persistedState": {
                    "wallet": {"evmAddress": "0xabc", "evmChainId": 10, "dydxAddress": account_id},
                },
            }
        )

        links = {link.wallet_type: link for link in _of_type(batch, WalletLinkRecord)}
        assert links["evm"].chain_id == "10"

    def test_evm_wallet_used_without_ledger_address(
        self, extractor: SessionStateExtractor
    ) -> None:
        batch = extractor.extract_payload(
            {"persistedState": {"wallet": {"evmAddress": "0xabc", "solAddress": "So1"}}}
        )

        assert batch.account_id == "0xabc"

    def test_exported_wallets(self, extractor: SessionStateExtractor, account_id: str) -> None:
        batch = extractor.extract_payload(
            {
                "wallets": [
                    {"address": "0xabc", "type": "evm", "chainId": "1"},
                    {"address": account_id, "type": "dydx", "chainId": "dydx-mainnet-1"},
                ]
            }
        )

        assert batch.account_id == account_id
        assert len(_of_type(batch, WalletLinkRecord)) == 2

    def test_no_address_raises(self, extractor: SessionStateExtractor) -> None:
        with pytest.raises(ExtractionError, match="No wallet address"):
            extractor.extract_payload(
                {"localStorage": {"blackbottle.SelectedLocale": '"en"'}}
            )


# ============================================================================
# Preferences and collections
# ============================================================================


class TestPreferences:
    """Tests for preference extraction."""

    def test_preferences_from_flat_and_persisted(
        self, extractor: SessionStateExtractor, account_id: str
    ) -> None:
        batch = extractor.extract_payload(
            {
                "localStorage": {
                    "blackbottle.SelectedLocale": '"fr"',
                    "blackbottle.SelectedGasDenom": '"uusdc"',
                },
                "persistedState": {
                    "wallet": {"dydxAddress": account_id},
                    "appUiConfigs": {"theme": "dark", "defaultSlippage": 0.005},
                },
            }
        )

        [prefs] = _of_type(batch, PreferencesRecord)
        [trading] = _of_type(batch, TradingPreferencesRecord)
        assert prefs.locale == "fr"
        assert prefs.color_mode == "dark"
        assert prefs.notifications_enabled is True
        assert json.loads(prefs.gas_preferences) == {"denom": "uusdc"}
        assert trading.default_slippage == "0.005"
        assert trading.display_unit == "ASSET"

    def test_no_preferences_means_no_record(
        self, extractor: SessionStateExtractor, account_id: str
    ) -> None:
        batch = extractor.extract_payload({"persistedState": {"wallet": {"dydxAddress": account_id}}})

        assert _of_type(batch, PreferencesRecord) == []
        assert _of_type(batch, TradingPreferencesRecord) == []

    def test_dismissed_flags_and_affiliate(
        self, extractor: SessionStateExtractor, account_id: str
    ) -> None:
        batch = extractor.extract_payload(
            {
                "persistedState": {
                    "wallet": {"dydxAddress": account_id},
                    "dismissable": {"hasSeenLaunchIncentives": True, "hasSeenElection": False},
                    "affiliates": {"address": "blackbottle1ref", "code": "ALICE"},
                }
            }
        )

        dismissed = _of_type(batch, DismissedItemRecord)
        [affiliate] = _of_type(batch, AffiliateRecord)
        assert [d.item_key for d in dismissed] == ["hasSeenLaunchIncentives"]
        assert affiliate.affiliate_address == "blackbottle1ref"
        assert json.loads(affiliate.affiliate_metadata)["code"] == "ALICE"


class TestTransfersAndSwaps:
    """Tests for transfer and swap extraction."""

    def test_transfer_status_mapping(
        self, extractor: SessionStateExtractor, account_id: str
    ) -> None:
        batch = extractor.extract_payload(
            {
                "persistedState": {
                    "wallet": {"dydxAddress": account_id},
                    "transfers": {
                        "transfersByDydxAddress": {
                            account_id: [
                                {
                                    "id": "t1",
                                    "type": "deposit",
                                    "status": "success",
                                    "txHash": "0x1",
                                    "amount": "10",
                                    "token": {"symbol": "USDC", "denom": "uusdc"},
                                },
                                {"id": "t2", "status": "ERROR", "amount": 5},
                                {"id": "t3", "status": "IDLE", "amount": "1"},
                                {"id": "t4", "status": "PENDING", "amount": "2"},
                            ]
                        }
                    },
                }
            }
        )

        transfers = {t.transfer_id: t for t in _of_type(batch, TransferRecord)}
        assert transfers["t1"].status == "CONFIRMED"
        assert transfers["t1"].type == "DEPOSIT"
        assert transfers["t1"].token_denom == "uusdc"
        assert transfers["t2"].status == "FAILED"
        assert transfers["t2"].amount == "5"
        assert transfers["t3"].status == "PENDING"
        assert transfers["t4"].status == "PENDING"

    def test_transfer_hash_from_nested_transactions(
        self, extractor: SessionStateExtractor, account_id: str
    ) -> None:
        batch = extractor.extract_payload(
            {
                "persistedState": {
                    "wallet": {"dydxAddress": account_id},
                    "transfers": [
                        {"id": "t1", "amount": "3", "transactions": [{"txHash": "0xnested"}]}
                    ],
                }
            }
        )

        [transfer] = _of_type(batch, TransferRecord)
        assert transfer.tx_hash == "0xnested"

    def test_bad_amount_goes_to_errors(
        self, extractor: SessionStateExtractor, account_id: str
    ) -> None:
        batch = extractor.extract_payload(
            {
                "persistedState": {
                    "wallet": {"dydxAddress": account_id},
                    "transfers": [{"id": "t1", "amount": "lots"}],
                }
            }
        )

        assert _of_type(batch, TransferRecord) == []
        assert len(batch.errors) == 1
        assert batch.errors[0].startswith("Transfer t1:")

    def test_out_of_range_timestamp_goes_to_errors(
        self, extractor: SessionStateExtractor, account_id: str
    ) -> None:
        """An epoch the platform cannot represent rejects only that transfer."""
        batch = extractor.extract_payload(
            {
                "persistedState": {
                    "wallet": {"dydxAddress": account_id},
                    "transfers": [
                        {"id": "t1", "amount": "3", "createdAt": 1772366400000},
                        {"id": "t2", "amount": "4", "createdAt": 10**20},
                    ],
                }
            }
        )

        [transfer] = _of_type(batch, TransferRecord)
        assert transfer.transfer_id == "t1"
        assert len(batch.errors) == 1
        assert batch.errors[0].startswith("Transfer t2:")
        assert "out of range" in batch.errors[0]

    def test_malformed_swap_goes_to_errors(
        self, extractor: SessionStateExtractor, account_id: str
    ) -> None:
        """A swap missing required fields is reported, others still extracted."""
        good = {
            "id": "s1",
            "txHash": "0xswap",
            "fromChainId": "1",
            "toChainId": "blackbottle-mainnet-1",
            "fromToken": "ETH",
            "toToken": "USDC",
            "fromAmount": "1.5",
            "status": "success",
        }
        bad = {"id": "s2", "fromChainId": "1", "fromAmount": "2"}
        batch = extractor.extract_payload(
            {
                "persistedState": {
                    "wallet": {"dydxAddress": account_id},
                    "swaps": json.dumps({"swaps": [good, bad]}),
                }
            }
        )

        [swap] = _of_type(batch, SwapRecord)
        assert swap.swap_id == "s1"
        assert swap.status == "SUCCESS"
        assert len(batch.errors) == 1
        assert batch.errors[0].startswith("Swap s2:")
