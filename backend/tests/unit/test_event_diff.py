"""Unit tests for holder-change event detection"""
import random
from decimal import Decimal

import pytest

from stakeledger.models.events import EventType
from stakeledger.services.event_diff import (
    Deposit,
    EventDiffEngine,
    NewHolder,
    NFTHolder,
    NFTItem,
    TokenHolder,
    TransferBetween,
    WalletEmpty,
    Withdrawal,
    diff_nft_holders,
    diff_token_holders,
    event_fields,
    event_from_fields,
)

A = "AaaaHo1der111111111111111111111111111111111"
B = "BbbbHo1der111111111111111111111111111111111"
C = "CcccHo1der111111111111111111111111111111111"
D = "DdddHo1der111111111111111111111111111111111"


def holders(**balances):
    return [TokenHolder(address=address, balance=Decimal(str(balance))) for address, balance in balances.items()]


def collection(owners):
    """owners: {address: [mint, ...]}"""
    return [NFTHolder(address, tuple(NFTItem(mint) for mint in mints)) for address, mints in owners.items()]


class TestDiffTokenHolders:
    """Tests for token balance diffs"""

    def test_baseline_emits_new_holders(self):
        events = diff_token_holders(holders(**{A: 10, B: 5}), None)
        assert events == [
            NewHolder(destination=A, amount=Decimal("10"), new_balance=Decimal("10")),
            NewHolder(destination=B, amount=Decimal("5"), new_balance=Decimal("5")),
        ]

    def test_full_transfer_to_new_address(self):
        events = diff_token_holders(holders(**{B: 100}), holders(**{A: 100}))
        assert events == [
            TransferBetween(A, B, Decimal("100"), Decimal("100"), Decimal("0")),
            WalletEmpty(A, Decimal("100"), Decimal("100")),
        ]

    def test_partial_transfer_between_existing_holders(self):
        events = diff_token_holders(holders(**{A: 60, B: 90}), holders(**{A: 100, B: 50}))
        assert events == [TransferBetween(A, B, Decimal("40"), Decimal("100"), Decimal("60"))]

    def test_transfer_within_tolerance_matched(self):
        # 0.5% lost to fees still pairs up
        events = diff_token_holders(holders(**{A: 0, B: 99.5}), holders(**{A: 100}))
        kinds = [e.event_type for e in events]
        assert EventType.TRANSFER_BETWEEN in kinds
        assert EventType.NEW_HOLDER not in kinds

    def test_unmatched_changes_become_deposit_and_withdrawal(self):
        events = diff_token_holders(holders(**{A: 70, B: 200}), holders(**{A: 100, B: 50}))
        assert events == [
            Deposit(B, Decimal("150"), Decimal("50"), Decimal("200")),
            Withdrawal(A, Decimal("30"), Decimal("100"), Decimal("70")),
        ]

    def test_new_holder_without_source(self):
        events = diff_token_holders(holders(**{A: 100, C: 25}), holders(**{A: 100}))
        assert events == [NewHolder(C, Decimal("25"), Decimal("25"))]

    def test_emptied_without_destination(self):
        events = diff_token_holders(holders(**{A: 100}), holders(**{A: 100, B: 10}))
        assert events == [WalletEmpty(B, Decimal("10"), Decimal("10"))]

    def test_dust_changes_ignored(self):
        events = diff_token_holders(
            holders(**{A: Decimal("100.0000000001")}),
            holders(**{A: 100}),
        )
        assert events == []

    def test_zero_balances_are_not_holders(self):
        assert diff_token_holders(holders(**{A: 0}), None) == []

    def test_each_sink_matched_once(self):
        events = diff_token_holders(
            holders(**{C: 50}),
            holders(**{A: 50, B: 50}),
        )
        transfers = [e for e in events if isinstance(e, TransferBetween)]
        empties = [e for e in events if isinstance(e, WalletEmpty)]
        assert len(transfers) == 1
        assert transfers[0].source == A
        assert {e.source for e in empties} == {A, B}

    def test_output_independent_of_input_order(self):
        previous = holders(**{A: 100, B: 50, C: 10})
        current = holders(**{B: 150, C: 3, D: 7})
        expected = diff_token_holders(current, previous)

        rng = random.Random(3)
        for _ in range(5):
            shuffled_current = current[:]
            shuffled_previous = previous[:]
            rng.shuffle(shuffled_current)
            rng.shuffle(shuffled_previous)
            assert diff_token_holders(shuffled_current, shuffled_previous) == expected

    def test_profile_ignored_for_equality(self):
        with_profile = TokenHolder(A, Decimal("1"), profile={"twitter": "@holder"})
        assert with_profile == TokenHolder(A, Decimal("1"))


class TestDiffNFTHolders:
    """Tests for NFT ownership diffs"""

    def test_baseline(self):
        events = diff_nft_holders(collection({A: ["m2", "m1"]}), None)
        assert events == [NewHolder(A, Decimal("2"), Decimal("2"), ("m1", "m2"))]

    def test_whole_wallet_moves_to_new_holder(self):
        """A holds two NFTs, then B holds the same two"""
        events = diff_nft_holders(collection({B: ["m1", "m2"]}), collection({A: ["m1", "m2"]}))

        transfers = [e for e in events if isinstance(e, TransferBetween)]
        assert transfers == [TransferBetween(A, B, Decimal("2"), Decimal("2"), Decimal("0"), ("m1", "m2"))]
        assert not [e for e in events if isinstance(e, NewHolder)]
        assert [e for e in events if isinstance(e, WalletEmpty)] == [
            WalletEmpty(A, Decimal("2"), Decimal("2"), ("m1", "m2"))
        ]

    def test_mints_grouped_per_pair(self):
        events = diff_nft_holders(
            collection({A: ["m1"], B: ["m2", "m3"], C: ["m4"]}),
            collection({A: ["m1", "m2", "m3"], C: ["m4"]}),
        )
        assert events == [TransferBetween(A, B, Decimal("2"), Decimal("3"), Decimal("1"), ("m2", "m3"))]

    def test_mint_appears_for_existing_holder(self):
        events = diff_nft_holders(collection({A: ["m1", "m9"]}), collection({A: ["m1"]}))
        assert events == [Deposit(A, Decimal("1"), Decimal("1"), Decimal("2"), ("m9",))]

    def test_mint_disappears(self):
        events = diff_nft_holders(collection({A: ["m1"]}), collection({A: ["m1", "m2"]}))
        assert events == [Withdrawal(A, Decimal("1"), Decimal("2"), Decimal("1"), ("m2",))]

    def test_new_holder_from_mint(self):
        events = diff_nft_holders(collection({A: ["m1"], D: ["m5"]}), collection({A: ["m1"]}))
        assert events == [NewHolder(D, Decimal("1"), Decimal("1"), ("m5",))]

    def test_counts_by_type(self):
        holder = NFTHolder(A, (NFTItem("m1", type="Gen1"), NFTItem("m2", type="Infant"), NFTItem("m3")))
        assert (holder.nft_count, holder.gen1_count, holder.infant_count) == (3, 2, 1)


class TestEventFields:
    """Tests for flattening events into storage columns"""

    @pytest.mark.parametrize(
        "event",
        [
            NewHolder(A, Decimal("5"), Decimal("5")),
            TransferBetween(A, B, Decimal("5"), Decimal("10"), Decimal("5"), ("m1",)),
            WalletEmpty(A, Decimal("5"), Decimal("5")),
            Deposit(B, Decimal("5"), Decimal("1"), Decimal("6")),
            Withdrawal(A, Decimal("5"), Decimal("6"), Decimal("1")),
        ],
    )
    def test_fields_restore_event(self, event):
        fields = event_fields(event)
        assert event_from_fields(**fields) == event

    def test_wallet_empty_has_zero_new_balance(self):
        fields = event_fields(WalletEmpty(A, Decimal("5"), Decimal("5")))
        assert fields["new_balance"] == Decimal(0)
        assert fields["destination_address"] is None

    def test_non_event_rejected(self):
        with pytest.raises(TypeError):
            event_fields("transfer")


class TestEventDiffEngine:
    def test_from_settings(self, settings):
        engine = EventDiffEngine.from_settings(settings)
        assert engine.match_tolerance == settings.event_match_tolerance
        assert engine.dust_threshold == settings.event_dust_threshold
