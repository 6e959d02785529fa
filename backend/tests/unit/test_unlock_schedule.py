"""Unit tests for lock evaluation and unlock summaries"""
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from stakeledger.services.stake_ledger import (
    LedgerEvent,
    LockTierSchedule,
    Stake,
    StakeData,
    StakeLedger,
    StakingSnapshot,
)
from stakeledger.services.unlock_schedule import (
    UnlockSummaryEntry,
    evaluate_snapshot,
    evaluate_stake,
    unlock_summary,
    upcoming_unlocks,
)

MINT = "31k88G5Mq7ptbRDf3AM13HAq6wRQHXHikR8hik7wPygk"
WALLET_W = "WwwwWa11et1111111111111111111111111111111111"
WALLET_X = "XxxxWa11et1111111111111111111111111111111111"
T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def stake(amount, stake_date, lock_days, is_locked=True):
    return Stake(
        amount=Decimal(str(amount)),
        stake_date=stake_date,
        unlock_date=stake_date + timedelta(days=lock_days),
        is_locked=is_locked,
        mint_address=MINT,
    )


def wallet(address, *stakes):
    total = sum((s.amount for s in stakes), Decimal(0))
    return StakeData(address, total, total, Decimal(0), list(stakes))


class TestEvaluateStake:
    """Tests for lock flag evaluation"""

    def test_locked_before_unlock_date(self):
        s = stake(10, T0, 30, is_locked=False)
        assert evaluate_stake(s, T0 + timedelta(days=29)).is_locked is True

    def test_unlocked_exactly_at_unlock_date(self):
        s = stake(10, T0, 30)
        assert evaluate_stake(s, T0 + timedelta(days=30)).is_locked is False

    def test_stored_flag_is_not_trusted(self):
        s = stake(10, T0, 30, is_locked=True)
        assert evaluate_stake(s, T0 + timedelta(days=365)).is_locked is False


class TestEvaluateSnapshot:
    """Tests for whole-snapshot re-evaluation"""

    def test_totals_recomputed_and_conserved(self):
        snapshot = StakingSnapshot(
            id=1,
            contract_address="contract",
            timestamp=T0,
            total_staked=Decimal("300"),
            total_locked=Decimal("300"),
            total_unlocked=Decimal("0"),
            last_signature=None,
            is_incremental=False,
            staking_data=[
                wallet(WALLET_W, stake(100, T0, 10), stake(50, T0, 40)),
                wallet(WALLET_X, stake(150, T0, 5)),
            ],
        )
        evaluated = evaluate_snapshot(snapshot, T0 + timedelta(days=20))

        assert evaluated.total_staked == Decimal("300")
        assert evaluated.total_locked == Decimal("50")
        assert evaluated.total_unlocked == Decimal("250")
        assert evaluated.total_staked == evaluated.total_locked + evaluated.total_unlocked
        for data in evaluated.staking_data:
            assert data.total_staked == data.total_locked + data.total_unlocked
            for s in data.stakes:
                assert s.is_locked == (T0 + timedelta(days=20) < s.unlock_date)

        # Stored snapshot untouched
        assert snapshot.total_locked == Decimal("300")


class TestUnlockSummary:
    """Tests for unlock grouping by calendar day"""

    def test_single_deposit_lifecycle(self):
        """50,000 deposited with a 20-day lock unlocks on day 20"""
        ledger = StakeLedger(MINT, LockTierSchedule.single(20))
        ledger.deposit(LedgerEvent("deposit", WALLET_W, Decimal("50000"), T0, "sig"))

        data = ledger.to_stake_data(T0)
        assert unlock_summary(data, T0) == [
            UnlockSummaryEntry(date=(T0 + timedelta(days=20)).date(), amount=Decimal("50000"))
        ]

        later = T0 + timedelta(days=21)
        evaluated = ledger.to_stake_data(later)
        assert evaluated[0].total_unlocked == Decimal("50000")
        assert evaluated[0].total_locked == Decimal("0")
        assert unlock_summary(evaluated, later) == []

    def test_groups_by_day_and_sorts(self):
        data = [
            wallet(WALLET_W, stake(10, T0, 10), stake(5, T0 + timedelta(hours=6), 10)),
            wallet(WALLET_X, stake(7, T0, 3)),
        ]
        summary = unlock_summary(data, T0)
        assert summary == [
            UnlockSummaryEntry(date=date(2024, 1, 4), amount=Decimal("7")),
            UnlockSummaryEntry(date=date(2024, 1, 11), amount=Decimal("15")),
        ]

    def test_after_date_filter(self):
        data = [wallet(WALLET_W, stake(10, T0, 10), stake(20, T0, 30))]
        summary = unlock_summary(data, T0, after_date=date(2024, 1, 15))
        assert [e.amount for e in summary] == [Decimal("20")]

    def test_wallet_filter(self):
        data = [
            wallet(WALLET_W, stake(10, T0, 10)),
            wallet(WALLET_X, stake(20, T0, 10)),
        ]
        summary = unlock_summary(data, T0, wallet_address=WALLET_X)
        assert summary == [UnlockSummaryEntry(date=date(2024, 1, 11), amount=Decimal("20"))]

    def test_already_unlocked_stakes_excluded(self):
        data = [wallet(WALLET_W, stake(10, T0 - timedelta(days=40), 30, is_locked=True))]
        assert unlock_summary(data, T0) == []


class TestUpcomingUnlocks:
    """Tests for the per-wallet unlock window"""

    def test_only_stakes_inside_window(self):
        data = wallet(
            WALLET_W,
            stake(1, T0, 40),
            stake(2, T0, 5),
            stake(3, T0 - timedelta(days=100), 10),
            stake(4, T0, 15),
        )
        upcoming = upcoming_unlocks(data, T0, timedelta(days=30))
        assert [s.amount for s in upcoming] == [Decimal("2"), Decimal("4")]
        assert all(s.is_locked for s in upcoming)
