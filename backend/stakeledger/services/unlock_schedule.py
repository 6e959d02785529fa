"""Lock state and unlock schedule calculations, always relative to a reference time"""
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional

from stakeledger.services.stake_ledger import (
    ZERO,
    Stake,
    StakeData,
    StakingSnapshot,
    sort_stake_data,
    summarize_stakes,
)


@dataclass(frozen=True)
class UnlockSummaryEntry:
    date: date
    amount: Decimal


def evaluate_stake(stake: Stake, reference_time: datetime) -> Stake:
    return replace(stake, is_locked=reference_time < stake.unlock_date)


def evaluate_stake_data(data: StakeData, reference_time: datetime) -> StakeData:
    return summarize_stakes(data.wallet_address, data.stakes, reference_time)


def evaluate_snapshot(snapshot: StakingSnapshot, reference_time: datetime) -> StakingSnapshot:
    """Recompute every lock flag and total of a snapshot; stored flags are ignored"""
    staking_data = sort_stake_data(evaluate_stake_data(d, reference_time) for d in snapshot.staking_data)
    locked = sum((d.total_locked for d in staking_data), ZERO)
    unlocked = sum((d.total_unlocked for d in staking_data), ZERO)
    return replace(
        snapshot,
        staking_data=staking_data,
        total_staked=locked + unlocked,
        total_locked=locked,
        total_unlocked=unlocked,
    )


def unlock_summary(
    staking_data: Iterable[StakeData],
    reference_time: datetime,
    after_date: Optional[date] = None,
    wallet_address: Optional[str] = None,
) -> List[UnlockSummaryEntry]:
    """
    Locked amounts grouped by the UTC calendar day they unlock on.

    Args:
        staking_data: Wallet stake data, lock flags are not trusted
        reference_time: Time at which lock state is evaluated
        after_date: Only include unlock days on or after this date
        wallet_address: Only include this wallet's stakes

    Returns:
        Entries sorted by date ascending
    """
    totals = defaultdict(lambda: ZERO)
    for data in staking_data:
        if wallet_address is not None and data.wallet_address != wallet_address:
            continue
        for stake in data.stakes:
            if not reference_time < stake.unlock_date:
                continue
            unlock_day = stake.unlock_date.date()
            if after_date is not None and unlock_day < after_date:
                continue
            totals[unlock_day] += stake.amount

    return [UnlockSummaryEntry(date=day, amount=totals[day]) for day in sorted(totals)]


def upcoming_unlocks(data: StakeData, reference_time: datetime, within: timedelta) -> List[Stake]:
    """Locked stakes that unlock within the given window, soonest first"""
    horizon = reference_time + within
    upcoming = [
        evaluate_stake(stake, reference_time)
        for stake in data.stakes
        if reference_time < stake.unlock_date <= horizon
    ]
    return sorted(upcoming, key=lambda s: (s.unlock_date, s.stake_date))
