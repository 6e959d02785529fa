"""Staking schemas"""
from pydantic import BaseModel
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional


class StakeResponse(BaseModel):
    amount: Decimal
    stake_date: datetime
    unlock_date: datetime
    is_locked: bool
    mint_address: str

    class Config:
        from_attributes = True


class StakeDataResponse(BaseModel):
    """Per-wallet staking totals with individual stakes"""
    wallet_address: str
    total_staked: Decimal
    total_locked: Decimal
    total_unlocked: Decimal
    stakes: List[StakeResponse]

    class Config:
        from_attributes = True


class LedgerDiscrepancyResponse(BaseModel):
    """Withdrawal that exceeded the wallet's tracked stakes"""
    wallet_address: str
    signature: str
    detected_at: datetime
    requested_amount: Decimal
    unmatched_amount: Decimal

    class Config:
        from_attributes = True


class StakingSnapshotSummary(BaseModel):
    id: int
    contract_address: str
    timestamp: datetime
    total_staked: Decimal
    total_locked: Decimal
    total_unlocked: Decimal
    last_signature: Optional[str] = None
    is_incremental: bool

    class Config:
        from_attributes = True


class StakingSnapshotResponse(StakingSnapshotSummary):
    wallet_count: int = 0
    staking_data: List[StakeDataResponse]
    discrepancies: List[LedgerDiscrepancyResponse] = []


class UnlockSummaryEntryResponse(BaseModel):
    date: date
    amount: Decimal

    class Config:
        from_attributes = True


class WalletStakeResponse(BaseModel):
    """Wallet stake data with the stakes unlocking soon"""
    stake_data: StakeDataResponse
    upcoming_unlocks: List[StakeResponse]
