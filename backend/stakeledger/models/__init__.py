"""Database models"""
from stakeledger.models.database import Base
from stakeledger.models.staking import (
    StakingSnapshotRecord,
    StakingWalletRecord,
    StakeRecord,
    LedgerDiscrepancyRecord,
)
from stakeledger.models.holders import (
    TokenSnapshotRecord,
    TokenHolderRecord,
    CollectionSnapshotRecord,
    NFTHolderRecord,
    NFTOwnershipRecord,
)
from stakeledger.models.events import EventType, TokenEventRecord, NFTEventRecord

__all__ = [
    "Base",
    # Staking ledger
    "StakingSnapshotRecord",
    "StakingWalletRecord",
    "StakeRecord",
    "LedgerDiscrepancyRecord",
    # Holder snapshots
    "TokenSnapshotRecord",
    "TokenHolderRecord",
    "CollectionSnapshotRecord",
    "NFTHolderRecord",
    "NFTOwnershipRecord",
    # Events
    "EventType",
    "TokenEventRecord",
    "NFTEventRecord",
]
