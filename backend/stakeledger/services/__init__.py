"""StakeLedger backend services"""
from .solana_client import SolanaClient
from .history_fetcher import TransactionHistoryFetcher, FetchedHistory, FetchedTransaction
from .stake_ledger import StakeLedger, StakeLedgerBuilder, LockTierSchedule
from .event_diff import EventDiffEngine
from .repository import SnapshotRepository
from .snapshot_manager import SnapshotManager

__all__ = [
    "SolanaClient",
    # History and ledger
    "TransactionHistoryFetcher",
    "FetchedHistory",
    "FetchedTransaction",
    "StakeLedger",
    "StakeLedgerBuilder",
    "LockTierSchedule",
    # Snapshots and events
    "EventDiffEngine",
    "SnapshotRepository",
    "SnapshotManager",
]
