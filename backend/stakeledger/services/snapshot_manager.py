"""
Snapshot orchestration.

Drives history fetching, ledger building and unlock evaluation to produce
staking snapshots, and event diffing across consecutive token and NFT
collection snapshots. One lock per pipeline keeps snapshot creation serial.
"""
import asyncio
from contextlib import asynccontextmanager
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog

from stakeledger.config import Settings
from stakeledger.models.staking import utc_now
from stakeledger.services.errors import RpcError, SnapshotInProgressError, SnapshotNotFoundError
from stakeledger.services.event_diff import (
    CollectionSnapshot,
    EventDiffEngine,
    EventNFTSnapshot,
    EventTokenSnapshot,
    HolderEvent,
    NFTHolder,
    RecordedEvent,
    TokenHolder,
    TokenSnapshot,
)
from stakeledger.services.history_fetcher import TransactionHistoryFetcher
from stakeledger.services.legacy import is_legacy_staking_payload, upgrade_staking_payload
from stakeledger.services.repository import SnapshotRepository
from stakeledger.services.stake_ledger import (
    ZERO,
    LockTierSchedule,
    Stake,
    StakeData,
    StakeLedger,
    StakeLedgerBuilder,
    StakingSnapshot,
    token_amount,
)
from stakeledger.services.unlock_schedule import (
    UnlockSummaryEntry,
    evaluate_snapshot,
    unlock_summary,
    upcoming_unlocks,
)

logger = structlog.get_logger()

PIPELINES = ("staking", "token", "nft")


def _matches(needle: str, address: str, profile: Optional[Dict[str, Any]]) -> bool:
    """Case-insensitive substring match on the address or any profile value"""
    if needle in address.lower():
        return True
    return any(needle in str(value).lower() for value in (profile or {}).values() if value is not None)


def _require_unique(addresses: Iterable[str], what: str) -> None:
    seen = set()
    for address in addresses:
        if address in seen:
            raise ValueError(f"Duplicate {what}: {address}")
        seen.add(address)


class SnapshotManager:
    """Owns the staking, token and NFT snapshot lifecycles"""

    def __init__(
        self,
        client,
        repository: SnapshotRepository,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
        fetcher: Optional[TransactionHistoryFetcher] = None,
        builder: Optional[StakeLedgerBuilder] = None,
        diff_engine: Optional[EventDiffEngine] = None,
    ):
        self.client = client
        self.repository = repository
        self.settings = settings
        self.clock = clock
        self.fetcher = fetcher or TransactionHistoryFetcher.from_settings(client, settings)
        self.builder = builder or StakeLedgerBuilder.from_settings(settings)
        self.diff_engine = diff_engine or EventDiffEngine.from_settings(settings)
        self._locks = {pipeline: asyncio.Lock() for pipeline in PIPELINES}

    @asynccontextmanager
    async def _exclusive(self, pipeline: str):
        """Hold the pipeline lock, failing fast if a run is already in progress"""
        lock = self._locks[pipeline]
        if lock.locked():
            raise SnapshotInProgressError(pipeline)
        async with lock:
            yield

    def is_running(self, pipeline: str) -> bool:
        return self._locks[pipeline].locked()

    # ------------------------------------------------------------------
    # Staking
    # ------------------------------------------------------------------

    @property
    def tiers(self) -> LockTierSchedule:
        return self.builder.tiers

    async def fetch_staking_data(self) -> List[StakeData]:
        """Full recomputation from chain history, not persisted"""
        history = await self.fetcher.fetch_history(self.settings.staking_custody_account)
        if not history.complete:
            raise history.error
        ledger = self.builder.build(history.transactions)
        return ledger.to_stake_data(self.clock())

    async def create_staking_snapshot(self, incremental: bool = True) -> StakingSnapshot:
        """
        Build and persist a staking snapshot.

        Incremental when requested and the latest snapshot carries a
        watermark; a full recomputation otherwise.

        Raises:
            SnapshotInProgressError: Another staking snapshot is running
            FetchError: History could not be fetched; nothing was persisted
            PersistenceError: The snapshot could not be written
        """
        async with self._exclusive("staking"):
            account = self.settings.staking_custody_account
            previous = await self.repository.get_latest_staking_snapshot() if incremental else None
            until = previous.last_signature if previous is not None else None

            logger.info("Creating staking snapshot", incremental=until is not None, since=until)
            history = await self.fetcher.fetch_history(account, until=until)

            if until is None:
                if not history.complete:
                    raise history.error
                ledger = self.builder.build(history.transactions)
                last_signature = history.newest_signature
            else:
                ledger = StakeLedger.from_stake_data(
                    previous.staking_data,
                    self.builder.mint_address,
                    self.tiers,
                    discrepancies=previous.discrepancies,
                )
                if history.complete:
                    last_signature = history.newest_signature or until
                elif history.last_processed_signature is None:
                    raise history.error
                else:
                    logger.warning(
                        "Partial incremental update",
                        last_signature=history.last_processed_signature,
                        error=str(history.error),
                    )
                    last_signature = history.last_processed_signature
                ledger = self.builder.build(history.transactions, ledger)

            now = self.clock()
            staking_data = ledger.to_stake_data(now)
            total_locked = sum((d.total_locked for d in staking_data), ZERO)
            total_unlocked = sum((d.total_unlocked for d in staking_data), ZERO)
            snapshot = StakingSnapshot(
                id=None,
                contract_address=self.settings.staking_contract_address,
                timestamp=now,
                total_staked=total_locked + total_unlocked,
                total_locked=total_locked,
                total_unlocked=total_unlocked,
                last_signature=last_signature,
                is_incremental=until is not None,
                staking_data=staking_data,
                discrepancies=list(ledger.discrepancies),
            )
            await self.reconcile(snapshot.total_staked)
            return await self.repository.insert_staking_snapshot(snapshot)

    async def reconcile(self, ledger_total: Decimal) -> Optional[Decimal]:
        """
        Compare the ledger total with the custody account's live balance.

        Returns:
            The difference in percent, or None when the balance is unavailable
        """
        try:
            balance = await self.client.get_token_account_balance(self.settings.staking_custody_account)
        except RpcError as e:
            logger.warning("Could not read custody balance", error=str(e))
            return None

        actual = token_amount(balance)
        if actual == ZERO:
            difference = ZERO if ledger_total == ZERO else Decimal(100)
        else:
            difference = abs(ledger_total - actual) / actual * 100

        if difference > self.settings.reconciliation_warn_percent:
            logger.warning(
                "Ledger total differs from custody balance",
                ledger_total=str(ledger_total),
                custody_balance=str(actual),
                difference_percent=f"{difference:.2f}",
            )
        else:
            logger.info("Ledger reconciled with custody balance", custody_balance=str(actual))
        return difference

    async def load_staking_snapshot(self, snapshot_id: Optional[int] = None) -> Optional[StakingSnapshot]:
        """Latest (or given) snapshot with lock state evaluated now"""
        if snapshot_id is None:
            snapshot = await self.repository.get_latest_staking_snapshot()
            if snapshot is None:
                return None
        else:
            snapshot = await self.repository.get_staking_snapshot(snapshot_id)
            if snapshot is None:
                raise SnapshotNotFoundError("staking", snapshot_id)
        return evaluate_snapshot(snapshot, self.clock())

    async def list_staking_snapshots(self) -> List[StakingSnapshot]:
        return await self.repository.list_staking_snapshots()

    async def get_filtered_staking_data(
        self,
        search: Optional[str] = None,
        limit: Optional[int] = None,
        snapshot_id: Optional[int] = None,
    ) -> List[StakeData]:
        snapshot = await self.load_staking_snapshot(snapshot_id)
        if snapshot is None:
            return []
        data = snapshot.staking_data
        if search:
            needle = search.lower()
            data = [d for d in data if needle in d.wallet_address.lower()]
        if limit is not None:
            data = data[:limit]
        return data

    async def get_wallet_stake_data(self, wallet_address: str) -> Optional[StakeData]:
        snapshot = await self.load_staking_snapshot()
        if snapshot is None:
            return None
        return next((d for d in snapshot.staking_data if d.wallet_address == wallet_address), None)

    async def get_upcoming_unlocks(self, wallet_address: str, within_days: int = 30) -> List[Stake]:
        data = await self.get_wallet_stake_data(wallet_address)
        if data is None:
            return []
        return upcoming_unlocks(data, self.clock(), timedelta(days=within_days))

    async def get_unlock_summary(
        self,
        after_date: Optional[date] = None,
        wallet_address: Optional[str] = None,
    ) -> List[UnlockSummaryEntry]:
        snapshot = await self.repository.get_latest_staking_snapshot()
        if snapshot is None:
            return []
        return unlock_summary(snapshot.staking_data, self.clock(), after_date, wallet_address)

    async def import_staking_snapshot(self, payload: Dict[str, Any]) -> StakingSnapshot:
        """Persist a staking snapshot document exported by the file-based tooling"""
        if not is_legacy_staking_payload(payload):
            raise ValueError("Unsupported staking snapshot document")
        async with self._exclusive("staking"):
            snapshot = evaluate_snapshot(upgrade_staking_payload(payload), self.clock())
            logger.info("Importing legacy staking snapshot", wallets=len(snapshot.staking_data))
            return await self.repository.insert_staking_snapshot(snapshot)

    # ------------------------------------------------------------------
    # Token holders
    # ------------------------------------------------------------------

    async def create_token_snapshot(
        self,
        holders: List[TokenHolder],
        token_address: Optional[str] = None,
        total_supply: Optional[Decimal] = None,
    ) -> TokenSnapshot:
        """Persist a token holder set together with its events against the previous set"""
        _require_unique((h.address for h in holders), "holder address")
        async with self._exclusive("token"):
            previous = await self.repository.get_latest_token_snapshot()
            snapshot = TokenSnapshot(
                id=None,
                token_address=token_address or self.settings.token_address,
                timestamp=self.clock(),
                total_supply=total_supply if total_supply is not None else sum((h.balance for h in holders), ZERO),
                holders=sorted(holders, key=lambda h: h.address),
            )
            events = self.diff_engine.diff_token_holders(snapshot.holders, previous.holders if previous else None)
            logger.info(
                "Creating token snapshot",
                holders=len(snapshot.holders),
                events=len(events),
                previous_snapshot_id=previous.id if previous else None,
            )
            return await self.repository.insert_token_snapshot(snapshot, events)

    async def load_token_snapshot(self, snapshot_id: Optional[int] = None) -> Optional[TokenSnapshot]:
        if snapshot_id is None:
            return await self.repository.get_latest_token_snapshot()
        snapshot = await self.repository.get_token_snapshot(snapshot_id)
        if snapshot is None:
            raise SnapshotNotFoundError("token", snapshot_id)
        return snapshot

    async def get_filtered_token_holders(
        self,
        search: Optional[str] = None,
        limit: Optional[int] = None,
        snapshot_id: Optional[int] = None,
    ) -> List[TokenHolder]:
        """Holders of the latest (or given) token snapshot, largest balance first"""
        snapshot = await self.load_token_snapshot(snapshot_id)
        if snapshot is None:
            return []
        holders = sorted(snapshot.holders, key=lambda h: (-h.balance, h.address))
        if search:
            needle = search.lower()
            holders = [h for h in holders if _matches(needle, h.address, h.profile)]
        if limit is not None:
            holders = holders[:limit]
        return holders

    async def generate_token_events(
        self,
        snapshot_id: int,
        holders: Optional[List[TokenHolder]] = None,
        previous_snapshot_id: Optional[int] = None,
    ) -> List[HolderEvent]:
        """Recompute and replace the event set of a token snapshot"""
        async with self._exclusive("token"):
            snapshot = await self.load_token_snapshot(snapshot_id)
            if previous_snapshot_id is not None:
                previous = await self.load_token_snapshot(previous_snapshot_id)
            else:
                previous = await self.repository.get_previous_token_snapshot(snapshot_id)

            current = holders if holders is not None else snapshot.holders
            events = self.diff_engine.diff_token_holders(current, previous.holders if previous else None)
            await self.repository.replace_token_events(snapshot_id, events)
            logger.info("Regenerated token events", snapshot_id=snapshot_id, events=len(events))
            return events

    async def get_token_events_for_snapshot(self, snapshot_id: int) -> List[RecordedEvent]:
        return await self.repository.get_token_events_for_snapshot(snapshot_id)

    async def get_token_snapshots_with_events(self, limit: int = 5, skip: int = 0) -> List[EventTokenSnapshot]:
        return await self.repository.get_token_snapshots_with_events(limit, skip)

    # ------------------------------------------------------------------
    # NFT collection
    # ------------------------------------------------------------------

    async def create_collection_snapshot(self, holders: List[NFTHolder]) -> CollectionSnapshot:
        """Persist a collection holder set together with its events against the previous set"""
        _require_unique((h.address for h in holders), "holder address")
        _require_unique((nft.mint for h in holders for nft in h.nfts), "NFT mint")
        async with self._exclusive("nft"):
            previous = await self.repository.get_latest_collection_snapshot()
            ordered = sorted(holders, key=lambda h: h.address)
            snapshot = CollectionSnapshot(
                id=None,
                timestamp=self.clock(),
                total_count=sum(h.nft_count for h in ordered),
                holders=ordered,
            )
            events = self.diff_engine.diff_nft_holders(snapshot.holders, previous.holders if previous else None)
            logger.info(
                "Creating collection snapshot",
                holders=len(snapshot.holders),
                nfts=snapshot.total_count,
                events=len(events),
            )
            return await self.repository.insert_collection_snapshot(snapshot, events)

    async def load_collection_snapshot(self, snapshot_id: Optional[int] = None) -> Optional[CollectionSnapshot]:
        if snapshot_id is None:
            return await self.repository.get_latest_collection_snapshot()
        snapshot = await self.repository.get_collection_snapshot(snapshot_id)
        if snapshot is None:
            raise SnapshotNotFoundError("collection", snapshot_id)
        return snapshot

    async def get_filtered_nft_holders(
        self,
        search: Optional[str] = None,
        limit: Optional[int] = None,
        snapshot_id: Optional[int] = None,
    ) -> List[NFTHolder]:
        """Holders of the latest (or given) collection snapshot, most NFTs first"""
        snapshot = await self.load_collection_snapshot(snapshot_id)
        if snapshot is None:
            return []
        holders = sorted(snapshot.holders, key=lambda h: (-h.nft_count, h.address))
        if search:
            needle = search.lower()
            holders = [h for h in holders if _matches(needle, h.address, h.profile)]
        if limit is not None:
            holders = holders[:limit]
        return holders

    async def generate_nft_events(
        self,
        snapshot_id: int,
        holders: Optional[List[NFTHolder]] = None,
        previous_snapshot_id: Optional[int] = None,
    ) -> List[HolderEvent]:
        """Recompute and replace the event set of a collection snapshot"""
        async with self._exclusive("nft"):
            snapshot = await self.load_collection_snapshot(snapshot_id)
            if previous_snapshot_id is not None:
                previous = await self.load_collection_snapshot(previous_snapshot_id)
            else:
                previous = await self.repository.get_previous_collection_snapshot(snapshot_id)

            current = holders if holders is not None else snapshot.holders
            events = self.diff_engine.diff_nft_holders(current, previous.holders if previous else None)
            await self.repository.replace_nft_events(snapshot_id, events)
            logger.info("Regenerated NFT events", snapshot_id=snapshot_id, events=len(events))
            return events

    async def get_nft_events_for_snapshot(self, snapshot_id: int) -> List[RecordedEvent]:
        return await self.repository.get_nft_events_for_snapshot(snapshot_id)

    async def get_nft_snapshots_with_events(self, limit: int = 5, skip: int = 0) -> List[EventNFTSnapshot]:
        return await self.repository.get_nft_snapshots_with_events(limit, skip)
