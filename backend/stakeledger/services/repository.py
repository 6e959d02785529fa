"""
Snapshot persistence.

Every write runs in a single database transaction; reads return domain
dataclasses rather than ORM rows.
"""
from collections import defaultdict
from decimal import Decimal
from typing import List, Optional, Sequence

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from stakeledger.models.events import NFTEventRecord, TokenEventRecord
from stakeledger.models.holders import (
    CollectionSnapshotRecord,
    NFTHolderRecord,
    NFTOwnershipRecord,
    TokenHolderRecord,
    TokenSnapshotRecord,
)
from stakeledger.models.staking import (
    LedgerDiscrepancyRecord,
    StakeRecord,
    StakingSnapshotRecord,
    StakingWalletRecord,
    ensure_utc,
)
from stakeledger.services.errors import PersistenceError
from stakeledger.services.event_diff import (
    CollectionSnapshot,
    EventNFTSnapshot,
    EventTokenSnapshot,
    HolderEvent,
    NFTHolder,
    NFTItem,
    RecordedEvent,
    TokenHolder,
    TokenSnapshot,
    event_fields,
    event_from_fields,
)
from stakeledger.services.stake_ledger import LedgerDiscrepancy, Stake, StakeData, StakingSnapshot

logger = structlog.get_logger()


# ---------------------------------------------------------------------------
# Record <-> domain conversion
# ---------------------------------------------------------------------------


def _staking_header(record: StakingSnapshotRecord) -> StakingSnapshot:
    return StakingSnapshot(
        id=record.id,
        contract_address=record.contract_address,
        timestamp=ensure_utc(record.timestamp),
        total_staked=Decimal(record.total_staked),
        total_locked=Decimal(record.total_locked),
        total_unlocked=Decimal(record.total_unlocked),
        last_signature=record.last_signature,
        is_incremental=record.is_incremental,
    )


def _staking_snapshot(record: StakingSnapshotRecord) -> StakingSnapshot:
    snapshot = _staking_header(record)

    stakes_by_wallet = defaultdict(list)
    for row in record.stakes:
        stakes_by_wallet[row.wallet_address].append(
            Stake(
                amount=Decimal(row.amount),
                stake_date=ensure_utc(row.stake_date),
                unlock_date=ensure_utc(row.unlock_date),
                is_locked=row.is_locked,
                mint_address=row.mint_address,
            )
        )

    snapshot.staking_data = [
        StakeData(
            wallet_address=row.wallet_address,
            total_staked=Decimal(row.total_staked),
            total_locked=Decimal(row.total_locked),
            total_unlocked=Decimal(row.total_unlocked),
            stakes=stakes_by_wallet.get(row.wallet_address, []),
        )
        for row in record.wallets
    ]
    snapshot.discrepancies = [
        LedgerDiscrepancy(
            wallet_address=row.wallet_address,
            signature=row.signature,
            detected_at=ensure_utc(row.detected_at),
            requested_amount=Decimal(row.requested_amount),
            unmatched_amount=Decimal(row.unmatched_amount),
        )
        for row in record.discrepancies
    ]
    return snapshot


def _token_snapshot(record: TokenSnapshotRecord) -> TokenSnapshot:
    return TokenSnapshot(
        id=record.id,
        token_address=record.token_address,
        timestamp=ensure_utc(record.timestamp),
        total_supply=Decimal(record.total_supply),
        holders=[
            TokenHolder(
                address=row.address,
                balance=Decimal(row.balance),
                is_lp_pool=row.is_lp_pool,
                is_treasury=row.is_treasury,
                profile=row.profile,
            )
            for row in record.holders
        ],
    )


def _collection_snapshot(record: CollectionSnapshotRecord) -> CollectionSnapshot:
    nfts_by_owner = defaultdict(list)
    for row in record.ownership:
        nfts_by_owner[row.owner_address].append(NFTItem(mint=row.mint, name=row.name, type=row.nft_type))

    return CollectionSnapshot(
        id=record.id,
        timestamp=ensure_utc(record.timestamp),
        total_count=record.total_count,
        holders=[
            NFTHolder(address=row.address, nfts=tuple(nfts_by_owner.get(row.address, [])), profile=row.profile)
            for row in record.holders
        ],
    )


def _recorded(row, snapshot_timestamp) -> RecordedEvent:
    return RecordedEvent(
        id=row.id,
        event_timestamp=ensure_utc(row.timestamp),
        snapshot_id=row.snapshot_id,
        snapshot_timestamp=ensure_utc(snapshot_timestamp),
        event=event_from_fields(
            row.event_type,
            row.source_address,
            row.destination_address,
            Decimal(row.amount),
            Decimal(row.previous_balance) if row.previous_balance is not None else None,
            Decimal(row.new_balance) if row.new_balance is not None else None,
            getattr(row, "mints", None) or (),
        ),
    )


def _token_event_rows(snapshot_id: int, events: Sequence[HolderEvent]) -> List[TokenEventRecord]:
    rows = []
    for position, event in enumerate(events):
        fields = event_fields(event)
        fields.pop("mints")
        rows.append(TokenEventRecord(snapshot_id=snapshot_id, position=position, **fields))
    return rows


def _nft_event_rows(snapshot_id: int, events: Sequence[HolderEvent]) -> List[NFTEventRecord]:
    rows = []
    for position, event in enumerate(events):
        fields = event_fields(event)
        rows.append(
            NFTEventRecord(
                snapshot_id=snapshot_id,
                position=position,
                event_type=fields["event_type"],
                source_address=fields["source_address"],
                destination_address=fields["destination_address"],
                mints=fields["mints"],
                amount=int(fields["amount"]),
                previous_balance=int(fields["previous_balance"]) if fields["previous_balance"] is not None else None,
                new_balance=int(fields["new_balance"]) if fields["new_balance"] is not None else None,
            )
        )
    return rows


class SnapshotRepository:
    """Reads and writes staking, token and collection snapshots"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # -- staking -----------------------------------------------------------

    async def insert_staking_snapshot(self, snapshot: StakingSnapshot) -> StakingSnapshot:
        """Persist header, wallet rows, stakes and discrepancies atomically"""
        record = StakingSnapshotRecord(
            contract_address=snapshot.contract_address,
            timestamp=snapshot.timestamp,
            total_staked=snapshot.total_staked,
            total_locked=snapshot.total_locked,
            total_unlocked=snapshot.total_unlocked,
            last_signature=snapshot.last_signature,
            is_incremental=snapshot.is_incremental,
        )
        for data in snapshot.staking_data:
            record.wallets.append(
                StakingWalletRecord(
                    wallet_address=data.wallet_address,
                    total_staked=data.total_staked,
                    total_locked=data.total_locked,
                    total_unlocked=data.total_unlocked,
                )
            )
            for stake in data.stakes:
                record.stakes.append(
                    StakeRecord(
                        wallet_address=data.wallet_address,
                        mint_address=stake.mint_address,
                        amount=stake.amount,
                        stake_date=stake.stake_date,
                        unlock_date=stake.unlock_date,
                        is_locked=stake.is_locked,
                    )
                )
        for discrepancy in snapshot.discrepancies:
            record.discrepancies.append(
                LedgerDiscrepancyRecord(
                    wallet_address=discrepancy.wallet_address,
                    signature=discrepancy.signature,
                    detected_at=discrepancy.detected_at,
                    requested_amount=discrepancy.requested_amount,
                    unmatched_amount=discrepancy.unmatched_amount,
                )
            )

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(record)
                    await session.flush()
                    snapshot_id = record.id
        except SQLAlchemyError as e:
            logger.error("Failed to save staking snapshot", error=str(e))
            raise PersistenceError(f"Failed to save staking snapshot: {e}") from e

        logger.info(
            "Saved staking snapshot",
            snapshot_id=snapshot_id,
            wallets=len(snapshot.staking_data),
            incremental=snapshot.is_incremental,
        )
        snapshot.id = snapshot_id
        return snapshot

    def _staking_query(self):
        return select(StakingSnapshotRecord).options(
            selectinload(StakingSnapshotRecord.wallets),
            selectinload(StakingSnapshotRecord.stakes),
            selectinload(StakingSnapshotRecord.discrepancies),
        )

    async def get_latest_staking_snapshot(self) -> Optional[StakingSnapshot]:
        async with self.session_factory() as session:
            result = await session.execute(
                self._staking_query()
                .order_by(StakingSnapshotRecord.timestamp.desc(), StakingSnapshotRecord.id.desc())
                .limit(1)
            )
            record = result.scalar_one_or_none()
            return _staking_snapshot(record) if record else None

    async def get_staking_snapshot(self, snapshot_id: int) -> Optional[StakingSnapshot]:
        async with self.session_factory() as session:
            result = await session.execute(
                self._staking_query().where(StakingSnapshotRecord.id == snapshot_id)
            )
            record = result.scalar_one_or_none()
            return _staking_snapshot(record) if record else None

    async def list_staking_snapshots(self) -> List[StakingSnapshot]:
        """Snapshot headers, newest first"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(StakingSnapshotRecord).order_by(
                    StakingSnapshotRecord.timestamp.desc(), StakingSnapshotRecord.id.desc()
                )
            )
            return [_staking_header(record) for record in result.scalars().all()]

    # -- token holders -----------------------------------------------------

    async def insert_token_snapshot(self, snapshot: TokenSnapshot, events: Sequence[HolderEvent] = ()) -> TokenSnapshot:
        """Persist a holder set and its events in one transaction"""
        record = TokenSnapshotRecord(
            token_address=snapshot.token_address,
            timestamp=snapshot.timestamp,
            total_supply=snapshot.total_supply,
            holders=[
                TokenHolderRecord(
                    address=holder.address,
                    balance=holder.balance,
                    is_lp_pool=holder.is_lp_pool,
                    is_treasury=holder.is_treasury,
                    profile=holder.profile,
                )
                for holder in snapshot.holders
            ],
        )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(record)
                    await session.flush()
                    session.add_all(_token_event_rows(record.id, events))
                    snapshot_id = record.id
        except SQLAlchemyError as e:
            logger.error("Failed to save token snapshot", error=str(e))
            raise PersistenceError(f"Failed to save token snapshot: {e}") from e

        logger.info("Saved token snapshot", snapshot_id=snapshot_id, holders=len(snapshot.holders), events=len(events))
        snapshot.id = snapshot_id
        return snapshot

    def _token_query(self):
        return select(TokenSnapshotRecord).options(selectinload(TokenSnapshotRecord.holders))

    async def get_latest_token_snapshot(self) -> Optional[TokenSnapshot]:
        async with self.session_factory() as session:
            result = await session.execute(
                self._token_query()
                .order_by(TokenSnapshotRecord.timestamp.desc(), TokenSnapshotRecord.id.desc())
                .limit(1)
            )
            record = result.scalar_one_or_none()
            return _token_snapshot(record) if record else None

    async def get_token_snapshot(self, snapshot_id: int) -> Optional[TokenSnapshot]:
        async with self.session_factory() as session:
            result = await session.execute(self._token_query().where(TokenSnapshotRecord.id == snapshot_id))
            record = result.scalar_one_or_none()
            return _token_snapshot(record) if record else None

    async def get_previous_token_snapshot(self, snapshot_id: int) -> Optional[TokenSnapshot]:
        """Most recent token snapshot older than the given one"""
        async with self.session_factory() as session:
            result = await session.execute(
                self._token_query()
                .where(TokenSnapshotRecord.id < snapshot_id)
                .order_by(TokenSnapshotRecord.id.desc())
                .limit(1)
            )
            record = result.scalar_one_or_none()
            return _token_snapshot(record) if record else None

    async def replace_token_events(self, snapshot_id: int, events: Sequence[HolderEvent]) -> int:
        """Swap the snapshot's event set for a new one (delete + insert, one transaction)"""
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(delete(TokenEventRecord).where(TokenEventRecord.snapshot_id == snapshot_id))
                    session.add_all(_token_event_rows(snapshot_id, events))
        except SQLAlchemyError as e:
            logger.error("Failed to replace token events", snapshot_id=snapshot_id, error=str(e))
            raise PersistenceError(f"Failed to replace token events: {e}") from e
        return len(events)

    async def get_token_events_for_snapshot(self, snapshot_id: int) -> List[RecordedEvent]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(TokenEventRecord, TokenSnapshotRecord.timestamp)
                .join(TokenSnapshotRecord, TokenSnapshotRecord.id == TokenEventRecord.snapshot_id)
                .where(TokenEventRecord.snapshot_id == snapshot_id)
                .order_by(TokenEventRecord.position)
            )
            return [_recorded(row, snapshot_timestamp) for row, snapshot_timestamp in result.all()]

    async def get_token_snapshots_with_events(self, limit: int = 5, skip: int = 0) -> List[EventTokenSnapshot]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(TokenSnapshotRecord)
                .order_by(TokenSnapshotRecord.timestamp.desc(), TokenSnapshotRecord.id.desc())
                .offset(skip)
                .limit(limit)
            )
            headers = result.scalars().all()

        snapshots = []
        for header in headers:
            snapshots.append(
                EventTokenSnapshot(
                    id=header.id,
                    timestamp=ensure_utc(header.timestamp),
                    token_address=header.token_address,
                    events=await self.get_token_events_for_snapshot(header.id),
                )
            )
        return snapshots

    # -- NFT collection ----------------------------------------------------

    async def insert_collection_snapshot(
        self, snapshot: CollectionSnapshot, events: Sequence[HolderEvent] = ()
    ) -> CollectionSnapshot:
        record = CollectionSnapshotRecord(timestamp=snapshot.timestamp, total_count=snapshot.total_count)
        for holder in snapshot.holders:
            record.holders.append(
                NFTHolderRecord(
                    address=holder.address,
                    nft_count=holder.nft_count,
                    gen1_count=holder.gen1_count,
                    infant_count=holder.infant_count,
                    profile=holder.profile,
                )
            )
            for nft in holder.nfts:
                record.ownership.append(
                    NFTOwnershipRecord(mint=nft.mint, owner_address=holder.address, name=nft.name, nft_type=nft.type)
                )
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    session.add(record)
                    await session.flush()
                    session.add_all(_nft_event_rows(record.id, events))
                    snapshot_id = record.id
        except SQLAlchemyError as e:
            logger.error("Failed to save collection snapshot", error=str(e))
            raise PersistenceError(f"Failed to save collection snapshot: {e}") from e

        logger.info("Saved collection snapshot", snapshot_id=snapshot_id, holders=len(snapshot.holders), events=len(events))
        snapshot.id = snapshot_id
        return snapshot

    def _collection_query(self):
        return select(CollectionSnapshotRecord).options(
            selectinload(CollectionSnapshotRecord.holders),
            selectinload(CollectionSnapshotRecord.ownership),
        )

    async def get_latest_collection_snapshot(self) -> Optional[CollectionSnapshot]:
        async with self.session_factory() as session:
            result = await session.execute(
                self._collection_query()
                .order_by(CollectionSnapshotRecord.timestamp.desc(), CollectionSnapshotRecord.id.desc())
                .limit(1)
            )
            record = result.scalar_one_or_none()
            return _collection_snapshot(record) if record else None

    async def get_collection_snapshot(self, snapshot_id: int) -> Optional[CollectionSnapshot]:
        async with self.session_factory() as session:
            result = await session.execute(
                self._collection_query().where(CollectionSnapshotRecord.id == snapshot_id)
            )
            record = result.scalar_one_or_none()
            return _collection_snapshot(record) if record else None

    async def get_previous_collection_snapshot(self, snapshot_id: int) -> Optional[CollectionSnapshot]:
        async with self.session_factory() as session:
            result = await session.execute(
                self._collection_query()
                .where(CollectionSnapshotRecord.id < snapshot_id)
                .order_by(CollectionSnapshotRecord.id.desc())
                .limit(1)
            )
            record = result.scalar_one_or_none()
            return _collection_snapshot(record) if record else None

    async def replace_nft_events(self, snapshot_id: int, events: Sequence[HolderEvent]) -> int:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    await session.execute(delete(NFTEventRecord).where(NFTEventRecord.snapshot_id == snapshot_id))
                    session.add_all(_nft_event_rows(snapshot_id, events))
        except SQLAlchemyError as e:
            logger.error("Failed to replace NFT events", snapshot_id=snapshot_id, error=str(e))
            raise PersistenceError(f"Failed to replace NFT events: {e}") from e
        return len(events)

    async def get_nft_events_for_snapshot(self, snapshot_id: int) -> List[RecordedEvent]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(NFTEventRecord, CollectionSnapshotRecord.timestamp)
                .join(CollectionSnapshotRecord, CollectionSnapshotRecord.id == NFTEventRecord.snapshot_id)
                .where(NFTEventRecord.snapshot_id == snapshot_id)
                .order_by(NFTEventRecord.position)
            )
            return [_recorded(row, snapshot_timestamp) for row, snapshot_timestamp in result.all()]

    async def get_nft_snapshots_with_events(self, limit: int = 5, skip: int = 0) -> List[EventNFTSnapshot]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(CollectionSnapshotRecord)
                .order_by(CollectionSnapshotRecord.timestamp.desc(), CollectionSnapshotRecord.id.desc())
                .offset(skip)
                .limit(limit)
            )
            headers = result.scalars().all()

        return [
            EventNFTSnapshot(
                id=header.id,
                timestamp=ensure_utc(header.timestamp),
                events=await self.get_nft_events_for_snapshot(header.id),
            )
            for header in headers
        ]
