"""Holder-change event models"""
import enum

from sqlalchemy import Column, DateTime, Enum as SQLEnum, ForeignKey, Index, Integer, JSON, Numeric, String

from stakeledger.models.database import Base
from stakeledger.models.staking import utc_now


class EventType(str, enum.Enum):
    """Kinds of holder-change and ledger events."""
    NEW_HOLDER = "new_holder"
    TRANSFER_BETWEEN = "transfer_between"
    WALLET_EMPTY = "wallet_empty"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


class TokenEventRecord(Base):
    """
    Holder-change event between two consecutive token snapshots.

    Rows are derived from a snapshot pair and only ever replaced as a whole set
    for their snapshot_id.
    """
    __tablename__ = "token_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    snapshot_id = Column(Integer, ForeignKey("token_snapshots.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)  # order within the snapshot's event list
    event_type = Column(SQLEnum(EventType), nullable=False, index=True)
    source_address = Column(String(44), nullable=True, index=True)
    destination_address = Column(String(44), nullable=True, index=True)
    amount = Column(Numeric(38, 9), nullable=False)
    previous_balance = Column(Numeric(38, 9), nullable=True)
    new_balance = Column(Numeric(38, 9), nullable=True)

    __table_args__ = (
        Index("ix_token_events_snapshot_position", "snapshot_id", "position"),
    )


class NFTEventRecord(Base):
    """Holder-change event between two consecutive collection snapshots"""
    __tablename__ = "nft_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    snapshot_id = Column(Integer, ForeignKey("nft_snapshots.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    event_type = Column(SQLEnum(EventType), nullable=False, index=True)
    source_address = Column(String(44), nullable=True, index=True)
    destination_address = Column(String(44), nullable=True, index=True)
    mints = Column(JSON, nullable=False, default=list)
    amount = Column(Integer, nullable=False, default=0)  # number of NFTs involved
    previous_balance = Column(Integer, nullable=True)
    new_balance = Column(Integer, nullable=True)

    __table_args__ = (
        Index("ix_nft_events_snapshot_position", "snapshot_id", "position"),
    )
