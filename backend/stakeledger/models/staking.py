"""Staking snapshot models"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import relationship

from stakeledger.models.database import Base

# Token UI amounts with up to 9 decimals
Amount = Numeric(38, 9)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops tzinfo) and convert aware ones"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class StakingSnapshotRecord(Base):
    """Header row of a staking snapshot, immutable once committed"""
    __tablename__ = "staking_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    contract_address = Column(String(44), nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)
    total_staked = Column(Amount, nullable=False, default=0)
    total_locked = Column(Amount, nullable=False, default=0)
    total_unlocked = Column(Amount, nullable=False, default=0)
    last_signature = Column(String(100), nullable=True, index=True)  # incremental watermark
    is_incremental = Column(Boolean, nullable=False, default=False)

    # Relationships
    wallets = relationship(
        "StakingWalletRecord",
        back_populates="snapshot",
        cascade="all, delete-orphan",
        order_by="StakingWalletRecord.id",
    )
    stakes = relationship(
        "StakeRecord",
        back_populates="snapshot",
        cascade="all, delete-orphan",
        order_by="StakeRecord.id",
    )
    discrepancies = relationship(
        "LedgerDiscrepancyRecord",
        back_populates="snapshot",
        cascade="all, delete-orphan",
        order_by="LedgerDiscrepancyRecord.id",
    )

    def __repr__(self):
        return f"<StakingSnapshotRecord id={self.id} staked={self.total_staked}>"


class StakingWalletRecord(Base):
    """Per-wallet totals within a staking snapshot"""
    __tablename__ = "staking_wallet_data"

    id = Column(Integer, primary_key=True, autoincrement=True)
    snapshot_id = Column(Integer, ForeignKey("staking_snapshots.id", ondelete="CASCADE"), nullable=False, index=True)
    wallet_address = Column(String(44), nullable=False, index=True)
    total_staked = Column(Amount, nullable=False, default=0)
    total_locked = Column(Amount, nullable=False, default=0)
    total_unlocked = Column(Amount, nullable=False, default=0)

    snapshot = relationship("StakingSnapshotRecord", back_populates="wallets")


class StakeRecord(Base):
    """Individual open stake within a staking snapshot"""
    __tablename__ = "staking_stakes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    snapshot_id = Column(Integer, ForeignKey("staking_snapshots.id", ondelete="CASCADE"), nullable=False, index=True)
    wallet_address = Column(String(44), nullable=False, index=True)
    mint_address = Column(String(44), nullable=False)
    amount = Column(Amount, nullable=False, default=0)
    stake_date = Column(DateTime(timezone=True), nullable=False)
    unlock_date = Column(DateTime(timezone=True), nullable=False, index=True)
    # Informational only; lock state is always recomputed at read time
    is_locked = Column(Boolean, nullable=False, default=True)

    snapshot = relationship("StakingSnapshotRecord", back_populates="stakes")

    __table_args__ = (
        Index("ix_staking_stakes_snapshot_wallet", "snapshot_id", "wallet_address"),
    )


class LedgerDiscrepancyRecord(Base):
    """Withdrawal that exceeded the wallet's tracked stakes, kept for audit"""
    __tablename__ = "staking_discrepancies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    snapshot_id = Column(Integer, ForeignKey("staking_snapshots.id", ondelete="CASCADE"), nullable=False, index=True)
    wallet_address = Column(String(44), nullable=False, index=True)
    signature = Column(String(100), nullable=False)
    detected_at = Column(DateTime(timezone=True), nullable=False)
    requested_amount = Column(Amount, nullable=False)
    unmatched_amount = Column(Amount, nullable=False)

    snapshot = relationship("StakingSnapshotRecord", back_populates="discrepancies")
