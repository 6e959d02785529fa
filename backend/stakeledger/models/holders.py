"""Token and NFT collection holder snapshot models"""
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, JSON, Numeric, String
from sqlalchemy.orm import relationship

from stakeledger.models.database import Base
from stakeledger.models.staking import utc_now


class TokenSnapshotRecord(Base):
    """Point-in-time holder set of the tracked fungible token"""
    __tablename__ = "token_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)
    token_address = Column(String(44), nullable=False)
    total_supply = Column(Numeric(38, 9), nullable=False, default=0)

    holders = relationship(
        "TokenHolderRecord",
        back_populates="snapshot",
        cascade="all, delete-orphan",
        order_by="TokenHolderRecord.address",
    )

    def __repr__(self):
        return f"<TokenSnapshotRecord id={self.id} token={self.token_address[:8]}...>"


class TokenHolderRecord(Base):
    """Balance of one wallet within a token snapshot"""
    __tablename__ = "token_holders"

    snapshot_id = Column(Integer, ForeignKey("token_snapshots.id", ondelete="CASCADE"), primary_key=True)
    address = Column(String(44), primary_key=True, index=True)
    balance = Column(Numeric(38, 9), nullable=False)
    is_lp_pool = Column(Boolean, nullable=False, default=False)
    is_treasury = Column(Boolean, nullable=False, default=False)
    profile = Column(JSON, nullable=True)  # social annotations, stored verbatim

    snapshot = relationship("TokenSnapshotRecord", back_populates="holders")


class CollectionSnapshotRecord(Base):
    """Point-in-time holder set of the NFT collection"""
    __tablename__ = "nft_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)
    total_count = Column(Integer, nullable=False, default=0)

    holders = relationship(
        "NFTHolderRecord",
        back_populates="snapshot",
        cascade="all, delete-orphan",
        order_by="NFTHolderRecord.address",
    )
    ownership = relationship(
        "NFTOwnershipRecord",
        back_populates="snapshot",
        cascade="all, delete-orphan",
        order_by="NFTOwnershipRecord.mint",
    )


class NFTHolderRecord(Base):
    """NFT counts of one wallet within a collection snapshot"""
    __tablename__ = "nft_holders"

    snapshot_id = Column(Integer, ForeignKey("nft_snapshots.id", ondelete="CASCADE"), primary_key=True)
    address = Column(String(44), primary_key=True, index=True)
    nft_count = Column(Integer, nullable=False, default=0)
    gen1_count = Column(Integer, nullable=False, default=0)
    infant_count = Column(Integer, nullable=False, default=0)
    profile = Column(JSON, nullable=True)

    snapshot = relationship("CollectionSnapshotRecord", back_populates="holders")


class NFTOwnershipRecord(Base):
    """Owner of one mint within a collection snapshot"""
    __tablename__ = "nft_ownership"

    snapshot_id = Column(Integer, ForeignKey("nft_snapshots.id", ondelete="CASCADE"), primary_key=True)
    mint = Column(String(44), primary_key=True)
    owner_address = Column(String(44), nullable=False, index=True)
    name = Column(String(255), nullable=False, default="Unknown")
    nft_type = Column(String(50), nullable=False, default="Gen1")

    snapshot = relationship("CollectionSnapshotRecord", back_populates="ownership")
