"""Token and NFT holder snapshot schemas"""
from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from enum import Enum

from stakeledger.services.event_diff import NFTHolder, NFTItem, TokenHolder


class NFTType(str, Enum):
    GEN1 = "Gen1"
    INFANT = "Infant"


class TokenHolderSchema(BaseModel):
    address: str
    balance: Decimal = Field(ge=0)
    is_lp_pool: bool = False
    is_treasury: bool = False
    # Social annotations (twitter, discord, comment, ...), stored verbatim
    profile: Optional[Dict[str, Any]] = None

    class Config:
        from_attributes = True

    def to_holder(self) -> TokenHolder:
        return TokenHolder(
            address=self.address,
            balance=self.balance,
            is_lp_pool=self.is_lp_pool,
            is_treasury=self.is_treasury,
            profile=self.profile,
        )


class CreateTokenSnapshotRequest(BaseModel):
    """Holder set of the tracked token as discovered by the caller"""
    holders: List[TokenHolderSchema]
    token_address: Optional[str] = None
    total_supply: Optional[Decimal] = None


class TokenSnapshotResponse(BaseModel):
    id: int
    token_address: str
    timestamp: datetime
    total_supply: Decimal
    holder_count: int
    holders: List[TokenHolderSchema]

    class Config:
        from_attributes = True


class NFTItemSchema(BaseModel):
    mint: str
    name: str = "Unknown"
    type: NFTType = NFTType.GEN1

    class Config:
        from_attributes = True


class NFTHolderRequest(BaseModel):
    address: str
    nfts: List[NFTItemSchema]
    profile: Optional[Dict[str, Any]] = None

    def to_holder(self) -> NFTHolder:
        return NFTHolder(
            address=self.address,
            nfts=tuple(NFTItem(mint=n.mint, name=n.name, type=n.type.value) for n in self.nfts),
            profile=self.profile,
        )


class NFTHolderResponse(BaseModel):
    address: str
    nft_count: int
    gen1_count: int
    infant_count: int
    nfts: List[NFTItemSchema]
    profile: Optional[Dict[str, Any]] = None

    class Config:
        from_attributes = True


class CreateCollectionSnapshotRequest(BaseModel):
    """Holder set of the NFT collection as discovered by the caller"""
    holders: List[NFTHolderRequest]


class CollectionSnapshotResponse(BaseModel):
    id: int
    timestamp: datetime
    total_count: int
    holder_count: int
    holders: List[NFTHolderResponse]

    class Config:
        from_attributes = True
