"""NFT collection snapshot API endpoints"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from stakeledger.api.deps import get_snapshot_manager, http_error
from stakeledger.schemas.holders import (
    CollectionSnapshotResponse,
    CreateCollectionSnapshotRequest,
    NFTHolderResponse,
)
from stakeledger.services.errors import StakeLedgerError
from stakeledger.services.snapshot_manager import SnapshotManager

router = APIRouter()


@router.post("/snapshots", response_model=CollectionSnapshotResponse)
async def create_collection_snapshot(
    request: CreateCollectionSnapshotRequest,
    manager: SnapshotManager = Depends(get_snapshot_manager),
):
    """Save a collection holder set and compute its events against the previous one"""
    try:
        snapshot = await manager.create_collection_snapshot([holder.to_holder() for holder in request.holders])
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except StakeLedgerError as e:
        raise http_error(e)
    return CollectionSnapshotResponse.model_validate(snapshot)


@router.get("/snapshots/latest", response_model=Optional[CollectionSnapshotResponse])
async def get_latest_collection_snapshot(manager: SnapshotManager = Depends(get_snapshot_manager)):
    snapshot = await manager.load_collection_snapshot()
    if snapshot is None:
        return None
    return CollectionSnapshotResponse.model_validate(snapshot)


@router.get("/holders", response_model=List[NFTHolderResponse])
async def get_nft_holders(
    search: Optional[str] = Query(None, description="Case-insensitive address or profile substring"),
    limit: Optional[int] = Query(None, ge=1),
    snapshot_id: Optional[int] = Query(None),
    manager: SnapshotManager = Depends(get_snapshot_manager),
):
    try:
        holders = await manager.get_filtered_nft_holders(search=search, limit=limit, snapshot_id=snapshot_id)
    except StakeLedgerError as e:
        raise http_error(e)
    return [NFTHolderResponse.model_validate(h) for h in holders]


@router.get("/snapshots/{snapshot_id}", response_model=CollectionSnapshotResponse)
async def get_collection_snapshot(snapshot_id: int, manager: SnapshotManager = Depends(get_snapshot_manager)):
    try:
        snapshot = await manager.load_collection_snapshot(snapshot_id)
    except StakeLedgerError as e:
        raise http_error(e)
    return CollectionSnapshotResponse.model_validate(snapshot)
