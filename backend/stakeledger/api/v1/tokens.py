"""Token holder snapshot API endpoints"""
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from stakeledger.api.deps import get_snapshot_manager, http_error
from stakeledger.schemas.holders import CreateTokenSnapshotRequest, TokenHolderSchema, TokenSnapshotResponse
from stakeledger.services.errors import StakeLedgerError
from stakeledger.services.snapshot_manager import SnapshotManager

router = APIRouter()


@router.post("/snapshots", response_model=TokenSnapshotResponse)
async def create_token_snapshot(
    request: CreateTokenSnapshotRequest,
    manager: SnapshotManager = Depends(get_snapshot_manager),
):
    """Save a token holder set and compute its events against the previous one"""
    try:
        snapshot = await manager.create_token_snapshot(
            [holder.to_holder() for holder in request.holders],
            token_address=request.token_address,
            total_supply=request.total_supply,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except StakeLedgerError as e:
        raise http_error(e)
    return TokenSnapshotResponse.model_validate(snapshot)


@router.get("/snapshots/latest", response_model=Optional[TokenSnapshotResponse])
async def get_latest_token_snapshot(manager: SnapshotManager = Depends(get_snapshot_manager)):
    snapshot = await manager.load_token_snapshot()
    if snapshot is None:
        return None
    return TokenSnapshotResponse.model_validate(snapshot)


@router.get("/holders", response_model=List[TokenHolderSchema])
async def get_token_holders(
    search: Optional[str] = Query(None, description="Case-insensitive address or profile substring"),
    limit: Optional[int] = Query(None, ge=1),
    snapshot_id: Optional[int] = Query(None),
    manager: SnapshotManager = Depends(get_snapshot_manager),
):
    """Holders of the latest (or given) token snapshot"""
    try:
        holders = await manager.get_filtered_token_holders(search=search, limit=limit, snapshot_id=snapshot_id)
    except StakeLedgerError as e:
        raise http_error(e)
    return [TokenHolderSchema.model_validate(h) for h in holders]


@router.get("/snapshots/{snapshot_id}", response_model=TokenSnapshotResponse)
async def get_token_snapshot(snapshot_id: int, manager: SnapshotManager = Depends(get_snapshot_manager)):
    try:
        snapshot = await manager.load_token_snapshot(snapshot_id)
    except StakeLedgerError as e:
        raise http_error(e)
    return TokenSnapshotResponse.model_validate(snapshot)
