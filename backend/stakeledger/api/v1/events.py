"""Holder-change event API endpoints"""
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query

from stakeledger.api.deps import get_snapshot_manager, http_error
from stakeledger.schemas.events import (
    EventSnapshotResponse,
    HolderEventResponse,
    RecordedEventResponse,
    RegenerateEventsResponse,
    RegenerateNFTEventsRequest,
    RegenerateTokenEventsRequest,
)
from stakeledger.services.errors import StakeLedgerError
from stakeledger.services.snapshot_manager import SnapshotManager

router = APIRouter()


@router.get("/tokens", response_model=List[EventSnapshotResponse])
async def get_token_snapshots_with_events(
    limit: int = Query(5, ge=1, le=100),
    skip: int = Query(0, ge=0),
    manager: SnapshotManager = Depends(get_snapshot_manager),
):
    """Token snapshots, newest first, each with its events"""
    snapshots = await manager.get_token_snapshots_with_events(limit=limit, skip=skip)
    return [
        EventSnapshotResponse(
            id=s.id,
            timestamp=s.timestamp,
            token_address=s.token_address,
            events=[RecordedEventResponse.from_recorded(e) for e in s.events],
        )
        for s in snapshots
    ]


@router.get("/tokens/{snapshot_id}", response_model=List[RecordedEventResponse])
async def get_token_events(snapshot_id: int, manager: SnapshotManager = Depends(get_snapshot_manager)):
    events = await manager.get_token_events_for_snapshot(snapshot_id)
    return [RecordedEventResponse.from_recorded(e) for e in events]


@router.post("/tokens/{snapshot_id}/regenerate", response_model=RegenerateEventsResponse)
async def regenerate_token_events(
    snapshot_id: int,
    request: Optional[RegenerateTokenEventsRequest] = Body(None),
    manager: SnapshotManager = Depends(get_snapshot_manager),
):
    """Recompute a token snapshot's events, replacing the stored set"""
    request = request or RegenerateTokenEventsRequest()
    holders = [h.to_holder() for h in request.holders] if request.holders is not None else None
    try:
        events = await manager.generate_token_events(
            snapshot_id, holders=holders, previous_snapshot_id=request.previous_snapshot_id
        )
    except StakeLedgerError as e:
        raise http_error(e)
    return RegenerateEventsResponse(
        snapshot_id=snapshot_id,
        events_generated=len(events),
        events=[HolderEventResponse.from_event(e) for e in events],
    )


@router.get("/nfts", response_model=List[EventSnapshotResponse])
async def get_nft_snapshots_with_events(
    limit: int = Query(5, ge=1, le=100),
    skip: int = Query(0, ge=0),
    manager: SnapshotManager = Depends(get_snapshot_manager),
):
    """Collection snapshots, newest first, each with its events"""
    snapshots = await manager.get_nft_snapshots_with_events(limit=limit, skip=skip)
    return [
        EventSnapshotResponse(
            id=s.id,
            timestamp=s.timestamp,
            events=[RecordedEventResponse.from_recorded(e) for e in s.events],
        )
        for s in snapshots
    ]


@router.get("/nfts/{snapshot_id}", response_model=List[RecordedEventResponse])
async def get_nft_events(snapshot_id: int, manager: SnapshotManager = Depends(get_snapshot_manager)):
    events = await manager.get_nft_events_for_snapshot(snapshot_id)
    return [RecordedEventResponse.from_recorded(e) for e in events]


@router.post("/nfts/{snapshot_id}/regenerate", response_model=RegenerateEventsResponse)
async def regenerate_nft_events(
    snapshot_id: int,
    request: Optional[RegenerateNFTEventsRequest] = Body(None),
    manager: SnapshotManager = Depends(get_snapshot_manager),
):
    """Recompute a collection snapshot's events, replacing the stored set"""
    request = request or RegenerateNFTEventsRequest()
    holders = [h.to_holder() for h in request.holders] if request.holders is not None else None
    try:
        events = await manager.generate_nft_events(
            snapshot_id, holders=holders, previous_snapshot_id=request.previous_snapshot_id
        )
    except StakeLedgerError as e:
        raise http_error(e)
    return RegenerateEventsResponse(
        snapshot_id=snapshot_id,
        events_generated=len(events),
        events=[HolderEventResponse.from_event(e) for e in events],
    )
