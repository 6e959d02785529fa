"""Staking API endpoints"""
from datetime import date
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException, Query

from stakeledger.api.deps import get_snapshot_manager, http_error
from stakeledger.schemas.staking import (
    StakeDataResponse,
    StakeResponse,
    StakingSnapshotResponse,
    StakingSnapshotSummary,
    UnlockSummaryEntryResponse,
    WalletStakeResponse,
)
from stakeledger.services.errors import StakeLedgerError
from stakeledger.services.snapshot_manager import SnapshotManager

logger = structlog.get_logger()

router = APIRouter()


@router.get("", response_model=List[StakeDataResponse])
async def get_staking_data(
    search: Optional[str] = Query(None, description="Case-insensitive wallet address substring"),
    limit: Optional[int] = Query(None, ge=1),
    snapshot_id: Optional[int] = Query(None),
    manager: SnapshotManager = Depends(get_snapshot_manager),
):
    """Wallet staking data from the latest (or given) snapshot"""
    try:
        data = await manager.get_filtered_staking_data(search=search, limit=limit, snapshot_id=snapshot_id)
    except StakeLedgerError as e:
        raise http_error(e)
    return [StakeDataResponse.model_validate(d) for d in data]


@router.get("/live", response_model=List[StakeDataResponse])
async def get_live_staking_data(manager: SnapshotManager = Depends(get_snapshot_manager)):
    """Recompute staking data from chain history without saving it"""
    try:
        data = await manager.fetch_staking_data()
    except StakeLedgerError as e:
        logger.error("Live staking fetch failed", error=str(e))
        raise http_error(e)
    return [StakeDataResponse.model_validate(d) for d in data]


@router.post("/snapshots", response_model=StakingSnapshotResponse)
async def create_staking_snapshot(
    incremental: bool = Query(True),
    manager: SnapshotManager = Depends(get_snapshot_manager),
):
    """Take a new staking snapshot"""
    try:
        snapshot = await manager.create_staking_snapshot(incremental=incremental)
    except StakeLedgerError as e:
        logger.error("Staking snapshot failed", error=str(e))
        raise http_error(e)
    return StakingSnapshotResponse.model_validate(snapshot)


@router.post("/snapshots/import", response_model=StakingSnapshotResponse)
async def import_staking_snapshot(
    payload: Dict[str, Any] = Body(...),
    manager: SnapshotManager = Depends(get_snapshot_manager),
):
    """Import a staking snapshot document exported by the file-based tooling"""
    try:
        snapshot = await manager.import_staking_snapshot(payload)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except StakeLedgerError as e:
        raise http_error(e)
    return StakingSnapshotResponse.model_validate(snapshot)


@router.get("/snapshots", response_model=List[StakingSnapshotSummary])
async def list_staking_snapshots(manager: SnapshotManager = Depends(get_snapshot_manager)):
    snapshots = await manager.list_staking_snapshots()
    return [StakingSnapshotSummary.model_validate(s) for s in snapshots]


@router.get("/snapshots/latest", response_model=Optional[StakingSnapshotResponse])
async def get_latest_staking_snapshot(manager: SnapshotManager = Depends(get_snapshot_manager)):
    """Latest snapshot with lock state evaluated now, null when none exists"""
    snapshot = await manager.load_staking_snapshot()
    if snapshot is None:
        return None
    return StakingSnapshotResponse.model_validate(snapshot)


@router.get("/snapshots/{snapshot_id}", response_model=StakingSnapshotResponse)
async def get_staking_snapshot(snapshot_id: int, manager: SnapshotManager = Depends(get_snapshot_manager)):
    try:
        snapshot = await manager.load_staking_snapshot(snapshot_id)
    except StakeLedgerError as e:
        raise http_error(e)
    return StakingSnapshotResponse.model_validate(snapshot)


@router.get("/unlock-summary", response_model=List[UnlockSummaryEntryResponse])
async def get_unlock_summary(
    after_date: Optional[date] = Query(None),
    wallet: Optional[str] = Query(None),
    manager: SnapshotManager = Depends(get_snapshot_manager),
):
    """Locked amounts per unlock day"""
    entries = await manager.get_unlock_summary(after_date=after_date, wallet_address=wallet)
    return [UnlockSummaryEntryResponse.model_validate(e) for e in entries]


@router.get("/wallets/{address}", response_model=WalletStakeResponse)
async def get_wallet_stakes(
    address: str,
    within_days: int = Query(30, ge=0, le=365),
    manager: SnapshotManager = Depends(get_snapshot_manager),
):
    """One wallet's stakes with those unlocking in the next `within_days` days"""
    data = await manager.get_wallet_stake_data(address)
    if data is None:
        raise HTTPException(status_code=404, detail="Wallet has no stakes")
    upcoming = await manager.get_upcoming_unlocks(address, within_days=within_days)
    return WalletStakeResponse(
        stake_data=StakeDataResponse.model_validate(data),
        upcoming_unlocks=[StakeResponse.model_validate(s) for s in upcoming],
    )
