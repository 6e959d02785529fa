"""Shared API dependencies"""
from fastapi import HTTPException, Request

from stakeledger.services.errors import (
    FetchError,
    PersistenceError,
    SnapshotInProgressError,
    SnapshotNotFoundError,
    StakeLedgerError,
)
from stakeledger.services.snapshot_manager import SnapshotManager

STATUS_BY_ERROR = {
    SnapshotInProgressError: 409,
    SnapshotNotFoundError: 404,
    FetchError: 503,
    PersistenceError: 500,
}


def get_snapshot_manager(request: Request) -> SnapshotManager:
    """Snapshot manager created during application startup"""
    return request.app.state.snapshot_manager


def http_error(error: StakeLedgerError) -> HTTPException:
    """Map a service error to the HTTP status it is reported with"""
    for error_type, status_code in STATUS_BY_ERROR.items():
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))
