"""Service-layer exceptions"""
from typing import Optional


class StakeLedgerError(Exception):
    """Base class for all service errors"""


class FetchError(StakeLedgerError):
    """Transaction history could not be retrieved from the RPC provider"""

    def __init__(self, account: str, page: Optional[int] = None, cause: Optional[BaseException] = None):
        self.account = account
        self.page = page
        self.cause = cause
        where = f" (page {page})" if page is not None else ""
        reason = f": {cause}" if cause is not None else ""
        super().__init__(f"Failed to fetch history for {account}{where}{reason}")


class MalformedTransactionError(StakeLedgerError):
    """A transaction payload lacks the fields needed for classification"""

    def __init__(self, signature: Optional[str], reason: str):
        self.signature = signature
        self.reason = reason
        super().__init__(f"Malformed transaction {signature or '<unknown>'}: {reason}")


class SnapshotInProgressError(StakeLedgerError):
    """Another snapshot of the same pipeline is already running"""

    def __init__(self, pipeline: str):
        self.pipeline = pipeline
        super().__init__(f"A {pipeline} snapshot is already in progress")


class SnapshotNotFoundError(StakeLedgerError):
    """Requested snapshot does not exist"""

    def __init__(self, kind: str, snapshot_id: int):
        self.kind = kind
        self.snapshot_id = snapshot_id
        super().__init__(f"{kind.capitalize()} snapshot {snapshot_id} not found")


class PersistenceError(StakeLedgerError):
    """A database write failed and was rolled back"""


class RpcError(StakeLedgerError):
    """Transient RPC failure (rate limit, timeout, node error); safe to retry"""
