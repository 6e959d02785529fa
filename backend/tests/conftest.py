"""Pytest configuration and fixtures for StakeLedger backend tests"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Dict, List, Optional

import pytest
import pytest_asyncio
from dotenv import load_dotenv
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

from stakeledger.config import Settings
from stakeledger.main import create_app
from stakeledger.models.database import close_db, create_session_factory, init_db
from stakeledger.services.errors import RpcError
from stakeledger.services.history_fetcher import FetchedTransaction
from stakeledger.services.repository import SnapshotRepository
from stakeledger.services.snapshot_manager import SnapshotManager

# Load environment variables
load_dotenv()

CONTRACT = "GpUmCRvdKF7EkiufUTCPDvPgy6Fi4GXtrLgLSwLCCyLd"
MINT = "31k88G5Mq7ptbRDf3AM13HAq6wRQHXHikR8hik7wPygk"
CUSTODY = "JAji7pYxBgtDw1RGXhjH7tT1HzSD42FfZ5sAfyw5cz3A"
OTHER_MINT = "So11111111111111111111111111111111111111112"
DECIMALS = 9

# 2024-01-01T00:00:00Z
T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def raw(amount) -> str:
    return str(int(Decimal(str(amount)).scaleb(DECIMALS)))


def token_balance(index: int, owner: str, amount, mint: str = MINT) -> Dict:
    return {
        "accountIndex": index,
        "mint": mint,
        "owner": owner,
        "uiTokenAmount": {
            "amount": raw(amount),
            "decimals": DECIMALS,
            "uiAmount": float(amount),
            "uiAmountString": str(amount),
        },
    }


def make_transfer_payload(
    signature: str,
    wallet: str,
    amount,
    kind: str = "deposit",
    block_time: Optional[int] = None,
    slot: int = 1,
    user_balance=None,
    user_pre_missing: bool = False,
    mint: str = MINT,
) -> Dict:
    """
    Parsed-transaction payload moving `amount` between a wallet and the custody account.

    Account index 1 is the wallet's token account, index 2 the custody account.
    """
    amount = Decimal(str(amount))
    custody_before = Decimal(1_000_000_000)
    if kind == "deposit":
        user_before = Decimal(str(user_balance)) if user_balance is not None else amount + 1000
        user_after = user_before - amount
        custody_after = custody_before + amount
    else:
        user_before = Decimal(str(user_balance)) if user_balance is not None else Decimal(0)
        user_after = user_before + amount
        custody_after = custody_before - amount

    pre = [token_balance(2, CONTRACT, custody_before, mint)]
    if not user_pre_missing:
        pre.insert(0, token_balance(1, wallet, user_before, mint))
    post = [token_balance(1, wallet, user_after, mint), token_balance(2, CONTRACT, custody_after, mint)]

    return {
        "slot": slot,
        "blockTime": block_time,
        "transaction": {
            "signatures": [signature],
            "message": {
                "accountKeys": [
                    {"pubkey": wallet, "signer": True, "writable": True},
                    {"pubkey": f"{wallet[:30]}TokenAcct", "signer": False, "writable": True},
                    {"pubkey": CUSTODY, "signer": False, "writable": True},
                ],
            },
        },
        "meta": {"err": None, "preTokenBalances": pre, "postTokenBalances": post},
    }


def make_fetched(signature: str, wallet: str, amount, kind: str = "deposit", at: datetime = T0, slot: int = 1, **kwargs):
    block_time = int(at.timestamp())
    return FetchedTransaction(
        signature=signature,
        slot=slot,
        block_time=block_time,
        payload=make_transfer_payload(signature, wallet, amount, kind, block_time=block_time, slot=slot, **kwargs),
    )


class FakeSolanaClient:
    """In-memory transaction history with failure injection"""

    def __init__(self):
        self.signatures: List[Dict] = []  # newest first
        self.transactions: Dict[str, Optional[Dict]] = {}
        self.custody_balance: Optional[Decimal] = None
        self.signature_calls = 0
        self.transaction_calls = 0
        # Signature calls with a number above this fail
        self.fail_signature_calls_after: Optional[int] = None
        # First N signature calls fail, later ones succeed
        self.transient_signature_failures = 0
        self.failing_transactions: set = set()

    def add(self, tx: FetchedTransaction, err=None) -> None:
        self.signatures.append(
            {"signature": tx.signature, "slot": tx.slot, "err": err, "memo": None, "block_time": tx.block_time}
        )
        self.signatures.sort(key=lambda s: (s["block_time"], s["slot"]), reverse=True)
        self.transactions[tx.signature] = tx.payload

    async def get_signatures_for_address(self, address, before=None, until=None, limit=100):
        self.signature_calls += 1
        if self.signature_calls <= self.transient_signature_failures:
            raise RpcError("429 Too Many Requests")
        if self.fail_signature_calls_after is not None and self.signature_calls > self.fail_signature_calls_after:
            raise RpcError("503 Service Unavailable")

        ordered = [s["signature"] for s in self.signatures]
        start = ordered.index(before) + 1 if before else 0
        end = ordered.index(until) if until in ordered else len(ordered)
        return [dict(s) for s in self.signatures[start:end]][:limit]

    async def get_transaction(self, signature, max_supported_version=0):
        self.transaction_calls += 1
        if signature in self.failing_transactions:
            raise RpcError("node is behind")
        return self.transactions.get(signature)

    async def get_token_account_balance(self, token_account):
        if self.custody_balance is None:
            raise RpcError("balance unavailable")
        return {"amount": raw(self.custody_balance), "decimals": DECIMALS, "ui_amount": float(self.custody_balance)}


class FrozenClock:
    """Settable clock"""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def settings() -> Settings:
    """Settings tuned for fast tests"""
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        fetch_page_size=3,
        fetch_max_attempts=3,
        fetch_backoff_min_seconds=0,
        fetch_backoff_max_seconds=0,
        fetch_page_delay_seconds=0,
        fetch_timeout_seconds=5,
    )


@pytest.fixture
def fake_client() -> FakeSolanaClient:
    return FakeSolanaClient()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(T0 + timedelta(days=1))


@pytest_asyncio.fixture(scope="function")
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite engine with all tables created"""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    try:
        yield engine
    finally:
        await close_db(engine)


@pytest.fixture
def repository(db_engine: AsyncEngine) -> SnapshotRepository:
    return SnapshotRepository(create_session_factory(db_engine))


@pytest.fixture
def manager(fake_client, repository, settings, clock) -> SnapshotManager:
    return SnapshotManager(client=fake_client, repository=repository, settings=settings, clock=clock)


@pytest_asyncio.fixture(scope="function")
async def client(manager: SnapshotManager, settings: Settings) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client bound to the test manager"""
    app = create_app(settings=settings, manager=manager)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac


@pytest.fixture
def make_tx():
    """Builder for fetched deposit/withdrawal transactions"""
    return make_fetched
