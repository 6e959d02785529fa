"""Unit tests for paginated history fetching"""
import asyncio
from datetime import timedelta

import pytest

from conftest import CUSTODY, T0, make_fetched
from stakeledger.services.errors import FetchError, RpcError
from stakeledger.services.history_fetcher import TransactionHistoryFetcher, chronological

WALLET = "WwwwWa11et1111111111111111111111111111111111"


def populate(fake_client, count):
    """Add `count` deposits, one minute apart; returns signatures oldest first"""
    signatures = []
    for i in range(count):
        signature = f"sig{i:02d}"
        fake_client.add(make_fetched(signature, WALLET, 10 + i, at=T0 + timedelta(minutes=i), slot=100 + i))
        signatures.append(signature)
    return signatures


@pytest.fixture
def fetcher(fake_client, settings):
    return TransactionHistoryFetcher.from_settings(fake_client, settings)


class TestChronological:
    def test_orders_by_block_time_then_slot(self):
        page = [
            {"signature": "c", "block_time": 20, "slot": 3},
            {"signature": "b", "block_time": 10, "slot": 2},
            {"signature": "a", "block_time": 10, "slot": 1},
        ]
        assert [s["signature"] for s in chronological(page)] == ["a", "b", "c"]


class TestIterSignatures:
    """Tests for signature pagination"""

    @pytest.mark.asyncio
    async def test_walks_all_pages_newest_first(self, fetcher, fake_client):
        signatures = populate(fake_client, 8)

        collected = await fetcher.collect_signatures(CUSTODY)

        assert [s["signature"] for s in collected] == list(reversed(signatures))
        # 3 + 3 + 2, the short page ends the walk
        assert fake_client.signature_calls == 3

    @pytest.mark.asyncio
    async def test_exact_multiple_needs_empty_page(self, fetcher, fake_client):
        populate(fake_client, 6)
        collected = await fetcher.collect_signatures(CUSTODY)
        assert len(collected) == 6
        assert fake_client.signature_calls == 3

    @pytest.mark.asyncio
    async def test_stops_at_until(self, fetcher, fake_client):
        signatures = populate(fake_client, 8)
        collected = await fetcher.collect_signatures(CUSTODY, until=signatures[4])
        assert [s["signature"] for s in collected] == ["sig07", "sig06", "sig05"]

    @pytest.mark.asyncio
    async def test_empty_history(self, fetcher, fake_client):
        assert await fetcher.collect_signatures(CUSTODY) == []


class TestRetries:
    """Tests for the retry policy"""

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, fetcher, fake_client):
        populate(fake_client, 2)
        fake_client.transient_signature_failures = 2

        collected = await fetcher.collect_signatures(CUSTODY)

        assert len(collected) == 2
        assert fake_client.signature_calls == 3

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_fetch_error_with_page(self, fetcher, fake_client):
        populate(fake_client, 10)
        fake_client.fail_signature_calls_after = 2

        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch_history(CUSTODY)

        assert exc_info.value.page == 3
        assert exc_info.value.account == CUSTODY
        assert isinstance(exc_info.value.cause, RpcError)
        # Two good pages plus three attempts at page 3
        assert fake_client.signature_calls == 5
        assert fake_client.transaction_calls == 0


class TestFetchHistory:
    """Tests for loading transaction details"""

    @pytest.mark.asyncio
    async def test_complete_fetch(self, fetcher, fake_client):
        signatures = populate(fake_client, 5)

        history = await fetcher.fetch_history(CUSTODY)

        assert history.complete
        assert [t.signature for t in history.transactions] == signatures
        assert history.newest_signature == "sig04"
        assert history.last_processed_signature == "sig04"
        assert history.transactions[0].block_time == int(T0.timestamp())

    @pytest.mark.asyncio
    async def test_failed_chain_transactions_not_loaded(self, fetcher, fake_client):
        fake_client.add(make_fetched("ok", WALLET, 5, at=T0, slot=1))
        fake_client.add(make_fetched("failed", WALLET, 5, at=T0 + timedelta(minutes=1), slot=2), err={"InstructionError": []})

        history = await fetcher.fetch_history(CUSTODY)

        assert [t.signature for t in history.transactions] == ["ok"]
        assert history.newest_signature == "failed"
        assert history.last_processed_signature == "failed"

    @pytest.mark.asyncio
    async def test_missing_transaction_recorded(self, fetcher, fake_client):
        populate(fake_client, 3)
        fake_client.transactions["sig01"] = None

        history = await fetcher.fetch_history(CUSTODY)

        assert history.complete
        assert history.missing == ["sig01"]
        assert [t.signature for t in history.transactions] == ["sig00", "sig02"]

    @pytest.mark.asyncio
    async def test_detail_failure_sets_watermark(self, fetcher, fake_client):
        populate(fake_client, 5)
        fake_client.failing_transactions = {"sig03"}

        history = await fetcher.fetch_history(CUSTODY)

        assert not history.complete
        assert isinstance(history.error, FetchError)
        assert [t.signature for t in history.transactions] == ["sig00", "sig01", "sig02"]
        assert history.last_processed_signature == "sig02"
        assert history.newest_signature == "sig04"

    @pytest.mark.asyncio
    async def test_first_detail_failure_leaves_no_watermark(self, fetcher, fake_client):
        populate(fake_client, 3)
        fake_client.failing_transactions = {"sig00"}

        history = await fetcher.fetch_history(CUSTODY)

        assert history.transactions == []
        assert history.last_processed_signature is None

    @pytest.mark.asyncio
    async def test_incremental_fetch(self, fetcher, fake_client):
        signatures = populate(fake_client, 7)

        history = await fetcher.fetch_history(CUSTODY, until=signatures[3])

        assert [t.signature for t in history.transactions] == ["sig04", "sig05", "sig06"]
        assert history.newest_signature == "sig06"

    @pytest.mark.asyncio
    async def test_incremental_missing_transaction_is_a_failure(self, fetcher, fake_client):
        signatures = populate(fake_client, 5)
        fake_client.transactions["sig03"] = None

        history = await fetcher.fetch_history(CUSTODY, until=signatures[1])

        assert not history.complete
        assert history.missing == ["sig03"]
        assert [t.signature for t in history.transactions] == ["sig02"]
        assert history.last_processed_signature == "sig02"


class TestTimeout:
    """Tests for the overall fetch deadline"""

    @pytest.mark.asyncio
    async def test_timeout_raises_fetch_error(self, fetcher, fake_client):
        populate(fake_client, 2)
        fetcher.timeout = 0.05
        original = fake_client.get_signatures_for_address

        async def slow_signatures(*args, **kwargs):
            await asyncio.sleep(1)
            return await original(*args, **kwargs)

        fake_client.get_signatures_for_address = slow_signatures

        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch_history(CUSTODY)
        assert isinstance(exc_info.value.cause, asyncio.TimeoutError)
        assert exc_info.value.page is None

    @pytest.mark.asyncio
    async def test_timeout_raises_fetch_error_and_persists_nothing(self, manager, fake_client):
        populate(fake_client, 3)
        first = await manager.create_staking_snapshot(incremental=False)

        fake_client.add(make_fetched("late", WALLET, 5, at=T0 + timedelta(hours=1), slot=200))
        manager.fetcher.timeout = 0.05
        original = fake_client.get_transaction

        async def slow_transaction(*args, **kwargs):
            await asyncio.sleep(1)
            return await original(*args, **kwargs)

        fake_client.get_transaction = slow_transaction

        with pytest.raises(FetchError) as exc_info:
            await manager.create_staking_snapshot()
        assert isinstance(exc_info.value.cause, asyncio.TimeoutError)

        assert [s.id for s in await manager.list_staking_snapshots()] == [first.id]
        latest = await manager.repository.get_latest_staking_snapshot()
        assert latest.last_signature == first.last_signature == "sig02"
