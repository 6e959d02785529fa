"""
Transaction history fetching.

Walks getSignaturesForAddress page by page (newest first), then loads each
transaction's parsed details in chronological order. Transient RPC failures
are retried with exponential backoff; the whole walk is bounded by a timeout.
"""
import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from stakeledger.config import Settings
from stakeledger.services.errors import FetchError, RpcError

logger = structlog.get_logger()

RETRYABLE_ERRORS = (RpcError, asyncio.TimeoutError, ConnectionError)


@dataclass(frozen=True)
class FetchedTransaction:
    """Parsed transaction payload with the signature metadata it was found under"""
    signature: str
    slot: Optional[int]
    block_time: Optional[int]
    payload: Dict[str, Any]


@dataclass
class FetchedHistory:
    """Result of one history walk"""
    signatures: List[Dict[str, Any]] = field(default_factory=list)
    transactions: List[FetchedTransaction] = field(default_factory=list)
    newest_signature: Optional[str] = None
    # Last signature handled in chronological order before any detail failure
    last_processed_signature: Optional[str] = None
    missing: List[str] = field(default_factory=list)
    error: Optional[FetchError] = None

    @property
    def complete(self) -> bool:
        return self.error is None


def chronological(signatures: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Oldest first; ties keep reverse page order"""
    return sorted(
        reversed(signatures),
        key=lambda info: (info.get("block_time") or 0, info.get("slot") or 0),
    )


class TransactionHistoryFetcher:
    """Paginated, retrying reader of an account's transaction history"""

    def __init__(
        self,
        client,
        page_size: int = 100,
        max_attempts: int = 5,
        backoff_min: float = 1.0,
        backoff_max: float = 30.0,
        page_delay: float = 1.0,
        timeout: Optional[float] = 600.0,
    ):
        self.client = client
        self.page_size = page_size
        self.max_attempts = max_attempts
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max
        self.page_delay = page_delay
        self.timeout = timeout

    @classmethod
    def from_settings(cls, client, settings: Settings) -> "TransactionHistoryFetcher":
        return cls(
            client,
            page_size=settings.fetch_page_size,
            max_attempts=settings.fetch_max_attempts,
            backoff_min=settings.fetch_backoff_min_seconds,
            backoff_max=settings.fetch_backoff_max_seconds,
            page_delay=settings.fetch_page_delay_seconds,
            timeout=settings.fetch_timeout_seconds,
        )

    async def _call(
        self,
        account: str,
        page: Optional[int],
        fn: Callable[..., Awaitable[Any]],
        *args,
        **kwargs,
    ) -> Any:
        """Run one RPC call under the retry policy, raising FetchError on exhaustion"""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_min, max=self.backoff_max),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            "Retrying RPC call",
                            account=account,
                            page=page,
                            attempt=attempt.retry_state.attempt_number,
                        )
                    return await fn(*args, **kwargs)
        except RETRYABLE_ERRORS as e:
            logger.error("RPC call failed after retries", account=account, page=page, error=str(e))
            raise FetchError(account, page, e) from e

    async def iter_signatures(
        self,
        account: str,
        before: Optional[str] = None,
        until: Optional[str] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Yield signature records for an account, newest first.

        Args:
            account: Address whose history is walked
            before: Start strictly before this signature
            until: Stop at this signature (exclusive), the incremental checkpoint

        Raises:
            FetchError: A page could not be fetched within the retry budget
        """
        cursor = before
        page = 0
        while True:
            page += 1
            batch = await self._call(
                account,
                page,
                self.client.get_signatures_for_address,
                account,
                before=cursor,
                until=until,
                limit=self.page_size,
            )
            logger.debug("Fetched signature page", account=account, page=page, count=len(batch))
            if not batch:
                return

            for info in batch:
                if until is not None and info["signature"] == until:
                    return
                yield info

            if len(batch) < self.page_size:
                return
            cursor = batch[-1]["signature"]
            if self.page_delay:
                await asyncio.sleep(self.page_delay)

    async def collect_signatures(self, account: str, until: Optional[str] = None) -> List[Dict[str, Any]]:
        return [info async for info in self.iter_signatures(account, until=until)]

    async def iter_transactions(
        self,
        account: str,
        until: Optional[str] = None,
        signatures: Optional[List[Dict[str, Any]]] = None,
    ) -> AsyncIterator[tuple[Dict[str, Any], Optional[Dict[str, Any]]]]:
        """
        Yield (signature_info, parsed_transaction_or_None) oldest first.

        Signatures whose transaction failed on chain are skipped. The signature
        list is collected in full before any detail is requested.
        """
        if signatures is None:
            signatures = await self.collect_signatures(account, until=until)

        for info in chronological(signatures):
            if info.get("err") is not None:
                continue
            payload = await self._call(account, None, self.client.get_transaction, info["signature"])
            yield info, payload

    async def _fetch(self, account: str, until: Optional[str]) -> FetchedHistory:
        signatures = await self.collect_signatures(account, until=until)
        history = FetchedHistory(
            signatures=signatures,
            newest_signature=signatures[0]["signature"] if signatures else None,
        )
        if not signatures:
            return history

        handled = set()
        try:
            async for info, payload in self.iter_transactions(account, signatures=signatures):
                signature = info["signature"]
                if payload is None:
                    logger.warning("Transaction not returned by provider", signature=signature)
                    history.missing.append(signature)
                    if until is not None:
                        # Incremental runs must not move the checkpoint past it
                        history.error = FetchError(
                            account, None, RpcError(f"transaction {signature} not returned")
                        )
                        break
                else:
                    history.transactions.append(
                        FetchedTransaction(
                            signature=signature,
                            slot=info.get("slot") if info.get("slot") is not None else payload.get("slot"),
                            block_time=info.get("block_time") or payload.get("blockTime"),
                            payload=payload,
                        )
                    )
                handled.add(signature)
        except FetchError as e:
            history.error = e

        # Watermark: last signature, oldest first, up to which everything was handled
        for info in chronological(signatures):
            if info.get("err") is None and info["signature"] not in handled:
                break
            history.last_processed_signature = info["signature"]

        logger.info(
            "Fetched transaction history",
            account=account,
            signatures=len(signatures),
            transactions=len(history.transactions),
            missing=len(history.missing),
            incremental=until is not None,
            complete=history.complete,
        )
        return history

    async def fetch_history(self, account: str, until: Optional[str] = None) -> FetchedHistory:
        """
        Fetch every transaction newer than `until` (or the whole history).

        Pagination failures and the overall timeout raise FetchError. A failure
        while loading transaction details is reported on the returned history
        (`error` set, `transactions` holding what was loaded before it). When
        `until` is given, a transaction the provider does not return counts as
        such a failure.
        """
        try:
            if self.timeout:
                return await asyncio.wait_for(self._fetch(account, until), timeout=self.timeout)
            return await self._fetch(account, until)
        except asyncio.TimeoutError as e:
            logger.error("History fetch timed out", account=account, timeout=self.timeout)
            raise FetchError(account, None, e) from e
