"""Solana RPC client wrapper for transaction history and balances"""
import json
from typing import Optional, List, Dict, Any

import structlog
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solders.pubkey import Pubkey
from solders.signature import Signature

from stakeledger.services.errors import RpcError

logger = structlog.get_logger()

# Errors raised by solana-py that are worth retrying
TRANSIENT_ERRORS = (SolanaRpcException, RPCException, OSError)


class SolanaClient:
    """Async Solana RPC client limited to the calls the ledger needs"""

    def __init__(self, rpc_url: str):
        self.rpc_url = rpc_url
        self._client: Optional[AsyncClient] = None

    async def connect(self) -> None:
        """Establish connection to Solana RPC"""
        if self._client is None:
            self._client = AsyncClient(self.rpc_url, commitment=Confirmed)
            logger.info("Connected to Solana RPC", url=self.rpc_url.split("?")[0])

    async def disconnect(self) -> None:
        """Close RPC connection"""
        if self._client:
            await self._client.close()
            self._client = None
            logger.info("Disconnected from Solana RPC")

    @property
    def client(self) -> AsyncClient:
        """Get the async client, raise if not connected"""
        if self._client is None:
            raise RuntimeError("Solana client not connected. Call connect() first.")
        return self._client

    async def get_signatures_for_address(
        self,
        address: str,
        before: Optional[str] = None,
        until: Optional[str] = None,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Get transaction signatures for an address, newest first"""
        try:
            response = await self.client.get_signatures_for_address(
                Pubkey.from_string(address),
                before=Signature.from_string(before) if before else None,
                until=Signature.from_string(until) if until else None,
                limit=limit,
                commitment=Confirmed,
            )
        except TRANSIENT_ERRORS as e:
            raise RpcError(str(e)) from e
        return [
            {
                "signature": str(sig.signature),
                "slot": sig.slot,
                "err": sig.err,
                "memo": sig.memo,
                "block_time": sig.block_time,
            }
            for sig in response.value
        ]

    async def get_transaction(
        self,
        signature: str,
        max_supported_version: int = 0,
    ) -> Optional[Dict[str, Any]]:
        """Get parsed transaction details as an RPC-shaped dict"""
        try:
            response = await self.client.get_transaction(
                Signature.from_string(signature),
                encoding="jsonParsed",
                commitment=Confirmed,
                max_supported_transaction_version=max_supported_version,
            )
        except TRANSIENT_ERRORS as e:
            raise RpcError(str(e)) from e
        if response.value is None:
            return None
        return json.loads(response.value.to_json())

    async def get_token_account_balance(self, token_account: str) -> Dict[str, Any]:
        """Get token account balance"""
        try:
            response = await self.client.get_token_account_balance(
                Pubkey.from_string(token_account),
                commitment=Confirmed,
            )
        except TRANSIENT_ERRORS as e:
            raise RpcError(str(e)) from e
        return {
            "amount": response.value.amount,
            "decimals": response.value.decimals,
            "ui_amount": response.value.ui_amount,
        }
