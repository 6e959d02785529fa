"""
Upgrade of staking snapshot documents written by the old file-based tooling.

Legacy documents use camelCase keys, float amounts and a stored `isLocked`
flag, and carry no incremental watermark.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Union

from stakeledger.models.staking import ensure_utc
from stakeledger.services.stake_ledger import ZERO, Stake, StakeData, StakingSnapshot


def is_legacy_staking_payload(payload: Dict[str, Any]) -> bool:
    return isinstance(payload, dict) and "stakingData" in payload


def _amount(value: Union[int, float, str, None]) -> Decimal:
    if value is None:
        return ZERO
    # str() keeps the float's shortest repr instead of its binary expansion
    return Decimal(str(value))


def _timestamp(value: Union[int, float, str]) -> datetime:
    if isinstance(value, (int, float)):
        # Date.now() style milliseconds
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return ensure_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))


def upgrade_staking_payload(payload: Dict[str, Any]) -> StakingSnapshot:
    """
    Convert a legacy staking snapshot document to a StakingSnapshot.

    Stored lock flags are carried over as-is; callers re-evaluate them.

    Raises:
        ValueError: A required field is missing or unparseable
    """
    try:
        staking_data = []
        for wallet in payload["stakingData"]:
            stakes = [
                Stake(
                    amount=_amount(stake["amount"]),
                    stake_date=_timestamp(stake["stakeDate"]),
                    unlock_date=_timestamp(stake["unlockDate"]),
                    is_locked=bool(stake.get("isLocked", False)),
                    mint_address=stake.get("mintAddress", ""),
                )
                for stake in wallet.get("stakes", [])
            ]
            staking_data.append(
                StakeData(
                    wallet_address=wallet["walletAddress"],
                    total_staked=_amount(wallet.get("totalStaked")),
                    total_locked=_amount(wallet.get("totalLocked")),
                    total_unlocked=_amount(wallet.get("totalUnlocked")),
                    stakes=stakes,
                )
            )

        return StakingSnapshot(
            id=None,
            contract_address=payload["contractAddress"],
            timestamp=_timestamp(payload["timestamp"]),
            total_staked=_amount(payload.get("totalStaked")),
            total_locked=_amount(payload.get("totalLocked")),
            total_unlocked=_amount(payload.get("totalUnlocked")),
            last_signature=payload.get("lastSignature"),
            is_incremental=False,
            staking_data=staking_data,
        )
    except (KeyError, TypeError, AttributeError) as e:
        raise ValueError(f"Invalid legacy staking payload: {e!r}") from e
