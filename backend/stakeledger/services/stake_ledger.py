"""
Stake ledger reconstruction.

Classifies staking-contract transactions into deposits and withdrawals by
comparing pre/post token balances, then replays them into per-wallet stakes
with lock periods.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

import structlog

from stakeledger.config import Settings
from stakeledger.models.staking import ensure_utc
from stakeledger.services.errors import MalformedTransactionError
from stakeledger.services.history_fetcher import FetchedTransaction

logger = structlog.get_logger()

ZERO = Decimal(0)


@dataclass(frozen=True)
class Stake:
    """One open deposit; is_locked is only meaningful for the time it was evaluated at"""
    amount: Decimal
    stake_date: datetime
    unlock_date: datetime
    is_locked: bool
    mint_address: str


@dataclass
class StakeData:
    """Per-wallet totals with the open stakes behind them"""
    wallet_address: str
    total_staked: Decimal
    total_locked: Decimal
    total_unlocked: Decimal
    stakes: List[Stake] = field(default_factory=list)


@dataclass(frozen=True)
class LedgerDiscrepancy:
    """Withdrawal that exceeded what the ledger tracked for the wallet"""
    wallet_address: str
    signature: str
    detected_at: datetime
    requested_amount: Decimal
    unmatched_amount: Decimal


@dataclass
class StakingSnapshot:
    id: Optional[int]
    contract_address: str
    timestamp: datetime
    total_staked: Decimal
    total_locked: Decimal
    total_unlocked: Decimal
    last_signature: Optional[str]
    is_incremental: bool
    staking_data: List[StakeData] = field(default_factory=list)
    discrepancies: List[LedgerDiscrepancy] = field(default_factory=list)

    @property
    def wallet_count(self) -> int:
        return len(self.staking_data)


@dataclass(frozen=True)
class LedgerEvent:
    """Deposit into or withdrawal from the staking contract"""
    kind: str  # "deposit" | "withdrawal"
    wallet_address: str
    amount: Decimal
    timestamp: datetime
    signature: str
    token_account: Optional[str] = None


def summarize_stakes(wallet_address: str, stakes: Sequence[Stake], reference_time: datetime) -> StakeData:
    """Evaluate lock flags at reference_time and total them"""
    evaluated = [replace(s, is_locked=reference_time < s.unlock_date) for s in stakes]
    locked = sum((s.amount for s in evaluated if s.is_locked), ZERO)
    unlocked = sum((s.amount for s in evaluated if not s.is_locked), ZERO)
    return StakeData(
        wallet_address=wallet_address,
        total_staked=locked + unlocked,
        total_locked=locked,
        total_unlocked=unlocked,
        stakes=evaluated,
    )


def sort_stake_data(data: Iterable[StakeData]) -> List[StakeData]:
    return sorted(data, key=lambda d: (-d.total_staked, d.wallet_address))


# ---------------------------------------------------------------------------
# Lock tiers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LockTier:
    min_amount: Decimal
    lock_days: int


class LockTierSchedule:
    """Amount-based lock periods; the largest tier whose minimum is met applies"""

    def __init__(self, tiers: Iterable[LockTier]):
        self.tiers = sorted(tiers, key=lambda t: t.min_amount)
        if not self.tiers:
            raise ValueError("At least one lock tier is required")

    @classmethod
    def single(cls, lock_days: int = 90) -> "LockTierSchedule":
        return cls([LockTier(ZERO, lock_days)])

    @classmethod
    def from_settings(cls, settings: Settings) -> "LockTierSchedule":
        if settings.staking_lock_tiers:
            return cls(LockTier(Decimal(m), int(d)) for m, d in settings.staking_lock_tiers)
        return cls.single(settings.staking_lock_days)

    def lock_days_for(self, amount: Decimal) -> int:
        applicable = self.tiers[0]
        for tier in self.tiers:
            if tier.min_amount <= amount:
                applicable = tier
        return applicable.lock_days

    def unlock_date(self, stake_date: datetime, amount: Decimal) -> datetime:
        return stake_date + timedelta(days=self.lock_days_for(amount))


# ---------------------------------------------------------------------------
# Transaction classification
# ---------------------------------------------------------------------------


def token_amount(ui_token_amount: Dict[str, Any]) -> Decimal:
    """Exact UI amount from the raw integer amount and decimals"""
    return Decimal(int(ui_token_amount["amount"])).scaleb(-int(ui_token_amount["decimals"]))


def _account_keys(payload: Dict[str, Any]) -> List[str]:
    message = (payload.get("transaction") or {}).get("message") or {}
    keys = []
    for key in message.get("accountKeys") or []:
        keys.append(key["pubkey"] if isinstance(key, dict) else key)
    return keys


def _balances_by_account(
    balances: List[Dict[str, Any]], mint: str, signature: str
) -> Dict[int, tuple[Optional[str], Decimal]]:
    result = {}
    for entry in balances:
        if entry.get("mint") != mint:
            continue
        try:
            result[int(entry["accountIndex"])] = (entry.get("owner"), token_amount(entry["uiTokenAmount"]))
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedTransactionError(signature, f"bad token balance entry: {e}") from e
    return result


def classify_transaction(
    tx: FetchedTransaction,
    contract_owner: str,
    mint: str,
    deposit_tolerance: Decimal = Decimal("1"),
    withdrawal_tolerance_min: Decimal = Decimal("1"),
    withdrawal_tolerance_ratio: Decimal = Decimal("0.001"),
) -> List[LedgerEvent]:
    """
    Classify one transaction as a deposit, a withdrawal or neither.

    Custody accounts are the `mint` token accounts owned by `contract_owner`.
    A custody gain is a deposit from the user account that lost the same
    amount; a custody loss is a withdrawal to the user account that gained it.

    Raises:
        MalformedTransactionError: Payload lacks meta, balances or a timestamp
    """
    payload = tx.payload
    meta = payload.get("meta")
    if meta is None:
        raise MalformedTransactionError(tx.signature, "missing meta")
    if meta.get("err") is not None:
        return []

    pre_balances = meta.get("preTokenBalances")
    post_balances = meta.get("postTokenBalances")
    if pre_balances is None or post_balances is None:
        raise MalformedTransactionError(tx.signature, "missing token balances")

    block_time = tx.block_time if tx.block_time is not None else payload.get("blockTime")
    if block_time is None:
        raise MalformedTransactionError(tx.signature, "missing block time")
    timestamp = datetime.fromtimestamp(block_time, tz=timezone.utc)

    pre = _balances_by_account(pre_balances, mint, tx.signature)
    post = _balances_by_account(post_balances, mint, tx.signature)
    keys = _account_keys(payload)

    custody_delta = ZERO
    has_custody = False
    users = {}  # account index -> (owner, pre amount or None, post amount or None)
    for index in sorted(set(pre) | set(post)):
        owner = (post.get(index) or pre.get(index))[0]
        pre_amount = pre[index][1] if index in pre else None
        post_amount = post[index][1] if index in post else None
        if owner == contract_owner:
            has_custody = True
            custody_delta += (post_amount or ZERO) - (pre_amount or ZERO)
        elif owner:
            users[index] = (owner, pre_amount, post_amount)

    if not has_custody or not users or custody_delta == ZERO:
        return []

    candidates = []
    if custody_delta > ZERO:
        kind = "deposit"
        amount = custody_delta
        for index, (owner, pre_amount, post_amount) in users.items():
            if pre_amount is None or post_amount is None:
                continue
            moved = pre_amount - post_amount
            if moved > ZERO and abs(moved - amount) < deposit_tolerance:
                candidates.append((abs(moved - amount), owner, index))
    else:
        kind = "withdrawal"
        amount = -custody_delta
        tolerance = max(withdrawal_tolerance_min, amount * withdrawal_tolerance_ratio)
        for index, (owner, pre_amount, post_amount) in users.items():
            if post_amount is None:
                continue
            moved = post_amount - (pre_amount or ZERO)
            if moved > ZERO and abs(moved - amount) <= tolerance:
                candidates.append((abs(moved - amount), owner, index))

    if not candidates:
        logger.info("Unmatched custody transfer", signature=tx.signature, kind=kind, amount=str(amount))
        return []

    _, wallet, index = min(candidates, key=lambda c: (c[0], c[1]))
    return [
        LedgerEvent(
            kind=kind,
            wallet_address=wallet,
            amount=amount,
            timestamp=timestamp,
            signature=tx.signature,
            token_account=keys[index] if index < len(keys) else None,
        )
    ]


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class StakeLedger:
    """Open stakes per wallet, mutated by replaying ledger events"""

    def __init__(self, mint_address: str, tiers: Optional[LockTierSchedule] = None):
        self.mint_address = mint_address
        self.tiers = tiers or LockTierSchedule.single()
        self._stakes: Dict[str, List[Stake]] = {}
        self.discrepancies: List[LedgerDiscrepancy] = []
        self.applied_signatures: set[str] = set()

    @classmethod
    def from_stake_data(
        cls,
        rows: Iterable[StakeData],
        mint_address: str,
        tiers: Optional[LockTierSchedule] = None,
        discrepancies: Iterable[LedgerDiscrepancy] = (),
    ) -> "StakeLedger":
        """Rehydrate from a prior snapshot; stored lock flags are ignored"""
        ledger = cls(mint_address, tiers)
        for data in rows:
            stakes = [
                replace(
                    stake,
                    stake_date=ensure_utc(stake.stake_date),
                    unlock_date=ensure_utc(stake.unlock_date),
                )
                for stake in data.stakes
                if stake.amount > ZERO
            ]
            if stakes:
                ledger._stakes[data.wallet_address] = sorted(stakes, key=_consumption_order)
        ledger.discrepancies = list(discrepancies)
        return ledger

    def stakes_for(self, wallet_address: str) -> List[Stake]:
        return list(self._stakes.get(wallet_address, []))

    @property
    def wallets(self) -> List[str]:
        return sorted(self._stakes)

    @property
    def total_staked(self) -> Decimal:
        return sum((s.amount for stakes in self._stakes.values() for s in stakes), ZERO)

    def apply(self, event: LedgerEvent) -> None:
        match event.kind:
            case "deposit":
                self.deposit(event)
            case "withdrawal":
                self.withdraw(event)
            case _:
                raise ValueError(f"Unknown ledger event kind: {event.kind}")

    def deposit(self, event: LedgerEvent) -> Stake:
        stake = Stake(
            amount=event.amount,
            stake_date=event.timestamp,
            unlock_date=self.tiers.unlock_date(event.timestamp, event.amount),
            is_locked=True,
            mint_address=self.mint_address,
        )
        stakes = self._stakes.setdefault(event.wallet_address, [])
        stakes.append(stake)
        stakes.sort(key=_consumption_order)
        return stake

    def withdraw(self, event: LedgerEvent) -> Optional[LedgerDiscrepancy]:
        """Consume stakes earliest-unlocking first; flag any overflow"""
        remaining = event.amount
        kept = []
        for stake in self._stakes.get(event.wallet_address, []):
            if remaining <= ZERO:
                kept.append(stake)
            elif stake.amount <= remaining:
                remaining -= stake.amount
            else:
                kept.append(replace(stake, amount=stake.amount - remaining))
                remaining = ZERO

        if kept:
            self._stakes[event.wallet_address] = kept
        else:
            self._stakes.pop(event.wallet_address, None)

        if remaining > ZERO:
            discrepancy = LedgerDiscrepancy(
                wallet_address=event.wallet_address,
                signature=event.signature,
                detected_at=event.timestamp,
                requested_amount=event.amount,
                unmatched_amount=remaining,
            )
            self.discrepancies.append(discrepancy)
            logger.warning(
                "Withdrawal exceeds tracked stakes",
                wallet=event.wallet_address,
                token_account=event.token_account,
                signature=event.signature,
                requested=str(event.amount),
                unmatched=str(remaining),
            )
            return discrepancy
        return None

    def to_stake_data(self, reference_time: datetime) -> List[StakeData]:
        """Wallets with open stakes, largest first"""
        return sort_stake_data(
            summarize_stakes(wallet, stakes, reference_time)
            for wallet, stakes in self._stakes.items()
            if stakes
        )


def _consumption_order(stake: Stake):
    return (stake.unlock_date, stake.stake_date)


class StakeLedgerBuilder:
    """Replays classified transactions into a StakeLedger"""

    def __init__(
        self,
        contract_owner: str,
        mint_address: str,
        tiers: Optional[LockTierSchedule] = None,
        deposit_tolerance: Decimal = Decimal("1"),
        withdrawal_tolerance_min: Decimal = Decimal("1"),
        withdrawal_tolerance_ratio: Decimal = Decimal("0.001"),
    ):
        self.contract_owner = contract_owner
        self.mint_address = mint_address
        self.tiers = tiers or LockTierSchedule.single()
        self.deposit_tolerance = deposit_tolerance
        self.withdrawal_tolerance_min = withdrawal_tolerance_min
        self.withdrawal_tolerance_ratio = withdrawal_tolerance_ratio

    @classmethod
    def from_settings(cls, settings: Settings) -> "StakeLedgerBuilder":
        return cls(
            contract_owner=settings.staking_contract_address,
            mint_address=settings.staking_mint_address,
            tiers=LockTierSchedule.from_settings(settings),
            deposit_tolerance=settings.deposit_tolerance,
            withdrawal_tolerance_min=settings.withdrawal_tolerance_min,
            withdrawal_tolerance_ratio=settings.withdrawal_tolerance_ratio,
        )

    def new_ledger(self) -> StakeLedger:
        return StakeLedger(self.mint_address, self.tiers)

    def classify(self, tx: FetchedTransaction) -> List[LedgerEvent]:
        return classify_transaction(
            tx,
            contract_owner=self.contract_owner,
            mint=self.mint_address,
            deposit_tolerance=self.deposit_tolerance,
            withdrawal_tolerance_min=self.withdrawal_tolerance_min,
            withdrawal_tolerance_ratio=self.withdrawal_tolerance_ratio,
        )

    def build(
        self,
        transactions: Iterable[FetchedTransaction],
        ledger: Optional[StakeLedger] = None,
    ) -> StakeLedger:
        """
        Apply transactions in (block_time, slot) order to a ledger.

        Args:
            transactions: Fetched transactions, any order
            ledger: Starting state for incremental runs; a fresh ledger otherwise

        Returns:
            The updated ledger. Signatures already applied are skipped.
        """
        ledger = ledger if ledger is not None else self.new_ledger()
        ordered = sorted(transactions, key=lambda t: (t.block_time or 0, t.slot or 0))

        deposits = withdrawals = skipped = 0
        for tx in ordered:
            if tx.signature in ledger.applied_signatures:
                continue
            try:
                events = self.classify(tx)
            except MalformedTransactionError as e:
                logger.warning("Skipping malformed transaction", signature=tx.signature, reason=e.reason)
                skipped += 1
                continue

            for event in events:
                logger.debug(
                    "Applying ledger event",
                    kind=event.kind,
                    wallet=event.wallet_address,
                    token_account=event.token_account,
                    amount=str(event.amount),
                    signature=event.signature,
                )
                ledger.apply(event)
                if event.kind == "deposit":
                    deposits += 1
                else:
                    withdrawals += 1
            ledger.applied_signatures.add(tx.signature)

        logger.info(
            "Built stake ledger",
            transactions=len(ordered),
            deposits=deposits,
            withdrawals=withdrawals,
            skipped=skipped,
            wallets=len(ledger.wallets),
        )
        return ledger
