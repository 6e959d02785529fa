"""
Holder-change event detection.

Compares two consecutive holder sets of the tracked token or the NFT
collection and emits a deterministic, normalized list of events.
"""
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, ClassVar, Dict, Iterable, List, Optional, Tuple, Union

from stakeledger.models.events import EventType

ZERO = Decimal(0)


# ---------------------------------------------------------------------------
# Holder sets
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenHolder:
    address: str
    balance: Decimal
    is_lp_pool: bool = False
    is_treasury: bool = False
    profile: Optional[Dict[str, Any]] = field(default=None, compare=False)


@dataclass
class TokenSnapshot:
    id: Optional[int]
    token_address: str
    timestamp: datetime
    total_supply: Decimal
    holders: List[TokenHolder] = field(default_factory=list)

    @property
    def holder_count(self) -> int:
        return len(self.holders)


@dataclass(frozen=True)
class NFTItem:
    mint: str
    name: str = "Unknown"
    type: str = "Gen1"  # "Gen1" | "Infant"


@dataclass(frozen=True)
class NFTHolder:
    address: str
    nfts: Tuple[NFTItem, ...] = ()
    profile: Optional[Dict[str, Any]] = field(default=None, compare=False)

    @property
    def nft_count(self) -> int:
        return len(self.nfts)

    @property
    def gen1_count(self) -> int:
        return sum(1 for nft in self.nfts if nft.type == "Gen1")

    @property
    def infant_count(self) -> int:
        return sum(1 for nft in self.nfts if nft.type == "Infant")


@dataclass
class CollectionSnapshot:
    id: Optional[int]
    timestamp: datetime
    total_count: int
    holders: List[NFTHolder] = field(default_factory=list)

    @property
    def holder_count(self) -> int:
        return len(self.holders)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NewHolder:
    destination: str
    amount: Decimal
    new_balance: Decimal
    mints: Tuple[str, ...] = ()
    event_type: ClassVar[EventType] = EventType.NEW_HOLDER


@dataclass(frozen=True)
class TransferBetween:
    source: str
    destination: str
    amount: Decimal
    previous_balance: Decimal  # source balance before
    new_balance: Decimal  # source balance after
    mints: Tuple[str, ...] = ()
    event_type: ClassVar[EventType] = EventType.TRANSFER_BETWEEN


@dataclass(frozen=True)
class WalletEmpty:
    source: str
    amount: Decimal
    previous_balance: Decimal
    mints: Tuple[str, ...] = ()
    event_type: ClassVar[EventType] = EventType.WALLET_EMPTY


@dataclass(frozen=True)
class Deposit:
    """Inflow to an existing holder with no matching outflow"""
    destination: str
    amount: Decimal
    previous_balance: Decimal
    new_balance: Decimal
    mints: Tuple[str, ...] = ()
    event_type: ClassVar[EventType] = EventType.DEPOSIT


@dataclass(frozen=True)
class Withdrawal:
    """Outflow from a remaining holder with no matching inflow"""
    source: str
    amount: Decimal
    previous_balance: Decimal
    new_balance: Decimal
    mints: Tuple[str, ...] = ()
    event_type: ClassVar[EventType] = EventType.WITHDRAWAL


HolderEvent = Union[NewHolder, TransferBetween, WalletEmpty, Deposit, Withdrawal]

KIND_RANK = {
    EventType.NEW_HOLDER: 0,
    EventType.TRANSFER_BETWEEN: 1,
    EventType.WALLET_EMPTY: 2,
    EventType.DEPOSIT: 3,
    EventType.WITHDRAWAL: 4,
}


@dataclass
class RecordedEvent:
    """A persisted event with its snapshot context"""
    id: int
    event_timestamp: datetime
    snapshot_id: int
    snapshot_timestamp: datetime
    event: HolderEvent


@dataclass
class EventTokenSnapshot:
    id: int
    timestamp: datetime
    token_address: str
    events: List[RecordedEvent] = field(default_factory=list)


@dataclass
class EventNFTSnapshot:
    id: int
    timestamp: datetime
    events: List[RecordedEvent] = field(default_factory=list)


def event_fields(event: HolderEvent) -> Dict[str, Any]:
    """Flatten an event into the columns shared by all kinds"""
    match event:
        case NewHolder():
            source, destination, previous = None, event.destination, None
            new = event.new_balance
        case TransferBetween():
            source, destination = event.source, event.destination
            previous, new = event.previous_balance, event.new_balance
        case WalletEmpty():
            source, destination, previous, new = event.source, None, event.previous_balance, ZERO
        case Deposit():
            source, destination = None, event.destination
            previous, new = event.previous_balance, event.new_balance
        case Withdrawal():
            source, destination = event.source, None
            previous, new = event.previous_balance, event.new_balance
        case _:
            raise TypeError(f"Not a holder event: {event!r}")
    return {
        "event_type": event.event_type,
        "source_address": source,
        "destination_address": destination,
        "amount": event.amount,
        "previous_balance": previous,
        "new_balance": new,
        "mints": list(event.mints),
    }


def event_from_fields(
    event_type: EventType,
    source_address: Optional[str],
    destination_address: Optional[str],
    amount: Decimal,
    previous_balance: Optional[Decimal] = None,
    new_balance: Optional[Decimal] = None,
    mints: Iterable[str] = (),
) -> HolderEvent:
    """Inverse of event_fields"""
    mints = tuple(mints or ())
    previous_balance = previous_balance if previous_balance is not None else ZERO
    new_balance = new_balance if new_balance is not None else ZERO
    match EventType(event_type):
        case EventType.NEW_HOLDER:
            return NewHolder(destination_address, amount, new_balance, mints)
        case EventType.TRANSFER_BETWEEN:
            return TransferBetween(source_address, destination_address, amount, previous_balance, new_balance, mints)
        case EventType.WALLET_EMPTY:
            return WalletEmpty(source_address, amount, previous_balance, mints)
        case EventType.DEPOSIT:
            return Deposit(destination_address, amount, previous_balance, new_balance, mints)
        case EventType.WITHDRAWAL:
            return Withdrawal(source_address, amount, previous_balance, new_balance, mints)


def event_sort_key(event: HolderEvent):
    fields = event_fields(event)
    if isinstance(event, (NewHolder, Deposit)):
        primary, secondary = fields["destination_address"], ""
    else:
        primary, secondary = fields["source_address"], fields["destination_address"] or ""
    return (KIND_RANK[event.event_type], primary, secondary, tuple(event.mints))


# ---------------------------------------------------------------------------
# Diffing
# ---------------------------------------------------------------------------


@dataclass
class _BalanceChange:
    address: str
    amount: Decimal  # absolute delta
    previous: Decimal
    current: Decimal
    appeared: bool = False
    emptied: bool = False


def diff_token_holders(
    current: Iterable[TokenHolder],
    previous: Optional[Iterable[TokenHolder]] = None,
    match_tolerance: Decimal = Decimal("0.01"),
    dust_threshold: Decimal = Decimal("0.000001"),
) -> List[HolderEvent]:
    """
    Events explaining how the previous token holder set became the current one.

    Decreases are paired with increases of a similar size (within
    match_tolerance of the decrease) as transfers; everything left over is
    reported as a new holder, a deposit or a withdrawal. Every emptied holder
    also gets a WalletEmpty.
    """
    current_balances = {h.address: h.balance for h in current if h.balance > ZERO}

    if previous is None:
        events = [
            NewHolder(destination=address, amount=balance, new_balance=balance)
            for address, balance in current_balances.items()
        ]
        return sorted(events, key=event_sort_key)

    previous_balances = {h.address: h.balance for h in previous if h.balance > ZERO}

    sources: List[_BalanceChange] = []
    sinks: List[_BalanceChange] = []
    for address in set(current_balances) | set(previous_balances):
        before = previous_balances.get(address, ZERO)
        after = current_balances.get(address, ZERO)
        delta = after - before
        if abs(delta) < dust_threshold:
            continue
        if delta < ZERO:
            sources.append(_BalanceChange(address, -delta, before, after, emptied=address not in current_balances))
        else:
            sinks.append(_BalanceChange(address, delta, before, after, appeared=address not in previous_balances))

    order = lambda change: (-change.amount, change.address)  # noqa: E731
    sources.sort(key=order)
    sinks.sort(key=order)

    events: List[HolderEvent] = []
    matched_sinks = set()
    for source in sources:
        if source.emptied:
            events.append(WalletEmpty(source.address, source.previous, source.previous))

        destination = next(
            (
                sink for sink in sinks
                if sink.address not in matched_sinks
                and abs(sink.amount - source.amount) < match_tolerance * source.amount
            ),
            None,
        )
        if destination is not None:
            matched_sinks.add(destination.address)
            events.append(
                TransferBetween(
                    source=source.address,
                    destination=destination.address,
                    amount=source.amount,
                    previous_balance=source.previous,
                    new_balance=source.current,
                )
            )
        elif not source.emptied:
            events.append(Withdrawal(source.address, source.amount, source.previous, source.current))

    for sink in sinks:
        if sink.address in matched_sinks:
            continue
        if sink.appeared:
            events.append(NewHolder(sink.address, sink.current, sink.current))
        else:
            events.append(Deposit(sink.address, sink.amount, sink.previous, sink.current))

    return sorted(events, key=event_sort_key)


def _ownership(holders: Iterable[NFTHolder]) -> Dict[str, str]:
    owners = {}
    for holder in holders:
        for nft in holder.nfts:
            owners[nft.mint] = holder.address
    return owners


def _counts(owners: Dict[str, str]) -> Dict[str, int]:
    counts = defaultdict(int)
    for owner in owners.values():
        counts[owner] += 1
    return counts


def diff_nft_holders(
    current: Iterable[NFTHolder],
    previous: Optional[Iterable[NFTHolder]] = None,
) -> List[HolderEvent]:
    """
    Events explaining how the previous collection ownership became the current one.

    Mints that changed owner are grouped per (source, destination) pair into
    one TransferBetween. Mints that appeared or disappeared are attributed to
    their holder as NewHolder/Deposit or Withdrawal; holders that left the set
    get a WalletEmpty.
    """
    current_owners = _ownership(current)
    current_counts = _counts(current_owners)

    if previous is None:
        minted = defaultdict(list)
        for mint, owner in current_owners.items():
            minted[owner].append(mint)
        events = [
            NewHolder(owner, Decimal(len(mints)), Decimal(len(mints)), tuple(sorted(mints)))
            for owner, mints in minted.items()
        ]
        return sorted(events, key=event_sort_key)

    previous_owners = _ownership(previous)
    previous_counts = _counts(previous_owners)

    transfers = defaultdict(list)
    arrivals = defaultdict(list)
    departures = defaultdict(list)
    for mint in set(current_owners) | set(previous_owners):
        before = previous_owners.get(mint)
        after = current_owners.get(mint)
        if before == after:
            continue
        if before is not None and after is not None:
            transfers[(before, after)].append(mint)
        elif after is not None:
            arrivals[after].append(mint)
        else:
            departures[before].append(mint)

    events: List[HolderEvent] = []
    for (source, destination), mints in transfers.items():
        events.append(
            TransferBetween(
                source=source,
                destination=destination,
                amount=Decimal(len(mints)),
                previous_balance=Decimal(previous_counts[source]),
                new_balance=Decimal(current_counts.get(source, 0)),
                mints=tuple(sorted(mints)),
            )
        )

    for owner, mints in arrivals.items():
        count = Decimal(len(mints))
        if owner not in previous_counts:
            events.append(NewHolder(owner, count, Decimal(current_counts[owner]), tuple(sorted(mints))))
        else:
            events.append(
                Deposit(
                    owner,
                    count,
                    Decimal(previous_counts[owner]),
                    Decimal(current_counts[owner]),
                    tuple(sorted(mints)),
                )
            )

    for owner, held in previous_counts.items():
        if owner in current_counts:
            continue
        mints = tuple(sorted(m for m, o in previous_owners.items() if o == owner))
        events.append(WalletEmpty(owner, Decimal(held), Decimal(held), mints))

    for owner, mints in departures.items():
        if owner not in current_counts:
            continue
        events.append(
            Withdrawal(
                owner,
                Decimal(len(mints)),
                Decimal(previous_counts[owner]),
                Decimal(current_counts[owner]),
                tuple(sorted(mints)),
            )
        )

    return sorted(events, key=event_sort_key)


class EventDiffEngine:
    """Event diffing configured with matching thresholds"""

    def __init__(self, match_tolerance: Decimal = Decimal("0.01"), dust_threshold: Decimal = Decimal("0.000001")):
        self.match_tolerance = match_tolerance
        self.dust_threshold = dust_threshold

    @classmethod
    def from_settings(cls, settings) -> "EventDiffEngine":
        return cls(settings.event_match_tolerance, settings.event_dust_threshold)

    def diff_token_holders(
        self, current: Iterable[TokenHolder], previous: Optional[Iterable[TokenHolder]] = None
    ) -> List[HolderEvent]:
        return diff_token_holders(current, previous, self.match_tolerance, self.dust_threshold)

    def diff_nft_holders(
        self, current: Iterable[NFTHolder], previous: Optional[Iterable[NFTHolder]] = None
    ) -> List[HolderEvent]:
        return diff_nft_holders(current, previous)
