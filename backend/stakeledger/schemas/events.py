"""Holder-change event schemas"""
from pydantic import BaseModel
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from stakeledger.models.events import EventType
from stakeledger.schemas.holders import NFTHolderRequest, TokenHolderSchema
from stakeledger.services.event_diff import HolderEvent, RecordedEvent, event_fields


class HolderEventResponse(BaseModel):
    event_type: EventType
    source_address: Optional[str] = None
    destination_address: Optional[str] = None
    amount: Decimal
    previous_balance: Optional[Decimal] = None
    new_balance: Optional[Decimal] = None
    mints: List[str] = []

    @classmethod
    def from_event(cls, event: HolderEvent) -> "HolderEventResponse":
        return cls(**event_fields(event))


class RecordedEventResponse(HolderEventResponse):
    id: int
    event_timestamp: datetime
    snapshot_id: int
    snapshot_timestamp: datetime

    @classmethod
    def from_recorded(cls, recorded: RecordedEvent) -> "RecordedEventResponse":
        return cls(
            id=recorded.id,
            event_timestamp=recorded.event_timestamp,
            snapshot_id=recorded.snapshot_id,
            snapshot_timestamp=recorded.snapshot_timestamp,
            **event_fields(recorded.event),
        )


class EventSnapshotResponse(BaseModel):
    """Snapshot header with its events"""
    id: int
    timestamp: datetime
    token_address: Optional[str] = None
    events: List[RecordedEventResponse]


class RegenerateTokenEventsRequest(BaseModel):
    holders: Optional[List[TokenHolderSchema]] = None
    previous_snapshot_id: Optional[int] = None


class RegenerateNFTEventsRequest(BaseModel):
    holders: Optional[List[NFTHolderRequest]] = None
    previous_snapshot_id: Optional[int] = None


class RegenerateEventsResponse(BaseModel):
    snapshot_id: int
    events_generated: int
    events: List[HolderEventResponse]
