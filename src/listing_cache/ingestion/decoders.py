"""
Wire decoders for the two listing feeds.

The snapshot endpoint and the event stream describe the same listing with
different shapes:

    Snapshot:  {"steamid", "price": 12.5 | "12.5", "intent", "timestamp",
                "bump", "item": {"defindex", "id"?}, "userAgent"?}
    Event:     {"event": "listing-update", "payload": {"id", "steamid",
                "value": {"raw"}, "bumpedAt", "item": {"id", "name",
                "defindex"}, "userAgent"?}}

Decoding is split in two levels. The envelope (JSON body, listings array,
event array) must decode or the whole response/message is rejected with
DecodeError. Individual records are validated one at a time; a malformed
record is counted and skipped so it never takes its siblings down.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
)

from listing_cache.storage.models import Intent

from .errors import DecodeError

logger = logging.getLogger(__name__)


# Latest second datetime can represent (9999-12-31T23:59:59Z)
MAX_EPOCH_SECONDS = 253402300799


def _coerce_int(value: Any) -> Any:
    """Accept ints that arrive as strings or floats ("123", 123.0)."""
    if value is None or isinstance(value, bool):
        return value
    try:
        if isinstance(value, str):
            value = value.strip()
            if not value:
                return None
            try:
                return int(value)
            except ValueError:
                return int(float(value))
        if isinstance(value, float):
            return int(value)
    except (ValueError, OverflowError) as e:
        raise ValueError(f"not an integer: {value!r}") from e
    return value


def _check_epoch(value: Optional[int]) -> Optional[int]:
    if value is not None and not 0 <= value <= MAX_EPOCH_SECONDS:
        raise ValueError(f"epoch seconds out of range: {value}")
    return value


FlexInt = Annotated[int, BeforeValidator(_coerce_int)]
OptionalFlexInt = Annotated[Optional[int], BeforeValidator(_coerce_int)]
EpochSeconds = Annotated[int, BeforeValidator(_coerce_int), AfterValidator(_check_epoch)]
OptionalEpochSeconds = Annotated[
    Optional[int], BeforeValidator(_coerce_int), AfterValidator(_check_epoch)
]


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# =============================================================================
# Shared
# =============================================================================


class UserAgent(_WireModel):
    """Liveness metadata attached by trading bots."""
    last_pulse: EpochSeconds = Field(alias="lastPulse")
    client: Optional[str] = None


class ItemAttribute(_WireModel):
    defindex: OptionalFlexInt = None


# =============================================================================
# Snapshot feed
# =============================================================================


class SnapshotItem(_WireModel):
    defindex: FlexInt
    id: OptionalFlexInt = None
    original_id: OptionalFlexInt = None
    quality: OptionalFlexInt = None
    attributes: Optional[list[ItemAttribute]] = None


class SnapshotListing(_WireModel):
    """One record from the snapshot endpoint."""
    steamid: str
    intent: Intent
    price: float = Field(ge=0)
    timestamp: EpochSeconds
    item: SnapshotItem
    bump: OptionalEpochSeconds = None
    offers: OptionalFlexInt = None
    buyout: OptionalFlexInt = None
    details: Optional[str] = None
    user_agent: Optional[UserAgent] = Field(default=None, alias="userAgent")


class _SnapshotEnvelope(_WireModel):
    listings: list[Any]
    created_at: OptionalFlexInt = Field(default=None, alias="createdAt")


@dataclass
class DecodedSnapshot:
    """Snapshot response with per-record decode results."""
    listings: list[SnapshotListing]
    created_at: Optional[int] = None
    malformed: int = 0


def decode_snapshot_response(data: Any) -> DecodedSnapshot:
    """
    Decode a snapshot response body.

    Args:
        data: Parsed JSON body (dict) or raw JSON text

    Returns:
        DecodedSnapshot with every record that validated

    Raises:
        DecodeError: If the body or its listings array is malformed
    """
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise DecodeError(f"Snapshot body is not JSON: {e}") from e

    try:
        envelope = _SnapshotEnvelope.model_validate(data)
    except ValidationError as e:
        raise DecodeError(f"Malformed snapshot response: {e.error_count()} errors") from e

    listings = []
    malformed = 0
    for raw in envelope.listings:
        try:
            listings.append(SnapshotListing.model_validate(raw))
        except ValidationError as e:
            malformed += 1
            logger.warning(f"Skipping malformed snapshot listing: {e.errors()[0]['msg']}")

    return DecodedSnapshot(
        listings=listings,
        created_at=envelope.created_at,
        malformed=malformed,
    )


# =============================================================================
# Event stream
# =============================================================================


class EventItem(_WireModel):
    name: str
    defindex: FlexInt
    id: OptionalFlexInt = None
    original_id: OptionalFlexInt = Field(default=None, alias="originalId")
    quality: Optional[Any] = None
    attributes: Optional[list[ItemAttribute]] = None


class ListingValue(_WireModel):
    raw: float = Field(ge=0)


class EventListing(_WireModel):
    """Payload of a listing-update event."""
    id: str
    steamid: str
    intent: Intent
    value: ListingValue
    bumped_at: EpochSeconds = Field(alias="bumpedAt")
    item: EventItem
    appid: OptionalFlexInt = None
    listed_at: OptionalEpochSeconds = Field(default=None, alias="listedAt")
    details: Optional[str] = None
    status: Optional[str] = None
    user_agent: Optional[UserAgent] = Field(default=None, alias="userAgent")


class DeletedItem(_WireModel):
    defindex: FlexInt
    name: Optional[str] = None


class EventListingDeletion(_WireModel):
    """Payload of a listing-delete event."""
    id: str
    item: DeletedItem


class ListingUpdateEvent(_WireModel):
    event: Literal["listing-update"]
    payload: EventListing


class ListingDeleteEvent(_WireModel):
    event: Literal["listing-delete"]
    payload: EventListingDeletion


StreamEvent = Annotated[
    Union[ListingUpdateEvent, ListingDeleteEvent],
    Field(discriminator="event"),
]

_stream_event_adapter: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)

KNOWN_EVENTS = frozenset({"listing-update", "listing-delete"})


@dataclass
class DecodedMessage:
    """One event-stream message after decoding."""
    events: list[Union[ListingUpdateEvent, ListingDeleteEvent]] = field(default_factory=list)
    malformed: int = 0
    unknown: int = 0

    @property
    def updates(self) -> list[EventListing]:
        return [e.payload for e in self.events if isinstance(e, ListingUpdateEvent)]

    @property
    def deletions(self) -> list[EventListingDeletion]:
        return [e.payload for e in self.events if isinstance(e, ListingDeleteEvent)]


def decode_event_message(raw_message: Union[str, bytes]) -> DecodedMessage:
    """
    Decode one text message from the event stream.

    Args:
        raw_message: JSON array of tagged events

    Returns:
        DecodedMessage (empty for heartbeats and "[]")

    Raises:
        DecodeError: If the message is not a JSON array
    """
    if isinstance(raw_message, bytes):
        raw_message = raw_message.decode("utf-8", errors="replace")

    if not raw_message or not raw_message.strip():
        return DecodedMessage()

    try:
        data = json.loads(raw_message)
    except json.JSONDecodeError as e:
        raise DecodeError(f"Event message is not JSON: {e}") from e

    if isinstance(data, dict):
        # Single event outside an array
        data = [data]

    if not isinstance(data, list):
        raise DecodeError(f"Event message must be an array, got {type(data).__name__}")

    decoded = DecodedMessage()
    for raw_event in data:
        if not isinstance(raw_event, dict):
            decoded.malformed += 1
            continue

        if raw_event.get("event") not in KNOWN_EVENTS:
            decoded.unknown += 1
            continue

        try:
            decoded.events.append(_stream_event_adapter.validate_python(raw_event))
        except ValidationError as e:
            decoded.malformed += 1
            logger.warning(
                f"Skipping malformed {raw_event.get('event')} event: "
                f"{e.errors()[0]['msg']}"
            )

    return decoded
