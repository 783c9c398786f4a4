"""
Listing normalizer.

Maps decoded snapshot and event records onto the canonical Listing and
derives its ListingKey. Every function here is pure.

Key derivation:
    sell -> "{appid}_{item instance id}"
    buy  -> "{appid}_{steamid}_{md5(item name)}"

Both formats match the ids the marketplace assigns to listings, so a
listing-delete event's id addresses the same store entry without a lookup.
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Optional, Union

from listing_cache.storage.models import Intent, Listing, ListingKey

from .decoders import (
    EventListing,
    EventListingDeletion,
    ItemAttribute,
    SnapshotListing,
    UserAgent,
)
from .errors import InvalidIdentity, InvalidRecord

DEFAULT_APPID = 440


def item_hash(item_identifier: str) -> str:
    """Content hash of a queried item identifier."""
    return hashlib.md5(item_identifier.encode("utf-8")).hexdigest()


def derive_listing_key(
    intent: Intent,
    defindex: int,
    item_id: Optional[int],
    account_id: str,
    item_identifier: str,
    appid: int = DEFAULT_APPID,
) -> ListingKey:
    """
    Derive the store identity of a listing.

    Args:
        intent: SELL or BUY
        defindex: Item-type identifier
        item_id: Item instance id (required for SELL)
        account_id: Owner's steam id
        item_identifier: Item name the listing was requested/received under
        appid: Application scope id

    Returns:
        ListingKey for the listing

    Raises:
        InvalidIdentity: If a SELL listing has no item instance id
    """
    if intent == Intent.SELL:
        if item_id is None:
            raise InvalidIdentity(
                f"Sell listing from {account_id} for {item_identifier!r} "
                f"has no item id",
                account_id=account_id,
            )
        instance_id = f"{appid}_{item_id}"
    else:
        instance_id = f"{appid}_{account_id}_{item_hash(item_identifier)}"

    return ListingKey(defindex=defindex, instance_id=instance_id)


def _from_timestamp(ts: int) -> datetime:
    try:
        return datetime.fromtimestamp(ts, tz=timezone.utc)
    except (ValueError, OverflowError, OSError) as e:
        raise InvalidRecord(f"Unusable timestamp {ts!r}: {e}") from e


def _agent_last_seen(agent: Optional[UserAgent]) -> Optional[datetime]:
    if agent is None:
        return None
    return _from_timestamp(agent.last_pulse)


def _attribute_indexes(attributes: Optional[list[ItemAttribute]]) -> tuple[int, ...]:
    if not attributes:
        return ()
    return tuple(a.defindex for a in attributes if a.defindex is not None)


def normalize_snapshot_listing(
    raw: SnapshotListing,
    item_identifier: str,
    appid: int = DEFAULT_APPID,
) -> Listing:
    """
    Normalize a snapshot record.

    Snapshot records carry no feed-native id, so source_id stays None.
    The freshness marker is the last bump, falling back to the creation
    timestamp when the record was never bumped.

    Raises:
        InvalidIdentity: If a sell record has no item instance id
        InvalidRecord: If a timestamp cannot be converted
    """
    key = derive_listing_key(
        intent=raw.intent,
        defindex=raw.item.defindex,
        item_id=raw.item.id,
        account_id=raw.steamid,
        item_identifier=item_identifier,
        appid=appid,
    )
    bumped = raw.bump if raw.bump is not None else raw.timestamp

    return Listing(
        key=key,
        source_id=None,
        account_id=raw.steamid,
        intent=raw.intent,
        price=raw.price,
        details=raw.details,
        bumped_at=_from_timestamp(bumped),
        has_active_agent=raw.user_agent is not None,
        agent_last_seen=_agent_last_seen(raw.user_agent),
        item_name=item_identifier,
        attributes=_attribute_indexes(raw.item.attributes),
    )


def normalize_event_listing(
    raw: EventListing,
    appid: Optional[int] = None,
) -> Listing:
    """
    Normalize a listing-update payload.

    Raises:
        InvalidIdentity: If a sell payload has no item instance id
        InvalidRecord: If a timestamp cannot be converted
    """
    key = derive_listing_key(
        intent=raw.intent,
        defindex=raw.item.defindex,
        item_id=raw.item.id,
        account_id=raw.steamid,
        item_identifier=raw.item.name,
        appid=appid or raw.appid or DEFAULT_APPID,
    )

    return Listing(
        key=key,
        source_id=raw.id,
        account_id=raw.steamid,
        intent=raw.intent,
        price=raw.value.raw,
        details=raw.details,
        bumped_at=_from_timestamp(raw.bumped_at),
        has_active_agent=raw.user_agent is not None,
        agent_last_seen=_agent_last_seen(raw.user_agent),
        item_name=raw.item.name,
        attributes=_attribute_indexes(raw.item.attributes),
    )


def deletion_key(raw: EventListingDeletion) -> ListingKey:
    """Store identity addressed by a listing-delete payload."""
    return ListingKey(defindex=raw.item.defindex, instance_id=raw.id)


def normalize(
    raw: Union[SnapshotListing, EventListing],
    item_identifier: Optional[str] = None,
    appid: Optional[int] = None,
) -> Listing:
    """
    Normalize a record from either feed.

    Args:
        raw: Decoded snapshot or event record
        item_identifier: Queried item name (required for snapshot records)
        appid: Application scope id; event records fall back to their own
            appid, snapshot records to DEFAULT_APPID
    """
    if isinstance(raw, EventListing):
        return normalize_event_listing(raw, appid=appid)
    if item_identifier is None:
        raise ValueError("Snapshot records need the queried item identifier")
    return normalize_snapshot_listing(raw, item_identifier, appid=appid or DEFAULT_APPID)
