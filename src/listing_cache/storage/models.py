"""
Canonical listing models, as persisted by the listing store.

Every feed is normalized onto these models before it reaches storage; the
stored value for a key is Listing.model_dump_json().

Note on identity:
    A sell listing is keyed by its concrete item instance. A buy listing has
    no instance, so its key combines the buyer's account with a hash of the
    queried item name. Many buy offers from one account for one item collapse
    onto a single key.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Intent(str, Enum):
    """Whether a listing offers to sell or to buy."""
    SELL = "sell"
    BUY = "buy"


class ListingKey(BaseModel):
    """
    Stable identity of a listing within the store.

    Attributes:
        defindex: Item-type identifier
        instance_id: Feed-compatible instance identity, e.g. "440_1234567"
            for a sell listing or "440_7656119..._<md5>" for a buy listing
    """

    model_config = ConfigDict(frozen=True)

    defindex: int
    instance_id: str

    @property
    def storage_key(self) -> str:
        """Address of this listing in a key-value layout."""
        return f"listing:{self.defindex}:{self.instance_id}"

    def __str__(self) -> str:
        return self.storage_key


class Listing(BaseModel):
    """
    Canonical listing, normalized from either the snapshot or event feed.

    Attributes:
        key: Store identity
        source_id: Feed-native id (event-sourced listings only)
        account_id: Steam id of the listing owner
        intent: SELL or BUY
        price: Non-negative scalar in the feed's raw unit
        details: Free-text listing comment
        bumped_at: Freshness marker (last bump, not creation)
        has_active_agent: True when the listing carries liveness metadata
        agent_last_seen: Last pulse of the listing's user agent, if any
        item_name: Item identifier the listing was received under
        attributes: Attribute defindexes present on the listed item
    """

    model_config = ConfigDict(frozen=True)

    key: ListingKey
    source_id: Optional[str] = None
    account_id: str
    intent: Intent
    price: float = Field(ge=0)
    details: Optional[str] = None
    bumped_at: datetime
    has_active_agent: bool = False
    agent_last_seen: Optional[datetime] = None
    item_name: Optional[str] = None
    attributes: tuple[int, ...] = ()

    @property
    def defindex(self) -> int:
        return self.key.defindex

    def is_expired(self, now: datetime, ttl: timedelta) -> bool:
        """Check if the listing is older than the eviction threshold."""
        return self.bumped_at < now - ttl


class UpsertOutcome(str, Enum):
    """What an upsert did to the store. Observability only."""
    CREATED = "created"
    UPDATED = "updated"
    REJECTED_STALE = "rejected_stale"


class Precedence(str, Enum):
    """
    Conflict policy for writes to an existing key.

    LAST_WRITE_WINS: every upsert overwrites, regardless of bumped_at.
    NEWEST_BUMP_WINS: an upsert older than the stored bumped_at is rejected.
    """
    LAST_WRITE_WINS = "last_write_wins"
    NEWEST_BUMP_WINS = "newest_bump_wins"


@dataclass
class ItemIdentity:
    """An item as requested from the snapshot feed."""
    name: str
    defindex: Optional[int] = None
