"""
Listing store: the authoritative keyed collection of canonical listings.

One entry per ListingKey. Writers from both feeds meet here, so the store is
the only shared mutable state in the pipeline. Every operation is atomic with
respect to its own key; there are no multi-key transactions.

Reads and eviction are separate contracts:
    get_listings(defindex)                 pure read
    sweep_expired(now, ttl, defindex)      explicit eviction
    query_by_item_type(defindex, now, ttl) sweep then read, in one call

Two TTLs are used by callers: SHORT_TTL (24h) for the routine sweep and
LONG_TTL (72h) when serving price queries.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from listing_cache.storage.models import (
    ItemIdentity,
    Listing,
    ListingKey,
    Precedence,
    UpsertOutcome,
)

logger = logging.getLogger(__name__)

SHORT_TTL = timedelta(hours=24)
LONG_TTL = timedelta(hours=72)


class StoreError(Exception):
    """
    A store operation failed.

    Recoverable: the caller decides whether to retry or drop the write.

    Attributes:
        operation: Store method that failed ("upsert", "delete", ...)
        key: Listing key involved, if the operation was single-key
    """

    def __init__(
        self,
        operation: str,
        key: Optional[ListingKey] = None,
        cause: Optional[BaseException] = None,
    ):
        target = f" {key}" if key is not None else ""
        reason = f": {cause}" if cause is not None else ""
        super().__init__(f"Store {operation}{target} failed{reason}")
        self.operation = operation
        self.key = key
        self.cause = cause


@dataclass
class StoreStats:
    """Observability counters. Not part of any correctness decision."""
    created: int = 0
    updated: int = 0
    rejected_stale: int = 0
    deleted: int = 0
    evicted: int = 0

    def record(self, outcome: UpsertOutcome) -> None:
        if outcome == UpsertOutcome.CREATED:
            self.created += 1
        elif outcome == UpsertOutcome.UPDATED:
            self.updated += 1
        else:
            self.rejected_stale += 1

    def to_dict(self) -> dict:
        return {
            "created": self.created,
            "updated": self.updated,
            "rejected_stale": self.rejected_stale,
            "deleted": self.deleted,
            "evicted": self.evicted,
        }


class ListingStore(ABC):
    """
    Base class for listing store backends.

    Subclasses implement the single-key primitives; query_by_item_type is
    composed from them here.
    """

    def __init__(self, precedence: Precedence = Precedence.LAST_WRITE_WINS):
        self.precedence = precedence
        self.stats = StoreStats()

    @abstractmethod
    async def upsert(self, listing: Listing) -> UpsertOutcome:
        """Write the listing at listing.key, replacing any prior entry."""

    @abstractmethod
    async def delete(self, key: ListingKey) -> bool:
        """Remove the entry if present. Returns False for an absent key."""

    @abstractmethod
    async def get(self, key: ListingKey) -> Optional[Listing]:
        """Single-key read."""

    @abstractmethod
    async def get_listings(self, defindex: int) -> list[Listing]:
        """All stored listings of an item type. No side effects."""

    @abstractmethod
    async def sweep_expired(
        self,
        now: datetime,
        ttl: timedelta,
        defindex: Optional[int] = None,
    ) -> int:
        """
        Delete entries bumped before now - ttl.

        Args:
            now: Reference time
            ttl: Maximum age
            defindex: Restrict the sweep to one item type

        Returns:
            Number of entries evicted
        """

    @abstractmethod
    async def record_item_definition(self, name: str, defindex: int) -> None:
        """Remember which defindex an item name resolves to."""

    @abstractmethod
    async def get_item_definition(self, name: str) -> Optional[ItemIdentity]:
        """Resolve an item name learned from earlier payloads."""

    @abstractmethod
    async def count(self) -> int:
        """Total number of stored listings."""

    async def close(self) -> None:
        """Release backend resources."""

    async def query_by_item_type(
        self,
        defindex: int,
        now: datetime,
        ttl: timedelta = LONG_TTL,
    ) -> list[Listing]:
        """
        Evict expired entries of an item type, then return the rest.

        NOTE: not read-only. Every matching entry bumped before now - ttl is
        deleted as a side effect.
        """
        evicted = await self.sweep_expired(now, ttl, defindex=defindex)
        if evicted:
            logger.info(
                f"Evicted {evicted} listings for defindex {defindex}, reason: too old"
            )
        return await self.get_listings(defindex)

    def _should_replace(self, current: Listing, incoming: Listing) -> bool:
        if self.precedence == Precedence.NEWEST_BUMP_WINS:
            return incoming.bumped_at >= current.bumped_at
        return True


class MemoryListingStore(ListingStore):
    """
    In-process listing store.

    All state lives in dicts mutated without awaiting, so each operation runs
    to completion before another task is scheduled; that makes every key
    single-writer on one event loop.

    Usage:
        store = MemoryListingStore()
        await store.upsert(listing)
        fresh = await store.query_by_item_type(5021, now, ttl=SHORT_TTL)
    """

    def __init__(self, precedence: Precedence = Precedence.LAST_WRITE_WINS):
        super().__init__(precedence)
        self._listings: dict[ListingKey, Listing] = {}
        self._by_defindex: dict[int, set[ListingKey]] = {}
        self._items: dict[str, int] = {}

    async def upsert(self, listing: Listing) -> UpsertOutcome:
        key = listing.key
        current = self._listings.get(key)

        if current is None:
            outcome = UpsertOutcome.CREATED
        elif self._should_replace(current, listing):
            outcome = UpsertOutcome.UPDATED
        else:
            outcome = UpsertOutcome.REJECTED_STALE

        if outcome != UpsertOutcome.REJECTED_STALE:
            self._listings[key] = listing
            self._by_defindex.setdefault(key.defindex, set()).add(key)

        self.stats.record(outcome)
        return outcome

    async def delete(self, key: ListingKey) -> bool:
        if self._remove(key):
            self.stats.deleted += 1
            return True
        return False

    async def get(self, key: ListingKey) -> Optional[Listing]:
        return self._listings.get(key)

    async def get_listings(self, defindex: int) -> list[Listing]:
        keys = self._by_defindex.get(defindex, ())
        return [self._listings[key] for key in keys]

    async def sweep_expired(
        self,
        now: datetime,
        ttl: timedelta,
        defindex: Optional[int] = None,
    ) -> int:
        if defindex is None:
            candidates = list(self._listings.values())
        else:
            candidates = [self._listings[k] for k in self._by_defindex.get(defindex, ())]

        expired = [listing.key for listing in candidates if listing.is_expired(now, ttl)]
        for key in expired:
            self._remove(key)

        self.stats.evicted += len(expired)
        return len(expired)

    async def record_item_definition(self, name: str, defindex: int) -> None:
        self._items[name] = defindex

    async def get_item_definition(self, name: str) -> Optional[ItemIdentity]:
        defindex = self._items.get(name)
        if defindex is None:
            return None
        return ItemIdentity(name=name, defindex=defindex)

    async def count(self) -> int:
        return len(self._listings)

    def _remove(self, key: ListingKey) -> bool:
        if self._listings.pop(key, None) is None:
            return False
        keys = self._by_defindex.get(key.defindex)
        if keys is not None:
            keys.discard(key)
            if not keys:
                del self._by_defindex[key.defindex]
        return True
