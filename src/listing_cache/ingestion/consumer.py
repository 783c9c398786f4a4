"""
Event stream consumer: push-side feed adapter.

Turns each stream message into store deletes and upserts:

    1. Decode the message (a whole-message failure drops only that message)
    2. Keep events whose item is of interest
    3. Apply the message's deletes, then its upserts

A bad record or a failed store write is counted and logged; it never stops
the rest of the message or the stream.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from listing_cache.storage.listing_store import ListingStore, StoreError

from .decoders import EventListing, EventListingDeletion, decode_event_message
from .errors import DecodeError, InvalidRecord
from .metrics import MetricsCollector
from .models import ConsumerResult
from .normalizer import deletion_key, normalize_event_listing

logger = logging.getLogger(__name__)


@dataclass
class ConsumerStats:
    """Cumulative counters since the consumer was created."""
    messages: int = 0
    events: int = 0
    ignored: int = 0
    deleted: int = 0
    upserted: int = 0
    dropped: int = 0
    failed: int = 0
    decode_failures: int = 0

    def add(self, result: ConsumerResult) -> None:
        self.messages += 1
        self.events += result.events
        self.ignored += result.ignored
        self.deleted += result.deleted
        self.upserted += result.created + result.updated
        self.dropped += result.dropped
        self.failed += result.failed
        if result.decode_failed:
            self.decode_failures += 1


class EventStreamConsumer:
    """
    Applies listing events to the store.

    Usage:
        consumer = EventStreamConsumer(store, items_of_interest={"Strange Rocket Launcher"})
        stream = ListingEventStream(on_message=consumer.on_message)
    """

    def __init__(
        self,
        store: ListingStore,
        items_of_interest: Optional[Iterable[str]] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        """
        Args:
            store: Listing store to write to
            items_of_interest: Item names to keep; None or empty keeps all
            metrics: Optional metrics collector
        """
        self._store = store
        self._items = frozenset(items_of_interest or ())
        self._metrics = metrics
        self._stats = ConsumerStats()
        self._known_items: set[str] = set()

    @property
    def items_of_interest(self) -> frozenset[str]:
        return self._items

    @property
    def stats(self) -> ConsumerStats:
        return self._stats

    def is_of_interest(self, item_name: Optional[str]) -> bool:
        """
        Check an event's item name against the filter.

        A deletion without an item name is kept: deleting an absent key is
        a no-op, whereas skipping it could leave a dead listing behind.
        """
        if not self._items or item_name is None:
            return True
        return item_name in self._items

    async def on_message(self, raw_message: Union[str, bytes]) -> None:
        """Stream callback; discards the result."""
        await self.handle_message(raw_message)

    async def handle_message(self, raw_message: Union[str, bytes]) -> ConsumerResult:
        """
        Decode one stream message and apply it to the store.

        Never raises for malformed input or a failed store write.

        Returns:
            ConsumerResult describing what was applied
        """
        result = ConsumerResult()

        try:
            decoded = decode_event_message(raw_message)
        except DecodeError as e:
            logger.error(f"Failed to deserialize events: {e}")
            result.decode_failed = True
            self._finish(result)
            if self._metrics:
                self._metrics.record_decode_failure()
                self._metrics.record_message()
            return result

        result.events = len(decoded.events)
        result.dropped += decoded.malformed
        if decoded.unknown:
            logger.debug(f"Skipped {decoded.unknown} events of unknown type")

        deletions: list[EventListingDeletion] = []
        updates: list[EventListing] = []
        for deletion in decoded.deletions:
            if self.is_of_interest(deletion.item.name):
                deletions.append(deletion)
            else:
                result.ignored += 1
        for update in decoded.updates:
            if self.is_of_interest(update.item.name):
                updates.append(update)
            else:
                result.ignored += 1

        # Deletes first, so a delete and re-list in one message keeps the re-list
        for deletion in deletions:
            await self._apply_delete(deletion, result)
        for update in updates:
            await self._apply_update(update, result)

        self._finish(result)
        if self._metrics:
            self._metrics.record_message(events=result.events, ignored=result.ignored)
            self._metrics.record_dropped(result.dropped)
        return result

    async def _apply_delete(self, raw: EventListingDeletion, result: ConsumerResult) -> None:
        key = deletion_key(raw)
        try:
            removed = await self._store.delete(key)
        except StoreError as e:
            result.failed += 1
            logger.error(f"Failed to delete listing {key}: {e}")
            if self._metrics:
                self._metrics.record_error(e, component="storage", item=raw.item.name)
            return

        if removed:
            result.deleted += 1
            if self._metrics:
                self._metrics.record_delete()

    async def _apply_update(self, raw: EventListing, result: ConsumerResult) -> None:
        try:
            listing = normalize_event_listing(raw)
        except InvalidRecord as e:
            result.dropped += 1
            logger.warning(f"Dropping listing {raw.id}: {e}")
            return

        try:
            outcome = await self._store.upsert(listing)
        except StoreError as e:
            result.failed += 1
            logger.error(f"Failed to store listing {listing.key}: {e}")
            if self._metrics:
                self._metrics.record_error(e, component="storage", item=raw.item.name)
            return

        result.record(outcome)
        if self._metrics:
            self._metrics.record_upsert(outcome)

        await self._learn_item(raw.item.name, raw.item.defindex)

    async def _learn_item(self, name: str, defindex: int) -> None:
        if name in self._known_items:
            return
        try:
            await self._store.record_item_definition(name, defindex)
        except StoreError as e:
            logger.warning(f"Could not record item definition for {name!r}: {e}")
            return
        self._known_items.add(name)

    def _finish(self, result: ConsumerResult) -> None:
        self._stats.add(result)
        if result.applied or result.failed:
            logger.debug(
                f"Applied message: {result.deleted} deleted, {result.created} created, "
                f"{result.updated} updated, {result.rejected} stale, {result.failed} failed"
            )
