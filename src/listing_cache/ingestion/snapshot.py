"""
Snapshot fetcher: pull-side feed adapter.

Pipeline per item:
    dedup gate -> REST snapshot -> decode -> normalize -> store upsert

Snapshots are merged into the store: a listing missing from a newer
snapshot is left in place and ages out through the TTL sweep (or is
removed by a delete event).
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Iterable, Optional

from listing_cache.storage.listing_store import ListingStore, StoreError
from listing_cache.storage.models import Listing

from .client import BackpackRestClient
from .dedup import SnapshotDedupCache
from .errors import AlreadyCached, DecodeError, InvalidRecord, PricingError
from .metrics import MetricsCollector
from .models import SyncResult
from .normalizer import DEFAULT_APPID, normalize_snapshot_listing

logger = logging.getLogger(__name__)


class SnapshotFetcher:
    """
    Fetches item snapshots and writes them through to the listing store.

    Owns its dedup cache; concurrent fetches of the same item are resolved
    by SnapshotDedupCache.reserve so only one reaches the network.

    Usage:
        fetcher = SnapshotFetcher(client, store)
        listings = await fetcher.fetch_snapshot("Strange Rocket Launcher")
        result = await fetcher.sync_item("Strange Rocket Launcher")
    """

    def __init__(
        self,
        client: BackpackRestClient,
        store: ListingStore,
        dedup: Optional[SnapshotDedupCache] = None,
        metrics: Optional[MetricsCollector] = None,
        appid: int = DEFAULT_APPID,
    ):
        self._client = client
        self._store = store
        self._dedup = dedup or SnapshotDedupCache()
        self._metrics = metrics
        self._appid = appid

    @property
    def dedup(self) -> SnapshotDedupCache:
        return self._dedup

    async def fetch_snapshot(
        self,
        item: str,
        now: Optional[datetime] = None,
    ) -> list[Listing]:
        """
        Fetch the current listings of one item.

        The fetch is recorded in the dedup cache once the endpoint answers
        200. A transport failure or bad status releases the reservation so
        the item can be retried immediately; an undecodable 200 body keeps
        it, and the item waits out the cooldown.

        Args:
            item: Full item name
            now: Reference time for the cooldown (defaults to current time)

        Returns:
            Canonical listings; records that cannot be normalized are dropped

        Raises:
            AlreadyCached: If the item was fetched within the cooldown
            ServerError: On a 5xx response
            InternalError: On transport, status or decode failure
        """
        now = now or datetime.now(timezone.utc)
        listings, _ = await self._fetch(item, now)
        return listings

    async def _fetch(self, item: str, now: datetime) -> tuple[list[Listing], int]:
        """fetch_snapshot body; also returns how many records were dropped."""
        previous = self._dedup.last_fetched(item)

        await self._dedup.reserve(item, now)

        try:
            snapshot = await self._client.get_snapshot(item)
        except DecodeError:
            raise
        except (Exception, asyncio.CancelledError):
            self._dedup.release(item, previous)
            raise

        if self._metrics:
            self._metrics.record_snapshot(item, len(snapshot.listings))

        listings = []
        dropped = snapshot.malformed
        for raw in snapshot.listings:
            try:
                listings.append(normalize_snapshot_listing(raw, item, appid=self._appid))
            except InvalidRecord as e:
                dropped += 1
                logger.warning(f"Dropping snapshot listing for {item!r}: {e}")

        if dropped and self._metrics:
            self._metrics.record_dropped(dropped)

        logger.debug(f"Snapshot for {item!r}: {len(listings)} listings, {dropped} dropped")
        return listings, dropped

    async def sync_item(
        self,
        item: str,
        now: Optional[datetime] = None,
    ) -> SyncResult:
        """
        Fetch one item's snapshot and upsert every listing.

        A StoreError on one listing is counted and the rest still go through.

        Raises:
            AlreadyCached, ServerError, InternalError: From fetch_snapshot
        """
        now = now or datetime.now(timezone.utc)
        listings, dropped = await self._fetch(item, now)
        result = SyncResult(item=item, fetched=len(listings), dropped=dropped)

        if listings:
            try:
                await self._store.record_item_definition(item, listings[0].defindex)
            except StoreError as e:
                logger.warning(f"Could not record item definition for {item!r}: {e}")

        for listing in listings:
            try:
                outcome = await self._store.upsert(listing)
            except StoreError as e:
                result.failed += 1
                logger.error(f"Failed to store snapshot listing: {e}")
                if self._metrics:
                    self._metrics.record_error(e, component="storage", item=item)
                continue

            result.record(outcome)
            if self._metrics:
                self._metrics.record_upsert(outcome)

        logger.info(
            f"Synced {item!r}: {result.fetched} listings "
            f"({result.created} new, {result.updated} updated, {result.rejected} stale)"
        )
        return result

    async def sync_items(self, items: Iterable[str]) -> list[SyncResult]:
        """
        Sync every item once, in order.

        Items still cooling down are skipped quietly. Any other failure is
        logged and the loop moves on to the next item.
        """
        results = []
        for item in items:
            try:
                results.append(await self.sync_item(item))
            except AlreadyCached as e:
                logger.debug(str(e))
            except PricingError as e:
                logger.error(f"Failed to get snapshot for item {item!r}: {e}")
                if self._metrics:
                    self._metrics.record_error(e, component="snapshot", item=item)
            except Exception as e:
                logger.exception(f"Unexpected error syncing item {item!r}: {e}")
                if self._metrics:
                    self._metrics.record_error(e, component="snapshot", item=item)

        self._dedup.prune(datetime.now(timezone.utc))
        return results
