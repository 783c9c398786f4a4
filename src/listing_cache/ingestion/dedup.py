"""
Snapshot dedup cache.

Remembers when each item's snapshot was last fetched and refuses a second
fetch within the cooldown window. Entries are bounded two ways: anything
older than the retention window is pruned, and the cache never holds more
than max_entries items (least recently fetched go first).
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Optional

from .errors import AlreadyCached

logger = logging.getLogger(__name__)

DEFAULT_COOLDOWN = timedelta(seconds=60)
DEFAULT_RETENTION = timedelta(hours=1)


class SnapshotDedupCache:
    """
    Per-item cooldown gate for snapshot fetches.

    Usage:
        cache = SnapshotDedupCache()

        if cache.should_fetch("Mann Co. Supply Crate Key", now):
            ...
            cache.record_fetch("Mann Co. Supply Crate Key", now)

        # Or atomically, when fetches run concurrently:
        await cache.reserve(item, now)  # raises AlreadyCached
    """

    def __init__(
        self,
        cooldown: timedelta = DEFAULT_COOLDOWN,
        retention: timedelta = DEFAULT_RETENTION,
        max_entries: int = 10_000,
    ):
        """
        Initialize the cache.

        Args:
            cooldown: Minimum interval between two fetches of the same item
            retention: Entries older than this are pruned (>= cooldown)
            max_entries: Hard cap on tracked items
        """
        if retention < cooldown:
            raise ValueError("retention must not be shorter than cooldown")
        if max_entries < 1:
            raise ValueError("max_entries must be positive")

        self._cooldown = cooldown
        self._retention = retention
        self._max_entries = max_entries
        self._entries: OrderedDict[str, datetime] = OrderedDict()
        self._lock = asyncio.Lock()

    @property
    def cooldown(self) -> timedelta:
        return self._cooldown

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, item: str) -> bool:
        return item in self._entries

    def last_fetched(self, item: str) -> Optional[datetime]:
        """When the item's snapshot was last recorded, if ever."""
        return self._entries.get(item)

    def remaining(self, item: str, now: datetime) -> timedelta:
        """Time until the item may be fetched again (zero if allowed)."""
        last = self._entries.get(item)
        if last is None:
            return timedelta(0)
        return max(timedelta(0), self._cooldown - (now - last))

    def should_fetch(self, item: str, now: datetime) -> bool:
        """False if the item was fetched less than `cooldown` ago."""
        last = self._entries.get(item)
        if last is None:
            return True
        return now - last >= self._cooldown

    def check(self, item: str, now: datetime) -> None:
        """
        Raise if the item is still cooling down.

        Raises:
            AlreadyCached: If should_fetch() is False
        """
        if not self.should_fetch(item, now):
            raise AlreadyCached(item, self.remaining(item, now).total_seconds())

    def record_fetch(self, item: str, now: datetime) -> None:
        """Unconditionally record a fetch of the item at `now`."""
        self._entries[item] = now
        self._entries.move_to_end(item)
        self._enforce_size()

    async def reserve(self, item: str, now: datetime) -> None:
        """
        Check and record in one step.

        Safe against concurrent fetch calls for the same item: only the first
        caller gets through, the others see AlreadyCached.

        Raises:
            AlreadyCached: If the item is still cooling down
        """
        async with self._lock:
            self.check(item, now)
            self.record_fetch(item, now)

    def release(self, item: str, previous: Optional[datetime]) -> None:
        """
        Undo a reservation whose fetch failed.

        The previous fetch time is restored, and the entry is again evicted
        before every entry recorded after it.
        """
        self._entries.pop(item, None)
        if previous is None:
            return

        later = [other for other, ts in self._entries.items() if ts > previous]
        self._entries[item] = previous
        for other in later:
            self._entries.move_to_end(other)
        self._enforce_size()

    def prune(self, now: datetime) -> int:
        """
        Drop entries older than the retention window.

        Returns:
            Number of entries removed
        """
        cutoff = now - self._retention
        stale = [item for item, ts in self._entries.items() if ts < cutoff]
        for item in stale:
            del self._entries[item]

        if stale:
            logger.debug(f"Pruned {len(stale)} dedup entries older than {self._retention}")
        return len(stale)

    def _enforce_size(self) -> None:
        while len(self._entries) > self._max_entries:
            item, _ = self._entries.popitem(last=False)
            logger.debug(f"Dedup cache full, evicted {item!r}")

    def clear(self) -> None:
        self._entries.clear()
