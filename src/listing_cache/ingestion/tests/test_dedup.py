"""
Tests for the snapshot dedup cache.
"""

import asyncio
from datetime import timedelta

import pytest

from listing_cache.ingestion.dedup import SnapshotDedupCache
from listing_cache.ingestion.errors import AlreadyCached

from .conftest import KEY_NAME


class TestCooldown:

    def test_unknown_item_may_fetch(self, now):
        cache = SnapshotDedupCache()

        assert cache.should_fetch(KEY_NAME, now)
        assert cache.remaining(KEY_NAME, now) == timedelta(0)

    def test_refuses_inside_cooldown(self, now):
        cache = SnapshotDedupCache()
        cache.record_fetch(KEY_NAME, now)

        assert not cache.should_fetch(KEY_NAME, now + timedelta(seconds=59))
        assert cache.remaining(KEY_NAME, now + timedelta(seconds=59)) == timedelta(seconds=1)

    def test_allows_at_cooldown(self, now):
        cache = SnapshotDedupCache()
        cache.record_fetch(KEY_NAME, now)

        assert cache.should_fetch(KEY_NAME, now + timedelta(seconds=60))

    def test_check_raises_already_cached(self, now):
        cache = SnapshotDedupCache()
        cache.record_fetch(KEY_NAME, now)

        with pytest.raises(AlreadyCached) as exc_info:
            cache.check(KEY_NAME, now + timedelta(seconds=20))

        assert exc_info.value.item == KEY_NAME
        assert exc_info.value.retry_after == pytest.approx(40.0)

    def test_items_are_independent(self, now):
        cache = SnapshotDedupCache()
        cache.record_fetch(KEY_NAME, now)

        assert cache.should_fetch("Tour of Duty Ticket", now)

    def test_retention_shorter_than_cooldown_rejected(self):
        with pytest.raises(ValueError):
            SnapshotDedupCache(cooldown=timedelta(minutes=5), retention=timedelta(minutes=1))


class TestBounds:

    def test_prune_drops_old_entries(self, now):
        cache = SnapshotDedupCache()
        cache.record_fetch("old", now - timedelta(hours=2))
        cache.record_fetch("fresh", now - timedelta(minutes=5))

        removed = cache.prune(now)

        assert removed == 1
        assert "old" not in cache
        assert "fresh" in cache

    def test_max_entries_evicts_least_recent(self, now):
        cache = SnapshotDedupCache(max_entries=2)
        cache.record_fetch("a", now)
        cache.record_fetch("b", now)
        cache.record_fetch("a", now + timedelta(seconds=1))
        cache.record_fetch("c", now + timedelta(seconds=2))

        assert len(cache) == 2
        assert "b" not in cache
        assert "a" in cache and "c" in cache

    def test_clear(self, now):
        cache = SnapshotDedupCache()
        cache.record_fetch(KEY_NAME, now)

        cache.clear()

        assert len(cache) == 0


class TestReservation:

    @pytest.mark.asyncio
    async def test_reserve_records_fetch(self, now):
        cache = SnapshotDedupCache()

        await cache.reserve(KEY_NAME, now)

        assert cache.last_fetched(KEY_NAME) == now

    @pytest.mark.asyncio
    async def test_concurrent_reservations_admit_one(self, now):
        cache = SnapshotDedupCache()

        results = await asyncio.gather(
            *(cache.reserve(KEY_NAME, now) for _ in range(5)),
            return_exceptions=True,
        )

        admitted = [r for r in results if r is None]
        refused = [r for r in results if isinstance(r, AlreadyCached)]
        assert len(admitted) == 1
        assert len(refused) == 4

    @pytest.mark.asyncio
    async def test_release_of_first_fetch_forgets_item(self, now):
        cache = SnapshotDedupCache()
        await cache.reserve(KEY_NAME, now)

        cache.release(KEY_NAME, None)

        assert KEY_NAME not in cache
        assert cache.should_fetch(KEY_NAME, now)

    @pytest.mark.asyncio
    async def test_release_restores_previous_fetch_time(self, now):
        cache = SnapshotDedupCache()
        earlier = now - timedelta(minutes=5)
        cache.record_fetch(KEY_NAME, earlier)
        await cache.reserve(KEY_NAME, now)

        cache.release(KEY_NAME, earlier)

        assert cache.last_fetched(KEY_NAME) == earlier

    @pytest.mark.asyncio
    async def test_released_entry_is_evicted_before_later_ones(self, now):
        cache = SnapshotDedupCache(max_entries=2)
        cache.record_fetch("A", now - timedelta(minutes=10))
        cache.record_fetch("B", now - timedelta(minutes=5))
        await cache.reserve("A", now)

        cache.release("A", now - timedelta(minutes=10))
        cache.record_fetch("C", now)

        assert "A" not in cache
        assert "B" in cache
        assert "C" in cache
