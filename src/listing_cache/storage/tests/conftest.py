"""
Test fixtures for the storage layer.

No test here needs a running PostgreSQL: the Postgres store is exercised
against a mocked Database.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from listing_cache.storage.listing_store import MemoryListingStore
from listing_cache.storage.models import Intent, Listing, ListingKey


@pytest.fixture
def now():
    return datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_listing(now):
    """Factory for canonical listings."""

    def _make(
        instance_id="440_1001",
        defindex=5021,
        price=10.0,
        bumped_at=None,
        intent=Intent.SELL,
    ) -> Listing:
        return Listing(
            key=ListingKey(defindex=defindex, instance_id=instance_id),
            account_id="76561198000000001",
            intent=intent,
            price=price,
            bumped_at=bumped_at or now,
        )

    return _make


@pytest.fixture
def memory_store():
    return MemoryListingStore()


@pytest.fixture
def mock_db():
    """Database double exposing the query helpers the store uses."""
    db = MagicMock()
    db.execute = AsyncMock(return_value="INSERT 0 1")
    db.fetch = AsyncMock(return_value=[])
    db.fetchrow = AsyncMock(return_value=None)
    db.fetchval = AsyncMock(return_value=None)
    db.close = AsyncMock()
    return db
