"""
Shared test fixtures spanning multiple components.

Component-specific fixtures live in src/listing_cache/{component}/tests/conftest.py.
"""

import os
from datetime import datetime, timezone

import pytest

from listing_cache.storage.database import Database, DatabaseConfig
from listing_cache.storage.listing_store import MemoryListingStore


@pytest.fixture
def now():
    return datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def memory_store():
    return MemoryListingStore()


@pytest.fixture
async def integration_db():
    """Live database for PostgreSQL tests; skipped when none is configured."""
    url = os.environ.get("TEST_DATABASE_URL")
    if not url:
        pytest.skip("TEST_DATABASE_URL not set")

    db = Database(DatabaseConfig(url=url, retry_max_attempts=1))
    await db.initialize()
    try:
        await db.execute("DROP TABLE IF EXISTS listings, item_definitions")
        yield db
    finally:
        await db.close()
