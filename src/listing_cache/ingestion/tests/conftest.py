"""
Test fixtures for ingestion layer.

IMPORTANT: All external API calls must be mocked.
Never hit the real backpack.tf API or event stream in tests.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from listing_cache.ingestion.decoders import DecodedSnapshot, SnapshotListing
from listing_cache.ingestion.metrics import MetricsCollector
from listing_cache.ingestion.normalizer import item_hash
from listing_cache.storage.listing_store import MemoryListingStore
from listing_cache.storage.models import Intent, Listing, ListingKey


KEY_NAME = "Mann Co. Supply Crate Key"
KEY_DEFINDEX = 5021
STEAMID = "76561198000000001"


# =============================================================================
# Time Fixtures
# =============================================================================


@pytest.fixture
def now():
    """Fixed reference time in UTC."""
    return datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def now_timestamp(now):
    return int(now.timestamp())


# =============================================================================
# Model Fixtures
# =============================================================================


@pytest.fixture
def make_listing(now):
    """Factory for canonical listings."""

    def _make(
        instance_id="440_1001",
        price=10.0,
        intent=Intent.SELL,
        defindex=KEY_DEFINDEX,
        bumped_at=None,
        agent_last_seen=None,
        has_active_agent=None,
        attributes=(),
        account_id=STEAMID,
    ) -> Listing:
        if has_active_agent is None:
            has_active_agent = agent_last_seen is not None
        return Listing(
            key=ListingKey(defindex=defindex, instance_id=instance_id),
            account_id=account_id,
            intent=intent,
            price=price,
            bumped_at=bumped_at or now,
            has_active_agent=has_active_agent,
            agent_last_seen=agent_last_seen,
            item_name=KEY_NAME,
            attributes=tuple(attributes),
        )

    return _make


# =============================================================================
# Wire Payload Fixtures
# =============================================================================


@pytest.fixture
def snapshot_record(now_timestamp):
    """One raw snapshot record (a sell listing with a live agent)."""
    return {
        "steamid": STEAMID,
        "offers": 1,
        "buyout": 1,
        "details": "Selling keys, add me!",
        "intent": "sell",
        "timestamp": now_timestamp - 3600,
        "price": 62.11,
        "item": {
            "defindex": KEY_DEFINDEX,
            "id": 1001,
            "original_id": 900,
            "quality": 6,
            "attributes": [{"defindex": 2025}],
        },
        "bump": now_timestamp - 60,
        "userAgent": {"lastPulse": now_timestamp - 120, "client": "TF2Autobot"},
    }


@pytest.fixture
def snapshot_body(snapshot_record, now_timestamp):
    """A snapshot response body with one sell and one buy record."""
    buy = {
        "steamid": "76561198000000002",
        "intent": "buy",
        "timestamp": now_timestamp - 7200,
        "price": "61.5",
        "item": {"defindex": KEY_DEFINDEX, "quality": 6},
    }
    return {
        "listings": [snapshot_record, buy],
        "appid": 440,
        "sku": KEY_NAME,
        "createdAt": now_timestamp,
    }


@pytest.fixture
def update_payload(now_timestamp):
    """A listing-update event payload."""
    return {
        "id": "440_2002",
        "steamid": STEAMID,
        "appid": 440,
        "intent": "sell",
        "value": {"raw": 62.33, "short": "1.01 keys", "long": "62.33 ref"},
        "details": "fast trade",
        "listedAt": now_timestamp - 600,
        "bumpedAt": now_timestamp - 30,
        "status": "active",
        "item": {
            "id": 2002,
            "name": KEY_NAME,
            "defindex": KEY_DEFINDEX,
            "quality": {"id": 6, "name": "Unique"},
        },
        "userAgent": {"lastPulse": now_timestamp - 10, "client": "TF2Autobot"},
    }


@pytest.fixture
def update_event(update_payload):
    return {"event": "listing-update", "payload": update_payload}


@pytest.fixture
def delete_event():
    return {
        "event": "listing-delete",
        "payload": {
            "id": "440_1001",
            "item": {"defindex": KEY_DEFINDEX, "name": KEY_NAME},
        },
    }


@pytest.fixture
def buy_key_instance():
    """instance_id of STEAMID's buy listing for the key."""
    return f"440_{STEAMID}_{item_hash(KEY_NAME)}"


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def store():
    return MemoryListingStore()


@pytest.fixture
def metrics():
    collector = MetricsCollector()
    collector.start()
    return collector


@pytest.fixture
def mock_client(snapshot_body):
    """REST client returning the sample snapshot body."""
    client = MagicMock()
    client.get_snapshot = AsyncMock(
        return_value=DecodedSnapshot(
            listings=[SnapshotListing.model_validate(r) for r in snapshot_body["listings"]],
            created_at=snapshot_body["createdAt"],
        )
    )
    client.close = AsyncMock()
    return client
