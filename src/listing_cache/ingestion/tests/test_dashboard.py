"""
Tests for dashboard HTTP endpoints.
"""

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from listing_cache.ingestion.dashboard import create_dashboard_app
from listing_cache.ingestion.service import IngestionConfig, IngestionService, ServiceState
from listing_cache.storage.models import Intent

from .conftest import KEY_DEFINDEX, KEY_NAME


@pytest.fixture
def service(store):
    return IngestionService(store, config=IngestionConfig(stream_enabled=False))


@pytest.fixture
async def client(service):
    app = create_dashboard_app(service)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
async def stocked_store(store, make_listing):
    """Store holding three live-bot sellers, one outlier and one buyer."""
    current = datetime.now(timezone.utc)
    seen = current - timedelta(minutes=2)
    for instance_id, price in (("440_1", 10.0), ("440_2", 11.0), ("440_3", 9.0), ("440_4", 1000.0)):
        await store.upsert(
            make_listing(instance_id, price=price, bumped_at=current, agent_last_seen=seen)
        )
    await store.upsert(
        make_listing("440_buyer", price=8.0, intent=Intent.BUY, bumped_at=current)
    )
    await store.record_item_definition(KEY_NAME, KEY_DEFINDEX)
    return store


class TestHealthEndpoints:

    @pytest.mark.asyncio
    async def test_health_503_when_stopped(self, client):
        response = await client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_health_200_when_running(self, client, service):
        service._state = ServiceState.RUNNING

        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_status(self, client):
        response = await client.get("/api/status")

        assert response.status_code == 200
        assert response.json()["state"] == "stopped"

    @pytest.mark.asyncio
    async def test_metrics(self, client):
        response = await client.get("/api/metrics")

        assert response.status_code == 200
        assert "events_received" in response.json()

    @pytest.mark.asyncio
    async def test_stats(self, client, stocked_store):
        response = await client.get("/api/stats")

        data = response.json()
        assert data["store"]["created"] == 5
        assert data["consumer"]["messages"] == 0


class TestListingEndpoints:

    @pytest.mark.asyncio
    async def test_listings_sorted_by_price(self, client, stocked_store):
        response = await client.get(f"/api/listings/{KEY_DEFINDEX}")

        data = response.json()
        assert data["total"] == 5
        prices = [listing["price"] for listing in data["listings"]]
        assert prices == sorted(prices)

    @pytest.mark.asyncio
    async def test_listings_by_intent(self, client, stocked_store):
        response = await client.get(f"/api/listings/{KEY_DEFINDEX}", params={"intent": "buy"})

        data = response.json()
        assert data["total"] == 1
        assert data["listings"][0]["intent"] == "buy"

    @pytest.mark.asyncio
    async def test_unknown_defindex_is_empty(self, client):
        response = await client.get("/api/listings/999")

        assert response.status_code == 200
        assert response.json()["total"] == 0


class TestPriceEndpoints:

    @pytest.mark.asyncio
    async def test_filtered_average_by_defindex(self, client, stocked_store):
        response = await client.get(f"/api/prices/{KEY_DEFINDEX}")

        assert response.status_code == 200
        data = response.json()
        assert data["method"] == "filtered_average"
        assert data["price"] == pytest.approx(10.0)
        assert data["sample_size"] == 3

    @pytest.mark.asyncio
    async def test_lowest_by_name(self, client, stocked_store):
        response = await client.get(f"/api/prices/{KEY_NAME}", params={"method": "lowest"})

        assert response.status_code == 200
        assert response.json()["price"] == pytest.approx(9.0)

    @pytest.mark.asyncio
    async def test_average_of_buyers(self, client, stocked_store):
        response = await client.get(
            f"/api/prices/{KEY_DEFINDEX}", params={"method": "average", "intent": "buy"}
        )

        assert response.json()["price"] == pytest.approx(8.0)

    @pytest.mark.asyncio
    async def test_unknown_item_is_404(self, client):
        response = await client.get("/api/prices/Unheard Of Hat")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_no_listings_is_404(self, client):
        response = await client.get("/api/prices/999")

        assert response.status_code == 404
