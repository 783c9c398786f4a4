"""
FastAPI dashboard for the listing cache.

JSON endpoints only:
    GET /health                    200 healthy / 503 unhealthy
    GET /api/status                full HealthStatus
    GET /api/metrics               rolling-window metrics
    GET /api/stats                 cumulative consumer and store counters
    GET /api/listings/{defindex}   fresh listings of one item type
    GET /api/prices/{item}         price signal by defindex or item name
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse

from listing_cache.pricing.signals import (
    NoListingsError,
    PriceSignals,
    SignalMethod,
    UnknownItemError,
)
from listing_cache.storage.listing_store import StoreError
from listing_cache.storage.models import Intent

if TYPE_CHECKING:
    from .service import IngestionService

logger = logging.getLogger(__name__)


def _item_ref(item: str):
    """Path segments that are all digits address a defindex."""
    return int(item) if item.isdigit() else item


def create_dashboard_app(
    service: "IngestionService",
    signals: Optional[PriceSignals] = None,
) -> FastAPI:
    """
    Create the FastAPI dashboard application.

    Args:
        service: The ingestion service to monitor
        signals: Price signal calculator (defaults to one over service.store)

    Returns:
        FastAPI application instance
    """
    app = FastAPI(
        title="Listing Cache Monitor",
        description="Health, metrics and price signals for the listing cache",
        version="1.0.0",
    )
    signals = signals or PriceSignals(service.store)

    @app.get("/health")
    async def health_check():
        """
        Health check endpoint for Docker/Kubernetes.

        Returns 200 if healthy, 503 if unhealthy.
        """
        health = service.health()
        if health.healthy:
            return {"status": "healthy"}
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "details": health.details},
        )

    @app.get("/api/status")
    async def get_status():
        """Get current service health status."""
        return service.health().to_dict()

    @app.get("/api/metrics")
    async def get_metrics():
        """Get current ingestion metrics."""
        return service.metrics.to_dict()

    @app.get("/api/stats")
    async def get_stats():
        """Cumulative counters since startup."""
        stats = service.consumer.stats
        return {
            "consumer": {
                "messages": stats.messages,
                "events": stats.events,
                "ignored": stats.ignored,
                "deleted": stats.deleted,
                "upserted": stats.upserted,
                "dropped": stats.dropped,
                "failed": stats.failed,
                "decode_failures": stats.decode_failures,
            },
            "store": service.store.stats.to_dict(),
        }

    @app.get("/api/listings/{defindex}")
    async def get_listings(defindex: int, intent: Optional[Intent] = None):
        """Fresh listings of one item type, cheapest first."""
        try:
            listings = await signals.fresh_listings(defindex)
        except StoreError as e:
            logger.error(f"Listing query failed: {e}")
            raise HTTPException(status_code=503, detail=str(e))

        if intent is not None:
            listings = [listing for listing in listings if listing.intent == intent]
        listings.sort(key=lambda listing: listing.price)

        return {
            "defindex": defindex,
            "total": len(listings),
            "listings": [listing.model_dump(mode="json") for listing in listings],
        }

    @app.get("/api/prices/{item}")
    async def get_price(
        item: str,
        method: SignalMethod = SignalMethod.FILTERED_AVERAGE,
        intent: Intent = Intent.SELL,
        bots_only: bool = True,
        exclude_attribute: list[int] = Query(default=[]),
    ):
        """
        Price signal for an item.

        `item` is a defindex or an item name seen in an earlier payload.
        """
        ref = _item_ref(item)
        try:
            if method == SignalMethod.LOWEST:
                listing = await signals.lowest_seller(ref)
                return {
                    "defindex": listing.defindex,
                    "method": method.value,
                    "price": listing.price,
                    "listing": listing.model_dump(mode="json"),
                }
            if method == SignalMethod.AVERAGE:
                signal = await signals.average_price(ref, intent=intent)
            else:
                signal = await signals.filtered_average(
                    ref,
                    intent=intent,
                    bots_only=bots_only,
                    excluded_attributes=exclude_attribute,
                )
        except (NoListingsError, UnknownItemError) as e:
            raise HTTPException(status_code=404, detail=str(e))
        except StoreError as e:
            logger.error(f"Price query failed: {e}")
            raise HTTPException(status_code=503, detail=str(e))

        return signal.to_dict()

    return app

