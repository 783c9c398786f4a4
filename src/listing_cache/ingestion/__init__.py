"""
Ingestion Layer - Feed adapters for backpack.tf classifieds listings.

This module turns the two listing feeds into canonical store writes:
    - REST client for the per-item snapshot endpoint
    - WebSocket client for the listing event stream
    - Decoders and normalizer onto the canonical Listing
    - Snapshot dedup cache (60 s cooldown per item)
    - Noise filters used before a price is computed
    - Ingestion service orchestrator

The FastAPI dashboard lives in listing_cache.ingestion.dashboard and is
imported on demand (it depends on the pricing layer).

Usage:
    from listing_cache.ingestion import IngestionConfig, IngestionService
    from listing_cache.storage import MemoryListingStore

    service = IngestionService(
        store=MemoryListingStore(),
        config=IngestionConfig(items=["Mann Co. Supply Crate Key"], user_token="..."),
    )
    await service.start()
    health = service.health()
    await service.stop()
"""

# Errors
from .errors import (
    AlreadyCached,
    DecodeError,
    InternalError,
    InvalidIdentity,
    InvalidRecord,
    PricingError,
    ServerError,
)

# Models
from .models import (
    ConsumerResult,
    ErrorRecord,
    SyncResult,
)

# Decoding and normalization
from .decoders import (
    DecodedMessage,
    DecodedSnapshot,
    decode_event_message,
    decode_snapshot_response,
)
from .normalizer import (
    derive_listing_key,
    deletion_key,
    normalize,
    normalize_event_listing,
    normalize_snapshot_listing,
)

# Filters
from .filters import (
    AgentSelection,
    ListingFilter,
    average,
    exclude_attributes,
    keep_only_intent,
    lowest_price,
    reject_inactive_agents,
    reject_outliers,
)

# Dedup
from .dedup import SnapshotDedupCache

# Metrics
from .metrics import (
    IngestionMetrics,
    MetricsCollector,
)

# Transports
from .client import BackpackRestClient
from .websocket import (
    ListingEventStream,
    StreamDisconnected,
    WebSocketState,
)

# Feed adapters
from .consumer import ConsumerStats, EventStreamConsumer
from .snapshot import SnapshotFetcher

# Service
from .service import (
    HealthStatus,
    IngestionConfig,
    IngestionService,
    ServiceState,
)


__all__ = [
    # Errors
    "AlreadyCached",
    "DecodeError",
    "InternalError",
    "InvalidIdentity",
    "InvalidRecord",
    "PricingError",
    "ServerError",
    # Models
    "ConsumerResult",
    "ErrorRecord",
    "SyncResult",
    # Decoding
    "DecodedMessage",
    "DecodedSnapshot",
    "decode_event_message",
    "decode_snapshot_response",
    "derive_listing_key",
    "deletion_key",
    "normalize",
    "normalize_event_listing",
    "normalize_snapshot_listing",
    # Filters
    "AgentSelection",
    "ListingFilter",
    "average",
    "exclude_attributes",
    "keep_only_intent",
    "lowest_price",
    "reject_inactive_agents",
    "reject_outliers",
    # Dedup
    "SnapshotDedupCache",
    # Metrics
    "IngestionMetrics",
    "MetricsCollector",
    # Transports
    "BackpackRestClient",
    "ListingEventStream",
    "StreamDisconnected",
    "WebSocketState",
    # Feed adapters
    "ConsumerStats",
    "EventStreamConsumer",
    "SnapshotFetcher",
    # Service
    "HealthStatus",
    "IngestionConfig",
    "IngestionService",
    "ServiceState",
]
