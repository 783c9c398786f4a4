"""
Storage Layer - Canonical listing models and the listing store.

This is the foundation layer that all other components depend on.

Public API:
    Models:
        Listing, ListingKey, Intent, ItemIdentity
        UpsertOutcome, Precedence

    Stores:
        ListingStore - Backend contract
        MemoryListingStore - In-process dicts
        PostgresListingStore - asyncpg, one row per listing

    Database, DatabaseConfig - Connection pool management
    StoreError, SHORT_TTL, LONG_TTL
"""
from listing_cache.storage.database import Database, DatabaseConfig
from listing_cache.storage.listing_store import (
    LONG_TTL,
    SHORT_TTL,
    ListingStore,
    MemoryListingStore,
    StoreError,
    StoreStats,
)
from listing_cache.storage.models import (
    Intent,
    ItemIdentity,
    Listing,
    ListingKey,
    Precedence,
    UpsertOutcome,
)
from listing_cache.storage.postgres_store import PostgresListingStore

__all__ = [
    "Database",
    "DatabaseConfig",
    "Intent",
    "ItemIdentity",
    "Listing",
    "ListingKey",
    "ListingStore",
    "LONG_TTL",
    "MemoryListingStore",
    "PostgresListingStore",
    "Precedence",
    "SHORT_TTL",
    "StoreError",
    "StoreStats",
    "UpsertOutcome",
]
