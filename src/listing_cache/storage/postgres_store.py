"""
PostgreSQL listing store.

Each listing is one row keyed by (defindex, instance_id). The canonical
Listing JSON is kept in a jsonb column; bumped_at is duplicated into its own
column so eviction and the newest-bump guard run inside a single statement.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

import asyncpg

from listing_cache.storage.database import Database
from listing_cache.storage.listing_store import ListingStore, StoreError
from listing_cache.storage.models import (
    ItemIdentity,
    Listing,
    ListingKey,
    Precedence,
    UpsertOutcome,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS listings (
    defindex BIGINT NOT NULL,
    instance_id TEXT NOT NULL,
    bumped_at TIMESTAMPTZ NOT NULL,
    payload JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (defindex, instance_id)
);

CREATE INDEX IF NOT EXISTS idx_listings_bumped_at ON listings (bumped_at);

CREATE TABLE IF NOT EXISTS item_definitions (
    name TEXT PRIMARY KEY,
    defindex BIGINT NOT NULL
);
"""

_UPSERT = """
    INSERT INTO listings (defindex, instance_id, bumped_at, payload, updated_at)
    VALUES ($1, $2, $3, $4::jsonb, now())
    ON CONFLICT (defindex, instance_id) DO UPDATE SET
        bumped_at = EXCLUDED.bumped_at,
        payload = EXCLUDED.payload,
        updated_at = now()
    {guard}
    RETURNING (xmax = 0) AS inserted
"""

_NEWEST_BUMP_GUARD = "WHERE listings.bumped_at <= EXCLUDED.bumped_at"

# Errors a backend call can surface once Database has given up retrying
BACKEND_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, RuntimeError)


def _affected_rows(status: str) -> int:
    """Row count from a command status such as "DELETE 3"."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


class PostgresListingStore(ListingStore):
    """
    Listing store backed by PostgreSQL.

    Usage:
        db = Database(DatabaseConfig(url=...))
        await db.initialize()
        store = PostgresListingStore(db)
        await store.ensure_schema()
    """

    def __init__(
        self,
        db: Database,
        precedence: Precedence = Precedence.LAST_WRITE_WINS,
    ) -> None:
        super().__init__(precedence)
        self.db = db
        guard = _NEWEST_BUMP_GUARD if precedence == Precedence.NEWEST_BUMP_WINS else ""
        self._upsert_sql = _UPSERT.format(guard=guard)

    async def ensure_schema(self) -> None:
        """Create tables if they do not exist."""
        try:
            await self.db.execute(SCHEMA)
        except BACKEND_ERRORS as e:
            raise StoreError("ensure_schema", cause=e) from e
        logger.info("Listing store schema ready")

    async def upsert(self, listing: Listing) -> UpsertOutcome:
        key = listing.key
        try:
            row = await self.db.fetchrow(
                self._upsert_sql,
                key.defindex,
                key.instance_id,
                listing.bumped_at,
                listing.model_dump_json(),
            )
        except BACKEND_ERRORS as e:
            raise StoreError("upsert", key, e) from e

        # No row back means the newest-bump guard skipped the update
        if row is None:
            outcome = UpsertOutcome.REJECTED_STALE
        elif row["inserted"]:
            outcome = UpsertOutcome.CREATED
        else:
            outcome = UpsertOutcome.UPDATED

        self.stats.record(outcome)
        return outcome

    async def delete(self, key: ListingKey) -> bool:
        try:
            status = await self.db.execute(
                "DELETE FROM listings WHERE defindex = $1 AND instance_id = $2",
                key.defindex,
                key.instance_id,
            )
        except BACKEND_ERRORS as e:
            raise StoreError("delete", key, e) from e

        deleted = _affected_rows(status) > 0
        if deleted:
            self.stats.deleted += 1
        return deleted

    async def get(self, key: ListingKey) -> Optional[Listing]:
        try:
            payload = await self.db.fetchval(
                "SELECT payload FROM listings WHERE defindex = $1 AND instance_id = $2",
                key.defindex,
                key.instance_id,
            )
        except BACKEND_ERRORS as e:
            raise StoreError("get", key, e) from e

        if payload is None:
            return None
        return Listing.model_validate_json(payload)

    async def get_listings(self, defindex: int) -> list[Listing]:
        try:
            rows = await self.db.fetch(
                "SELECT payload FROM listings WHERE defindex = $1 ORDER BY bumped_at DESC",
                defindex,
            )
        except BACKEND_ERRORS as e:
            raise StoreError("get_listings", cause=e) from e

        return [Listing.model_validate_json(row["payload"]) for row in rows]

    async def sweep_expired(
        self,
        now: datetime,
        ttl: timedelta,
        defindex: Optional[int] = None,
    ) -> int:
        cutoff = now - ttl
        try:
            if defindex is None:
                status = await self.db.execute(
                    "DELETE FROM listings WHERE bumped_at < $1", cutoff
                )
            else:
                status = await self.db.execute(
                    "DELETE FROM listings WHERE defindex = $1 AND bumped_at < $2",
                    defindex,
                    cutoff,
                )
        except BACKEND_ERRORS as e:
            raise StoreError("sweep_expired", cause=e) from e

        evicted = _affected_rows(status)
        self.stats.evicted += evicted
        return evicted

    async def record_item_definition(self, name: str, defindex: int) -> None:
        try:
            await self.db.execute(
                """
                INSERT INTO item_definitions (name, defindex) VALUES ($1, $2)
                ON CONFLICT (name) DO UPDATE SET defindex = EXCLUDED.defindex
                """,
                name,
                defindex,
            )
        except BACKEND_ERRORS as e:
            raise StoreError("record_item_definition", cause=e) from e

    async def get_item_definition(self, name: str) -> Optional[ItemIdentity]:
        try:
            defindex = await self.db.fetchval(
                "SELECT defindex FROM item_definitions WHERE name = $1", name
            )
        except BACKEND_ERRORS as e:
            raise StoreError("get_item_definition", cause=e) from e

        if defindex is None:
            return None
        return ItemIdentity(name=name, defindex=defindex)

    async def count(self) -> int:
        try:
            return await self.db.fetchval("SELECT COUNT(*) FROM listings")
        except BACKEND_ERRORS as e:
            raise StoreError("count", cause=e) from e

    async def close(self) -> None:
        await self.db.close()
