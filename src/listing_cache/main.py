"""
Listing Cache - Main Entry Point

Runs the listing ingestion service: snapshot polling for the configured
items, the listing event stream, periodic TTL sweeps and (optionally) the
JSON dashboard.

Usage:
    python -m listing_cache.main                    # stream + snapshots
    python -m listing_cache.main --mode stream      # event stream only
    python -m listing_cache.main --mode snapshots   # snapshot polling only

Environment Variables:
    BPTF_USER_TOKEN                 backpack.tf user token (BPTF_USER_KEY also accepted)
    ITEMS                           Comma-separated item names of interest
    LISTING_STORE                   "memory" (default) or "postgres"
    DATABASE_URL                    PostgreSQL connection string (postgres store)
    LISTING_PRECEDENCE              "last_write_wins" (default) or "newest_bump_wins"
    SNAPSHOT_POLL_INTERVAL_SECONDS  Seconds between snapshot rounds (default: 300)
    SNAPSHOT_COOLDOWN_SECONDS       Minimum seconds between fetches of one item (default: 60)
    SWEEP_INTERVAL_SECONDS          Seconds between TTL sweeps (default: 600)
    DASHBOARD_ENABLED               "true" to serve the dashboard (default: false)
    DASHBOARD_HOST                  Dashboard bind address (default: 0.0.0.0)
    DASHBOARD_PORT                  Dashboard port (default: 8080)
    LOG_LEVEL                       DEBUG/INFO/WARNING/ERROR (default: INFO)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from listing_cache.ingestion.service import IngestionConfig, IngestionService
from listing_cache.storage.database import Database, DatabaseConfig
from listing_cache.storage.listing_store import ListingStore, MemoryListingStore
from listing_cache.storage.models import Precedence
from listing_cache.storage.postgres_store import PostgresListingStore

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger(__name__)


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes")


def parse_items(raw: str) -> list[str]:
    """Split a comma-separated item list, dropping blanks."""
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class CacheConfig:
    """Complete process configuration."""

    # backpack.tf
    user_token: str = ""
    items: list[str] = field(default_factory=list)

    # Storage
    store_backend: str = "memory"  # "memory" or "postgres"
    database_url: str = ""
    precedence: Precedence = Precedence.LAST_WRITE_WINS

    # Ingestion schedule
    snapshot_poll_interval_seconds: float = 300.0
    snapshot_cooldown_seconds: float = 60.0
    sweep_interval_seconds: float = 600.0

    # Dashboard
    dashboard_enabled: bool = False
    dashboard_host: str = "0.0.0.0"
    dashboard_port: int = 8080

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "CacheConfig":
        """Load configuration from environment variables."""
        return cls(
            user_token=os.environ.get("BPTF_USER_TOKEN") or os.environ.get("BPTF_USER_KEY", ""),
            items=parse_items(os.environ.get("ITEMS", "")),
            store_backend=os.environ.get("LISTING_STORE", "memory").strip().lower(),
            database_url=os.environ.get("DATABASE_URL", ""),
            precedence=Precedence(
                os.environ.get("LISTING_PRECEDENCE", Precedence.LAST_WRITE_WINS.value).strip().lower()
            ),
            snapshot_poll_interval_seconds=float(os.environ.get("SNAPSHOT_POLL_INTERVAL_SECONDS", "300")),
            snapshot_cooldown_seconds=float(os.environ.get("SNAPSHOT_COOLDOWN_SECONDS", "60")),
            sweep_interval_seconds=float(os.environ.get("SWEEP_INTERVAL_SECONDS", "600")),
            dashboard_enabled=_env_bool("DASHBOARD_ENABLED"),
            dashboard_host=os.environ.get("DASHBOARD_HOST", "0.0.0.0"),
            dashboard_port=int(os.environ.get("DASHBOARD_PORT", "8080")),
            log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        )

    def validate(self, mode: str = "all") -> list[str]:
        """Return configuration problems; empty when runnable."""
        problems = []
        if self.store_backend not in ("memory", "postgres"):
            problems.append(f"LISTING_STORE must be memory or postgres, got {self.store_backend!r}")
        if self.store_backend == "postgres" and not self.database_url:
            problems.append("DATABASE_URL is required for the postgres listing store")
        if mode in ("all", "snapshots"):
            if not self.user_token:
                problems.append("BPTF_USER_TOKEN is required for snapshot polling")
            if not self.items:
                problems.append("ITEMS is required for snapshot polling")
        return problems

    def ingestion_config(self, mode: str = "all") -> IngestionConfig:
        return IngestionConfig(
            items=list(self.items),
            user_token=self.user_token,
            stream_enabled=mode in ("all", "stream"),
            snapshot_enabled=mode in ("all", "snapshots"),
            snapshot_poll_interval=self.snapshot_poll_interval_seconds,
            snapshot_cooldown=self.snapshot_cooldown_seconds,
            sweep_interval=self.sweep_interval_seconds,
            dashboard_enabled=self.dashboard_enabled,
            dashboard_host=self.dashboard_host,
            dashboard_port=self.dashboard_port,
        )


class ListingCache:
    """
    Process orchestrator.

    Owns the database connection (postgres backend), the listing store and
    the ingestion service, and tears them down in reverse order.
    """

    def __init__(self, config: CacheConfig):
        self.config = config
        self._db: Optional[Database] = None
        self._store: Optional[ListingStore] = None
        self._service: Optional[IngestionService] = None

    @property
    def store(self) -> Optional[ListingStore]:
        return self._store

    @property
    def service(self) -> Optional[IngestionService]:
        return self._service

    async def create_store(self) -> ListingStore:
        """Build the configured listing store backend."""
        if self.config.store_backend == "postgres":
            self._db = Database(DatabaseConfig(url=self.config.database_url))
            await self._db.initialize()
            if not await self._db.health_check():
                raise RuntimeError("Database health check failed")

            store = PostgresListingStore(self._db, precedence=self.config.precedence)
            await store.ensure_schema()
            logger.info("Listing store: PostgreSQL")
            return store

        logger.info("Listing store: in-memory")
        return MemoryListingStore(precedence=self.config.precedence)

    async def run(self, mode: str = "all") -> None:
        """Start everything and block until the service stops."""
        logger.info("=" * 60)
        logger.info("LISTING CACHE")
        logger.info(f"Mode: {mode.upper()}")
        logger.info(f"Items: {', '.join(self.config.items) or 'all (stream only)'}")
        logger.info("=" * 60)

        try:
            self._store = await self.create_store()
            self._service = IngestionService(
                store=self._store,
                config=self.config.ingestion_config(mode),
                db=self._db,
            )
            await self._service.run_forever()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop components in reverse order."""
        if self._service:
            try:
                await self._service.stop()
            except Exception as e:
                logger.warning(f"Error stopping ingestion: {e}")
            self._service = None

        if self._store:
            try:
                await self._store.close()
            except Exception as e:
                logger.warning(f"Error closing listing store: {e}")
            self._store = None

        self._db = None
        logger.info("Shutdown complete")


def load_env_file(path: str = ".env") -> None:
    """Load environment variables from .env file if it exists."""
    env_path = Path(path)
    if not env_path.exists():
        return

    logger.info(f"Loading environment from {env_path}")
    with open(env_path) as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith("#") and "=" in line:
                key, _, value = line.partition("=")
                value = value.strip().strip('"').strip("'")
                os.environ.setdefault(key.strip(), value)


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger once for the process."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="backpack.tf listing cache",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--mode",
        choices=["all", "stream", "snapshots"],
        default="all",
        help="Which feeds to run (default: all)",
    )
    parser.add_argument(
        "--items",
        type=str,
        help="Comma-separated item names (overrides ITEMS)",
    )
    parser.add_argument(
        "--env-file",
        type=str,
        default=".env",
        help="Path to a .env file (default: .env)",
    )
    parser.add_argument(
        "--dashboard",
        action="store_true",
        help="Serve the JSON dashboard",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> CacheConfig:
    """Environment configuration with command line overrides applied."""
    config = CacheConfig.from_env()
    if args.items:
        config.items = parse_items(args.items)
    if args.dashboard:
        config.dashboard_enabled = True
    if args.log_level:
        config.log_level = args.log_level
    return config


async def main_async(args: argparse.Namespace) -> int:
    """Async main function."""
    try:
        config = build_config(args)
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    problems = config.validate(args.mode)
    if problems:
        for problem in problems:
            logger.error(problem)
        return 1

    app = ListingCache(config)
    try:
        await app.run(mode=args.mode)
        return 0
    except KeyboardInterrupt:
        logger.info("Shutdown requested")
        return 0
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    load_env_file(args.env_file)
    setup_logging(args.log_level or os.environ.get("LOG_LEVEL", "INFO"))

    try:
        return asyncio.run(main_async(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
