"""
Main ingestion service orchestrator.

Runs three independent tasks on one event loop:
    - Snapshot poller: syncs every item of interest on a fixed interval
    - Event stream: listing updates and deletions pushed by the site
    - TTL sweeper: evicts listings whose last bump is older than SHORT_TTL

All three write to the same listing store. Cross-feed ordering is not
guaranteed; the store's precedence policy decides conflicting writes.

Features:
    - Graceful startup/shutdown
    - Health status for the dashboard and container healthchecks
    - Signal handling (SIGTERM, SIGINT)
"""

from __future__ import annotations

import asyncio
import logging
import signal
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from listing_cache.storage.listing_store import SHORT_TTL, ListingStore, StoreError

from .client import BackpackRestClient
from .consumer import EventStreamConsumer
from .dedup import SnapshotDedupCache
from .metrics import IngestionMetrics, MetricsCollector
from .snapshot import SnapshotFetcher
from .websocket import ListingEventStream, WebSocketState

logger = logging.getLogger(__name__)


class ServiceState(str, Enum):
    """Service lifecycle state."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


@dataclass
class IngestionConfig:
    """Configuration for the ingestion service."""

    # Items of interest (empty: stream keeps every item, snapshots are off)
    items: list[str] = field(default_factory=list)

    # backpack.tf credentials
    user_token: str = ""

    # Event stream settings
    stream_enabled: bool = True
    websocket_url: str = ListingEventStream.WS_URL
    heartbeat_timeout: float = 60.0
    max_reconnect_delay: float = 60.0

    # Snapshot settings
    snapshot_enabled: bool = True
    snapshot_poll_interval: float = 300.0
    snapshot_cooldown: float = 60.0
    rate_limit: float = 1.0
    request_timeout: float = 30.0
    max_retries: int = 3

    # TTL sweep
    sweep_interval: float = 600.0
    sweep_ttl: timedelta = SHORT_TTL

    # Dashboard settings
    dashboard_enabled: bool = False
    dashboard_host: str = "0.0.0.0"
    dashboard_port: int = 8080

    # Health check
    max_message_age_seconds: float = 120.0


@dataclass
class HealthStatus:
    """Overall service health status."""
    healthy: bool
    state: ServiceState
    uptime_seconds: float
    stream_state: WebSocketState
    stream_connected: bool
    last_message_age_seconds: Optional[float]
    database_connected: bool
    errors_last_hour: int
    listings_stored: int
    events_per_second: float
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "healthy": self.healthy,
            "state": self.state.value,
            "uptime_seconds": round(self.uptime_seconds, 0),
            "stream": {
                "state": self.stream_state.value,
                "connected": self.stream_connected,
                "last_message_age_seconds": (
                    round(self.last_message_age_seconds, 1)
                    if self.last_message_age_seconds is not None else None
                ),
            },
            "database_connected": self.database_connected,
            "errors_last_hour": self.errors_last_hour,
            "listings_stored": self.listings_stored,
            "events_per_second": round(self.events_per_second, 2),
            "details": self.details,
        }


class IngestionService:
    """
    Owns the ingestion pipeline: feeds -> normalizer -> listing store.

    Usage:
        service = IngestionService(
            config=IngestionConfig(items=["Mann Co. Supply Crate Key"], user_token="..."),
            store=MemoryListingStore(),
        )
        await service.start()

        health = service.health()
        metrics = service.metrics

        await service.stop()
    """

    def __init__(
        self,
        store: ListingStore,
        config: Optional[IngestionConfig] = None,
        client: Optional[BackpackRestClient] = None,
        db: Optional[Any] = None,
    ):
        """
        Initialize the ingestion service.

        Args:
            store: Listing store shared by both feeds
            config: Service configuration
            client: Optional REST client (created on start if not provided)
            db: Optional database reference for health checking
        """
        self._config = config or IngestionConfig()
        self._store = store
        self._db = db

        self._state = ServiceState.STOPPED
        self._started_at: Optional[datetime] = None
        self._stop_event = asyncio.Event()

        self._metrics = MetricsCollector()
        self._rest_client = client
        self._owns_client = client is None
        self._fetcher: Optional[SnapshotFetcher] = None
        self._consumer = EventStreamConsumer(
            store,
            items_of_interest=self._config.items,
            metrics=self._metrics,
        )
        self._stream: Optional[ListingEventStream] = None

        self._tasks: list[asyncio.Task] = []
        self._dashboard_task: Optional[asyncio.Task] = None
        self._listing_count = 0

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == ServiceState.RUNNING

    @property
    def config(self) -> IngestionConfig:
        return self._config

    @property
    def store(self) -> ListingStore:
        return self._store

    @property
    def metrics(self) -> IngestionMetrics:
        """Get current metrics snapshot."""
        return self._metrics.get_metrics()

    @property
    def consumer(self) -> EventStreamConsumer:
        return self._consumer

    @property
    def fetcher(self) -> Optional[SnapshotFetcher]:
        return self._fetcher

    @property
    def stream(self) -> Optional[ListingEventStream]:
        return self._stream

    async def start(self) -> None:
        """
        Start the ingestion service.

        This will:
        1. Create the REST client and snapshot fetcher
        2. Connect the event stream
        3. Launch the snapshot poller and TTL sweeper
        4. Start the dashboard (if enabled)
        """
        if self._state != ServiceState.STOPPED:
            logger.warning(f"Cannot start: already in state {self._state.value}")
            return

        logger.info("Starting ingestion service...")
        self._state = ServiceState.STARTING
        self._started_at = datetime.now(timezone.utc)
        self._stop_event.clear()
        self._metrics.start()

        try:
            if self._rest_client is None:
                self._rest_client = BackpackRestClient(
                    user_token=self._config.user_token,
                    rate_limit=self._config.rate_limit,
                    timeout=self._config.request_timeout,
                    max_retries=self._config.max_retries,
                )
                await self._rest_client.__aenter__()

            self._fetcher = SnapshotFetcher(
                self._rest_client,
                self._store,
                dedup=SnapshotDedupCache(
                    cooldown=timedelta(seconds=self._config.snapshot_cooldown),
                ),
                metrics=self._metrics,
            )

            if self._config.stream_enabled:
                self._stream = ListingEventStream(
                    on_message=self._consumer.on_message,
                    on_state_change=self._handle_stream_state_change,
                    on_error=self._handle_stream_error,
                    heartbeat_timeout=self._config.heartbeat_timeout,
                    max_reconnect_delay=self._config.max_reconnect_delay,
                    url=self._config.websocket_url,
                )
                await self._stream.start()

            if self._config.snapshot_enabled:
                if self._config.items:
                    self._tasks.append(asyncio.create_task(self._snapshot_loop()))
                else:
                    logger.warning("No items configured, snapshot polling disabled")

            self._tasks.append(asyncio.create_task(self._sweep_loop()))

            if self._config.dashboard_enabled:
                await self._start_dashboard()

            self._state = ServiceState.RUNNING
            logger.info(
                f"Ingestion service started "
                f"({len(self._config.items) or 'all'} items, "
                f"precedence={self._store.precedence.value})"
            )

            self._setup_signal_handlers()

        except Exception as e:
            logger.error(f"Failed to start ingestion service: {e}")
            self._state = ServiceState.FAILED
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the ingestion service gracefully."""
        if self._state in (ServiceState.STOPPED, ServiceState.STOPPING):
            return

        logger.info("Stopping ingestion service...")
        self._state = ServiceState.STOPPING
        self._stop_event.set()

        await self._cleanup()
        self._metrics.stop()

        self._state = ServiceState.STOPPED
        logger.info("Ingestion service stopped")

    async def _cleanup(self) -> None:
        """Clean up resources."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"Background task ended with error: {e}")

        if self._stream:
            try:
                await self._stream.stop()
            except Exception as e:
                logger.warning(f"Error stopping event stream: {e}")
            self._stream = None

        if self._rest_client and self._owns_client:
            try:
                await self._rest_client.close()
            except Exception as e:
                logger.warning(f"Error closing REST client: {e}")
            self._rest_client = None

        if self._dashboard_task:
            self._dashboard_task.cancel()
            try:
                await self._dashboard_task
            except asyncio.CancelledError:
                pass
            self._dashboard_task = None

    # =========================================================================
    # Background tasks
    # =========================================================================

    async def _wait_or_stop(self, seconds: float) -> bool:
        """Sleep for `seconds`; True if the service was stopped meanwhile."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    async def _snapshot_loop(self) -> None:
        """Sync every configured item, then wait for the next round."""
        try:
            while not self._stop_event.is_set():
                try:
                    await self.sync_snapshots()
                except Exception as e:
                    logger.error(f"Snapshot round failed: {e}")
                    self._metrics.record_error(e, component="snapshot")
                if await self._wait_or_stop(self._config.snapshot_poll_interval):
                    break
        except asyncio.CancelledError:
            logger.debug("Snapshot loop cancelled")
            raise

    async def sync_snapshots(self) -> int:
        """
        Run one snapshot round over the configured items.

        Returns:
            Number of items synced (cooling-down and failed items excluded)
        """
        if self._fetcher is None:
            return 0
        results = await self._fetcher.sync_items(self._config.items)
        return len(results)

    async def _sweep_loop(self) -> None:
        try:
            while not self._stop_event.is_set():
                if await self._wait_or_stop(self._config.sweep_interval):
                    break
                try:
                    await self.sweep()
                except Exception as e:
                    logger.error(f"TTL sweep round failed: {e}")
                    self._metrics.record_error(e, component="storage")
        except asyncio.CancelledError:
            logger.debug("Sweep loop cancelled")
            raise

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """
        Evict every listing older than the configured sweep TTL.

        Returns:
            Number of listings evicted (0 if the store failed)
        """
        now = now or datetime.now(timezone.utc)
        try:
            evicted = await self._store.sweep_expired(now, self._config.sweep_ttl)
            self._listing_count = await self._store.count()
        except StoreError as e:
            logger.error(f"TTL sweep failed: {e}")
            self._metrics.record_error(e, component="storage")
            return 0

        self._metrics.record_evicted(evicted)
        if evicted:
            logger.info(f"Evicted {evicted} listings, reason: too old")
        return evicted

    # =========================================================================
    # Stream callbacks
    # =========================================================================

    async def _handle_stream_state_change(self, state: WebSocketState) -> None:
        self._metrics.set_stream_connected(state == WebSocketState.CONNECTED)

        if state == WebSocketState.CONNECTED:
            logger.info("Event stream connected")
        elif state == WebSocketState.RECONNECTING:
            logger.warning("Event stream reconnecting...")

    async def _handle_stream_error(self, error: Exception) -> None:
        logger.error(f"Event stream error: {error}")
        self._metrics.record_error(error, component="websocket")

    # =========================================================================
    # Health
    # =========================================================================

    def health(self) -> HealthStatus:
        """
        Get current health status.

        Returns:
            HealthStatus indicating overall service health
        """
        metrics = self._metrics.get_metrics()

        uptime = 0.0
        if self._started_at:
            uptime = (datetime.now(timezone.utc) - self._started_at).total_seconds()

        stream_state = WebSocketState.DISCONNECTED
        stream_connected = False
        if self._stream:
            stream_state = self._stream.state
            stream_connected = self._stream.is_connected

        last_msg_age = metrics.last_message_age_seconds

        healthy = True
        details: dict[str, Any] = {}
        if self._state != ServiceState.RUNNING:
            healthy = False
            details["reason"] = f"Service not running: {self._state.value}"
        elif self._config.stream_enabled and not stream_connected:
            healthy = False
            details["reason"] = "Event stream not connected"
        elif last_msg_age is not None and last_msg_age > self._config.max_message_age_seconds:
            healthy = False
            details["reason"] = f"No messages for {last_msg_age:.1f}s"

        return HealthStatus(
            healthy=healthy,
            state=self._state,
            uptime_seconds=uptime,
            stream_state=stream_state,
            stream_connected=stream_connected,
            last_message_age_seconds=last_msg_age,
            database_connected=self._db.is_connected if self._db else True,
            errors_last_hour=metrics.errors_last_hour,
            listings_stored=self._listing_count,
            events_per_second=metrics.events_per_second,
            details=details,
        )

    # =========================================================================
    # Dashboard & signals
    # =========================================================================

    async def _start_dashboard(self) -> None:
        """Start the dashboard server in the background."""
        # Imported here: the dashboard pulls in the pricing layer
        from .dashboard import create_dashboard_app
        import uvicorn

        app = create_dashboard_app(self)
        config = uvicorn.Config(
            app,
            host=self._config.dashboard_host,
            port=self._config.dashboard_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)
        self._dashboard_task = asyncio.create_task(server.serve())
        logger.info(
            f"Dashboard started at http://{self._config.dashboard_host}:{self._config.dashboard_port}"
        )

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def handle_signal(sig: signal.Signals) -> None:
            logger.info(f"Received signal {sig.name}, initiating shutdown...")
            self.request_stop()

        try:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))
        except (NotImplementedError, RuntimeError):
            # Not supported on Windows or outside the main thread
            pass

    async def run_forever(self) -> None:
        """Run the service until stopped."""
        await self.start()

        try:
            await self._stop_event.wait()
        finally:
            await self.stop()

    def request_stop(self) -> None:
        """Ask run_forever to return; safe to call from a signal handler."""
        self._stop_event.set()
