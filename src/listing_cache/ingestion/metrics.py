"""
Metrics collection for the ingestion service.

Rolling time-window counters for both feeds and the store. Nothing here
takes part in a correctness decision; the numbers feed logs, health() and
the dashboard.
"""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from listing_cache.storage.models import UpsertOutcome

from .models import ErrorRecord


@dataclass
class IngestionMetrics:
    """
    Point-in-time view of ingestion health.

    Use MetricsCollector to track metrics over time.
    """
    # Event stream connection
    stream_connected: bool = False
    stream_connected_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    reconnection_count: int = 0

    # Event stream flow (rolling window)
    messages_received: int = 0
    events_received: int = 0
    events_per_second: float = 0.0
    events_ignored: int = 0
    decode_failures: int = 0

    # Snapshot flow (rolling window)
    snapshots_fetched: int = 0
    snapshot_listings: int = 0
    last_snapshot_at: Optional[datetime] = None

    # Store writes (rolling window)
    listings_created: int = 0
    listings_updated: int = 0
    listings_rejected_stale: int = 0
    listings_deleted: int = 0
    listings_evicted: int = 0
    records_dropped: int = 0

    # Errors
    errors_last_hour: int = 0
    recent_errors: list[ErrorRecord] = field(default_factory=list)

    # Uptime
    started_at: Optional[datetime] = None
    uptime_seconds: float = 0.0

    @property
    def last_message_age_seconds(self) -> Optional[float]:
        """Seconds since last stream message received."""
        if self.last_message_at is None:
            return None
        now = datetime.now(timezone.utc)
        return (now - self.last_message_at).total_seconds()

    @property
    def is_healthy(self) -> bool:
        """Quick health check based on metrics."""
        if not self.stream_connected:
            return False
        if self.last_message_age_seconds and self.last_message_age_seconds > 120:
            return False
        if self.errors_last_hour > 100:
            return False
        return True

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "stream_connected": self.stream_connected,
            "stream_connected_at": self.stream_connected_at.isoformat() if self.stream_connected_at else None,
            "last_message_at": self.last_message_at.isoformat() if self.last_message_at else None,
            "last_message_age_seconds": self.last_message_age_seconds,
            "reconnection_count": self.reconnection_count,
            "messages_received": self.messages_received,
            "events_received": self.events_received,
            "events_per_second": round(self.events_per_second, 2),
            "events_ignored": self.events_ignored,
            "decode_failures": self.decode_failures,
            "snapshots_fetched": self.snapshots_fetched,
            "snapshot_listings": self.snapshot_listings,
            "last_snapshot_at": self.last_snapshot_at.isoformat() if self.last_snapshot_at else None,
            "listings_created": self.listings_created,
            "listings_updated": self.listings_updated,
            "listings_rejected_stale": self.listings_rejected_stale,
            "listings_deleted": self.listings_deleted,
            "listings_evicted": self.listings_evicted,
            "records_dropped": self.records_dropped,
            "errors_last_hour": self.errors_last_hour,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "uptime_seconds": round(self.uptime_seconds, 0),
            "is_healthy": self.is_healthy,
        }


class MetricsCollector:
    """
    Metrics collection with rolling time windows.

    Usage:
        collector = MetricsCollector()
        collector.start()

        collector.record_message(events=3)
        collector.record_upsert(UpsertOutcome.CREATED)

        metrics = collector.get_metrics()
        print(f"Events/sec: {metrics.events_per_second}")
    """

    def __init__(
        self,
        window_seconds: float = 300.0,  # 5 minute window
        max_errors: int = 100,  # Keep last N errors
    ):
        self._window_seconds = window_seconds
        self._max_errors = max_errors

        # Connection state
        self._stream_connected = False
        self._stream_connected_at: Optional[datetime] = None
        self._last_message_at: Optional[datetime] = None
        self._last_snapshot_at: Optional[datetime] = None
        self._reconnection_count = 0

        # Rolling windows of timestamps, (timestamp, count) where batched
        self._messages: deque[float] = deque()
        self._events: deque[tuple[float, int]] = deque()
        self._ignored: deque[tuple[float, int]] = deque()
        self._decode_failures: deque[float] = deque()
        self._snapshots: deque[tuple[float, int]] = deque()
        self._created: deque[float] = deque()
        self._updated: deque[float] = deque()
        self._rejected: deque[float] = deque()
        self._deleted: deque[float] = deque()
        self._evicted: deque[tuple[float, int]] = deque()
        self._dropped: deque[tuple[float, int]] = deque()

        self._errors: deque[ErrorRecord] = deque(maxlen=max_errors)
        self._started_at: Optional[datetime] = None

    def start(self) -> None:
        """Mark the service as started."""
        self._started_at = datetime.now(timezone.utc)

    def stop(self) -> None:
        """Mark the service as stopped."""
        self._stream_connected = False

    def _now(self) -> float:
        """Current time as Unix timestamp."""
        return time.time()

    def _prune_old(self, dq: deque, cutoff: float) -> None:
        """Remove entries older than cutoff."""
        while dq:
            head = dq[0]
            ts = head[0] if isinstance(head, tuple) else head
            if ts >= cutoff:
                break
            dq.popleft()

    def _windows(self) -> tuple[deque, ...]:
        return (
            self._messages,
            self._events,
            self._ignored,
            self._decode_failures,
            self._snapshots,
            self._created,
            self._updated,
            self._rejected,
            self._deleted,
            self._evicted,
            self._dropped,
        )

    def _prune_all(self) -> None:
        """Prune all rolling windows."""
        cutoff = self._now() - self._window_seconds
        for dq in self._windows():
            self._prune_old(dq, cutoff)

    @staticmethod
    def _total(dq: deque) -> int:
        return sum(count for _, count in dq)

    # Connection state updates

    def set_stream_connected(self, connected: bool) -> None:
        """Update event stream connection state."""
        if connected:
            self._stream_connected_at = datetime.now(timezone.utc)
        elif self._stream_connected:
            self._reconnection_count += 1
        self._stream_connected = connected

    # Event recording

    def record_message(self, events: int = 0, ignored: int = 0) -> None:
        """Record one stream message and the events it carried."""
        now = self._now()
        self._messages.append(now)
        if events:
            self._events.append((now, events))
        if ignored:
            self._ignored.append((now, ignored))
        self._last_message_at = datetime.now(timezone.utc)

    def record_decode_failure(self) -> None:
        """Record a stream message that failed to decode as a whole."""
        self._decode_failures.append(self._now())

    def record_snapshot(self, item: str, listings: int) -> None:
        """Record a successful snapshot fetch."""
        self._snapshots.append((self._now(), listings))
        self._last_snapshot_at = datetime.now(timezone.utc)

    def record_upsert(self, outcome: UpsertOutcome) -> None:
        """Record the outcome of a store upsert."""
        now = self._now()
        if outcome == UpsertOutcome.CREATED:
            self._created.append(now)
        elif outcome == UpsertOutcome.UPDATED:
            self._updated.append(now)
        else:
            self._rejected.append(now)

    def record_delete(self) -> None:
        """Record a listing removed by a delete event."""
        self._deleted.append(self._now())

    def record_evicted(self, count: int) -> None:
        """Record listings removed by a TTL sweep."""
        if count:
            self._evicted.append((self._now(), count))

    def record_dropped(self, count: int = 1) -> None:
        """Record records skipped as malformed or unkeyable."""
        if count:
            self._dropped.append((self._now(), count))

    def record_error(
        self,
        error: Exception,
        component: str,
        item: Optional[str] = None,
        recoverable: bool = True,
    ) -> None:
        """Record an error."""
        self._errors.append(ErrorRecord(
            timestamp=datetime.now(timezone.utc),
            error_type=type(error).__name__,
            message=str(error),
            component=component,
            item=item,
            recoverable=recoverable,
        ))

    # Metrics retrieval

    def get_metrics(self) -> IngestionMetrics:
        """Get current metrics snapshot."""
        self._prune_all()

        window = self._window_seconds
        event_count = self._total(self._events)
        events_per_second = event_count / window if window > 0 else 0.0

        hour_ago = self._now() - 3600
        errors_last_hour = sum(1 for e in self._errors if e.timestamp.timestamp() > hour_ago)

        uptime = 0.0
        if self._started_at:
            uptime = (datetime.now(timezone.utc) - self._started_at).total_seconds()

        return IngestionMetrics(
            stream_connected=self._stream_connected,
            stream_connected_at=self._stream_connected_at,
            last_message_at=self._last_message_at,
            reconnection_count=self._reconnection_count,
            messages_received=len(self._messages),
            events_received=event_count,
            events_per_second=events_per_second,
            events_ignored=self._total(self._ignored),
            decode_failures=len(self._decode_failures),
            snapshots_fetched=len(self._snapshots),
            snapshot_listings=self._total(self._snapshots),
            last_snapshot_at=self._last_snapshot_at,
            listings_created=len(self._created),
            listings_updated=len(self._updated),
            listings_rejected_stale=len(self._rejected),
            listings_deleted=len(self._deleted),
            listings_evicted=self._total(self._evicted),
            records_dropped=self._total(self._dropped),
            errors_last_hour=errors_last_hour,
            recent_errors=list(self._errors)[-10:],
            started_at=self._started_at,
            uptime_seconds=uptime,
        )

    def reset(self) -> None:
        """Reset all metrics (for testing)."""
        for dq in self._windows():
            dq.clear()
        self._errors.clear()
        self._reconnection_count = 0
        self._stream_connected = False
        self._stream_connected_at = None
        self._last_message_at = None
        self._last_snapshot_at = None
        self._started_at = None
