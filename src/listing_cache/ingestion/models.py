"""
Result records for the ingestion layer.

These models track what happened while processing one snapshot or one
stream message, for metrics, logging and the dashboard. The canonical
Listing itself lives in listing_cache.storage.models.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from listing_cache.storage.models import UpsertOutcome


@dataclass
class SyncResult:
    """Outcome of syncing one item's snapshot into the store."""
    item: str
    fetched: int = 0
    created: int = 0
    updated: int = 0
    rejected: int = 0
    dropped: int = 0  # malformed or unnormalizable record
    failed: int = 0  # StoreError

    def record(self, outcome: UpsertOutcome) -> None:
        if outcome == UpsertOutcome.CREATED:
            self.created += 1
        elif outcome == UpsertOutcome.UPDATED:
            self.updated += 1
        else:
            self.rejected += 1


@dataclass
class ConsumerResult:
    """Outcome of handling one event-stream message."""
    events: int = 0
    ignored: int = 0  # item not of interest
    deleted: int = 0
    created: int = 0
    updated: int = 0
    rejected: int = 0
    dropped: int = 0
    failed: int = 0
    decode_failed: bool = False

    def record(self, outcome: UpsertOutcome) -> None:
        if outcome == UpsertOutcome.CREATED:
            self.created += 1
        elif outcome == UpsertOutcome.UPDATED:
            self.updated += 1
        else:
            self.rejected += 1

    @property
    def applied(self) -> int:
        return self.deleted + self.created + self.updated


@dataclass
class ErrorRecord:
    """Record of an error that occurred during ingestion."""
    timestamp: datetime
    error_type: str
    message: str
    component: str  # "websocket", "snapshot", "consumer", "storage"
    item: Optional[str] = None
    recoverable: bool = True

    @property
    def age_seconds(self) -> float:
        """Seconds since this error occurred."""
        now = datetime.now(timezone.utc)
        return (now - self.timestamp).total_seconds()
