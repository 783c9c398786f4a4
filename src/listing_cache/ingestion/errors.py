"""
Error taxonomy for the ingestion layer.

Every failure raised by the feed adapters derives from PricingError so
callers can catch the whole family at one seam and decide per subclass:

    - AlreadyCached: soft, expected; skip the item and carry on
    - ServerError: upstream 5xx; retry later with backoff
    - InternalError: transport, status or parse failure; log and skip
    - InvalidRecord: a single record cannot be normalized; drop that record
      (InvalidIdentity when it cannot be keyed)
"""

from __future__ import annotations

from typing import Optional


class PricingError(Exception):
    """Base exception for listing ingestion errors."""

    def __init__(self, message: str, item: Optional[str] = None):
        super().__init__(message)
        self.item = item


class AlreadyCached(PricingError):
    """Snapshot for this item was fetched within the cooldown window."""

    def __init__(self, item: str, retry_after: float = 0.0):
        super().__init__(
            f"Snapshot for {item!r} is already cached "
            f"(retry in {retry_after:.1f}s)",
            item=item,
        )
        self.retry_after = retry_after


class ServerError(PricingError):
    """Feed-side failure (5xx). Retryable by the caller."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        item: Optional[str] = None,
    ):
        super().__init__(message, item=item)
        self.status_code = status_code


class InternalError(PricingError):
    """Local transport, unexpected status or parse failure."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        item: Optional[str] = None,
    ):
        super().__init__(message, item=item)
        self.status_code = status_code


class DecodeError(InternalError):
    """A wire payload could not be decoded."""
    pass


class InvalidRecord(PricingError):
    """A decoded record cannot be turned into a canonical listing."""

    def __init__(self, message: str, account_id: Optional[str] = None):
        super().__init__(message)
        self.account_id = account_id


class InvalidIdentity(InvalidRecord):
    """A sell listing arrived without its item instance id."""
    pass
