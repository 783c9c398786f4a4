"""
Price signals derived from the listing store.

Each signal reads the fresh listings of one item type (expired entries are
swept on the way, see ListingStore.query_by_item_type), runs them through the
noise filters and reduces what is left to a single price.

    signals = PriceSignals(store)
    cheapest = await signals.lowest_seller("Mann Co. Supply Crate Key")
    fair = await signals.filtered_average(5021)
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Iterable, Optional, Union

from listing_cache.ingestion.errors import PricingError
from listing_cache.ingestion.filters import (
    DEFAULT_AGENT_WINDOW,
    DEFAULT_TOLERANCE_FACTOR,
    ListingFilter,
)
from listing_cache.storage.listing_store import LONG_TTL, ListingStore
from listing_cache.storage.models import Intent, Listing

logger = logging.getLogger(__name__)

ItemRef = Union[int, str]


class NoListingsError(PricingError):
    """Nothing was left to price after filtering."""

    def __init__(self, defindex: int, reason: str):
        super().__init__(f"No listings for defindex {defindex}: {reason}")
        self.defindex = defindex
        self.reason = reason


class UnknownItemError(PricingError):
    """An item name has not been seen in any payload yet."""

    def __init__(self, item: str):
        super().__init__(f"Unknown item {item!r}", item=item)


class SignalMethod(str, Enum):
    LOWEST = "lowest"
    AVERAGE = "average"
    FILTERED_AVERAGE = "filtered_average"


@dataclass(frozen=True)
class PriceSignal:
    """A price computed from stored listings."""

    defindex: int
    intent: Intent
    method: SignalMethod
    price: float
    sample_size: int  # listings the price was computed from
    considered: int  # listings read before filtering
    computed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "defindex": self.defindex,
            "intent": self.intent.value,
            "method": self.method.value,
            "price": self.price,
            "sample_size": self.sample_size,
            "considered": self.considered,
            "computed_at": self.computed_at.isoformat(),
        }


class PriceSignals:
    """
    Computes price signals for an item from the listing store.

    Items can be referred to by defindex or by the name they were queried
    or received under; names are resolved through the store's item
    definitions.
    """

    def __init__(
        self,
        store: ListingStore,
        ttl: timedelta = LONG_TTL,
        agent_window: timedelta = DEFAULT_AGENT_WINDOW,
        tolerance_factor: float = DEFAULT_TOLERANCE_FACTOR,
    ):
        self._store = store
        self._ttl = ttl
        self._agent_window = agent_window
        self._tolerance_factor = tolerance_factor

    async def resolve_defindex(self, item: ItemRef) -> int:
        """
        Turn an item reference into a defindex.

        Raises:
            UnknownItemError: If a name has no recorded definition
        """
        if isinstance(item, int):
            return item

        identity = await self._store.get_item_definition(item)
        if identity is None or identity.defindex is None:
            raise UnknownItemError(item)
        return identity.defindex

    async def fresh_listings(
        self,
        item: ItemRef,
        now: Optional[datetime] = None,
    ) -> list[Listing]:
        """All listings of an item bumped within the TTL. Sweeps the rest."""
        _, listings = await self._fresh_listings(item, now)
        return listings

    async def _fresh_listings(
        self,
        item: ItemRef,
        now: Optional[datetime],
    ) -> tuple[int, list[Listing]]:
        defindex = await self.resolve_defindex(item)
        now = now or datetime.now(timezone.utc)
        listings = await self._store.query_by_item_type(defindex, now, self._ttl)
        return defindex, listings

    async def lowest_seller(
        self,
        item: ItemRef,
        now: Optional[datetime] = None,
    ) -> Listing:
        """
        Cheapest fresh sell listing.

        Raises:
            NoListingsError: If there are no sell listings
            UnknownItemError: If the item name is unknown
        """
        defindex, listings = await self._fresh_listings(item, now)
        lowest = ListingFilter(listings).only(Intent.SELL).lowest()
        if lowest is None:
            raise NoListingsError(defindex, "no sellers")
        return lowest

    async def average_price(
        self,
        item: ItemRef,
        now: Optional[datetime] = None,
        intent: Intent = Intent.SELL,
    ) -> PriceSignal:
        """
        Unfiltered mean price of fresh listings with the given intent.

        Raises:
            NoListingsError: If there are no listings with that intent
        """
        defindex, listings = await self._fresh_listings(item, now)
        selected = ListingFilter(listings).only(intent)
        if not len(selected):
            raise NoListingsError(defindex, f"no {intent.value} listings")

        return PriceSignal(
            defindex=defindex,
            intent=intent,
            method=SignalMethod.AVERAGE,
            price=selected.average(),
            sample_size=len(selected),
            considered=len(listings),
        )

    async def filtered_average(
        self,
        item: ItemRef,
        now: Optional[datetime] = None,
        intent: Intent = Intent.SELL,
        bots_only: bool = True,
        excluded_attributes: Iterable[int] = (),
    ) -> PriceSignal:
        """
        Mean price after the full noise-filter chain.

        Order: intent, live agents (when bots_only), attribute exclusion,
        outlier band around the median.

        Raises:
            NoListingsError: If nothing survives the filters
        """
        now = now or datetime.now(timezone.utc)
        defindex, listings = await self._fresh_listings(item, now)

        chain = ListingFilter(listings).only(intent)
        if bots_only:
            chain = chain.live_agents(now, self._agent_window)
        chain = chain.without_attributes(excluded_attributes)

        if not len(chain):
            raise NoListingsError(defindex, "all listings filtered out")

        chain = chain.without_outliers(self._tolerance_factor)
        logger.debug(
            f"Filtered average for {defindex}: {len(chain)} of {len(listings)} listings kept"
        )

        return PriceSignal(
            defindex=defindex,
            intent=intent,
            method=SignalMethod.FILTERED_AVERAGE,
            price=chain.average(),
            sample_size=len(chain),
            considered=len(listings),
        )
