"""
Noise filters applied to listings before a price is computed.

Each filter is a pure function over a list of canonical listings and returns
a new list. Filters compose in order: later stages see only what earlier
stages kept.

    sellers = keep_only_intent(listings, Intent.SELL)
    live_bots = reject_inactive_agents(sellers, now)
    price = average(reject_outliers(live_bots))

ListingFilter wraps the same functions in a chainable object.
"""
from __future__ import annotations

import statistics
from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional

from listing_cache.storage.models import Intent, Listing

DEFAULT_AGENT_WINDOW = timedelta(minutes=20)
DEFAULT_TOLERANCE_FACTOR = 1.2


class AgentSelection(str, Enum):
    """Which side of the bot/human split a liveness filter keeps."""
    BOTS = "bots"
    HUMANS = "humans"


# =============================================================================
# PARTICIPATION FILTER
# =============================================================================


def keep_only_intent(listings: Iterable[Listing], intent: Intent) -> list[Listing]:
    """
    Keep listings with the given intent.

    Used to isolate sellers (or buyers) before price computation.
    """
    return [listing for listing in listings if listing.intent == intent]


# =============================================================================
# BOT FILTER
# =============================================================================


def is_live_agent(
    listing: Listing,
    now: datetime,
    window: timedelta = DEFAULT_AGENT_WINDOW,
) -> bool:
    """
    Check if a listing is backed by a user agent seen within the window.

    Listings without liveness metadata are assumed human and return False.
    An agent last seen exactly `window` ago still counts as live.
    """
    if not listing.has_active_agent or listing.agent_last_seen is None:
        return False
    return now - listing.agent_last_seen <= window


def reject_inactive_agents(
    listings: Iterable[Listing],
    now: datetime,
    window: timedelta = DEFAULT_AGENT_WINDOW,
    keep: AgentSelection = AgentSelection.BOTS,
) -> list[Listing]:
    """
    Split listings on "likely bot, likely live".

    Args:
        listings: Listings to filter
        now: Reference time
        window: Maximum age of the agent's last pulse (default 20 minutes)
        keep: BOTS keeps listings with a live agent; HUMANS keeps the
            complement (no agent metadata, or an agent gone quiet)

    Returns:
        Filtered listings
    """
    want_live = keep == AgentSelection.BOTS
    return [
        listing for listing in listings
        if is_live_agent(listing, now, window) == want_live
    ]


# =============================================================================
# OUTLIER FILTER
# =============================================================================


def median_price(listings: Iterable[Listing]) -> float:
    """
    Median listing price.

    For an even count this is the mean of the two middle prices.

    Raises:
        ValueError: If there are no listings
    """
    prices = [listing.price for listing in listings]
    if not prices:
        raise ValueError("Cannot take the median price of no listings")
    return statistics.median(prices)


def reject_outliers(
    listings: Iterable[Listing],
    tolerance_factor: float = DEFAULT_TOLERANCE_FACTOR,
) -> list[Listing]:
    """
    Keep listings priced within a multiplicative band around the median.

    With the default factor 1.2 the band is [median / 1.2, median * 1.2].

    Args:
        listings: At least one listing
        tolerance_factor: Band width, must be >= 1

    Raises:
        ValueError: If listings is empty or the factor is below 1

    Examples:
        prices [10, 11, 9, 1000] -> median 10.5, band [8.75, 12.6],
        keeps 10, 11 and 9.
    """
    if tolerance_factor < 1:
        raise ValueError(f"tolerance_factor must be >= 1, got {tolerance_factor}")

    listings = list(listings)
    median = median_price(listings)
    lower = median / tolerance_factor
    upper = median * tolerance_factor

    return [listing for listing in listings if lower <= listing.price <= upper]


# =============================================================================
# ATTRIBUTE FILTER
# =============================================================================


def exclude_attributes(
    listings: Iterable[Listing],
    attribute_defindexes: Iterable[int],
) -> list[Listing]:
    """
    Drop listings whose item carries any of the given attributes.

    Used to remove listings for item copies that are not price-compatible
    with the one being priced (paint, killstreak, strange parts, ...).
    """
    excluded = set(attribute_defindexes)
    if not excluded:
        return list(listings)
    return [
        listing for listing in listings
        if not excluded.intersection(listing.attributes)
    ]


# =============================================================================
# AGGREGATES
# =============================================================================


def average(listings: Iterable[Listing]) -> float:
    """
    Arithmetic mean of listing prices.

    Raises:
        ZeroDivisionError: On an empty list. Callers must guard.
    """
    prices = [listing.price for listing in listings]
    return sum(prices) / len(prices)


def lowest_price(listings: Iterable[Listing]) -> Optional[Listing]:
    """Cheapest listing, or None if there are none."""
    return min(listings, key=lambda listing: listing.price, default=None)


class ListingFilter:
    """
    Chainable wrapper around the filter functions.

    Usage:
        price = (
            ListingFilter(listings)
            .only(Intent.SELL)
            .live_agents(now)
            .without_outliers()
            .average()
        )
    """

    def __init__(self, listings: Iterable[Listing]):
        self._listings = list(listings)

    @property
    def listings(self) -> list[Listing]:
        return list(self._listings)

    def __len__(self) -> int:
        return len(self._listings)

    def only(self, intent: Intent) -> "ListingFilter":
        return ListingFilter(keep_only_intent(self._listings, intent))

    def live_agents(
        self,
        now: datetime,
        window: timedelta = DEFAULT_AGENT_WINDOW,
        keep: AgentSelection = AgentSelection.BOTS,
    ) -> "ListingFilter":
        return ListingFilter(reject_inactive_agents(self._listings, now, window, keep))

    def without_outliers(
        self,
        tolerance_factor: float = DEFAULT_TOLERANCE_FACTOR,
    ) -> "ListingFilter":
        if not self._listings:
            return self
        return ListingFilter(reject_outliers(self._listings, tolerance_factor))

    def without_attributes(self, attribute_defindexes: Iterable[int]) -> "ListingFilter":
        return ListingFilter(exclude_attributes(self._listings, attribute_defindexes))

    def average(self) -> float:
        return average(self._listings)

    def lowest(self) -> Optional[Listing]:
        return lowest_price(self._listings)
