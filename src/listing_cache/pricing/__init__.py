"""
Pricing Layer - Price signals computed from the listing store.

Public API:
    PriceSignals - lowest_seller, average_price, filtered_average
    PriceSignal, SignalMethod
    NoListingsError, UnknownItemError
"""
from listing_cache.pricing.signals import (
    NoListingsError,
    PriceSignal,
    PriceSignals,
    SignalMethod,
    UnknownItemError,
)

__all__ = [
    "NoListingsError",
    "PriceSignal",
    "PriceSignals",
    "SignalMethod",
    "UnknownItemError",
]
