"""
Listing ingestion and consistency cache.

Ingests backpack.tf classifieds listings from the snapshot endpoint and the
listing event stream, keeps one deduplicated, time-bounded view of active
listings per item, and derives price signals from that view.
"""

__version__ = "0.1.0"
