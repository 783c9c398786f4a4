"""
Integration tests for the listing cache.

These tests run both feeds against one store. The PostgreSQL tests need a
running database and are skipped unless TEST_DATABASE_URL is set.

Run with:
    pytest tests/integration/ -v -m integration

Skip with:
    pytest -m "not integration"
"""
