"""
Tests for the backpack.tf REST client.

These tests verify:
- Snapshot request parameters (token, appid, sku)
- 5xx maps to ServerError, other non-200 to InternalError
- A 200 with an unparseable body raises DecodeError
- Transport failures are retried, then surface as InternalError
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import aiohttp
import pytest

from listing_cache.ingestion.client import BackpackRestClient
from listing_cache.ingestion.errors import DecodeError, InternalError, ServerError

from .conftest import KEY_NAME


def _response(status=200, body=""):
    """aiohttp-style response usable as `async with session.get(...)`."""
    response = MagicMock()
    response.status = status
    response.text = AsyncMock(return_value=body)

    context = MagicMock()
    context.__aenter__ = AsyncMock(return_value=response)
    context.__aexit__ = AsyncMock(return_value=False)
    return context


def _session(*responses):
    session = MagicMock()
    session.get = MagicMock(side_effect=list(responses))
    session.close = AsyncMock()
    return session


def _client(session, **kwargs):
    kwargs.setdefault("rate_limit", 100)
    kwargs.setdefault("retry_delay", 0)
    return BackpackRestClient(user_token="token-abc", session=session, **kwargs)


class TestSnapshotRequest:

    @pytest.mark.asyncio
    async def test_sends_token_appid_and_sku(self, snapshot_body):
        session = _session(_response(body=json.dumps(snapshot_body)))
        client = _client(session)

        await client.get_snapshot(KEY_NAME)

        url = session.get.call_args[0][0]
        params = session.get.call_args[1]["params"]
        assert url == "https://backpack.tf/api/classifieds/listings/snapshot"
        assert params == {"token": "token-abc", "appid": "440", "sku": KEY_NAME}

    @pytest.mark.asyncio
    async def test_returns_decoded_snapshot(self, snapshot_body):
        client = _client(_session(_response(body=json.dumps(snapshot_body))))

        snapshot = await client.get_snapshot(KEY_NAME)

        assert len(snapshot.listings) == 2
        assert snapshot.created_at == snapshot_body["createdAt"]

    @pytest.mark.asyncio
    async def test_injected_session_is_not_closed(self):
        session = _session()
        client = _client(session)

        await client.close()

        session.close.assert_not_called()


class TestStatusClassification:

    @pytest.mark.asyncio
    async def test_5xx_raises_server_error(self):
        client = _client(_session(_response(status=503)))

        with pytest.raises(ServerError) as exc_info:
            await client.get_snapshot(KEY_NAME)

        assert exc_info.value.status_code == 503
        assert exc_info.value.item == KEY_NAME

    @pytest.mark.asyncio
    async def test_5xx_is_not_retried(self):
        session = _session(_response(status=500), _response(status=200, body="{}"))
        client = _client(session)

        with pytest.raises(ServerError):
            await client.get_snapshot(KEY_NAME)

        assert session.get.call_count == 1

    @pytest.mark.asyncio
    async def test_4xx_raises_internal_error(self):
        client = _client(_session(_response(status=404, body="not found")))

        with pytest.raises(InternalError) as exc_info:
            await client.get_snapshot(KEY_NAME)

        assert exc_info.value.status_code == 404
        assert not isinstance(exc_info.value, ServerError)

    @pytest.mark.asyncio
    async def test_bad_json_raises_decode_error(self):
        client = _client(_session(_response(body="<html>oops</html>")))

        with pytest.raises(DecodeError) as exc_info:
            await client.get_snapshot(KEY_NAME)

        assert exc_info.value.item == KEY_NAME

    @pytest.mark.asyncio
    async def test_malformed_envelope_raises_decode_error(self):
        client = _client(_session(_response(body='{"listings": 5}')))

        with pytest.raises(DecodeError) as exc_info:
            await client.get_snapshot(KEY_NAME)

        assert exc_info.value.item == KEY_NAME


class TestRetries:

    @pytest.mark.asyncio
    async def test_retries_transport_error(self, snapshot_body):
        session = MagicMock()
        session.get = MagicMock(
            side_effect=[
                aiohttp.ClientConnectionError("reset"),
                _response(body=json.dumps(snapshot_body)),
            ]
        )
        client = _client(session)

        snapshot = await client.get_snapshot(KEY_NAME)

        assert len(snapshot.listings) == 2
        assert session.get.call_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        session = MagicMock()
        session.get = MagicMock(side_effect=asyncio.TimeoutError())
        client = _client(session, max_retries=3)

        with pytest.raises(InternalError):
            await client.get_snapshot(KEY_NAME)

        assert session.get.call_count == 3

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        session = MagicMock()
        session.get = MagicMock(side_effect=asyncio.CancelledError())
        client = _client(session)

        with pytest.raises(asyncio.CancelledError):
            await client.get_snapshot(KEY_NAME)

        assert session.get.call_count == 1
