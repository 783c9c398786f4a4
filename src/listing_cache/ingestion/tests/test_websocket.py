"""
Tests for the listing event stream transport.

These tests verify:
- Inbound messages reach on_message as text
- An exception in on_message is reported, not raised
- Closed and stale connections end the receive loop with a reason
- Connect failures are retried until max_reconnect_attempts
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from websockets.exceptions import ConnectionClosedOK

from listing_cache.ingestion.websocket import (
    ListingEventStream,
    StreamDisconnected,
    WebSocketState,
)


@pytest.fixture
def on_message():
    return AsyncMock()


@pytest.fixture
def stream(on_message):
    return ListingEventStream(on_message=on_message, heartbeat_timeout=0.05)


class TestDispatch:

    @pytest.mark.asyncio
    async def test_passes_text_through(self, stream, on_message):
        await stream._dispatch('[{"event": "listing-update"}]')

        on_message.assert_awaited_once_with('[{"event": "listing-update"}]')

    @pytest.mark.asyncio
    async def test_decodes_binary_frames(self, stream, on_message):
        await stream._dispatch(b"[]")

        on_message.assert_awaited_once_with("[]")

    @pytest.mark.asyncio
    async def test_callback_error_goes_to_on_error(self):
        on_error = AsyncMock()
        failing = AsyncMock(side_effect=RuntimeError("handler bug"))
        stream = ListingEventStream(on_message=failing, on_error=on_error)

        await stream._dispatch("[]")

        on_error.assert_awaited_once()
        assert isinstance(on_error.call_args[0][0], RuntimeError)


class TestReceiveLoop:

    @pytest.mark.asyncio
    async def test_reads_until_closed(self, stream, on_message):
        ws = MagicMock()
        ws.recv = AsyncMock(side_effect=["[]", '[{"event": "x"}]', ConnectionClosedOK(None, None)])
        stream._ws = ws

        reason = await stream._receive_loop()

        assert reason == "closed by server"
        assert on_message.await_count == 2
        assert stream.messages_received == 2
        assert stream.last_message_time is not None

    @pytest.mark.asyncio
    async def test_stale_connection_ends_loop(self, stream, on_message):
        async def silent():
            await asyncio.sleep(10)

        ws = MagicMock()
        ws.recv = silent
        stream._ws = ws

        reason = await stream._receive_loop()

        assert reason == "stale connection"
        on_message.assert_not_awaited()


class TestConnectionLoop:

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self, on_message):
        on_error = AsyncMock()
        states = []

        async def on_state(state):
            states.append(state)

        stream = ListingEventStream(
            on_message=on_message,
            on_state_change=on_state,
            on_error=on_error,
            initial_reconnect_delay=0,
            max_reconnect_attempts=2,
        )

        with patch(
            "listing_cache.ingestion.websocket.websockets.connect",
            new=AsyncMock(side_effect=OSError("connection refused")),
        ):
            await stream.start()
            with pytest.raises(StreamDisconnected):
                await stream.wait()

        assert on_error.await_count == 2
        assert all(isinstance(c[0][0], StreamDisconnected) for c in on_error.call_args_list)
        assert WebSocketState.RECONNECTING in states
        assert stream.state == WebSocketState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_connects_and_reports_state(self, on_message):
        states = []

        async def on_state(state):
            states.append(state)

        ws = MagicMock()
        ws.recv = AsyncMock(side_effect=ConnectionClosedOK(None, None))
        ws.close = AsyncMock()

        stream = ListingEventStream(on_message=on_message, on_state_change=on_state)

        with patch(
            "listing_cache.ingestion.websocket.websockets.connect",
            new=AsyncMock(return_value=ws),
        ):
            assert await stream._connect()

        assert stream.is_connected
        assert states == [WebSocketState.CONNECTING, WebSocketState.CONNECTED]

    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self, stream):
        await stream.stop()

        assert stream.state == WebSocketState.DISCONNECTED
