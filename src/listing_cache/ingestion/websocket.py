"""
WebSocket transport for the backpack.tf listing event stream.

The stream is a firehose: there is nothing to subscribe to, every listing
update and deletion on the site is pushed as a JSON array of events. This
module only owns the connection. Message content goes to the on_message
callback untouched (see EventStreamConsumer).

Features:
    - Auto-reconnect with exponential backoff
    - Staleness detection (reconnect if nothing arrives within a timeout)
    - State change and error callbacks
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

import websockets
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedError,
    ConnectionClosedOK,
)

from .errors import PricingError

logger = logging.getLogger(__name__)


class WebSocketState(str, Enum):
    """WebSocket connection state."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    STOPPING = "stopping"


class StreamDisconnected(PricingError):
    """The event stream connection was lost or could not be established."""

    def __init__(self, reason: str, reconnect_count: int = 0):
        super().__init__(f"Event stream disconnected: {reason}")
        self.reason = reason
        self.reconnect_count = reconnect_count


MessageCallback = Callable[[str], Awaitable[None]]
StateCallback = Callable[[WebSocketState], Awaitable[None]]
ErrorCallback = Callable[[Exception], Awaitable[None]]


class ListingEventStream:
    """
    Resilient client for the listing event stream.

    Usage:
        async def handle(raw: str) -> None:
            await consumer.handle_message(raw)

        stream = ListingEventStream(on_message=handle)
        await stream.start()
        ...
        await stream.stop()
    """

    WS_URL = "wss://ws.backpack.tf/events"

    def __init__(
        self,
        on_message: MessageCallback,
        on_state_change: Optional[StateCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        heartbeat_timeout: float = 60.0,
        initial_reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 60.0,
        reconnect_multiplier: float = 2.0,
        max_reconnect_attempts: Optional[int] = None,
        url: Optional[str] = None,
    ):
        """
        Initialize the stream client.

        Args:
            on_message: Called with the text of every inbound message
            on_state_change: Optional callback for connection state changes
            on_error: Optional callback; receives StreamDisconnected on every
                connection loss and any exception raised by on_message
            heartbeat_timeout: Seconds without a message before reconnecting
            initial_reconnect_delay: Initial delay before a reconnect attempt
            max_reconnect_delay: Maximum delay between reconnect attempts
            reconnect_multiplier: Multiplier for exponential backoff
            max_reconnect_attempts: Consecutive failed connects before giving
                up (None retries forever)
            url: Optional URL override
        """
        self._on_message = on_message
        self._on_state_change = on_state_change
        self._on_error = on_error
        self._url = url or self.WS_URL

        self._heartbeat_timeout = heartbeat_timeout
        self._initial_reconnect_delay = initial_reconnect_delay
        self._max_reconnect_delay = max_reconnect_delay
        self._reconnect_multiplier = reconnect_multiplier
        self._max_reconnect_attempts = max_reconnect_attempts

        self._state = WebSocketState.DISCONNECTED
        self._ws = None
        self._run_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

        self._current_reconnect_delay = initial_reconnect_delay
        self._reconnect_count = 0
        self._failed_attempts = 0
        self._messages_received = 0
        self._last_message_time: Optional[float] = None

    @property
    def state(self) -> WebSocketState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == WebSocketState.CONNECTED

    @property
    def reconnect_count(self) -> int:
        """Number of reconnection attempts since start."""
        return self._reconnect_count

    @property
    def messages_received(self) -> int:
        return self._messages_received

    @property
    def last_message_time(self) -> Optional[float]:
        """Event-loop time of the last received message."""
        return self._last_message_time

    async def _set_state(self, state: WebSocketState) -> None:
        """Update state and notify callback."""
        if self._state == state:
            return

        old_state = self._state
        self._state = state
        logger.info(f"Event stream state: {old_state.value} -> {state.value}")

        if self._on_state_change:
            try:
                await self._on_state_change(state)
            except Exception as e:
                logger.error(f"Error in state change callback: {e}")

    async def _notify_error(self, error: Exception) -> None:
        if self._on_error:
            try:
                await self._on_error(error)
            except Exception as e:
                logger.error(f"Error in error callback: {e}")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the connection loop in the background."""
        if self._run_task is not None and not self._run_task.done():
            logger.warning(f"Cannot start: already in state {self._state.value}")
            return

        self._stop_event.clear()
        self._run_task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Close the connection and stop reconnecting."""
        if self._run_task is None:
            return

        logger.info("Stopping event stream...")
        await self._set_state(WebSocketState.STOPPING)
        self._stop_event.set()

        await self._close_socket()

        self._run_task.cancel()
        try:
            await self._run_task
        except (asyncio.CancelledError, StreamDisconnected):
            pass
        self._run_task = None

        await self._set_state(WebSocketState.DISCONNECTED)
        logger.info("Event stream stopped")

    async def wait(self) -> None:
        """
        Block until the connection loop ends.

        Raises:
            StreamDisconnected: If max_reconnect_attempts was exhausted
        """
        if self._run_task is not None:
            await self._run_task

    # =========================================================================
    # Connection loop
    # =========================================================================

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            connected = await self._connect()

            if connected:
                reason = await self._receive_loop()
                await self._close_socket()
                if self._stop_event.is_set():
                    break
                await self._notify_error(
                    StreamDisconnected(reason, reconnect_count=self._reconnect_count)
                )
            elif (
                self._max_reconnect_attempts is not None
                and self._failed_attempts >= self._max_reconnect_attempts
            ):
                await self._set_state(WebSocketState.DISCONNECTED)
                raise StreamDisconnected(
                    f"gave up after {self._failed_attempts} failed connects",
                    reconnect_count=self._reconnect_count,
                )

            await self._backoff()

    async def _connect(self) -> bool:
        """Open the connection. Returns False on failure."""
        await self._set_state(WebSocketState.CONNECTING)

        try:
            self._ws = await websockets.connect(
                self._url,
                ping_interval=20,
                ping_timeout=10,
                close_timeout=5,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._failed_attempts += 1
            logger.error(f"Failed to connect to {self._url}: {e}")
            await self._notify_error(
                StreamDisconnected(f"connect failed: {e}", reconnect_count=self._reconnect_count)
            )
            return False

        self._failed_attempts = 0
        self._current_reconnect_delay = self._initial_reconnect_delay
        self._last_message_time = asyncio.get_running_loop().time()

        await self._set_state(WebSocketState.CONNECTED)
        logger.info(f"Connected to {self._url}")
        return True

    async def _receive_loop(self) -> str:
        """
        Read messages until the connection ends.

        Returns:
            Why the loop ended
        """
        while not self._stop_event.is_set() and self._ws is not None:
            try:
                message = await asyncio.wait_for(
                    self._ws.recv(),
                    timeout=self._heartbeat_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"No message received in {self._heartbeat_timeout}s, reconnecting..."
                )
                return "stale connection"
            except ConnectionClosedOK:
                logger.info("Event stream closed normally")
                return "closed by server"
            except ConnectionClosedError as e:
                logger.warning(f"Event stream closed with error: {e}")
                return f"closed with error: {e}"
            except ConnectionClosed as e:
                logger.warning(f"Event stream connection closed: {e}")
                return f"connection closed: {e}"

            self._last_message_time = asyncio.get_running_loop().time()
            self._messages_received += 1
            await self._dispatch(message)

        return "stopped"

    async def _dispatch(self, message: Union[str, bytes]) -> None:
        if isinstance(message, bytes):
            message = message.decode("utf-8", errors="replace")

        try:
            await self._on_message(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error handling stream message: {e}")
            await self._notify_error(e)

    async def _backoff(self) -> None:
        """Wait before the next connection attempt."""
        if self._stop_event.is_set():
            return

        self._reconnect_count += 1
        await self._set_state(WebSocketState.RECONNECTING)

        delay = self._current_reconnect_delay
        logger.info(f"Reconnecting in {delay:.1f}s (attempt #{self._reconnect_count})...")

        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

        self._current_reconnect_delay = min(
            self._current_reconnect_delay * self._reconnect_multiplier,
            self._max_reconnect_delay,
        )

    async def _close_socket(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Error closing socket: {e}")
