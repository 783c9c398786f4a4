"""
REST client for the backpack.tf snapshot endpoint.

Status classification:
    200       -> parsed JSON body
    5xx       -> ServerError (caller may retry later)
    other     -> InternalError carrying the status code
    bad body  -> DecodeError (an InternalError)

Transport failures (timeouts, connection errors) are retried here with
exponential backoff before surfacing as InternalError.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Optional

import aiohttp

from .decoders import DecodedSnapshot, decode_snapshot_response
from .errors import DecodeError, InternalError, ServerError

logger = logging.getLogger(__name__)

DEFAULT_APPID = 440


class BackpackRestClient:
    """
    Async REST client for backpack.tf classifieds.

    Features:
        - Rate limiting to stay under the API's request budget
        - Retries with exponential backoff for transport failures
        - Status classification into the ingestion error family

    Usage:
        async with BackpackRestClient(user_token="...") as client:
            snapshot = await client.get_snapshot("Mann Co. Supply Crate Key")
    """

    BASE_URL = "https://backpack.tf/api"

    def __init__(
        self,
        user_token: str,
        session: Optional[aiohttp.ClientSession] = None,
        appid: int = DEFAULT_APPID,
        rate_limit: float = 1.0,  # requests per second
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_delay: float = 1.0,
    ):
        """
        Initialize the REST client.

        Args:
            user_token: backpack.tf user token, sent as the `token` parameter
            session: Optional aiohttp session (created if not provided)
            appid: Application scope id
            rate_limit: Maximum requests per second
            timeout: Request timeout in seconds
            max_retries: Attempts for transport failures
            retry_delay: Base delay between retries (exponential backoff)
        """
        self._user_token = user_token
        self._session = session
        self._owns_session = session is None
        self._appid = appid
        self._rate_limit = rate_limit
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._max_retries = max(1, max_retries)
        self._retry_delay = retry_delay

        self._request_times: list[float] = []
        self._rate_lock = asyncio.Lock()

    async def __aenter__(self) -> "BackpackRestClient":
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the client session."""
        if self._owns_session and self._session:
            await self._session.close()
            self._session = None

    async def _rate_limit_wait(self) -> None:
        """Wait if necessary to respect rate limits."""
        async with self._rate_lock:
            now = time.time()
            self._request_times = [t for t in self._request_times if now - t < 1.0]

            if len(self._request_times) >= self._rate_limit:
                wait_time = 1.0 - (now - self._request_times[0])
                if wait_time > 0:
                    await asyncio.sleep(wait_time)

            self._request_times.append(time.time())

    async def _get_json(self, url: str, params: dict[str, Any], item: str) -> Any:
        """
        GET a JSON document.

        Raises:
            ServerError: On a 5xx response
            InternalError: On another non-200 status or after retries
            DecodeError: If the body is not JSON
            asyncio.CancelledError: When the task is cancelled (re-raised)
        """
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True

        last_error: Optional[Exception] = None

        for attempt in range(self._max_retries):
            try:
                await self._rate_limit_wait()

                async with self._session.get(url, params=params) as response:
                    if response.status >= 500:
                        raise ServerError(
                            f"Server error: {response.status}",
                            status_code=response.status,
                            item=item,
                        )

                    if response.status != 200:
                        text = await response.text()
                        logger.error(
                            f"Snapshot request for {item!r} failed: "
                            f"{response.status} - {text[:200]}"
                        )
                        raise InternalError(
                            f"Unexpected status {response.status}",
                            status_code=response.status,
                            item=item,
                        )

                    body = await response.text()

                try:
                    return json.loads(body)
                except json.JSONDecodeError as e:
                    logger.error(f"Failed to parse snapshot body for {item!r}: {e}")
                    raise DecodeError(f"Snapshot body is not JSON: {e}", item=item) from e

            except asyncio.CancelledError:
                logger.debug("Request cancelled")
                raise

            except asyncio.TimeoutError:
                delay = self._retry_delay * (2 ** attempt)
                logger.warning(
                    f"Request timeout, retry {attempt + 1}/{self._max_retries}"
                )
                last_error = InternalError("Request timed out", item=item)
                if attempt + 1 < self._max_retries:
                    await asyncio.sleep(delay)

            except aiohttp.ClientError as e:
                delay = self._retry_delay * (2 ** attempt)
                logger.warning(f"Request failed: {e}, retry {attempt + 1}/{self._max_retries}")
                last_error = InternalError(f"Request failed: {e}", item=item)
                if attempt + 1 < self._max_retries:
                    await asyncio.sleep(delay)

        logger.error(f"Failed to send request to backpack.tf: {last_error}")
        raise last_error or InternalError("Request failed after retries", item=item)

    # =========================================================================
    # Snapshot
    # =========================================================================

    async def get_snapshot_raw(self, item: str) -> Any:
        """Fetch the raw snapshot body for one item."""
        params = {
            "token": self._user_token,
            "appid": str(self._appid),
            "sku": item,
        }
        url = f"{self.BASE_URL}/classifieds/listings/snapshot"
        return await self._get_json(url, params, item)

    async def get_snapshot(self, item: str) -> DecodedSnapshot:
        """
        Fetch and decode the current listings of an item.

        Args:
            item: Full item name, e.g. "Strange Rocket Launcher"

        Returns:
            DecodedSnapshot (malformed records already skipped)

        Raises:
            ServerError, InternalError, DecodeError
        """
        data = await self.get_snapshot_raw(item)
        try:
            return decode_snapshot_response(data)
        except DecodeError as e:
            e.item = item
            raise
