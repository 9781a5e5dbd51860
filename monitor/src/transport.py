"""
Transport collaborators: a text WebSocket channel and an HTTP JSON client.

Both translate library-specific failures into ``TransportError`` so the
supervisors only deal with one recoverable error type.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-005)

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import httpx
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from monitor.src.errors import TransportError

logger = logging.getLogger(__name__)

_USER_AGENT = "PowerMonitor/1.0"

_WS_HEADERS: dict[str, str] = {
    "Accept-Language": "en-US,en;q=0.9",
    "Cache-Control": "no-cache",
    "Pragma": "no-cache",
}


class MessageChannel(Protocol):
    """Full-duplex, message-oriented text channel."""

    async def send(self, text: str) -> None: ...

    async def recv(self) -> str: ...

    async def close(self) -> None: ...


ChannelFactory = Callable[[str], Awaitable[MessageChannel]]
"""Opens a channel to a URL; the socket supervisor calls it once per attempt."""


# ---------------------------------------------------------------------------
# WebSocket
# ---------------------------------------------------------------------------


class WebSocketChannel:
    """``MessageChannel`` over a ``websockets`` client connection.

    Use :meth:`open` to create one; the constructor only wraps an already
    open connection.
    """

    def __init__(self, conn: ClientConnection, url: str) -> None:
        self._conn = conn
        self._url = url

    @classmethod
    async def open(
        cls,
        url: str,
        *,
        open_timeout: float = 10.0,
        close_timeout: float = 2.0,
    ) -> WebSocketChannel:
        """Open a WebSocket connection to *url*.

        Raises:
            TransportError: On refused connection, timeout, bad URI, or a
                rejected opening handshake.
        """
        try:
            conn = await connect(
                url,
                additional_headers=_WS_HEADERS,
                user_agent_header=_USER_AGENT,
                open_timeout=open_timeout,
                close_timeout=close_timeout,
                compression=None,
            )
        except (OSError, TimeoutError, InvalidHandshake, InvalidURI) as exc:
            raise TransportError(f"Failed to connect to {url}: {exc}", endpoint=url) from exc
        return cls(conn, url)

    async def send(self, text: str) -> None:
        try:
            await self._conn.send(text)
        except ConnectionClosed as exc:
            raise TransportError(f"Connection to {self._url} closed: {exc}", endpoint=self._url) from exc

    async def recv(self) -> str:
        """Wait for the next message; binary frames are decoded as UTF-8."""
        try:
            message = await self._conn.recv()
        except ConnectionClosed as exc:
            raise TransportError(f"Connection to {self._url} closed: {exc}", endpoint=self._url) from exc
        if isinstance(message, bytes):
            return message.decode("utf-8", errors="replace")
        return message

    async def close(self) -> None:
        """Close the connection; bounded by the ``close_timeout`` given to :meth:`open`."""
        await self._conn.close()


async def open_websocket(
    url: str,
    *,
    open_timeout: float = 10.0,
    close_timeout: float = 2.0,
) -> MessageChannel:
    """Default channel factory used by the socket supervisor."""
    return await WebSocketChannel.open(url, open_timeout=open_timeout, close_timeout=close_timeout)


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


class HttpJsonClient:
    """Fetches JSON documents from a station's HTTP data endpoint.

    Args:
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            timeout=timeout,
            headers={"User-Agent": _USER_AGENT, "Accept": "application/json"},
            transport=transport,
        )

    async def get_json(self, url: str) -> dict[str, Any]:
        """GET *url* and return its JSON object body.

        Raises:
            TransportError: On network errors, timeouts, non-200 status, or a
                body that is not a JSON object.
        """
        try:
            response = await self._client.get(url)
        except httpx.TimeoutException as exc:
            raise TransportError(f"Request to {url} timed out", endpoint=url) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Request to {url} failed: {exc}", endpoint=url) from exc

        if response.status_code != 200:
            raise TransportError(
                f"HTTP {response.status_code} from {url}",
                endpoint=url,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise TransportError(f"Invalid JSON from {url}: {exc}", endpoint=url) from exc

        if not isinstance(body, dict):
            raise TransportError(
                f"Expected a JSON object from {url}, got {type(body).__name__}",
                endpoint=url,
            )
        return body

    async def aclose(self) -> None:
        await self._client.aclose()
