"""
WebSocket transport for the broadcast venue.

A transport owns exactly one socket. Lifecycle events (open, message, error,
close) are delivered to a single listener registered at construction, one at
a time and in arrival order, from the transport's reader task. The transport
never reconnects on its own.
"""

import asyncio
from collections.abc import Callable
from typing import Protocol

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from mdt_engine.logging import get_logger
from mdt_engine.session.errors import TransportError

logger = get_logger(__name__)


class TransportListener(Protocol):
    """Receiver of transport lifecycle events."""

    async def on_open(self) -> None: ...

    async def on_message(self, payload: str) -> None: ...

    async def on_error(self, error: TransportError) -> None: ...

    async def on_close(self) -> None: ...


class Transport(Protocol):
    """Bidirectional message-oriented connection."""

    @property
    def is_open(self) -> bool: ...

    async def open(self) -> None: ...

    async def send(self, text: str) -> None: ...

    async def close(self) -> None: ...


TransportFactory = Callable[[str, TransportListener], Transport]


class WebSocketTransport:
    """
    Transport backed by a ``websockets`` client connection.

    ``open()`` only starts the reader task; the listener learns about the
    outcome through ``on_open`` or ``on_error`` followed by ``on_close``.
    """

    def __init__(
        self,
        url: str,
        listener: TransportListener,
        open_timeout_s: float = 10.0,
        ping_interval_s: float | None = 20.0,
    ):
        """
        Initialize transport.

        Args:
            url: ws:// or wss:// endpoint
            listener: Receiver of lifecycle events
            open_timeout_s: Timeout for the opening handshake
            ping_interval_s: Keepalive ping interval (None disables pings)
        """
        self._url = url
        self._listener = listener
        self._open_timeout_s = open_timeout_s
        self._ping_interval_s = ping_interval_s

        self._websocket: ClientConnection | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._closing = False

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_open(self) -> bool:
        """True while the socket is open and not closing."""
        return self._websocket is not None and not self._closing

    async def open(self) -> None:
        """Start connecting in the background."""
        if self._reader_task is not None:
            logger.warning("Transport already started for %s", self._url)
            return

        self._reader_task = asyncio.create_task(self._run())

    async def send(self, text: str) -> None:
        """
        Send one text frame.

        Raises:
            TransportError: If the socket is not open or the send fails
        """
        websocket = self._websocket
        if websocket is None or self._closing:
            raise TransportError("Transport is not open")

        try:
            await websocket.send(text)
        except ConnectionClosed as e:
            raise TransportError(f"Connection closed while sending: {e}") from e
        except WebSocketException as e:
            raise TransportError(f"Send failed: {e}") from e

    async def close(self) -> None:
        """Close the socket and wait for the reader task to finish."""
        self._closing = True

        if self._websocket is not None:
            try:
                await self._websocket.close()
            except WebSocketException as e:
                logger.warning("WebSocket close failed: %s", e)

        task = self._reader_task
        if task is None:
            return

        if self._websocket is None and not task.done():
            # Still handshaking - nothing to close gracefully
            task.cancel()

        try:
            await task
        except asyncio.CancelledError:
            pass

    # -------------------------------------------------------------------------
    # Internal: Reader
    # -------------------------------------------------------------------------

    async def _run(self) -> None:
        """Connect, deliver frames until the socket ends, then report close."""
        logger.info("Connecting to %s", self._url)
        try:
            async with connect(
                self._url,
                open_timeout=self._open_timeout_s,
                ping_interval=self._ping_interval_s,
            ) as websocket:
                self._websocket = websocket
                logger.info("WebSocket connected to %s", self._url)
                await self._listener.on_open()

                async for message in websocket:
                    if isinstance(message, bytes):
                        message = message.decode("utf-8", errors="replace")
                    try:
                        await self._listener.on_message(message)
                    except Exception as e:
                        logger.warning("Error processing message '%s': %s", message[:50], e)

        except asyncio.CancelledError:
            logger.info("Connection attempt to %s cancelled", self._url)

        except ConnectionClosed as e:
            if not self._closing:
                logger.warning("WebSocket closed abnormally: %s", e)
                await self._listener.on_error(TransportError(f"Connection lost: {e}"))

        except (WebSocketException, OSError) as e:
            # OSError covers refused connections and handshake timeouts
            logger.error("WebSocket failure on %s: %s", self._url, e)
            await self._listener.on_error(TransportError(f"Connection failed: {e}"))

        finally:
            self._websocket = None
            logger.info("WebSocket to %s closed", self._url)
            await self._listener.on_close()


def websocket_transport_factory(
    open_timeout_s: float = 10.0,
    ping_interval_s: float | None = 20.0,
) -> TransportFactory:
    """Build a factory producing configured WebSocketTransports."""

    def factory(url: str, listener: TransportListener) -> Transport:
        return WebSocketTransport(
            url,
            listener,
            open_timeout_s=open_timeout_s,
            ping_interval_s=ping_interval_s,
        )

    return factory
