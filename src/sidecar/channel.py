"""WebSocket transport to the gateway.

One persistent connection, text frames in both directions. Inbound frames
are delivered in arrival order to every subscribed listener. There is no
reconnection: once the socket closes the channel stays closed.

Usage:
    channel = GatewayChannel()
    sub = channel.subscribe(lambda text: print(text))
    await channel.open()
    await channel.send('{"type": "req", ...}')
    sub.cancel()
    await channel.close()
"""

import asyncio
import logging
from typing import Callable, Optional, Protocol

import aiohttp

from sidecar.config import GATEWAY_URL
from sidecar.errors import ChannelClosedError, ChannelError

logger = logging.getLogger(__name__)

FrameListener = Callable[[str], None]
CloseListener = Callable[[Optional[BaseException]], None]


class Subscription:
    """Cancellation handle returned by subscribe calls."""

    def __init__(self, remove: Callable[[], None]):
        self._remove = remove
        self._active = True

    @property
    def active(self) -> bool:
        """Whether the subscription is still registered."""
        return self._active

    def cancel(self) -> None:
        """Remove the subscription. Safe to call more than once."""
        if self._active:
            self._active = False
            self._remove()


class ChannelProtocol(Protocol):
    """Interface the RPC layer needs from a transport."""

    @property
    def closed(self) -> bool: ...

    def subscribe(self, listener: FrameListener) -> Subscription: ...

    def subscribe_close(self, listener: CloseListener) -> Subscription: ...

    async def open(self) -> None: ...

    async def send(self, text: str) -> None: ...

    async def close(self) -> None: ...

    async def wait_closed(self) -> None: ...


class GatewayChannel:
    """Long-lived WebSocket connection to the gateway."""

    CONNECT_TIMEOUT = 10.0  # seconds

    def __init__(
        self,
        url: str = GATEWAY_URL,
        http_session: Optional[aiohttp.ClientSession] = None,
        connect_timeout: float = CONNECT_TIMEOUT,
    ):
        """Initialize channel.

        Args:
            url: WebSocket endpoint.
            http_session: Optional aiohttp session (for testing).
            connect_timeout: Seconds allowed for the opening handshake.
        """
        self._url = url
        self._session = http_session
        self._owns_session = http_session is None
        self._connect_timeout = connect_timeout
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._listeners: list[FrameListener] = []
        self._close_listeners: list[CloseListener] = []
        self._closed_event = asyncio.Event()
        self._closed = False

    @property
    def url(self) -> str:
        """Endpoint this channel connects to."""
        return self._url

    @property
    def is_open(self) -> bool:
        """True between a successful open() and close."""
        return self._ws is not None and not self._closed

    @property
    def closed(self) -> bool:
        """True once the connection has closed or failed."""
        return self._closed

    def subscribe(self, listener: FrameListener) -> Subscription:
        """Register a listener for inbound text frames.

        Listeners may be registered before open(); nothing is read from the
        socket until open() returns.
        """
        self._listeners.append(listener)
        return Subscription(lambda: self._remove(self._listeners, listener))

    def subscribe_close(self, listener: CloseListener) -> Subscription:
        """Register a listener called once when the channel closes.

        The listener receives the transport error, or None on a clean close.
        """
        self._close_listeners.append(listener)
        return Subscription(lambda: self._remove(self._close_listeners, listener))

    async def open(self) -> None:
        """Connect to the gateway and start reading frames.

        Raises:
            ChannelError: If the connection cannot be established.
        """
        if self._ws is not None:
            return
        if self._closed:
            raise ChannelClosedError("Channel already closed")

        if self._session is None:
            self._session = aiohttp.ClientSession()

        try:
            async with asyncio.timeout(self._connect_timeout):
                self._ws = await self._session.ws_connect(self._url, autoping=True)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            await self._close_session()
            self._mark_closed(e)
            raise ChannelError(f"Cannot connect to {self._url}: {e}") from e

        logger.debug(f"WebSocket open: {self._url}")
        self._reader_task = asyncio.create_task(self._read_loop())

    async def send(self, text: str) -> None:
        """Write one text frame.

        Raises:
            ChannelClosedError: If the channel is not open.
        """
        if self._ws is None or self._closed or self._ws.closed:
            raise ChannelClosedError("Channel is not open")
        try:
            await self._ws.send_str(text)
        except (ConnectionResetError, aiohttp.ClientError) as e:
            raise ChannelClosedError(f"Send failed: {e}") from e

    async def close(self) -> None:
        """Close the connection and release resources."""
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()

        if self._reader_task and self._reader_task is not asyncio.current_task():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None

        await self._close_session()
        self._mark_closed(None)

    async def wait_closed(self) -> None:
        """Block until the channel has closed."""
        await self._closed_event.wait()

    async def _read_loop(self) -> None:
        """Deliver inbound frames until the socket ends."""
        assert self._ws is not None
        error: Optional[BaseException] = None
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._dispatch(msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    try:
                        self._dispatch(msg.data.decode("utf-8"))
                    except UnicodeDecodeError:
                        logger.debug("Dropping undecodable binary frame")
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    error = self._ws.exception()
                    logger.error(f"WebSocket error: {error}")
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = e
            logger.error(f"WebSocket error: {e}")
        finally:
            self._mark_closed(error)

    def _dispatch(self, text: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(text)
            except Exception as e:
                logger.error(f"Frame listener error: {e}")

    def _mark_closed(self, error: Optional[BaseException]) -> None:
        if self._closed:
            return
        self._closed = True
        self._closed_event.set()
        logger.debug("WebSocket closed")
        for listener in list(self._close_listeners):
            try:
                listener(error)
            except Exception as e:
                logger.error(f"Close listener error: {e}")
        self._close_listeners.clear()

    async def _close_session(self) -> None:
        if self._owns_session and self._session:
            await self._session.close()
            # Allow event loop to clean up connector
            await asyncio.sleep(0)
            self._session = None

    @staticmethod
    def _remove(listeners: list, listener) -> None:
        try:
            listeners.remove(listener)
        except ValueError:
            pass
