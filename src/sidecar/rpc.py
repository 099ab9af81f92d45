"""Request/response and event correlation over the gateway channel.

Frames are JSON objects, one per text frame:
    request:  {"type": "req", "id": ..., "method": ..., "params": {...}}
    response: {"type": "res", "id": ..., "ok": bool, "payload"|"error": ...}
    event:    {"type": "event", "event": ..., "payload": {...}}

Every outbound request gets a process-wide unique id ("req-1", "req-2", ...).
Responses are matched to the waiting caller by id; events go to one-shot
waiters and to persistent subscribers by name. Frames that are not valid
JSON objects of a known type are dropped.
"""

import asyncio
import inspect
import itertools
import json
import logging
from typing import Any, Awaitable, Callable, Optional, Union

from sidecar.channel import ChannelProtocol, Subscription
from sidecar.errors import ChannelClosedError, RpcError, RpcTimeoutError

logger = logging.getLogger(__name__)

FRAME_TYPES = ("req", "res", "event")

# Handler receives the event payload; may be sync or async.
EventHandler = Union[
    Callable[[Any], Awaitable[None]],
    Callable[[Any], None],
]

_request_counter = itertools.count(1)


def next_request_id() -> str:
    """Return the next request id for this process."""
    return f"req-{next(_request_counter)}"


def encode_request(request_id: str, method: str, params: Optional[dict] = None) -> str:
    """Serialize a request frame."""
    return json.dumps(
        {
            "type": "req",
            "id": request_id,
            "method": method,
            "params": params if params is not None else {},
        }
    )


def decode_frame(text: str) -> Optional[dict[str, Any]]:
    """Parse an inbound frame.

    Returns:
        The frame dict, or None if the frame is malformed.
    """
    try:
        frame = json.loads(text)
    except (ValueError, RecursionError, TypeError):
        # JSONDecodeError, oversized integers and deep nesting.
        return None
    if not isinstance(frame, dict) or frame.get("type") not in FRAME_TYPES:
        return None
    return frame


class EventWaiter:
    """One-shot wait for the next event with a given name.

    Armed on creation, so an event arriving before wait() is called is not
    lost.
    """

    def __init__(self, client: "RpcClient", event_name: str):
        self._client = client
        self.event_name = event_name
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def future(self) -> asyncio.Future:
        return self._future

    def done(self) -> bool:
        return self._future.done()

    async def wait(self, timeout: float) -> Any:
        """Wait for the event payload.

        Raises:
            RpcTimeoutError: If no matching event arrives in time.
            ChannelClosedError: If the channel closes first.
        """
        try:
            return await asyncio.wait_for(self._future, timeout=timeout)
        except asyncio.TimeoutError:
            raise RpcTimeoutError(
                f"timeout waiting for event={self.event_name}"
            ) from None
        finally:
            self._client._discard_waiter(self)

    def cancel(self) -> None:
        """Disarm the waiter."""
        if not self._future.done():
            self._future.cancel()
        elif not self._future.cancelled():
            # Mark a stored failure as retrieved.
            self._future.exception()
        self._client._discard_waiter(self)


class RpcClient:
    """Correlates gateway requests, responses and events.

    Usage:
        rpc = RpcClient(channel)
        challenge = rpc.expect_event("connect.challenge")
        await channel.open()
        payload = await challenge.wait(timeout=15.0)

        request_id = await rpc.send("health")
        health = await rpc.await_response(request_id, timeout=15.0)

        sub = rpc.on_event("device.pair.requested", handler)
        sub.cancel()
    """

    def __init__(self, channel: ChannelProtocol, default_timeout: float = 15.0):
        """Initialize client and subscribe to the channel.

        Args:
            channel: Transport delivering text frames.
            default_timeout: Timeout used by request() when none is given.
        """
        self._channel = channel
        self._default_timeout = default_timeout
        self._pending: dict[str, tuple[str, asyncio.Future]] = {}
        self._waiters: dict[str, list[EventWaiter]] = {}
        self._handlers: dict[str, list[EventHandler]] = {}
        self._tasks: set[asyncio.Task] = set()
        self._frame_sub = channel.subscribe(self._on_frame)
        self._close_sub = channel.subscribe_close(self._on_close)

    @property
    def channel(self) -> ChannelProtocol:
        return self._channel

    @property
    def pending_count(self) -> int:
        """Number of requests still waiting for a response."""
        return len(self._pending)

    async def send(self, method: str, params: Optional[dict] = None) -> str:
        """Send a request without waiting for its response.

        The response slot is registered before the frame is written, so a
        response arriving before await_response() is called is kept.

        Returns:
            The request id.

        Raises:
            ChannelClosedError: If the channel is closed.
        """
        if self._channel.closed:
            raise ChannelClosedError(f"Cannot send {method}: channel closed")

        request_id = next_request_id()
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (method, future)
        try:
            await self._channel.send(encode_request(request_id, method, params))
        except BaseException:
            self._pending.pop(request_id, None)
            raise
        logger.debug(f"Sent {method} id={request_id}")
        return request_id

    async def await_response(self, request_id: str, timeout: float) -> Any:
        """Wait for the response to a sent request.

        Returns:
            The response payload.

        Raises:
            RpcTimeoutError: If no response arrives in time.
            RpcError: If the gateway answered ok=false.
            ChannelClosedError: If the channel closes first.
            KeyError: If request_id was not sent by this client.
        """
        method, future = self._pending[request_id]
        try:
            frame = await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            raise RpcTimeoutError(f"timeout waiting for res id={request_id}") from None
        finally:
            self._pending.pop(request_id, None)

        if frame.get("ok"):
            return frame.get("payload")
        raise RpcError(method, frame.get("error"))

    async def request(
        self,
        method: str,
        params: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Send a request and wait for its payload."""
        request_id = await self.send(method, params)
        return await self.await_response(
            request_id, self._default_timeout if timeout is None else timeout
        )

    def expect_event(self, event_name: str) -> EventWaiter:
        """Arm a one-shot waiter for the next event named event_name."""
        waiter = EventWaiter(self, event_name)
        if self._channel.closed:
            waiter.future.set_exception(
                ChannelClosedError(f"Channel closed before event={event_name}")
            )
            return waiter
        self._waiters.setdefault(event_name, []).append(waiter)
        return waiter

    async def await_event(self, event_name: str, timeout: float) -> Any:
        """Wait for the next event named event_name."""
        return await self.expect_event(event_name).wait(timeout)

    def on_event(self, event_name: str, handler: EventHandler) -> Subscription:
        """Call handler for every event named event_name until cancelled.

        Async handlers are run as background tasks; their failures are
        logged.
        """
        self._handlers.setdefault(event_name, []).append(handler)

        def remove() -> None:
            handlers = self._handlers.get(event_name, [])
            if handler in handlers:
                handlers.remove(handler)
            if not handlers:
                self._handlers.pop(event_name, None)

        return Subscription(remove)

    def has_handlers(self, event_name: str) -> bool:
        return bool(self._handlers.get(event_name))

    async def drain(self) -> None:
        """Wait for running async event handlers to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def detach(self) -> None:
        """Unsubscribe from the channel and fail outstanding waits."""
        self._frame_sub.cancel()
        self._close_sub.cancel()
        self._fail_all(ChannelClosedError("RPC client detached"))

    def _on_frame(self, text: str) -> None:
        frame = decode_frame(text)
        if frame is None:
            logger.debug("Dropping malformed frame")
            return

        frame_type = frame["type"]
        if frame_type == "res":
            self._on_response(frame)
        elif frame_type == "event":
            self._on_event(frame)

    def _on_response(self, frame: dict[str, Any]) -> None:
        request_id = frame.get("id")
        if not isinstance(request_id, str):
            return
        entry = self._pending.get(request_id)
        if entry is None:
            return
        _, future = entry
        if not future.done():
            future.set_result(frame)

    def _on_event(self, frame: dict[str, Any]) -> None:
        name = frame.get("event")
        if not isinstance(name, str):
            return
        payload = frame.get("payload")

        for waiter in self._waiters.pop(name, []):
            if not waiter.done():
                waiter.future.set_result(payload)

        for handler in list(self._handlers.get(name, [])):
            try:
                result = handler(payload)
            except Exception as e:
                logger.error(f"Event handler error for {name}: {e}")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Event handler error: {task.exception()}")

    def _on_close(self, error: Optional[BaseException]) -> None:
        reason = f": {error}" if error else ""
        self._fail_all(ChannelClosedError(f"Channel closed{reason}"))

    def _fail_all(self, exc: Exception) -> None:
        for _, future in self._pending.values():
            if not future.done():
                future.set_exception(exc)
        for waiters in self._waiters.values():
            for waiter in waiters:
                if not waiter.done():
                    waiter.future.set_exception(exc)
        self._waiters.clear()

    def _discard_waiter(self, waiter: EventWaiter) -> None:
        waiters = self._waiters.get(waiter.event_name)
        if waiters and waiter in waiters:
            waiters.remove(waiter)
            if not waiters:
                self._waiters.pop(waiter.event_name, None)
