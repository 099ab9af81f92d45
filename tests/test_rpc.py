"""Tests for RPC correlation."""

import asyncio
import json
from unittest.mock import AsyncMock, Mock

import pytest

from sidecar.errors import ChannelClosedError, RpcError, RpcTimeoutError
from sidecar.rpc import RpcClient, decode_frame, encode_request
from tests.fakes import FakeChannel, err, event, ok


class TestFrameCodec:
    """Test frame encoding and decoding."""

    def test_encode_request(self):
        """Request frames carry type, id, method and params."""
        frame = json.loads(encode_request("req-7", "health", {"a": 1}))
        assert frame == {"type": "req", "id": "req-7", "method": "health", "params": {"a": 1}}

    def test_encode_request_default_params(self):
        """Params default to an empty object."""
        frame = json.loads(encode_request("req-1", "health"))
        assert frame["params"] == {}

    def test_decode_valid_frames(self):
        """Known frame types decode to dicts."""
        assert decode_frame('{"type": "res", "id": "x", "ok": true}')["id"] == "x"
        assert decode_frame('{"type": "event", "event": "e"}')["event"] == "e"

    @pytest.mark.parametrize(
        "text",
        [
            "not json",
            "[1, 2]",
            '"string"',
            '{"no": "type"}',
            '{"type": "other"}',
            "",
            '{"type": "event", "event": "x", "payload": ' + "1" * 5000 + "}",
            "[" * 200000,
        ],
        ids=[
            "not-json",
            "array",
            "string",
            "no-type",
            "unknown-type",
            "empty",
            "oversized-integer",
            "deep-nesting",
        ],
    )
    def test_decode_malformed_frames(self, text):
        """Malformed frames decode to None."""
        assert decode_frame(text) is None


class TestRequests:
    """Test request/response correlation."""

    @pytest.mark.asyncio
    async def test_send_writes_request_frame(self, channel):
        """send() writes a request frame and returns its id."""
        rpc = RpcClient(channel)
        request_id = await rpc.send("device.pair.approve", {"requestId": "r1"})

        assert channel.sent == [
            {
                "type": "req",
                "id": request_id,
                "method": "device.pair.approve",
                "params": {"requestId": "r1"},
            }
        ]

    @pytest.mark.asyncio
    async def test_request_ids_are_unique_and_increasing(self, channel):
        """Every request gets a new, larger id."""
        rpc = RpcClient(channel)
        ids = [await rpc.send("health") for _ in range(5)]

        numbers = [int(i.split("-")[1]) for i in ids]
        assert len(set(ids)) == 5
        assert numbers == sorted(numbers)

    @pytest.mark.asyncio
    async def test_ids_unique_across_clients(self):
        """Ids are scoped to the process, not the client."""
        first = RpcClient(FakeChannel())
        second = RpcClient(FakeChannel())

        assert await first.send("health") != await second.send("health")

    @pytest.mark.asyncio
    async def test_await_response_returns_payload(self, channel):
        """A matching ok response resolves with its payload."""
        channel.responder = lambda frame: [ok(frame, {"status": "ok"})]
        rpc = RpcClient(channel)

        request_id = await rpc.send("health")
        payload = await rpc.await_response(request_id, timeout=1.0)

        assert payload == {"status": "ok"}
        assert rpc.pending_count == 0

    @pytest.mark.asyncio
    async def test_response_before_await_is_kept(self, channel):
        """A response delivered before await_response() is not lost."""
        rpc = RpcClient(channel)
        request_id = await rpc.send("health")
        channel.feed({"type": "res", "id": request_id, "ok": True, "payload": {"n": 1}})

        assert await rpc.await_response(request_id, timeout=1.0) == {"n": 1}

    @pytest.mark.asyncio
    async def test_error_response_raises_rpc_error(self, channel):
        """ok=false raises RpcError carrying the error payload."""
        channel.responder = lambda frame: [err(frame, {"code": "not_found"})]
        rpc = RpcClient(channel)

        with pytest.raises(RpcError) as exc_info:
            await rpc.request("device.pair.approve", {"requestId": "x"}, timeout=1.0)

        assert exc_info.value.error == {"code": "not_found"}
        assert exc_info.value.method == "device.pair.approve"

    @pytest.mark.asyncio
    async def test_timeout_raises_and_cleans_up(self, channel):
        """No response raises RpcTimeoutError and drops the pending slot."""
        rpc = RpcClient(channel)
        request_id = await rpc.send("health")

        with pytest.raises(RpcTimeoutError):
            await rpc.await_response(request_id, timeout=0.05)

        assert rpc.pending_count == 0

    @pytest.mark.asyncio
    async def test_non_matching_id_does_not_resolve(self, channel):
        """A response for another id is ignored."""
        rpc = RpcClient(channel)
        request_id = await rpc.send("health")
        channel.feed({"type": "res", "id": "req-unrelated", "ok": True, "payload": {}})

        with pytest.raises(RpcTimeoutError):
            await rpc.await_response(request_id, timeout=0.05)

    @pytest.mark.asyncio
    async def test_late_response_after_timeout_is_dropped(self, channel):
        """A response after timeout does not raise or leak."""
        rpc = RpcClient(channel)
        request_id = await rpc.send("health")
        with pytest.raises(RpcTimeoutError):
            await rpc.await_response(request_id, timeout=0.01)

        channel.feed({"type": "res", "id": request_id, "ok": True, "payload": {}})
        assert rpc.pending_count == 0

    @pytest.mark.asyncio
    async def test_unknown_request_id(self, channel):
        """Awaiting an id that was never sent is a programming error."""
        rpc = RpcClient(channel)
        with pytest.raises(KeyError):
            await rpc.await_response("req-missing", timeout=0.01)

    @pytest.mark.asyncio
    async def test_malformed_frames_are_ignored(self, channel):
        """Garbage frames never break correlation."""
        rpc = RpcClient(channel)
        request_id = await rpc.send("health")

        channel.feed("{not json")
        channel.feed("[]")
        channel.feed('{"type": "res", "id": ["list"]}')
        channel.feed({"type": "res", "id": request_id, "ok": True, "payload": {"x": 1}})

        assert await rpc.await_response(request_id, timeout=1.0) == {"x": 1}

    @pytest.mark.asyncio
    async def test_hostile_frames_are_dropped(self, channel):
        """Frames that overflow the JSON parser are dropped without raising."""
        rpc = RpcClient(channel)
        request_id = await rpc.send("health")

        channel.feed('{"type": "res", "id": "x", "payload": ' + "9" * 5000 + "}")
        channel.feed("[" * 200000)
        channel.feed({"type": "res", "id": request_id, "ok": True, "payload": {"x": 2}})

        assert await rpc.await_response(request_id, timeout=1.0) == {"x": 2}

    @pytest.mark.asyncio
    async def test_send_on_closed_channel(self, channel):
        """Sending after close raises ChannelClosedError."""
        rpc = RpcClient(channel)
        await channel.close()

        with pytest.raises(ChannelClosedError):
            await rpc.send("health")

    @pytest.mark.asyncio
    async def test_close_fails_pending_requests(self, channel):
        """Closing the channel fails outstanding waits."""
        rpc = RpcClient(channel)
        request_id = await rpc.send("health")

        asyncio.get_running_loop().call_later(0.01, channel.drop)

        with pytest.raises(ChannelClosedError):
            await rpc.await_response(request_id, timeout=1.0)


class TestEvents:
    """Test one-shot and persistent event delivery."""

    @pytest.mark.asyncio
    async def test_await_event_resolves(self, channel):
        """The next matching event resolves the wait."""
        rpc = RpcClient(channel)
        asyncio.get_running_loop().call_later(
            0.01, channel.feed, event("connect.challenge", {"nonce": "abc"})
        )

        payload = await rpc.await_event("connect.challenge", timeout=1.0)

        assert payload == {"nonce": "abc"}

    @pytest.mark.asyncio
    async def test_armed_waiter_catches_early_event(self, channel):
        """An event delivered between arming and waiting is kept."""
        rpc = RpcClient(channel)
        waiter = rpc.expect_event("connect.challenge")
        channel.feed(event("connect.challenge", {"nonce": "first"}))

        assert await waiter.wait(timeout=1.0) == {"nonce": "first"}

    @pytest.mark.asyncio
    async def test_event_before_arming_is_not_retroactive(self, channel):
        """Events before registration do not resolve a later wait."""
        rpc = RpcClient(channel)
        channel.feed(event("connect.challenge", {"nonce": "old"}))

        with pytest.raises(RpcTimeoutError):
            await rpc.await_event("connect.challenge", timeout=0.05)

    @pytest.mark.asyncio
    async def test_other_event_name_does_not_resolve(self, channel):
        """A wait only resolves for its own event name."""
        rpc = RpcClient(channel)
        waiter = rpc.expect_event("connect.challenge")
        channel.feed(event("device.pair.requested", {"requestId": "r"}))

        with pytest.raises(RpcTimeoutError):
            await waiter.wait(timeout=0.05)

    @pytest.mark.asyncio
    async def test_one_shot_resolves_once(self, channel):
        """A waiter takes the next event only."""
        rpc = RpcClient(channel)
        waiter = rpc.expect_event("tick")
        channel.feed(event("tick", {"n": 1}))
        channel.feed(event("tick", {"n": 2}))

        assert await waiter.wait(timeout=1.0) == {"n": 1}

    @pytest.mark.asyncio
    async def test_close_fails_event_waiter(self, channel):
        """Closing the channel fails an armed waiter."""
        rpc = RpcClient(channel)
        waiter = rpc.expect_event("connect.challenge")
        channel.drop()

        with pytest.raises(ChannelClosedError):
            await waiter.wait(timeout=1.0)

    @pytest.mark.asyncio
    async def test_on_event_is_persistent(self, channel):
        """A subscription sees every matching event."""
        rpc = RpcClient(channel)
        handler = Mock()
        rpc.on_event("device.pair.requested", handler)

        channel.feed(event("device.pair.requested", {"requestId": "a"}))
        channel.feed(event("other", {}))
        channel.feed(event("device.pair.requested", {"requestId": "b"}))

        assert handler.call_count == 2
        handler.assert_any_call({"requestId": "a"})
        handler.assert_any_call({"requestId": "b"})

    @pytest.mark.asyncio
    async def test_cancelled_subscription_stops_delivery(self, channel):
        """After cancel() the handler is not called."""
        rpc = RpcClient(channel)
        handler = Mock()
        subscription = rpc.on_event("device.pair.requested", handler)

        subscription.cancel()
        subscription.cancel()
        channel.feed(event("device.pair.requested", {"requestId": "a"}))

        handler.assert_not_called()
        assert not rpc.has_handlers("device.pair.requested")

    @pytest.mark.asyncio
    async def test_async_handler_runs_as_task(self, channel):
        """Async handlers are scheduled and can be drained."""
        rpc = RpcClient(channel)
        handler = AsyncMock()
        rpc.on_event("device.pair.requested", handler)

        channel.feed(event("device.pair.requested", {"requestId": "a"}))
        await rpc.drain()

        handler.assert_awaited_once_with({"requestId": "a"})

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_others(self, channel):
        """One handler raising does not block the next."""
        rpc = RpcClient(channel)
        bad = Mock(side_effect=RuntimeError("boom"))
        good = Mock()
        rpc.on_event("e", bad)
        rpc.on_event("e", good)

        channel.feed(event("e", {}))

        good.assert_called_once_with({})

    @pytest.mark.asyncio
    async def test_detach_unsubscribes(self, channel):
        """A detached client ignores further frames."""
        rpc = RpcClient(channel)
        handler = Mock()
        rpc.on_event("e", handler)
        rpc.detach()

        channel.feed(event("e", {}))

        handler.assert_not_called()
