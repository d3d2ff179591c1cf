"""Tests for the realtime broadcaster and its transports."""

import asyncio
import json
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.services.broadcaster import (
    InMemoryPubSub,
    RealtimeBroadcaster,
    RedisPubSub,
    create_transport,
)


class FailingTransport(InMemoryPubSub):
    async def publish(self, channel, message):
        raise ConnectionError("broker unreachable")


class SlowTransport(InMemoryPubSub):
    async def publish(self, channel, message):
        await asyncio.sleep(1)
        return 1


class StalledTransport(InMemoryPubSub):
    """Transport whose publishes never complete."""

    def __init__(self):
        super().__init__()
        self.attempts = 0
        self.closed = False

    async def publish(self, channel, message):
        self.attempts += 1
        await asyncio.Event().wait()

    async def close(self):
        self.closed = True


class TestRealtimeBroadcaster:
    """Tests for event envelopes and failure isolation."""

    @pytest.mark.asyncio
    async def test_envelope_shape(self, broadcaster, transport):
        """Test that events are wrapped with their name and session id."""
        queued = await broadcaster.token("s1", "Hel")
        await broadcaster.flush("s1")

        assert queued is True
        assert transport.published == [{"event": "token", "payload": {"sessionId": "s1", "delta": "Hel"}}]

    @pytest.mark.asyncio
    async def test_tool_status_payload(self, broadcaster, transport):
        """Test that tool status events name the tool and call."""
        await broadcaster.tool_status("s1", "succeeded", "create_note", "call_1", "Created note 'A'")
        await broadcaster.flush("s1")

        assert transport.published[0]["payload"] == {
            "sessionId": "s1",
            "status": "succeeded",
            "toolName": "create_note",
            "toolCallId": "call_1",
            "summary": "Created note 'A'",
        }

    def test_channel_is_session_scoped(self):
        """Test the channel naming scheme."""
        assert RealtimeBroadcaster.channel_for("abc") == "chat-session:abc"

    @pytest.mark.asyncio
    async def test_transport_failure_is_swallowed(self):
        """Test that a broken transport never fails the publisher or stops the drain."""
        broadcaster = RealtimeBroadcaster(FailingTransport())

        assert await broadcaster.publish("s1", "token", {"delta": "a"}) is True
        assert await broadcaster.publish("s1", "done") is True
        await asyncio.wait_for(broadcaster.flush("s1"), timeout=1)

        assert broadcaster.pending("s1") == 0
        await broadcaster.aclose()

    @pytest.mark.asyncio
    async def test_slow_transport_times_out(self):
        """Test that a hanging send is abandoned after the timeout and the next event goes out."""
        transport = SlowTransport()
        broadcaster = RealtimeBroadcaster(transport, timeout=0.01)

        await broadcaster.token("s1", "x")
        await broadcaster.token("s1", "y")
        await asyncio.wait_for(broadcaster.flush("s1"), timeout=1)

        assert broadcaster.pending("s1") == 0
        await broadcaster.aclose()

    @pytest.mark.asyncio
    async def test_stalled_transport_does_not_block_publishers(self):
        """Test that publishing many events to a stalled transport returns immediately."""
        transport = StalledTransport()
        broadcaster = RealtimeBroadcaster(transport, timeout=0.5)

        started = time.monotonic()
        for word in "one two three four five six seven eight".split():
            assert await broadcaster.token("s1", word) is True
        elapsed = time.monotonic() - started

        assert elapsed < 0.1
        assert broadcaster.pending("s1") >= 7
        await broadcaster.aclose()

    @pytest.mark.asyncio
    async def test_full_queue_drops_new_events(self):
        """Test that events beyond the pending bound are dropped instead of waited on."""
        transport = StalledTransport()
        broadcaster = RealtimeBroadcaster(transport, timeout=5, max_pending=2)

        results = [await broadcaster.token("s1", str(i)) for i in range(5)]

        assert results[:2] == [True, True]
        assert results[-1] is False
        await broadcaster.aclose()

    @pytest.mark.asyncio
    async def test_close_channel_delivers_queued_events(self, broadcaster, transport):
        """Test that closing a channel sends what was queued and ends its drain task."""
        await broadcaster.token("s1", "a")
        await broadcaster.publish("s1", "done")

        await broadcaster.close_channel("s1", wait=1.0)

        assert transport.event_names() == ["token", "done"]
        assert broadcaster.pending("s1") == 0
        assert not broadcaster._drains

    @pytest.mark.asyncio
    async def test_close_channel_wait_is_bounded(self):
        """Test that closing a stalled channel returns after the wait and drains in the background."""
        broadcaster = RealtimeBroadcaster(StalledTransport(), timeout=5)
        await broadcaster.token("s1", "a")

        started = time.monotonic()
        await broadcaster.close_channel("s1", wait=0.05)

        assert time.monotonic() - started < 0.5
        assert len(broadcaster._closing) == 1
        await broadcaster.aclose()

    @pytest.mark.asyncio
    async def test_aclose_cancels_drains_and_closes_transport(self):
        """Test that shutting down stops every drain task and closes the transport."""
        transport = StalledTransport()
        broadcaster = RealtimeBroadcaster(transport, timeout=5)
        await broadcaster.token("s1", "a")
        await broadcaster.token("s2", "b")
        drains = list(broadcaster._drains.values())

        await broadcaster.aclose()

        assert all(task.cancelled() for task in drains)
        assert transport.closed is True
        assert broadcaster.pending("s1") == 0

    @pytest.mark.asyncio
    async def test_subscriber_receives_events_in_order(self, broadcaster):
        """Test that a subscriber sees a session's events in publish order."""
        ready = asyncio.Event()
        received = []

        async def consume():
            async for envelope in broadcaster.subscribe("s1", ready):
                received.append(envelope["payload"]["delta"])
                if len(received) == 3:
                    return

        consumer = asyncio.create_task(consume())
        await ready.wait()
        for text in ["a", "b", "c"]:
            await broadcaster.token("s1", text)

        await asyncio.wait_for(consumer, timeout=1)
        assert received == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_subscriber_skips_foreign_sessions(self, broadcaster, transport):
        """Test that envelopes for another session on the channel are filtered out."""
        ready = asyncio.Event()
        stream = broadcaster.subscribe("s1", ready)
        first = asyncio.create_task(stream.__anext__())
        await ready.wait()

        channel = RealtimeBroadcaster.channel_for("s1")
        await transport.publish(channel, {"event": "token", "payload": {"sessionId": "other", "delta": "x"}})
        await broadcaster.token("s1", "mine")

        envelope = await asyncio.wait_for(first, timeout=1)
        assert envelope["payload"]["delta"] == "mine"
        await stream.aclose()


class TestInMemoryPubSub:
    """Tests for the in-process transport."""

    @pytest.mark.asyncio
    async def test_full_queue_drops_messages(self):
        """Test that a slow subscriber loses messages instead of blocking publishers."""
        pubsub = InMemoryPubSub(max_queue_size=1)
        ready = asyncio.Event()
        stream = pubsub.subscribe("ch", ready)
        first = asyncio.create_task(stream.__anext__())
        await ready.wait()

        assert await pubsub.publish("ch", {"event": "token", "n": 1}) == 1
        assert await pubsub.publish("ch", {"event": "token", "n": 2}) == 0

        assert (await first)["n"] == 1
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_subscription_is_removed_on_close(self):
        """Test that closing a subscription unregisters its queue."""
        pubsub = InMemoryPubSub()
        ready = asyncio.Event()
        stream = pubsub.subscribe("ch", ready)
        pending = asyncio.create_task(stream.__anext__())
        await ready.wait()
        assert pubsub.subscriber_count("ch") == 1

        pending.cancel()
        with pytest.raises(asyncio.CancelledError):
            await pending
        await stream.aclose()

        assert pubsub.subscriber_count("ch") == 0

    @pytest.mark.asyncio
    async def test_publish_without_subscribers(self):
        """Test that publishing to an empty channel reaches nobody."""
        assert await InMemoryPubSub().publish("ch", {"event": "done"}) == 0


class TestRedisPubSub:
    """Tests for the Redis transport against a mocked client."""

    @pytest.mark.asyncio
    async def test_publish_encodes_json(self):
        """Test that messages are published as JSON strings."""
        client = MagicMock()
        client.publish = AsyncMock(return_value=2)

        receivers = await RedisPubSub(client).publish("chat-session:s1", {"event": "done", "payload": {}})

        assert receivers == 2
        client.publish.assert_awaited_once_with(
            "chat-session:s1", json.dumps({"event": "done", "payload": {}})
        )

    @pytest.mark.asyncio
    async def test_subscribe_decodes_messages_and_cleans_up(self):
        """Test that only data messages are yielded and the subscription is released."""

        async def listen():
            yield {"type": "subscribe", "data": 1}
            yield {"type": "message", "data": json.dumps({"event": "token"})}
            yield {"type": "message", "data": "not json"}
            yield {"type": "message", "data": json.dumps({"event": "done"})}

        pubsub = MagicMock()
        pubsub.subscribe = AsyncMock()
        pubsub.unsubscribe = AsyncMock()
        pubsub.aclose = AsyncMock()
        pubsub.listen = listen
        client = MagicMock()
        client.pubsub = MagicMock(return_value=pubsub)

        ready = asyncio.Event()
        received = [message async for message in RedisPubSub(client).subscribe("ch", ready)]

        assert ready.is_set()
        assert received == [{"event": "token"}, {"event": "done"}]
        pubsub.subscribe.assert_awaited_once_with("ch")
        pubsub.unsubscribe.assert_awaited_once_with("ch")
        pubsub.aclose.assert_awaited_once()


class TestCreateTransport:
    """Tests for transport selection."""

    def test_in_memory_without_url(self):
        """Test that the in-process transport is the default."""
        assert isinstance(create_transport(None), InMemoryPubSub)

    def test_redis_with_url(self):
        """Test that a Redis URL selects the Redis transport."""
        assert isinstance(create_transport("redis://localhost:6379/0"), RedisPubSub)
