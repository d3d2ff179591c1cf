"""Realtime broadcaster publishing turn progress on session-scoped channels."""

import asyncio
import json
from collections import defaultdict
from collections.abc import AsyncIterator
from typing import Any, Literal, Protocol

import redis.asyncio as redis

from app.utils.logging import get_logger

logger = get_logger(__name__)

EventType = Literal["token", "reasoning", "tool_status", "finish", "error", "retry", "done"]
ToolStatus = Literal["pending", "started", "succeeded", "failed"]

CHANNEL_PREFIX = "chat-session"
DEFAULT_MAX_PENDING = 1000

_CLOSE = object()


class PubSubTransport(Protocol):
    """Minimal publish/subscribe transport."""

    async def publish(self, channel: str, message: dict[str, Any]) -> int:
        """Publish a message, returning the number of receivers."""
        ...

    def subscribe(self, channel: str, ready: asyncio.Event | None = None) -> AsyncIterator[dict[str, Any]]:
        """Iterate messages published on a channel; `ready` is set once the subscription is live."""
        ...

    async def close(self) -> None:
        ...


class InMemoryPubSub:
    """Process-local transport with one bounded queue per subscriber."""

    def __init__(self, max_queue_size: int = 1000):
        self.max_queue_size = max_queue_size
        self._subscribers: dict[str, set[asyncio.Queue[dict[str, Any]]]] = defaultdict(set)

    async def publish(self, channel: str, message: dict[str, Any]) -> int:
        delivered = 0
        for queue in list(self._subscribers.get(channel, ())):
            try:
                queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                logger.warning(f"Subscriber queue full on {channel}, dropping {message.get('event')} event")
        return delivered

    async def subscribe(self, channel: str, ready: asyncio.Event | None = None) -> AsyncIterator[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers[channel].add(queue)
        if ready is not None:
            ready.set()
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers[channel].discard(queue)
            if not self._subscribers[channel]:
                del self._subscribers[channel]

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    async def close(self) -> None:
        self._subscribers.clear()


class RedisPubSub:
    """Redis pub/sub transport carrying JSON-encoded messages."""

    def __init__(self, redis_client: redis.Redis):
        self._redis = redis_client

    @classmethod
    def from_url(cls, url: str) -> "RedisPubSub":
        return cls(redis.from_url(url, decode_responses=True))

    async def publish(self, channel: str, message: dict[str, Any]) -> int:
        payload = json.dumps(message, default=str)
        return await self._redis.publish(channel, payload)

    async def subscribe(self, channel: str, ready: asyncio.Event | None = None) -> AsyncIterator[dict[str, Any]]:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        if ready is not None:
            ready.set()
        try:
            async for message in pubsub.listen():
                if message["type"] != "message":
                    continue
                try:
                    yield json.loads(message["data"])
                except json.JSONDecodeError:
                    logger.warning(f"Failed to decode JSON from channel {channel}")
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()

    async def close(self) -> None:
        await self._redis.aclose()


class RealtimeBroadcaster:
    """Publishes turn events for live UI consumption.

    `publish` only queues the envelope and returns; it never waits on the
    transport. Each channel has one drain task that sends its queue in order,
    each send bounded by `timeout`. Transport errors and timeouts are logged
    and swallowed, and a full queue drops the new event.
    """

    def __init__(self, transport: PubSubTransport, timeout: float = 0.5, max_pending: int = DEFAULT_MAX_PENDING):
        self.transport = transport
        self.timeout = timeout
        self.max_pending = max_pending
        self._queues: dict[str, asyncio.Queue[Any]] = {}
        self._drains: dict[str, asyncio.Task] = {}
        self._closing: set[asyncio.Task] = set()

    @staticmethod
    def channel_for(session_id: str) -> str:
        return f"{CHANNEL_PREFIX}:{session_id}"

    async def publish(self, session_id: str, event: EventType, payload: dict[str, Any] | None = None) -> bool:
        """Queue one event envelope for delivery. Returns False when the event was dropped."""
        envelope = {"event": event, "payload": {"sessionId": session_id, **(payload or {})}}
        channel = self.channel_for(session_id)
        try:
            self._queue_for(channel).put_nowait(envelope)
        except asyncio.QueueFull:
            logger.warning(f"Broadcast queue full on {channel}, dropping {event} event")
            return False
        return True

    async def token(self, session_id: str, text: str) -> bool:
        return await self.publish(session_id, "token", {"delta": text})

    async def reasoning(self, session_id: str, text: str) -> bool:
        return await self.publish(session_id, "reasoning", {"delta": text})

    async def tool_status(
        self,
        session_id: str,
        status: ToolStatus,
        tool_name: str | None,
        tool_call_id: str | None = None,
        summary: str | None = None,
    ) -> bool:
        payload: dict[str, Any] = {"status": status, "toolName": tool_name}
        if tool_call_id:
            payload["toolCallId"] = tool_call_id
        if summary:
            payload["summary"] = summary
        return await self.publish(session_id, "tool_status", payload)

    def pending(self, session_id: str) -> int:
        """Number of queued events not yet handed to the transport."""
        queue = self._queues.get(self.channel_for(session_id))
        return queue.qsize() if queue is not None else 0

    async def flush(self, session_id: str) -> None:
        """Wait until every event queued for the session has been sent or abandoned."""
        queue = self._queues.get(self.channel_for(session_id))
        if queue is not None:
            await queue.join()

    async def close_channel(self, session_id: str, wait: float = 0.0) -> None:
        """Stop the session's drain task once its queued events are sent.

        Waits up to `wait` seconds for the queue to drain; after that the task
        keeps draining in the background and exits on its own.
        """
        channel = self.channel_for(session_id)
        queue = self._queues.pop(channel, None)
        task = self._drains.pop(channel, None)
        if queue is None or task is None:
            return

        try:
            queue.put_nowait(_CLOSE)
        except asyncio.QueueFull:
            logger.warning(f"Dropping {queue.qsize()} undelivered events on {channel}")
            task.cancel()
            return

        if wait > 0:
            await asyncio.wait({task}, timeout=wait)
        if not task.done():
            logger.debug(f"{queue.qsize()} events on {channel} still draining in the background")
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)

    async def aclose(self) -> None:
        """Cancel every drain task and close the transport."""
        tasks = [*self._drains.values(), *self._closing]
        self._queues.clear()
        self._drains.clear()
        self._closing.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.transport.close()

    async def subscribe(
        self, session_id: str, ready: asyncio.Event | None = None
    ) -> AsyncIterator[dict[str, Any]]:
        """Iterate the events of one session, skipping anything for other sessions."""
        async for envelope in self.transport.subscribe(self.channel_for(session_id), ready):
            if envelope.get("payload", {}).get("sessionId") == session_id:
                yield envelope

    def _queue_for(self, channel: str) -> asyncio.Queue[Any]:
        queue = self._queues.get(channel)
        if queue is None:
            queue = asyncio.Queue(maxsize=self.max_pending)
            self._queues[channel] = queue
            self._drains[channel] = asyncio.create_task(self._drain(channel, queue))
        return queue

    async def _drain(self, channel: str, queue: asyncio.Queue[Any]) -> None:
        while True:
            envelope = await queue.get()
            try:
                if envelope is _CLOSE:
                    return
                await self._send(channel, envelope)
            finally:
                queue.task_done()

    async def _send(self, channel: str, envelope: dict[str, Any]) -> bool:
        event = envelope["event"]
        try:
            await asyncio.wait_for(self.transport.publish(channel, envelope), timeout=self.timeout)
            return True
        except TimeoutError:
            logger.warning(f"Timed out publishing {event} on {channel}")
        except Exception as e:
            logger.warning(f"Failed to publish {event} on {channel}: {e}")
        return False


def create_transport(redis_url: str | None) -> PubSubTransport:
    """Redis when a URL is configured, otherwise the in-process transport."""
    if redis_url:
        logger.info("Using Redis pub/sub for realtime events")
        return RedisPubSub.from_url(redis_url)
    logger.info("Using in-memory pub/sub for realtime events")
    return InMemoryPubSub()
