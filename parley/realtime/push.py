from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from enum import StrEnum
from typing import Protocol, cast

import redis.asyncio as redis_async

from parley.core.config import settings
from parley.core.security import JSONValue
from parley.metrics.prometheus import record_push
from parley.realtime.connections import ConnectionRegistry


logger = logging.getLogger(__name__)


class PushResult(StrEnum):
    DELIVERED = "delivered"
    STALE = "stale"


class _AsyncPubSub(Protocol):
    async def subscribe(self, *args: object, **kwargs: object) -> object: ...

    async def unsubscribe(self, *args: object, **kwargs: object) -> object: ...

    async def aclose(self) -> object: ...

    def listen(self) -> AsyncIterator[object]: ...


class PushTransport(Protocol):
    name: str

    async def deliver(self, connection_id: str, message: dict[str, JSONValue]) -> bool:
        """Hand `message` to the connection; False means nobody is listening."""
        ...

    def subscribe(
        self, connection_id: str
    ) -> AbstractAsyncContextManager[AsyncIterator[dict[str, JSONValue]]]: ...


def connection_channel(connection_id: str) -> str:
    return f"parley:ws:{connection_id}"


def encode_message(message: dict[str, JSONValue]) -> str:
    return json.dumps(message, separators=(",", ":"), ensure_ascii=False)


def decode_message(data: object) -> dict[str, JSONValue] | None:
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")
    if not isinstance(data, str) or data.strip() == "":
        return None
    try:
        obj = cast(object, json.loads(data))
    except ValueError:
        return None
    if not isinstance(obj, dict):
        return None
    return cast(dict[str, JSONValue], obj)


def get_async_redis(url: str | None = None) -> redis_async.Redis:
    # One client per subscriber; pools are tied to the event loop that created them.
    return redis_async.Redis.from_url(
        url or settings.redis_url,
        decode_responses=True,
        socket_connect_timeout=1.0,
        socket_timeout=None,
        health_check_interval=30,
    )


class RedisPushTransport:
    """Pub/sub fan-out: every websocket process subscribes to its own connections."""

    name: str = "redis"

    def __init__(self, url: str | None = None):
        self.url: str = url or settings.redis_url

    async def deliver(self, connection_id: str, message: dict[str, JSONValue]) -> bool:
        r = get_async_redis(self.url)
        try:
            receivers = await r.publish(connection_channel(connection_id), encode_message(message))
        finally:
            await r.aclose()
        # Publish returns the subscriber count; zero means the socket is gone.
        return int(receivers) > 0

    @asynccontextmanager
    async def subscribe(self, connection_id: str) -> AsyncIterator[AsyncIterator[dict[str, JSONValue]]]:
        r = get_async_redis(self.url)
        channel = connection_channel(connection_id)
        pubsub = cast(_AsyncPubSub, cast(object, r.pubsub(ignore_subscribe_messages=True)))
        _ = await pubsub.subscribe(channel)

        async def _messages() -> AsyncIterator[dict[str, JSONValue]]:
            async for msg in pubsub.listen():
                if not isinstance(msg, dict):
                    continue
                msg_dict = cast(dict[str, object], msg)
                if msg_dict.get("type") != "message":
                    continue
                decoded = decode_message(msg_dict.get("data"))
                if decoded is not None:
                    yield decoded

        try:
            yield _messages()
        finally:
            _ = await pubsub.unsubscribe(channel)
            _ = await pubsub.aclose()
            await r.aclose()


class LocalPushTransport:
    """In-process queues; only valid when every socket lives in this process."""

    name: str = "local"

    def __init__(self) -> None:
        self._queues: dict[str, asyncio.Queue[dict[str, JSONValue]]] = {}

    async def deliver(self, connection_id: str, message: dict[str, JSONValue]) -> bool:
        queue = self._queues.get(connection_id)
        if queue is None:
            return False
        queue.put_nowait(message)
        return True

    @asynccontextmanager
    async def subscribe(self, connection_id: str) -> AsyncIterator[AsyncIterator[dict[str, JSONValue]]]:
        queue: asyncio.Queue[dict[str, JSONValue]] = asyncio.Queue()
        self._queues[connection_id] = queue

        async def _messages() -> AsyncIterator[dict[str, JSONValue]]:
            while True:
                yield await queue.get()

        try:
            yield _messages()
        finally:
            if self._queues.get(connection_id) is queue:
                del self._queues[connection_id]


class PushChannel:
    """Deliver events to a live connection and forget connections that are gone."""

    def __init__(self, registry: ConnectionRegistry, transport: PushTransport):
        self.registry: ConnectionRegistry = registry
        self.transport: PushTransport = transport

    async def send(self, connection_id: str, payload: dict[str, JSONValue]) -> PushResult:
        record = await asyncio.to_thread(self.registry.get, connection_id)
        delivered = record is not None and await self.transport.deliver(connection_id, payload)
        if not delivered:
            _ = await asyncio.to_thread(self.registry.deregister, connection_id)
            logger.info("push target gone connection=%s", connection_id)
            record_push(transport=self.transport.name, result=PushResult.STALE.value)
            return PushResult.STALE

        record_push(transport=self.transport.name, result=PushResult.DELIVERED.value)
        return PushResult.DELIVERED


_transport: PushTransport | None = None


def get_push_transport() -> PushTransport:
    global _transport
    if _transport is None:
        _transport = RedisPushTransport() if settings.push_transport == "redis" else LocalPushTransport()
    return _transport


def get_push_channel() -> PushChannel:
    return PushChannel(ConnectionRegistry(), get_push_transport())
