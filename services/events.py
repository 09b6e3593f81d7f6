"""Redis Streams transport for notification events.

Outbound events go to ``{prefix}:{topic}`` with the routing key and a JSON
payload as stream fields. Inbound topics are read through a consumer group so
several service instances share the work.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Iterable, Mapping

from redis.asyncio import Redis
from redis.exceptions import RedisError, ResponseError

from notifications import PublishError

logger = logging.getLogger(__name__)

EventHandler = Callable[[str, Mapping[str, Any]], Awaitable[None]]


def _decode(value: Any) -> str:
    return value.decode() if hasattr(value, "decode") else str(value)


def stream_key(prefix: str, topic: str) -> str:
    return f"{prefix}:{topic}" if prefix else topic


class RedisEventPublisher:
    def __init__(self, redis: Redis, *, stream_prefix: str = "events", maxlen: int | None = 10000):
        self.redis = redis
        self.stream_prefix = stream_prefix
        self.maxlen = maxlen

    async def publish(self, topic: str, routing_key: str, payload: Mapping[str, Any]) -> str:
        key = stream_key(self.stream_prefix, topic)
        fields = {"routing_key": routing_key, "payload": json.dumps(dict(payload), default=str)}
        try:
            msg_id = await self.redis.xadd(key, fields, maxlen=self.maxlen, approximate=True)
        except RedisError as exc:
            raise PublishError(f"could not publish {routing_key} to {key}: {exc}") from exc
        decoded = _decode(msg_id)
        logger.debug("Published %s to %s: %s", routing_key, key, decoded)
        return decoded


async def ensure_consumer_group(redis: Redis, stream: str, group: str) -> None:
    try:
        await redis.xgroup_create(stream, group, id="0", mkstream=True)
        logger.info("Created consumer group %s on %s", group, stream)
    except ResponseError as exc:
        if "BUSYGROUP" not in str(exc):
            raise


def parse_entry(fields: Mapping[Any, Any]) -> dict[str, Any] | None:
    """Decode the ``payload`` field of a stream entry; ``None`` when unusable."""
    raw = fields.get(b"payload") if b"payload" in fields else fields.get("payload")
    if raw is None:
        return None
    try:
        parsed = json.loads(_decode(raw))
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


class RedisEventConsumer:
    """Background reader of inbound topics.

    Entries are acknowledged after the handler returns, also when it raised,
    so one poison message cannot block the group.
    """

    def __init__(
        self,
        redis: Redis,
        topics: Iterable[str],
        handler: EventHandler,
        *,
        group: str,
        consumer: str,
        stream_prefix: str = "events",
        count: int = 10,
        block_ms: int = 5000,
        error_delay: float = 5.0,
    ):
        self.redis = redis
        self.topics = tuple(dict.fromkeys(topics))
        self.handler = handler
        self.group = group
        self.consumer = consumer
        self.stream_prefix = stream_prefix
        self.count = count
        self.block_ms = block_ms
        self.error_delay = error_delay
        self._streams = {stream_key(stream_prefix, topic): topic for topic in self.topics}
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._stop_event.clear()
            self._task = asyncio.create_task(self.run(), name="event-consumer")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def ensure_groups(self) -> None:
        for stream in self._streams:
            await ensure_consumer_group(self.redis, stream, self.group)

    async def run(self) -> None:
        logger.info("Event consumer %s/%s listening on %s", self.group, self.consumer, ", ".join(self.topics))
        groups_ready = False
        while not self._stop_event.is_set():
            try:
                if not groups_ready:
                    await self.ensure_groups()
                    groups_ready = True
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except RedisError:
                logger.exception("Event consumer lost Redis; retrying in %.0fs", self.error_delay)
                groups_ready = False
                await asyncio.sleep(self.error_delay)

    async def poll_once(self) -> int:
        raw = await self.redis.xreadgroup(
            self.group,
            self.consumer,
            {stream: ">" for stream in self._streams},
            count=self.count,
            block=self.block_ms if self.block_ms > 0 else None,
        )
        handled = 0
        for stream_name, entries in raw or []:
            stream = _decode(stream_name)
            topic = self._streams.get(stream, stream)
            for msg_id, fields in entries:
                await self._handle_entry(stream, topic, msg_id, fields)
                handled += 1
        return handled

    async def _handle_entry(self, stream: str, topic: str, msg_id: Any, fields: Mapping[Any, Any]) -> None:
        payload = parse_entry(fields)
        if payload is None:
            logger.warning("Entry %s on %s has no usable payload; acknowledging", _decode(msg_id), stream)
        else:
            try:
                await self.handler(topic, payload)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                logger.exception("Handler failed for %s entry %s", topic, _decode(msg_id))
        await self.redis.xack(stream, self.group, msg_id)


__all__ = [
    "EventHandler",
    "RedisEventConsumer",
    "RedisEventPublisher",
    "ensure_consumer_group",
    "parse_entry",
    "stream_key",
]
