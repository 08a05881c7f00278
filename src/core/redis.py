"""Redis client and the outbound allocation event channel."""
import json
import logging
import time
from collections import deque
from datetime import date, datetime
from typing import Any
from uuid import UUID

import redis.asyncio as redis

from src.config.settings import settings

logger = logging.getLogger(__name__)

# Seconds to stay on the memory buffer after a failed connection
RETRY_BACKOFF_SECONDS = 30.0

# Events kept while Redis is unavailable, flushed on the next good publish
_memory_events: deque[dict[str, Any]] = deque(maxlen=1000)
_client: redis.Redis | None = None
_unavailable_until = 0.0


async def get_redis() -> redis.Redis | None:
    """Shared Redis client, or None while Redis is unreachable.

    A failed connection switches to the memory buffer for
    ``RETRY_BACKOFF_SECONDS``; after that Redis is tried again.
    """
    global _client, _unavailable_until

    if _client is not None:
        return _client
    if time.monotonic() < _unavailable_until:
        return None

    client = redis.Redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        await client.ping()
    except Exception as e:
        await client.aclose()
        _unavailable_until = time.monotonic() + RETRY_BACKOFF_SECONDS
        logger.warning("Redis not available, buffering events for %.0fs: %s", RETRY_BACKOFF_SECONDS, e)
        return None

    _client = client
    return _client


async def close_redis() -> None:
    """Drop the shared client. The next call reconnects."""
    global _client

    client, _client = _client, None
    if client is not None:
        await client.aclose()


def _json_default(value: Any) -> str:
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class EventChannel:
    """Fire-and-forget publisher for allocation facts.

    Consumers (cache invalidation, payroll, notifications) subscribe to
    ``settings.EVENTS_CHANNEL``. Publishing never raises.
    """

    @classmethod
    async def publish(cls, event_type: str, payload: dict[str, Any]) -> bool:
        """Publish an event. Returns True when Redis accepted it."""
        message = {"type": event_type, "payload": payload}
        try:
            body = json.dumps(message, default=_json_default)
        except TypeError as e:
            logger.error("Event %s not serializable: %s", event_type, e)
            return False

        client = await get_redis()
        if client is None:
            _memory_events.append(message)
            logger.info("Event %s buffered in memory (redis unavailable)", event_type)
            return False

        try:
            await cls._flush_buffer(client)
            await client.publish(settings.EVENTS_CHANNEL, body)
            return True
        except Exception as e:
            _memory_events.append(message)
            logger.warning("Event %s publish failed, buffered in memory: %s", event_type, e)
            await close_redis()
            return False

    @classmethod
    async def _flush_buffer(cls, client: redis.Redis) -> None:
        """Send events buffered during an outage, oldest first."""
        while _memory_events:
            await client.publish(settings.EVENTS_CHANNEL, json.dumps(_memory_events[0], default=_json_default))
            _memory_events.popleft()

    @classmethod
    def buffered(cls) -> list[dict[str, Any]]:
        """Events kept in memory while Redis was unavailable."""
        return list(_memory_events)
