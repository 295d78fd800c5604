from __future__ import annotations

import asyncio
import json
import os
from contextlib import suppress
from datetime import datetime, timezone
from typing import Any, AsyncIterator

import redis.asyncio as redis

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
_redis = None
_redis_loop = None


async def get_redis():
    # clients are bound to the loop that created their connections
    global _redis, _redis_loop
    loop = asyncio.get_running_loop()
    if _redis is None or _redis_loop is not loop:
        if os.getenv("TESTING") == "1":
            from fakeredis import aioredis
            _redis = aioredis.FakeRedis()
        else:
            _redis = redis.from_url(REDIS_URL)
        _redis_loop = loop
    return _redis


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _serialize_event(event: dict[str, Any]) -> str:
    return json.dumps(event, default=_json_default)


def node_channel(kind: str) -> str:
    return f"nodes:{kind}"


async def publish_node_event(kind: str, node_id: str, static_id: str, action: str) -> None:
    """Announce a committed versioned-node change to downstream indexers."""

    r = await get_redis()
    event = {
        "kind": kind,
        "id": node_id,
        "static_id": static_id,
        "action": action,
        "published_at": datetime.now(timezone.utc),
    }
    await r.publish(node_channel(kind), _serialize_event(event))


async def iter_node_events(kind: str) -> AsyncIterator[str]:
    r = await get_redis()
    channel = node_channel(kind)
    pubsub = r.pubsub()
    await pubsub.subscribe(channel)
    try:
        async for message in pubsub.listen():
            if message.get("type") != "message":
                continue
            data = message.get("data")
            if isinstance(data, bytes):
                yield data.decode()
            else:
                yield str(data)
    finally:
        with suppress(Exception):
            await pubsub.unsubscribe(channel)
        with suppress(AttributeError):
            await pubsub.close()
