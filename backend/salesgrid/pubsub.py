from __future__ import annotations

import json
import os
from datetime import date, datetime
from typing import Any
from uuid import UUID

import redis.asyncio as redis

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
SALES_CHANNEL = os.getenv("SALES_CHANNEL", "sales")
_redis = None

async def get_redis():
    global _redis
    if _redis is None:
        if os.getenv("TESTING") == "1":
            from fakeredis import aioredis
            _redis = aioredis.FakeRedis()
        else:
            _redis = redis.from_url(REDIS_URL)
    return _redis


def reset_redis() -> None:
    """Drop the cached client so the next caller binds a fresh one to its event loop."""

    global _redis
    _redis = None


def _json_default(value: Any) -> Any:
    # purpose: convert datetime and uuid values into JSON friendly strings for event payloads
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def serialize_event(event: dict[str, Any]) -> str:
    # purpose: normalise event dictionaries into JSON strings for redis pub/sub
    return json.dumps(event, default=_json_default)


async def publish_sales_event(event: dict[str, Any], channel: str | None = None) -> None:
    """Publish a committed sales grid change to every subscriber of the shared channel."""

    r = await get_redis()
    await r.publish(channel or SALES_CHANNEL, serialize_event(event))

