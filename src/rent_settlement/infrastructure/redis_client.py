"""Redis client for the payment notification stream.

Usage:
    from rent_settlement.infrastructure.redis_client import get_redis, close_redis

    redis = get_redis()
    await append_to_stream({"status": "confirmed", ...})
"""

from __future__ import annotations

import redis.asyncio as aioredis

from rent_settlement.config import get_settings
from rent_settlement.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    _redis_client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    await _redis_client.ping()
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Notification Stream ---


async def append_to_stream(
    fields: dict[str, str],
    client: aioredis.Redis | None = None,
    stream: str | None = None,
) -> str:
    """XADD one entry to the notification stream, trimming it approximately.

    Returns the stream entry id assigned by Redis.
    """
    settings = get_settings()
    redis = client or get_redis()
    return await redis.xadd(
        stream or settings.redis_notification_stream,
        fields,
        maxlen=settings.redis_stream_maxlen,
        approximate=True,
    )
