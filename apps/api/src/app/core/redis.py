"""
Redis Configuration

Async Redis client used for short-window counters: 2FA send limits and
per-user limits on outbound dispatch endpoints. Durable telephony state
(webhook tokens, sessions) is kept in the database, never here.
"""

import logging

from redis.asyncio import Redis, from_url

from app.core.config import settings

logger = logging.getLogger(__name__)

redis_client: Redis | None = None


async def init_redis() -> Redis:
    """
    Initialize the Redis connection and verify it with a PING.

    Call this on application startup.
    """
    global redis_client
    redis_client = from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    await redis_client.ping()
    return redis_client


async def close_redis() -> None:
    """Close the Redis connection."""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None
