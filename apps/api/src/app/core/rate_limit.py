"""
Rate Limiting Module

Sliding-window rate limiting backed by Redis, with an in-memory fallback for
local development when Redis is unavailable.

SECURITY: Rate limiting protects endpoints that cost money or leak signal:
- 2FA code delivery (prevents SMS/call bombing of a user's phone)
- Robocall dispatch (prevents mass calling from a compromised account)
"""

import logging
import time
import uuid
from collections.abc import Callable
from functools import wraps
from typing import Any

from fastapi import HTTPException, Request, status

from app.core import redis as redis_module

logger = logging.getLogger(__name__)

# In-memory fallback storage: {key: [timestamp, ...]}
# Note: only correct for a single process.
_memory_store: dict[str, list[float]] = {}


class RateLimitExceeded(HTTPException):
    """Exception raised when an endpoint rate limit is exceeded."""

    def __init__(self, limit: int, window_seconds: int):
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "RATE_LIMIT_EXCEEDED",
                "message": f"Rate limit exceeded. Maximum {limit} requests per {window_seconds} seconds.",
                "retry_after_seconds": window_seconds,
            },
            headers={"Retry-After": str(window_seconds)},
        )


async def _check_rate_limit_redis(
    client,
    key: str,
    limit: int,
    window_seconds: int,
) -> bool:
    """
    Check rate limit using a Redis sorted set as a sliding window.

    Returns:
        True if request is allowed, False if rate limit exceeded
    """
    now = time.time()
    window_start = now - window_seconds

    pipe = client.pipeline()
    pipe.zremrangebyscore(key, 0, window_start)
    pipe.zcard(key)
    # Unique member so concurrent requests in the same instant are all counted
    pipe.zadd(key, {f"{now}:{uuid.uuid4().hex}": now})
    pipe.expire(key, window_seconds)

    results = await pipe.execute()
    current_count = results[1]

    return current_count < limit


def _check_rate_limit_memory(
    key: str,
    limit: int,
    window_seconds: int,
) -> bool:
    """Fallback sliding window held in process memory."""
    now = time.time()
    window_start = now - window_seconds

    timestamps = [ts for ts in _memory_store.get(key, []) if ts > window_start]

    if len(timestamps) >= limit:
        _memory_store[key] = timestamps
        return False

    timestamps.append(now)
    _memory_store[key] = timestamps
    return True


async def check_rate_limit(
    key: str,
    limit: int,
    window_seconds: int,
    fail_closed: bool = False,
) -> bool:
    """
    Check if a request is within rate limits.

    Tries Redis first and falls back to in-memory storage.

    Args:
        key: Unique key for this rate limit (e.g., "2fa_send:user_123")
        limit: Maximum requests allowed in the window
        window_seconds: Time window in seconds
        fail_closed: Deny the request when Redis is unavailable instead of
            falling back to process memory

    Returns:
        True if request is allowed, False if rate limit exceeded
    """
    client = redis_module.redis_client

    if client is not None:
        try:
            return await _check_rate_limit_redis(client, key, limit, window_seconds)
        except Exception as e:
            logger.warning(f"Redis rate limit check failed: {e}")

    if fail_closed:
        logger.error(f"Rate limit backend unavailable, denying request for {key}")
        return False

    return _check_rate_limit_memory(key, limit, window_seconds)


def rate_limit(
    limit: int = 10,
    window_seconds: int = 60,
    key_func: Callable[[Request], str] | None = None,
):
    """
    Rate limiting decorator for FastAPI endpoints.

    Usage:
        @router.post("/robocalls")
        @rate_limit(limit=5, window_seconds=60, key_func=user_rate_limit_key)
        async def send(request: Request, ...):
            ...

    Raises:
        RateLimitExceeded: When rate limit is exceeded (HTTP 429)
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            request: Request | None = kwargs.get("request")
            if request is None:
                request = next((arg for arg in args if isinstance(arg, Request)), None)

            if request is None:
                logger.warning(
                    f"Rate limit decorator on {func.__name__} couldn't find Request object"
                )
                return await func(*args, **kwargs)

            if key_func:
                key = key_func(request)
            else:
                client_ip = request.client.host if request.client else "unknown"
                key = f"rate_limit:{client_ip}:{request.url.path}"

            if not await check_rate_limit(key, limit, window_seconds):
                logger.warning(f"Rate limit exceeded for {key}: {limit}/{window_seconds}s")
                raise RateLimitExceeded(limit, window_seconds)

            return await func(*args, **kwargs)

        return wrapper

    return decorator


def user_rate_limit_key(request: Request) -> str:
    """
    Rate limit key scoped to the authenticated user and endpoint.

    Falls back to client IP when no user id was set by the auth dependency.
    """
    user_id = getattr(request.state, "user_id", None)
    if user_id:
        return f"user_action:{user_id}:{request.url.path}"

    client_ip = request.client.host if request.client else "unknown"
    return f"user_action:{client_ip}:{request.url.path}"


__all__ = [
    "rate_limit",
    "check_rate_limit",
    "user_rate_limit_key",
    "RateLimitExceeded",
]
