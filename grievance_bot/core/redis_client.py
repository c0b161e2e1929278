"""
Redis Client - shared async singleton.

Uses REDIS_URL from settings. Session store, per-user lock and the Celery
AI job all go through this one connection pool.
"""
import asyncio
from urllib.parse import urlparse

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from grievance_bot.core.config import settings
from grievance_bot.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def _mask_redis_url(url: str) -> str:
    """Hide the password in REDIS_URL for logs (redis://:****@host:6379)"""
    try:
        parsed = urlparse(url)
        if parsed.password:
            return url.replace(f":{parsed.password}@", ":****@")
        return url
    except ValueError:
        return "redis://****"


def redis_configured() -> bool:
    return bool(settings.REDIS_URL)


async def get_redis() -> aioredis.Redis:
    """
    Return the Redis client singleton (async, connection pool).

    Raises:
        redis.exceptions.RedisError: Redis is unreachable on first use.
        RuntimeError: REDIS_URL is empty.
    """
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    if not redis_configured():
        raise RuntimeError("REDIS_URL is not configured")

    async with _init_lock:
        # Re-check after the lock, a concurrent caller may have connected
        if _redis_client is not None:
            return _redis_client

        client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=settings.REDIS_CONNECT_TIMEOUT_SECONDS,
            socket_timeout=settings.REDIS_CONNECT_TIMEOUT_SECONDS,
        )
        try:
            await client.ping()
        except RedisError:
            await client.aclose()
            raise
        _redis_client = client
        logger.info("Redis client initialized", extra_data={
            "url": _mask_redis_url(settings.REDIS_URL),
        })
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection, called on app shutdown and after Celery tasks"""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
