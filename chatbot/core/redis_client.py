"""
Redis Client - async singleton.

מחזיק את מוני ה-rate limit, מצב טוקני ה-OAuth2, נעילת הרענון וה-cooldown.
"""
import asyncio
from urllib.parse import urlparse

import redis.asyncio as aioredis

from chatbot.core.config import settings
from chatbot.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def _mask_redis_url(url: str) -> str:
    """redis://:secret@host -> redis://:****@host"""
    parsed = urlparse(url)
    if not parsed.password:
        return url
    return url.replace(f":{parsed.password}@", ":****@", 1)


async def get_redis() -> aioredis.Redis:
    """Redis client משותף (async, connection pool, decode_responses)."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        if _redis_client is not None:
            return _redis_client

        client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        await client.ping()
        _redis_client = client
        logger.info(
            "Redis connected",
            extra_data={"url": _mask_redis_url(settings.REDIS_URL)},
        )
    return _redis_client


async def close_redis() -> None:
    """נקרא ב-shutdown של האפליקציה."""
    global _redis_client
    if _redis_client is None:
        return
    await _redis_client.aclose()
    _redis_client = None
    logger.info("Redis connection closed")
