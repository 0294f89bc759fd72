"""
Shared Redis client for the response cache and the telemetry list.
"""

from __future__ import annotations

from typing import Optional

from redis.asyncio import Redis

from .settings import settings

_redis_client: Optional[Redis] = None


def get_redis_client() -> Redis:
    """
    Return a lazily-created global Redis client.

    Construction does not connect; the first command does. Cached bodies
    are stored base64-encoded, so responses are decoded to str.
    """
    global _redis_client
    if _redis_client is None:
        _redis_client = Redis.from_url(settings.redis_url, decode_responses=True)
    return _redis_client


async def close_redis_client() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


__all__ = ["close_redis_client", "get_redis_client"]
