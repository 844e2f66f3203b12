"""Shared async Redis connection."""
import logging
from typing import Optional

import redis.asyncio as redis_lib

from hireloop.core.config import get_settings

logger = logging.getLogger(__name__)

_redis: Optional[redis_lib.Redis] = None


def get_redis() -> redis_lib.Redis:
    """Get the process-wide Redis client (lazy, connection-pooled)."""
    global _redis
    if _redis is None:
        url = get_settings().redis_url
        _redis = redis_lib.from_url(url, decode_responses=True, socket_timeout=3)
        logger.info("Redis client initialized")
    return _redis


def set_redis(client) -> None:
    """Install a specific client (tests, alternative deployments)."""
    global _redis
    _redis = client


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None
