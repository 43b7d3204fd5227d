"""
Redis Client

Shared redis.asyncio connection factory for services that need Redis
(job broker, caches).

Usage:
    from core.redis_client import get_redis_client

    redis = await get_redis_client()
    await redis.ping()
"""

import logging
from typing import Optional

import redis.asyncio as redis

from core.config import InfraConfig

logger = logging.getLogger(__name__)


def build_redis_url(config: InfraConfig) -> str:
    """Build a redis:// URL from infrastructure config"""
    auth = f":{config.redis_password}@" if config.redis_password else ""
    return f"redis://{auth}{config.redis_host}:{config.redis_port}/{config.redis_db}"


_redis_client: Optional[redis.Redis] = None


async def get_redis_client(config: Optional[InfraConfig] = None) -> redis.Redis:
    """Get or create the shared Redis connection"""
    global _redis_client

    if _redis_client is None:
        config = config or InfraConfig.from_env()
        _redis_client = redis.from_url(build_redis_url(config), decode_responses=True)
        logger.info(f"Redis client initialized: {config.redis_host}:{config.redis_port}/{config.redis_db}")

    return _redis_client


async def close_redis_client() -> None:
    """Close the shared Redis connection"""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis client closed")
