"""Redis client initialization for startup."""

import logging
from typing import Optional

import redis.asyncio as redis

from src.configuration.config import Settings

logger = logging.getLogger(__name__)


async def initialize_redis_client(settings: Settings) -> Optional[redis.Redis]:
    """
    Initialize the Redis client backing the project lock and dev server state.

    Returns:
        The Redis client, or None if the server cannot be reached.
    """
    redis_client = redis.from_url(settings.redis_url, decode_responses=True)
    try:
        await redis_client.ping()
    except Exception as e:
        logger.warning(f"Failed to initialize Redis client: {e}")
        await redis_client.aclose()
        return None
    logger.info("Redis client initialized for sandbox locks")
    return redis_client
