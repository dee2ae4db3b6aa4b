"""
Redis client for the advisory admission gate.
Separated from business logic for clean architecture.
"""

from typing import Optional

import redis.asyncio as redis

from studio_booking.core.config import get_settings
from studio_booking.core.logging import get_logger

logger = get_logger(__name__)


class RedisClient:
    """Lazily-created async Redis client with connection pooling."""

    _instance: Optional[redis.Redis] = None

    @classmethod
    def get_client(cls) -> Optional[redis.Redis]:
        """Get or create the client. Returns None if Redis is disabled."""
        settings = get_settings()
        if not settings.REDIS_ENABLED:
            return None
        if cls._instance is None:
            cls._instance = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30,
            )
        return cls._instance

    @classmethod
    async def close(cls):
        """Close Redis connection."""
        if cls._instance is not None:
            await cls._instance.aclose()
            cls._instance = None


def get_redis() -> Optional[redis.Redis]:
    """Get Redis client instance."""
    return RedisClient.get_client()


async def ping_redis() -> bool:
    client = get_redis()
    if client is None:
        return False
    try:
        await client.ping()
        return True
    except redis.RedisError as e:
        logger.error("redis_connection_failed", error=str(e))
        return False


async def get_redis_status() -> dict:
    """Redis state for the health endpoint."""
    client = get_redis()
    if client is None:
        return {"status": "disabled"}
    try:
        info = await client.info("stats")
        return {
            "status": "connected",
            "ops_per_sec": info.get("instantaneous_ops_per_sec", 0),
        }
    except redis.RedisError as e:
        return {"status": "error", "error": str(e)}
