"""
Infrastructure layer - external system integrations (Redis, Stripe).
"""

from .redis_client import get_redis, ping_redis, RedisClient

__all__ = ['get_redis', 'ping_redis', 'RedisClient']
