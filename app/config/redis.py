# app/config/redis.py
"""Shared async Redis pool; the sync service only keeps short-lived OAuth nonces here"""
import redis.asyncio as redis
from typing import Optional

from app.config.settings import get_settings

settings = get_settings()

_pool: Optional[redis.ConnectionPool] = None


def get_redis_pool() -> redis.ConnectionPool:
    global _pool
    if _pool is None:
        _pool = redis.ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            retry_on_timeout=True,
        )
    return _pool


async def get_redis() -> redis.Redis:
    """FastAPI dependency; clients share the module pool"""
    return redis.Redis(connection_pool=get_redis_pool())


class RedisKeys:
    """Key layout for everything the service writes to Redis"""

    # OAuth `state` nonce -> owner_id, single use
    OAUTH_STATE = "calendar_oauth_state:{state}"

    @classmethod
    def oauth_state(cls, state: str) -> str:
        return cls.OAUTH_STATE.format(state=state)
