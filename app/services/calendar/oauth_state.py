# app/services/calendar/oauth_state.py
"""One-time OAuth `state` nonces stored in Redis"""
import secrets
import logging
from typing import Optional

import redis.asyncio as redis

from app.config.redis import RedisKeys
from app.config.settings import get_settings

settings = get_settings()

logger = logging.getLogger(__name__)


class OAuthStateService:

    def __init__(self, redis_client: redis.Redis, ttl_seconds: Optional[int] = None):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds or settings.OAUTH_STATE_TTL_SECONDS

    async def issue(self, owner_id: str) -> str:
        state = secrets.token_urlsafe(32)
        await self.redis.set(RedisKeys.oauth_state(state), owner_id, ex=self.ttl_seconds)
        return state

    async def consume(self, state: str) -> Optional[str]:
        """Return the owner bound to `state` and invalidate it"""
        key = RedisKeys.oauth_state(state)
        owner_id = await self.redis.get(key)
        if owner_id is None:
            logger.warning("OAuth callback with unknown or expired state")
            return None
        await self.redis.delete(key)
        if isinstance(owner_id, bytes):
            owner_id = owner_id.decode("utf-8")
        return owner_id
