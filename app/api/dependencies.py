# ============================================================================
# FILE: app/api/dependencies.py
# Shared FastAPI dependencies for the calendar routes
# ============================================================================
from typing import Dict

import redis.asyncio as redis
from fastapi import Depends

from app.config.redis import get_redis
from app.services.calendar.base import ProviderAdapter
from app.services.calendar.oauth_state import OAuthStateService
from app.services.calendar.registry import get_default_adapters


def get_calendar_adapters() -> Dict[str, ProviderAdapter]:
    """Provider adapters keyed by provider name (overridden in tests)"""
    return get_default_adapters()


async def get_oauth_state_service(
        redis_client: redis.Redis = Depends(get_redis)
) -> OAuthStateService:
    return OAuthStateService(redis_client)
