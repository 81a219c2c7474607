"""Liveness and dependency checks for the sync service"""
import logging
from typing import Dict

import redis.asyncio as redis
from fastapi import APIRouter, Depends
from sqlalchemy import func, text
from sqlalchemy.orm import Session

from app.config.database import get_db
from app.config.redis import get_redis
from app.models import CalendarConnection
from app.utils.encryption import get_cipher

logger = logging.getLogger(__name__)

health_router = APIRouter()


@health_router.get("/")
async def health_check():
    return {"status": "healthy", "service": "calendar-sync"}


def _connection_counts(db: Session) -> Dict[str, int]:
    rows = (
        db.query(CalendarConnection.sync_status, func.count(CalendarConnection.id))
        .filter(CalendarConnection.is_active.is_(True))
        .group_by(CalendarConnection.sync_status)
        .all()
    )
    return {status: count for status, count in rows}


@health_router.get("/detailed")
async def detailed_health_check(
        db: Session = Depends(get_db),
        redis_client: redis.Redis = Depends(get_redis)
):
    """
    Check the database, Redis and the token cipher.

    A failing check marks the service degraded; the endpoint itself always answers 200.
    """
    checks = {"api": "healthy"}
    connections = None

    try:
        db.execute(text("SELECT 1"))
        connections = _connection_counts(db)
        checks["database"] = "healthy"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = f"unhealthy: {e}"

    try:
        await redis_client.ping()
        checks["redis"] = "healthy"
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        checks["redis"] = f"unhealthy: {e}"

    try:
        get_cipher()
        checks["token_encryption"] = "healthy"
    except ValueError as e:
        checks["token_encryption"] = f"unhealthy: {e}"

    degraded = any(status != "healthy" for status in checks.values())
    return {
        **checks,
        "connections": connections,
        "overall": "degraded" if degraded else "healthy",
    }
