"""
Version 1 of the HTTP API

Everything lives under /calendar; the index below is what clients hit to
discover it.
"""
from fastapi import APIRouter

from app.api.v1 import calendar

api_v1_router = APIRouter()

api_v1_router.include_router(calendar.router, prefix="/calendar", tags=["Calendar"])


@api_v1_router.get("/", tags=["Info"])
async def api_info():
    return {
        "version": "1.0",
        "providers": ["google", "apple"],
        "endpoints": {
            "connections": "/api/v1/calendar/connections",
            "sync": "/api/v1/calendar/sync/{connection_id}",
            "tokens": "/api/v1/calendar/tokens/health",
            "health": "/api/v1/calendar/health",
        },
    }
