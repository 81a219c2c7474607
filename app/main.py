"""
HTTP entry point of the calendar sync service

Connections are managed and syncs triggered on demand here; scheduled
syncs and token maintenance run in the Celery worker (app.worker).
"""
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.routing import APIRoute

from app.config.settings import get_settings
from app.core.middleware import correlation_id_middleware, request_logging_middleware
from app.core.monitoring import health_router
from app.api.v1.router import api_v1_router
from app.utils.my_logging import setup_logging

settings = get_settings()

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    api_routes = [route for route in app.routes if isinstance(route, APIRoute)]
    logger.info(f"{settings.APP_NAME} {VERSION} started, {len(api_routes)} routes")
    for route in sorted(api_routes, key=lambda r: r.path):
        logger.debug(f"  {','.join(sorted(route.methods)):12} {route.path}")

    yield

    logger.info(f"{settings.APP_NAME} stopped")


def create_app() -> FastAPI:
    docs_enabled = settings.DEBUG
    app = FastAPI(
        title=settings.APP_NAME,
        description="Bidirectional sync between CRM appointments and Google / Apple calendars",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/docs" if docs_enabled else None,
        redoc_url="/redoc" if docs_enabled else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE"],
        allow_headers=["*"],
    )

    # Last registered runs first, so the correlation ID exists before logging
    app.middleware("http")(request_logging_middleware)
    app.middleware("http")(correlation_id_middleware)

    app.include_router(health_router, prefix="/health", tags=["monitoring"])
    app.include_router(api_v1_router, prefix="/api/v1")

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": VERSION,
            "api": "/api/v1",
            "health": "/health",
            "docs": "/docs" if docs_enabled else None,
        }

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("app.main:app", host=settings.HOST, port=settings.PORT, reload=settings.DEBUG)
