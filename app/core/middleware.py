# app/core/middleware.py
"""HTTP middleware: correlation IDs and access logging for the calendar API"""
import uuid
import time
import logging
from starlette.requests import Request

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


async def correlation_id_middleware(request: Request, call_next):
    """Reuse the caller's X-Correlation-ID or mint one, and echo it back"""
    correlation_id = request.headers.get(CORRELATION_HEADER) or uuid.uuid4().hex
    request.state.correlation_id = correlation_id

    response = await call_next(request)
    response.headers[CORRELATION_HEADER] = correlation_id
    return response


async def request_logging_middleware(request: Request, call_next):
    started = time.perf_counter()
    tag = getattr(request.state, "correlation_id", "-")
    route = f"{request.method} {request.url.path}"
    logger.info(f"[{tag}] {route}")

    response = await call_next(request)

    elapsed_ms = (time.perf_counter() - started) * 1000
    log = logger.warning if response.status_code >= 500 else logger.info
    log(f"[{tag}] {route} -> {response.status_code} in {elapsed_ms:.1f}ms")
    return response
