# app/api/v1/calendar.py
from typing import Dict, Optional
import logging

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.api.dependencies import get_calendar_adapters, get_oauth_state_service
from app.config.database import get_db
from app.core.exceptions import (
    AppointmentNotFoundError,
    AuthenticationError,
    CalendarSyncError,
    ConnectionExpiredError,
    ConnectionNotFoundError,
    UnsupportedProviderError,
    get_error_message,
)
from app.schemas.calendar_sync import AppleConnectRequest, ConnectionUpdateRequest, SyncOptions
from app.services.calendar.base import ProviderAdapter
from app.services.calendar.connection_service import ConnectionService
from app.services.calendar.oauth_state import OAuthStateService
from app.services.sync.sync_log_service import SyncLogService
from app.services.sync.sync_orchestrator import SyncOrchestrator
from app.services.sync.token_maintenance_service import TokenMaintenanceService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["calendar"])


def _http_error(error: Exception) -> HTTPException:
    """Translate sync engine errors into HTTP responses"""
    message = get_error_message(error)
    if isinstance(error, (ConnectionNotFoundError, AppointmentNotFoundError)):
        return HTTPException(status_code=404, detail=message)
    if isinstance(error, ConnectionExpiredError):
        return HTTPException(status_code=409, detail=message)
    if isinstance(error, (UnsupportedProviderError, AuthenticationError, ValueError)):
        return HTTPException(status_code=400, detail=message)
    logger.error(f"Calendar provider failure: {message}")
    return HTTPException(status_code=502, detail=message)


# ========== GOOGLE CALENDAR ==========
@router.get("/google/authorize")
async def initiate_google_auth(
        owner_id: str = Query(..., description="CRM user connecting the calendar"),
        db: Session = Depends(get_db),
        adapters: Dict[str, ProviderAdapter] = Depends(get_calendar_adapters),
        state_service: OAuthStateService = Depends(get_oauth_state_service)
):
    """Returns authorization URL for the owner to visit"""
    service = ConnectionService(db, adapters)
    try:
        auth_url = await service.start_google_authorization(owner_id, state_service)
    except (CalendarSyncError, ValueError) as e:
        raise _http_error(e) from e
    return {"authorization_url": auth_url}


@router.get("/google/callback")
async def google_callback(
        code: str,
        state: str,
        db: Session = Depends(get_db),
        adapters: Dict[str, ProviderAdapter] = Depends(get_calendar_adapters),
        state_service: OAuthStateService = Depends(get_oauth_state_service)
):
    """Google redirects here after authorization"""
    service = ConnectionService(db, adapters)
    try:
        connection = await service.complete_google_authorization(code, state, state_service)
    except (CalendarSyncError, ValueError) as e:
        raise _http_error(e) from e

    return {
        "success": True,
        "connection_id": str(connection.id),
        "calendar_id": connection.calendar_id,
    }


# ========== APPLE CALENDAR ==========
@router.post("/apple/connect")
async def connect_apple_calendar(
        request: AppleConnectRequest,
        db: Session = Depends(get_db),
        adapters: Dict[str, ProviderAdapter] = Depends(get_calendar_adapters)
):
    """Connect iCloud via Apple ID and app-specific password"""
    service = ConnectionService(db, adapters)
    try:
        connection = await service.connect_apple(request)
    except (CalendarSyncError, ValueError) as e:
        raise _http_error(e) from e
    return {"success": True, "connection": connection.to_dict()}


# ========== CONNECTIONS ==========
@router.get("/connections")
async def list_connections(
        owner_id: str = Query(...),
        include_inactive: bool = Query(False),
        db: Session = Depends(get_db),
        adapters: Dict[str, ProviderAdapter] = Depends(get_calendar_adapters)
):
    service = ConnectionService(db, adapters)
    connections = service.list_connections(owner_id, include_inactive=include_inactive)
    return {"connections": [c.to_dict() for c in connections]}


@router.patch("/connections/{connection_id}")
async def update_connection(
        connection_id: str,
        update: ConnectionUpdateRequest,
        db: Session = Depends(get_db),
        adapters: Dict[str, ProviderAdapter] = Depends(get_calendar_adapters)
):
    service = ConnectionService(db, adapters)
    try:
        connection = service.update_connection(connection_id, update)
    except CalendarSyncError as e:
        raise _http_error(e) from e
    return {"success": True, "connection": connection.to_dict()}


@router.delete("/connections/{connection_id}")
async def disconnect_calendar(
        connection_id: str,
        db: Session = Depends(get_db),
        adapters: Dict[str, ProviderAdapter] = Depends(get_calendar_adapters)
):
    """Soft-disconnect; the connection row and its sync history are kept"""
    service = ConnectionService(db, adapters)
    try:
        await service.disconnect(connection_id)
    except CalendarSyncError as e:
        raise _http_error(e) from e
    return {"success": True}


@router.post("/connections/{connection_id}/test")
async def test_connection(
        connection_id: str,
        db: Session = Depends(get_db),
        adapters: Dict[str, ProviderAdapter] = Depends(get_calendar_adapters)
):
    service = ConnectionService(db, adapters)
    try:
        return await service.test_connection(connection_id)
    except CalendarSyncError as e:
        raise _http_error(e) from e


@router.post("/connections/{connection_id}/refresh-token")
async def refresh_connection_token(
        connection_id: str,
        db: Session = Depends(get_db),
        adapters: Dict[str, ProviderAdapter] = Depends(get_calendar_adapters)
):
    service = ConnectionService(db, adapters)
    try:
        health = await service.refresh_token(connection_id)
    except CalendarSyncError as e:
        raise _http_error(e) from e
    return {"success": True, "token_health": health.model_dump(mode="json")}


# ========== SYNC ==========
@router.post("/sync/owner/{owner_id}")
async def sync_owner_calendars(
        owner_id: str,
        options: Optional[SyncOptions] = Body(None),
        db: Session = Depends(get_db),
        adapters: Dict[str, ProviderAdapter] = Depends(get_calendar_adapters)
):
    orchestrator = SyncOrchestrator(db, adapters)
    results = await orchestrator.sync_owner_calendars(owner_id, options)
    return {
        "owner_id": owner_id,
        "results": {cid: result.model_dump() for cid, result in results.items()},
    }


@router.post("/sync/{connection_id}")
async def sync_connection(
        connection_id: str,
        options: Optional[SyncOptions] = Body(None),
        db: Session = Depends(get_db),
        adapters: Dict[str, ProviderAdapter] = Depends(get_calendar_adapters)
):
    """Run a sync for one connection and return its SyncResult"""
    connection = _get_connection_or_404(db, adapters, connection_id)
    orchestrator = SyncOrchestrator(db, adapters)
    result = await orchestrator.sync_connection(connection, options)
    return result.model_dump()


@router.post("/appointments/{appointment_id}/sync")
async def sync_single_appointment(
        appointment_id: str,
        db: Session = Depends(get_db),
        adapters: Dict[str, ProviderAdapter] = Depends(get_calendar_adapters)
):
    orchestrator = SyncOrchestrator(db, adapters)
    try:
        results = await orchestrator.sync_appointment(appointment_id)
    except CalendarSyncError as e:
        raise _http_error(e) from e
    return {
        "appointment_id": appointment_id,
        "results": {cid: result.model_dump() for cid, result in results.items()},
    }


@router.get("/sync/{connection_id}/stats")
async def get_sync_stats(
        connection_id: str,
        days: int = Query(30, ge=1, le=365),
        db: Session = Depends(get_db),
        adapters: Dict[str, ProviderAdapter] = Depends(get_calendar_adapters)
):
    connection = _get_connection_or_404(db, adapters, connection_id)
    stats = SyncLogService(db).get_sync_stats(connection.id, days=days)
    return stats.model_dump(mode="json")


@router.get("/sync/{connection_id}/logs")
async def get_sync_logs(
        connection_id: str,
        limit: int = Query(50, ge=1, le=500),
        db: Session = Depends(get_db),
        adapters: Dict[str, ProviderAdapter] = Depends(get_calendar_adapters)
):
    connection = _get_connection_or_404(db, adapters, connection_id)
    logs = SyncLogService(db).get_recent_logs(connection.id, limit=limit)
    return {"logs": [log.to_dict() for log in logs]}


# ========== CONFLICTS / TOKENS ==========
@router.get("/conflicts/stats")
async def get_conflict_stats(
        days: int = Query(30, ge=1, le=365),
        db: Session = Depends(get_db)
):
    return SyncLogService(db).get_conflict_stats(days=days).model_dump()


@router.get("/tokens/health")
async def get_token_health(
        owner_id: Optional[str] = Query(None),
        db: Session = Depends(get_db),
        adapters: Dict[str, ProviderAdapter] = Depends(get_calendar_adapters)
):
    service = TokenMaintenanceService(db, adapters)
    return {"connections": service.list_token_health(owner_id)}


@router.post("/tokens/maintenance/run")
async def run_token_maintenance(
        db: Session = Depends(get_db),
        adapters: Dict[str, ProviderAdapter] = Depends(get_calendar_adapters)
):
    result = await TokenMaintenanceService(db, adapters).run_token_maintenance()
    return result.model_dump()


@router.get("/health")
async def calendar_health(adapters: Dict[str, ProviderAdapter] = Depends(get_calendar_adapters)):
    """Provider call timing statistics"""
    return {
        "status": "healthy",
        "providers": {name: adapter.timing_statistics() for name, adapter in adapters.items()},
    }


def _get_connection_or_404(db, adapters, connection_id):
    try:
        return ConnectionService(db, adapters).get_connection(connection_id)
    except ConnectionNotFoundError as e:
        raise _http_error(e) from e
