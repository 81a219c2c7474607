# ===== app/tasks/calendar_tasks.py =====
from app.config.celery_config import celery_app
from app.config.database import SessionLocal
from app.core.exceptions import AppointmentNotFoundError, ConnectionNotFoundError
from app.services.sync.sync_orchestrator import SyncOrchestrator
from app.services.sync.token_maintenance_service import TokenMaintenanceService
import logging
import asyncio

logger = logging.getLogger(__name__)


@celery_app.task(name="app.tasks.calendar_tasks.auto_sync_calendars")
def auto_sync_calendars():
    """Periodic sync of every auto-sync connection, grouped by owner"""
    db = SessionLocal()
    try:
        results = asyncio.run(SyncOrchestrator(db).schedule_auto_sync())
        summary = {
            owner_id: {cid: result.model_dump() for cid, result in owner_results.items()}
            for owner_id, owner_results in results.items()
        }
        logger.info(f"Auto-sync finished for {len(summary)} owner(s)")
        return summary
    finally:
        db.close()


@celery_app.task(name="app.tasks.calendar_tasks.run_token_maintenance")
def run_token_maintenance():
    """Refresh tokens that expire within the maintenance buffer"""
    db = SessionLocal()
    try:
        result = asyncio.run(TokenMaintenanceService(db).run_token_maintenance())
        return result.model_dump()
    finally:
        db.close()


@celery_app.task(name="app.tasks.calendar_tasks.sync_connection")
def sync_connection(connection_id: str):
    """Sync a single connection (triggered after connect or from the API)"""
    db = SessionLocal()
    try:
        result = asyncio.run(SyncOrchestrator(db).sync_connection(connection_id))
        return result.model_dump()
    except ConnectionNotFoundError:
        logger.error(f"Calendar connection {connection_id} not found")
        return {"status": "failed", "reason": "connection_not_found"}
    finally:
        db.close()


@celery_app.task(name="app.tasks.calendar_tasks.sync_appointment")
def sync_appointment(appointment_id: str):
    """Push one appointment to all calendars of its owner"""
    db = SessionLocal()
    try:
        results = asyncio.run(SyncOrchestrator(db).sync_appointment(appointment_id))
        return {cid: result.model_dump() for cid, result in results.items()}
    except AppointmentNotFoundError:
        logger.error(f"Appointment {appointment_id} not found")
        return {"status": "failed", "reason": "appointment_not_found"}
    finally:
        db.close()
