# app/services/sync/token_maintenance_service.py
"""Periodic token health check and proactive refresh"""
import logging
from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from app.config.settings import get_settings
from app.core.exceptions import ConnectionExpiredError, get_error_message
from app.models.calendar_connection import CalendarConnection
from app.schemas.calendar_sync import (
    ConnectionStatus,
    SyncDirection,
    SyncLogStatus,
    SyncOperation,
    TokenMaintenanceResult,
)
from app.services.calendar.base import ProviderAdapter
from app.services.calendar.registry import get_default_adapters
from app.services.sync.credential_store import CredentialStore
from app.services.sync.sync_log_service import SyncLogService

settings = get_settings()

logger = logging.getLogger(__name__)


class TokenMaintenanceService:

    def __init__(self, db: Session, adapters: Optional[Dict[str, ProviderAdapter]] = None,
                 buffer_minutes: Optional[int] = None):
        self.db = db
        self.adapters = adapters if adapters is not None else get_default_adapters()
        self.credential_store = CredentialStore(db, self.adapters)
        self.sync_log = SyncLogService(db)
        self.buffer = timedelta(
            minutes=buffer_minutes if buffer_minutes is not None else settings.TOKEN_MAINTENANCE_BUFFER_MINUTES
        )

    def _active_connections(self, owner_id: Optional[str] = None) -> List[CalendarConnection]:
        query = self.db.query(CalendarConnection).filter(
            CalendarConnection.is_active.is_(True),
            CalendarConnection.sync_status != ConnectionStatus.DISCONNECTED.value,
        )
        if owner_id is not None:
            query = query.filter(CalendarConnection.owner_id == owner_id)
        return query.order_by(CalendarConnection.created_at).all()

    def list_token_health(self, owner_id: Optional[str] = None) -> List[dict]:
        return [
            {
                "connection_id": str(connection.id),
                "provider": connection.provider,
                "health": self.credential_store.get_token_health(connection).model_dump(mode="json"),
            }
            for connection in self._active_connections(owner_id)
        ]

    async def run_token_maintenance(self) -> TokenMaintenanceResult:
        result = TokenMaintenanceResult()

        for connection in self._active_connections():
            result.checked += 1
            health = self.credential_store.get_token_health(connection)
            result.summary[health.status.value] += 1

            if not self.credential_store.needs_refresh(connection, buffer=self.buffer):
                continue

            if not health.can_refresh:
                self.credential_store.mark_expired(connection, "Token expiring and no refresh token available")
                self._log(connection, SyncLogStatus.ERROR, "Token expired, re-authentication required")
                result.expired += 1
                continue

            try:
                await self.credential_store.refresh(connection, force=True)
                result.refreshed += 1
            except ConnectionExpiredError as e:
                self._log(connection, SyncLogStatus.ERROR, f"Token refresh rejected: {get_error_message(e)}")
                result.expired += 1
            except Exception as e:
                logger.error(f"Token maintenance failed for connection {connection.id}: {get_error_message(e)}")
                self._log(connection, SyncLogStatus.ERROR, f"Token refresh failed: {get_error_message(e)}")
                result.errors += 1

        logger.info(
            f"Token maintenance: checked={result.checked} refreshed={result.refreshed} "
            f"expired={result.expired} errors={result.errors}"
        )
        return result

    def _log(self, connection: CalendarConnection, status: SyncLogStatus, message: str) -> None:
        self.sync_log.log_operation(connection.id, None, SyncOperation.SYNC, SyncDirection.BIDIRECTIONAL,
                                    status, message, {"job": "token_maintenance"})
