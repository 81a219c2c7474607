# app/services/calendar/connection_service.py
"""Calendar connection lifecycle: connect, configure, test, disconnect"""
import logging
from typing import Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy.orm import Session

from app.core.exceptions import (
    CalendarSyncError,
    ConnectionNotFoundError,
    get_error_message,
)
from app.models.calendar_connection import CalendarConnection
from app.schemas.calendar_events import CalendarProvider, CredentialContext, TokenSet
from app.schemas.calendar_sync import (
    AppleConnectRequest,
    ConnectionStatus,
    ConnectionUpdateRequest,
    SyncDirection,
    SyncLogStatus,
    SyncOperation,
    TokenHealth,
)
from app.services.calendar.base import ProviderAdapter
from app.services.calendar.oauth_state import OAuthStateService
from app.services.calendar.registry import get_adapter, get_default_adapters
from app.services.sync.credential_store import CredentialStore
from app.services.sync.retry_executor import RetryExecutor
from app.services.sync.sync_log_service import SyncLogService
from app.utils.encryption import decrypt_token

logger = logging.getLogger(__name__)


class ConnectionService:
    """One active connection per (owner, provider); disconnect only deactivates"""

    def __init__(self, db: Session, adapters: Optional[Dict[str, ProviderAdapter]] = None):
        self.db = db
        self.adapters = adapters if adapters is not None else get_default_adapters()
        self.sync_log = SyncLogService(db)
        self.credential_store = CredentialStore(db, self.adapters)

    def get_connection(self, connection_id: Union[UUID, str]) -> CalendarConnection:
        if not isinstance(connection_id, UUID):
            try:
                connection_id = UUID(str(connection_id))
            except ValueError:
                raise ConnectionNotFoundError(f"Calendar connection {connection_id} not found")
        connection = self.db.get(CalendarConnection, connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Calendar connection {connection_id} not found")
        return connection

    def list_connections(self, owner_id: str, include_inactive: bool = False) -> List[CalendarConnection]:
        query = self.db.query(CalendarConnection).filter(CalendarConnection.owner_id == owner_id)
        if not include_inactive:
            query = query.filter(CalendarConnection.is_active.is_(True))
        return query.order_by(CalendarConnection.created_at).all()

    def _active_connection(self, owner_id: str, provider: CalendarProvider) -> Optional[CalendarConnection]:
        return (
            self.db.query(CalendarConnection)
            .filter(
                CalendarConnection.owner_id == owner_id,
                CalendarConnection.provider == provider.value,
                CalendarConnection.is_active.is_(True),
            )
            .first()
        )

    # ========== GOOGLE OAUTH ==========

    async def start_google_authorization(self, owner_id: str, state_service: OAuthStateService) -> str:
        adapter = get_adapter(self.adapters, CalendarProvider.GOOGLE.value)
        state = await state_service.issue(owner_id)
        return adapter.authenticator.generate_authorization_url(state)

    async def complete_google_authorization(
            self,
            code: str,
            state: str,
            state_service: OAuthStateService
    ) -> CalendarConnection:
        owner_id = await state_service.consume(state)
        if owner_id is None:
            raise ValueError("Invalid or expired OAuth state")

        adapter = get_adapter(self.adapters, CalendarProvider.GOOGLE.value)
        tokens = await adapter.exchange_code(code)

        ctx = CredentialContext(provider=CalendarProvider.GOOGLE, access_token=tokens.access_token)
        calendar_id, calendar_name = await adapter.primary_calendar(ctx)

        return self._upsert_connection(
            owner_id=owner_id,
            provider=CalendarProvider.GOOGLE,
            calendar_id=calendar_id,
            calendar_name=calendar_name,
            account_email=calendar_id,
            tokens=tokens,
        )

    # ========== APPLE CALDAV ==========

    async def connect_apple(self, request: AppleConnectRequest) -> CalendarConnection:
        adapter = get_adapter(self.adapters, CalendarProvider.APPLE.value)
        calendar_url, calendar_name = await adapter.discover_calendar(
            request.username, request.password, request.calendar_url
        )
        return self._upsert_connection(
            owner_id=request.owner_id,
            provider=CalendarProvider.APPLE,
            calendar_id=calendar_url,
            calendar_name=calendar_name,
            account_email=request.username,
            tokens=TokenSet(access_token=request.password),
        )

    def _upsert_connection(self, owner_id, provider, calendar_id, calendar_name, account_email,
                           tokens: TokenSet) -> CalendarConnection:
        connection = self._active_connection(owner_id, provider)
        if connection is None:
            connection = CalendarConnection(
                owner_id=owner_id,
                provider=provider.value,
                sync_direction=SyncDirection.BIDIRECTIONAL.value,
                auto_sync=True,
                is_active=True,
            )
            self.db.add(connection)
        else:
            # Re-authorization replaces the old credentials
            connection.refresh_token_encrypted = None

        connection.calendar_id = calendar_id
        connection.calendar_name = calendar_name
        connection.account_email = account_email
        connection.sync_status = ConnectionStatus.CONNECTED.value
        connection.sync_error = None
        self.db.flush()
        self.credential_store.store_tokens(connection, tokens)

        self.sync_log.log_operation(
            connection.id, None, SyncOperation.SYNC, connection.sync_direction, SyncLogStatus.SUCCESS,
            "Connection established", {"provider": provider.value, "calendar_name": calendar_name},
        )
        logger.info(f"Calendar connection {connection.id} established for owner {owner_id} ({provider.value})")
        return connection

    # ========== SETTINGS / LIFECYCLE ==========

    def update_connection(self, connection_id, update: ConnectionUpdateRequest) -> CalendarConnection:
        connection = self.get_connection(connection_id)
        if update.sync_direction is not None:
            connection.sync_direction = update.sync_direction.value
        if update.auto_sync is not None:
            connection.auto_sync = update.auto_sync
        if update.calendar_id is not None:
            connection.calendar_id = update.calendar_id
        self.db.commit()
        self.db.refresh(connection)
        return connection

    async def disconnect(self, connection_id) -> CalendarConnection:
        connection = self.get_connection(connection_id)

        token = decrypt_token(connection.refresh_token_encrypted) or decrypt_token(
            connection.access_token_encrypted
        )
        if token and connection.provider == CalendarProvider.GOOGLE.value:
            try:
                adapter = get_adapter(self.adapters, connection.provider)
                await adapter.revoke_token(token)
            except CalendarSyncError as e:
                # Revocation is best effort; the token may already be revoked
                logger.warning(f"Failed to revoke token for connection {connection.id}: {get_error_message(e)}")

        connection.is_active = False
        connection.sync_status = ConnectionStatus.DISCONNECTED.value
        connection.access_token_encrypted = None
        connection.refresh_token_encrypted = None
        connection.sync_error = None

        self.sync_log.log_operation(
            connection.id, None, SyncOperation.SYNC, connection.sync_direction, SyncLogStatus.SUCCESS,
            "Connection disconnected",
        )
        logger.info(f"Calendar connection {connection.id} disconnected")
        return connection

    async def test_connection(self, connection_id) -> Dict[str, object]:
        connection = self.get_connection(connection_id)
        try:
            adapter = get_adapter(self.adapters, connection.provider)
            executor = RetryExecutor(self.credential_store, self.sync_log)
            await executor.execute_with_retry(adapter.test_connection, connection, operation_name="Connection test")
        except CalendarSyncError as e:
            return {"success": False, "status": connection.sync_status, "message": get_error_message(e)}

        if connection.sync_status == ConnectionStatus.ERROR.value:
            connection.sync_status = ConnectionStatus.CONNECTED.value
            connection.sync_error = None
            self.db.commit()
        return {"success": True, "status": connection.sync_status, "message": "Connection OK"}

    async def refresh_token(self, connection_id) -> TokenHealth:
        connection = self.get_connection(connection_id)
        await self.credential_store.refresh(connection, force=True)
        return self.credential_store.get_token_health(connection)
