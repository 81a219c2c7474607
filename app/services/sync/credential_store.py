# app/services/sync/credential_store.py
"""Encrypted token storage, expiry tracking and refresh per connection"""
import asyncio
import logging
from datetime import timedelta
from typing import Dict, Optional

from sqlalchemy.orm import Session

from app.config.settings import get_settings
from app.core.exceptions import (
    AuthenticationError,
    ConnectionExpiredError,
    get_error_message,
    is_unrecoverable_auth_error,
)
from app.models.calendar_connection import CalendarConnection
from app.schemas.calendar_events import CalendarProvider, CredentialContext, TokenSet
from app.schemas.calendar_sync import ConnectionStatus, TokenHealth, TokenHealthStatus
from app.services.calendar.base import ProviderAdapter
from app.services.calendar.registry import get_adapter, get_default_adapters
from app.utils.datetime_utils import ensure_utc, utcnow
from app.utils.encryption import decrypt_token, encrypt_token

settings = get_settings()

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME = timedelta(hours=1)


class CredentialStore:
    """Only component allowed to read or write connection tokens.

    Refreshed tokens are committed before a new CredentialContext is
    returned, so the next attempt always reads what was persisted.
    """

    def __init__(self, db: Session, adapters: Optional[Dict[str, ProviderAdapter]] = None,
                 refresh_buffer_minutes: Optional[int] = None):
        self.db = db
        self.adapters = adapters if adapters is not None else get_default_adapters()
        self.refresh_buffer = timedelta(
            minutes=refresh_buffer_minutes if refresh_buffer_minutes is not None
            else settings.TOKEN_REFRESH_BUFFER_MINUTES
        )
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, connection: CalendarConnection) -> asyncio.Lock:
        key = str(connection.id)
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def get_context(self, connection: CalendarConnection) -> CredentialContext:
        access_token = decrypt_token(connection.access_token_encrypted)
        if not access_token:
            raise ConnectionExpiredError(
                f"No access token stored for connection {connection.id}, re-authentication required"
            )
        refresh_token = decrypt_token(connection.refresh_token_encrypted)
        return CredentialContext(
            connection_id=str(connection.id),
            provider=CalendarProvider(connection.provider),
            calendar_id=connection.calendar_id,
            account=connection.account_email,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=ensure_utc(connection.token_expires_at),
        )

    def needs_refresh(self, connection: CalendarConnection, buffer: Optional[timedelta] = None) -> bool:
        buffer = self.refresh_buffer if buffer is None else buffer
        expires_at = ensure_utc(connection.token_expires_at)
        if expires_at is None:
            # Static credentials (CalDAV app passwords) carry neither expiry nor refresh token
            return connection.refresh_token_encrypted is not None
        return expires_at <= utcnow() + buffer

    async def ensure_fresh(self, connection: CalendarConnection) -> CredentialContext:
        """Credentials for the next provider call, refreshed if inside the buffer"""
        if self.needs_refresh(connection):
            return await self.refresh(connection)
        return self.get_context(connection)

    async def refresh(self, connection: CalendarConnection, adapter: Optional[ProviderAdapter] = None,
                      force: bool = False) -> CredentialContext:
        adapter = adapter or get_adapter(self.adapters, connection.provider)

        async with self._lock(connection):
            # Another caller may have refreshed while we waited
            self.db.refresh(connection)
            if not force and not self.needs_refresh(connection):
                return self.get_context(connection)

            refresh_token = decrypt_token(connection.refresh_token_encrypted)
            if not refresh_token:
                self.mark_expired(connection, "No refresh token available, re-authentication required")
                raise ConnectionExpiredError(
                    f"No refresh token for connection {connection.id}, re-authentication required"
                )

            logger.info(f"Refreshing credentials for connection {connection.id}")
            try:
                tokens = await adapter.refresh_credentials(refresh_token)
            except ConnectionExpiredError as e:
                self.mark_expired(connection, get_error_message(e))
                raise
            except AuthenticationError as e:
                if is_unrecoverable_auth_error(e):
                    self.mark_expired(connection, get_error_message(e))
                    raise ConnectionExpiredError(
                        f"Refresh token rejected ({get_error_message(e)}), re-authentication required",
                        status_code=e.status_code,
                        error_code=e.error_code,
                    ) from e
                connection.sync_error = f"Token refresh failed: {get_error_message(e)}"
                self.db.commit()
                raise

            return self.store_tokens(connection, tokens)

    def store_tokens(self, connection: CalendarConnection, tokens: TokenSet) -> CredentialContext:
        connection.access_token_encrypted = encrypt_token(tokens.access_token.get_secret_value())
        # Providers only send a refresh token when they rotate it
        if tokens.refresh_token is not None:
            connection.refresh_token_encrypted = encrypt_token(tokens.refresh_token.get_secret_value())
        if tokens.expires_at is not None:
            connection.token_expires_at = tokens.expires_at
        elif connection.refresh_token_encrypted is not None:
            connection.token_expires_at = utcnow() + DEFAULT_TOKEN_LIFETIME
        else:
            # Static credential without expiry
            connection.token_expires_at = None
        if connection.sync_status == ConnectionStatus.EXPIRED.value:
            connection.sync_status = ConnectionStatus.CONNECTED.value
        connection.sync_error = None
        self.db.commit()
        self.db.refresh(connection)
        logger.info(f"Stored refreshed credentials for connection {connection.id}")
        return self.get_context(connection)

    def mark_expired(self, connection: CalendarConnection, message: str) -> None:
        connection.sync_status = ConnectionStatus.EXPIRED.value
        connection.sync_error = message
        self.db.commit()
        logger.warning(f"Connection {connection.id} marked expired: {message}")

    def get_token_health(self, connection: CalendarConnection) -> TokenHealth:
        has_refresh_token = connection.refresh_token_encrypted is not None
        expires_at = ensure_utc(connection.token_expires_at)

        if connection.access_token_encrypted is None:
            return TokenHealth(status=TokenHealthStatus.INVALID, can_refresh=has_refresh_token,
                               needs_refresh=has_refresh_token)

        if expires_at is None:
            return TokenHealth(status=TokenHealthStatus.HEALTHY, can_refresh=has_refresh_token,
                               needs_refresh=self.needs_refresh(connection))

        minutes_to_expiry = int((expires_at - utcnow()).total_seconds() // 60)
        needs_refresh = self.needs_refresh(connection)
        if minutes_to_expiry <= 0 or connection.sync_status == ConnectionStatus.EXPIRED.value:
            status = TokenHealthStatus.EXPIRED
        elif needs_refresh:
            status = TokenHealthStatus.EXPIRING_SOON
        else:
            status = TokenHealthStatus.HEALTHY

        return TokenHealth(
            status=status,
            expires_at=expires_at,
            minutes_to_expiry=max(0, minutes_to_expiry),
            needs_refresh=needs_refresh,
            can_refresh=has_refresh_token,
        )
