# app/services/sync/retry_executor.py
"""Bounded retry around provider calls with credential refresh on auth failures"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar
from uuid import UUID

from app.config.settings import get_settings
from app.core.exceptions import (
    ConnectionExpiredError,
    RetryExhaustedError,
    UnsupportedProviderError,
    get_error_message,
    is_auth_error,
)
from app.models.calendar_connection import CalendarConnection
from app.schemas.calendar_events import CredentialContext
from app.schemas.calendar_sync import ConnectionStatus, SyncDirection, SyncLogStatus, SyncOperation
from app.services.sync.credential_store import CredentialStore
from app.services.sync.sync_log_service import SyncLogService

settings = get_settings()

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryExecutor:
    """Runs one provider operation with at most `max_attempts` tries.

    Every attempt gets credentials from the CredentialStore, which
    refreshes them when they expire within the refresh buffer. An auth
    failure forces a refresh and consumes an attempt; other failures
    back off linearly (`attempt * base_delay`). Terminal failures are
    written to the sync log exactly once and raised as
    ConnectionExpiredError or RetryExhaustedError.
    """

    def __init__(
            self,
            credential_store: CredentialStore,
            sync_log: SyncLogService,
            max_attempts: Optional[int] = None,
            base_delay: Optional[float] = None,
            sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.credential_store = credential_store
        self.sync_log = sync_log
        self.max_attempts = max_attempts or settings.SYNC_MAX_RETRY_ATTEMPTS
        self.base_delay = settings.SYNC_RETRY_BASE_DELAY_SECONDS if base_delay is None else base_delay
        self.sleep = sleep

    async def execute_with_retry(
            self,
            operation: Callable[[CredentialContext], Awaitable[T]],
            connection: CalendarConnection,
            context_id: Optional[UUID] = None,
            operation_name: str = "provider call",
            log_operation: SyncOperation = SyncOperation.SYNC,
            direction: SyncDirection = SyncDirection.CRM_TO_CALENDAR
    ) -> T:
        if connection.sync_status == ConnectionStatus.EXPIRED.value:
            message = f"{operation_name} rejected: connection expired, re-authentication required"
            self._log_failure(connection, context_id, log_operation, direction, message, attempts=0)
            raise ConnectionExpiredError(message)

        last_error: Optional[Exception] = None
        attempt = 0
        while attempt < self.max_attempts:
            attempt += 1
            try:
                ctx = await self.credential_store.ensure_fresh(connection)
                return await operation(ctx)
            except ConnectionExpiredError as e:
                self._log_failure(connection, context_id, log_operation, direction,
                                  f"{operation_name} failed: {get_error_message(e)}", attempt)
                raise
            except UnsupportedProviderError as e:
                self._log_failure(connection, context_id, log_operation, direction,
                                  f"{operation_name} failed: {get_error_message(e)}", attempt)
                raise
            except Exception as e:
                last_error = e
                logger.warning(
                    f"{operation_name} attempt {attempt}/{self.max_attempts} failed "
                    f"for connection {connection.id}: {get_error_message(e)}"
                )

            if attempt >= self.max_attempts:
                break

            if is_auth_error(last_error):
                try:
                    await self.credential_store.refresh(connection, force=True)
                except ConnectionExpiredError as e:
                    self._log_failure(connection, context_id, log_operation, direction,
                                      f"{operation_name} failed: {get_error_message(e)}", attempt)
                    raise
                except Exception as e:
                    # Refresh failed for a recoverable reason; next attempt retries it
                    last_error = e
                    logger.warning(f"Credential refresh failed for connection {connection.id}: "
                                   f"{get_error_message(e)}")
            else:
                await self.sleep(self.base_delay * attempt)

        message = f"{operation_name} failed after {attempt} attempts: {get_error_message(last_error)}"
        if is_auth_error(last_error):
            message = f"{message} (re-authentication required)"
            self.credential_store.mark_expired(connection, message)
            self._log_failure(connection, context_id, log_operation, direction, message, attempt)
            raise ConnectionExpiredError(message) from last_error

        self._log_failure(connection, context_id, log_operation, direction, message, attempt)
        raise RetryExhaustedError(message, attempts=attempt, last_error=last_error) from last_error

    def _log_failure(self, connection, context_id, log_operation, direction, message, attempts):
        logger.error(f"Connection {connection.id}: {message}")
        self.sync_log.log_operation(
            connection_id=connection.id,
            appointment_id=context_id,
            operation=log_operation,
            direction=direction,
            status=SyncLogStatus.ERROR,
            message=message,
            details={"attempts": attempts},
        )
