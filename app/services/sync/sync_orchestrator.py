# app/services/sync/sync_orchestrator.py
"""Top-level calendar sync: decide, execute and audit per appointment"""
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple, Union
from uuid import UUID

from sqlalchemy.orm import Session

from app.config.settings import get_settings
from app.core.exceptions import (
    AppointmentNotFoundError,
    ConnectionExpiredError,
    ConnectionNotFoundError,
    DuplicateEventError,
    RetryExhaustedError,
    UnsupportedProviderError,
    get_error_message,
)
from app.models.appointment import Appointment
from app.models.calendar_connection import CalendarConnection
from app.models.calendar_event import CalendarEvent
from app.schemas.calendar_events import EventPayload, EventStatus, NormalizedEvent
from app.schemas.calendar_sync import (
    INACTIVE_APPOINTMENT_STATUSES,
    CalendarSyncStatus,
    ConflictResolutionStrategy,
    ConflictType,
    ConnectionStatus,
    SyncAction,
    SyncDirection,
    SyncLogStatus,
    SyncOperation,
    SyncOptions,
    SyncResult,
)
from app.services.calendar.base import ProviderAdapter
from app.services.calendar.registry import get_adapter, get_default_adapters
from app.services.sync.conflict_detector import ConflictDetector
from app.services.sync.conflict_resolver import ConflictResolver, default_strategy
from app.services.sync.credential_store import CredentialStore
from app.services.sync.event_mapping import (
    build_event_payload,
    derive_event_id,
    is_appointment_related_event,
)
from app.services.sync.retry_executor import RetryExecutor
from app.services.sync.sync_log_service import SyncLogService
from app.utils.datetime_utils import ensure_utc, utcnow

settings = get_settings()

logger = logging.getLogger(__name__)

MIRROR_DELETED = "deleted"

ACTION_MESSAGES = {
    SyncAction.CREATE: "Created calendar event",
    SyncAction.UPDATE: "Updated calendar event",
    SyncAction.DELETE: "Deleted calendar event",
}


class _PassAborted(Exception):
    """Connection-level failure inside a batch; remaining items are not attempted"""


class SyncOrchestrator:
    """Synchronizes appointments with the external calendars of a connection.

    Work on one connection is strictly sequential and ordered by
    appointment start time. Per-appointment failures are recorded and
    the batch continues; connection-level failures (failed connection
    test, credentials that cannot be refreshed) abort the attempt and
    leave the connection in `error` or `expired`.
    """

    def __init__(
            self,
            db: Session,
            adapters: Optional[Dict[str, ProviderAdapter]] = None,
            credential_store: Optional[CredentialStore] = None,
            executor: Optional[RetryExecutor] = None,
            conflict_strategy: Optional[ConflictResolutionStrategy] = None,
            window_days: Optional[int] = None
    ):
        self.db = db
        self.adapters = adapters if adapters is not None else get_default_adapters()
        self.sync_log = SyncLogService(db)
        self.credential_store = credential_store or CredentialStore(db, self.adapters)
        self.executor = executor or RetryExecutor(self.credential_store, self.sync_log)
        self.conflict_strategy = conflict_strategy or default_strategy()
        self.detector = ConflictDetector(
            db, threshold_minutes=self.conflict_strategy.resolution_rules.time_threshold
        )
        self.resolver = ConflictResolver(db, self.sync_log)
        self.window_days = window_days or settings.SYNC_WINDOW_DAYS

    # ========== ACTION DECISION ==========

    @staticmethod
    def determine_sync_action(appointment: Appointment, provider: str) -> SyncAction:
        external_id = appointment.get_external_event_id(provider)
        inactive = appointment.status in INACTIVE_APPOINTMENT_STATUSES

        if not external_id:
            # Nothing to remove for a cancelled appointment that was never pushed
            return SyncAction.SKIP if inactive else SyncAction.CREATE
        if inactive:
            return SyncAction.DELETE
        return SyncAction.UPDATE

    @staticmethod
    def needs_push(appointment: Appointment, provider: str, force_sync: bool = False) -> bool:
        if force_sync:
            return True
        if not appointment.get_external_event_id(provider):
            return True
        return appointment.calendar_sync_status != CalendarSyncStatus.SYNCED.value

    # ========== PUBLIC OPERATIONS ==========

    async def sync_connection(
            self,
            connection: Union[CalendarConnection, UUID, str],
            options: Optional[SyncOptions] = None
    ) -> SyncResult:
        options = options or SyncOptions()
        connection = self._get_connection(connection)
        result = SyncResult()

        if connection.sync_status == ConnectionStatus.EXPIRED.value:
            return self._reject(connection, result, "Connection expired, re-authentication required")
        if not connection.is_active or connection.sync_status == ConnectionStatus.DISCONNECTED.value:
            return self._reject(connection, result, "Connection is disconnected")

        try:
            adapter = get_adapter(self.adapters, connection.provider)
        except UnsupportedProviderError as e:
            connection.sync_status = ConnectionStatus.ERROR.value
            connection.sync_error = get_error_message(e)
            self.db.commit()
            return self._reject(connection, result, get_error_message(e))

        connection.sync_status = ConnectionStatus.SYNCING.value
        self.db.commit()
        logger.info(f"Starting sync for connection {connection.id} ({connection.provider})")

        direction = options.direction or SyncDirection(connection.sync_direction)
        start, end = self._window(options)
        expired = False

        try:
            await self.executor.execute_with_retry(
                adapter.test_connection, connection,
                operation_name="Connection test", direction=direction,
            )
        except (ConnectionExpiredError, RetryExhaustedError, UnsupportedProviderError) as e:
            result.errors.append(f"Connection test failed: {get_error_message(e)}")
            return self._finish(connection, result, direction,
                                expired=isinstance(e, ConnectionExpiredError))

        try:
            if direction.includes_push():
                await self._push_pass(connection, adapter, result, options, start, end)
            if direction.includes_pull():
                await self._pull_pass(connection, adapter, result, options, start, end)
        except _PassAborted:
            expired = True

        return self._finish(connection, result, direction, expired=expired)

    async def sync_owner_calendars(
            self,
            owner_id: str,
            options: Optional[SyncOptions] = None,
            connections: Optional[List[CalendarConnection]] = None
    ) -> Dict[str, SyncResult]:
        """Sync every active connection of an owner, isolating their failures"""
        if connections is None:
            connections = (
                self.db.query(CalendarConnection)
                .filter(
                    CalendarConnection.owner_id == owner_id,
                    CalendarConnection.is_active.is_(True),
                    CalendarConnection.sync_status != ConnectionStatus.DISCONNECTED.value,
                )
                .order_by(CalendarConnection.created_at)
                .all()
            )

        results: Dict[str, SyncResult] = {}
        for connection in connections:
            connection_id = connection.id
            try:
                results[str(connection_id)] = await self.sync_connection(connection, options)
            except Exception as e:
                self.db.rollback()
                message = f"Sync failed: {get_error_message(e)}"
                logger.exception(f"Connection {connection_id}: {message}")
                self.sync_log.log_operation(connection_id, None, SyncOperation.SYNC,
                                            SyncDirection.BIDIRECTIONAL, SyncLogStatus.ERROR, message)
                results[str(connection_id)] = SyncResult(success=False, errors=[message])
        return results

    async def sync_appointment(self, appointment_id: Union[UUID, str]) -> Dict[str, SyncResult]:
        """Push one appointment to every calendar of its owner"""
        try:
            appointment = self.db.get(Appointment, _as_uuid(appointment_id))
        except ValueError:
            appointment = None
        if appointment is None:
            raise AppointmentNotFoundError(f"Appointment {appointment_id} not found")

        connections = (
            self.db.query(CalendarConnection)
            .filter(
                CalendarConnection.owner_id == appointment.owner_id,
                CalendarConnection.is_active.is_(True),
                CalendarConnection.sync_status != ConnectionStatus.DISCONNECTED.value,
            )
            .order_by(CalendarConnection.created_at)
            .all()
        )

        results: Dict[str, SyncResult] = {}
        for connection in connections:
            result = SyncResult()
            results[str(connection.id)] = result

            if not SyncDirection(connection.sync_direction).includes_push():
                result.skipped += 1
                continue
            if connection.sync_status == ConnectionStatus.EXPIRED.value:
                self._reject(connection, result, "Connection expired, re-authentication required")
                continue

            try:
                adapter = get_adapter(self.adapters, connection.provider)
                await self._sync_item(connection, adapter, appointment, result, dry_run=False)
            except UnsupportedProviderError as e:
                self._reject(connection, result, get_error_message(e))
                continue
            except _PassAborted:
                pass
            result.success = not result.errors
        return results

    async def schedule_auto_sync(self) -> Dict[str, Dict[str, SyncResult]]:
        """Sync all auto-sync connections, grouped by owner"""
        connections = (
            self.db.query(CalendarConnection)
            .filter(
                CalendarConnection.is_active.is_(True),
                CalendarConnection.auto_sync.is_(True),
                CalendarConnection.sync_status != ConnectionStatus.DISCONNECTED.value,
            )
            .order_by(CalendarConnection.owner_id, CalendarConnection.created_at)
            .all()
        )

        by_owner: Dict[str, List[CalendarConnection]] = defaultdict(list)
        for connection in connections:
            by_owner[connection.owner_id].append(connection)

        logger.info(f"Auto-sync: {len(connections)} connection(s) across {len(by_owner)} owner(s)")
        results = {}
        for owner_id, owner_connections in by_owner.items():
            results[owner_id] = await self.sync_owner_calendars(owner_id, connections=owner_connections)
        return results

    # ========== CRM -> CALENDAR ==========

    async def _push_pass(self, connection, adapter, result, options, start, end):
        appointments = (
            self.db.query(Appointment)
            .filter(
                Appointment.owner_id == connection.owner_id,
                Appointment.start_time >= start,
                Appointment.start_time <= end,
            )
            .order_by(Appointment.start_time, Appointment.id)
            .all()
        )

        candidates = [a for a in appointments if self.needs_push(a, connection.provider, options.force_sync)]
        logger.info(f"Connection {connection.id}: {len(candidates)} appointment(s) to push")

        for appointment in candidates:
            await self._sync_item(connection, adapter, appointment, result, dry_run=options.dry_run)

    async def _sync_item(self, connection, adapter, appointment, result, dry_run=False):
        provider = connection.provider
        action = self.determine_sync_action(appointment, provider)

        if action == SyncAction.SKIP:
            result.skipped += 1
            self.sync_log.log_operation(connection.id, appointment.id, SyncOperation.SYNC,
                                        SyncDirection.CRM_TO_CALENDAR, SyncLogStatus.SKIPPED,
                                        f"Appointment is {appointment.status}, nothing to push")
            return

        if dry_run:
            result.skipped += 1
            self.sync_log.log_operation(connection.id, appointment.id, SyncOperation(action.value),
                                        SyncDirection.CRM_TO_CALENDAR, SyncLogStatus.SKIPPED,
                                        f"Dry run: would {action.value} calendar event")
            return

        try:
            if action == SyncAction.CREATE:
                # A previous run may have created the event but failed before saving the id
                mirror = self._find_mirror(connection, appointment)
                if mirror is not None:
                    appointment.set_external_event_id(provider, mirror.external_id)
                    action = SyncAction.UPDATE
            elif action == SyncAction.UPDATE:
                self._find_mirror(connection, appointment)

            payload = build_event_payload(appointment)
            if action == SyncAction.CREATE:
                generation = self._deleted_mirror_count(connection, appointment)
                event_id = derive_event_id(connection.id, appointment.id, generation)
                external_id = await self.executor.execute_with_retry(
                    lambda ctx: adapter.create_event(ctx, payload, event_id), connection, appointment.id,
                    operation_name="Create event", log_operation=SyncOperation.CREATE,
                )
                appointment.set_external_event_id(provider, external_id)
                self._mark_synced(appointment)
                self._upsert_mirror(connection, appointment, external_id, payload)
                result.created += 1
            elif action == SyncAction.UPDATE:
                external_id = appointment.get_external_event_id(provider)
                await self.executor.execute_with_retry(
                    lambda ctx: adapter.update_event(ctx, external_id, payload), connection, appointment.id,
                    operation_name="Update event", log_operation=SyncOperation.UPDATE,
                )
                self._mark_synced(appointment)
                self._upsert_mirror(connection, appointment, external_id, payload)
                result.updated += 1
            else:
                external_id = appointment.get_external_event_id(provider)
                await self.executor.execute_with_retry(
                    lambda ctx: adapter.delete_event(ctx, external_id), connection, appointment.id,
                    operation_name="Delete event", log_operation=SyncOperation.DELETE,
                )
                appointment.set_external_event_id(provider, None)
                appointment.calendar_sync_status = CalendarSyncStatus.PENDING.value
                appointment.calendar_sync_error = None
                appointment.last_calendar_sync_at = utcnow()
                self._mark_mirror_deleted(connection, external_id)
                result.deleted += 1

            self.sync_log.log_operation(connection.id, appointment.id, SyncOperation(action.value),
                                        SyncDirection.CRM_TO_CALENDAR, SyncLogStatus.SUCCESS,
                                        ACTION_MESSAGES[action], {"external_id": external_id})

        except DuplicateEventError as e:
            conflicts = self.detector.detect_conflicts(appointment, None, provider,
                                                       connection_id=connection.id)
            duplicates = [c for c in conflicts if c.type == ConflictType.DUPLICATE_EVENT]
            resolution = self.resolver.resolve_conflicts(duplicates, self.conflict_strategy, appointment,
                                                         connection.id)
            result.pending_conflicts += len(resolution.pending)
            result.skipped += 1
            logger.warning(f"Appointment {appointment.id}: {get_error_message(e)}")

        except ConnectionExpiredError as e:
            self._record_item_error(appointment, result, e)
            raise _PassAborted() from e

        except (RetryExhaustedError, UnsupportedProviderError) as e:
            # Already written to the sync log by the executor
            self._record_item_error(appointment, result, e)

        except Exception as e:
            self.db.rollback()
            logger.exception(f"Failed to {action.value} event for appointment {appointment.id}")
            self._record_item_error(appointment, result, e)
            self.sync_log.log_operation(connection.id, appointment.id, SyncOperation(action.value),
                                        SyncDirection.CRM_TO_CALENDAR, SyncLogStatus.ERROR,
                                        f"Failed to {action.value} calendar event: {get_error_message(e)}")

    # ========== CALENDAR -> CRM ==========

    async def _pull_pass(self, connection, adapter, result, options, start, end):
        try:
            events: List[NormalizedEvent] = await self.executor.execute_with_retry(
                lambda ctx: adapter.list_events(ctx, start, end), connection,
                operation_name="List events", direction=SyncDirection.CALENDAR_TO_CRM,
            )
        except ConnectionExpiredError as e:
            result.errors.append(f"Failed to list calendar events: {get_error_message(e)}")
            raise _PassAborted() from e
        except (RetryExhaustedError, UnsupportedProviderError) as e:
            result.errors.append(f"Failed to list calendar events: {get_error_message(e)}")
            return

        mirrors = {
            mirror.external_id: mirror
            for mirror in self.db.query(CalendarEvent).filter(
                CalendarEvent.calendar_connection_id == connection.id,
                CalendarEvent.status != MIRROR_DELETED,
            )
        }

        counts = {"events": len(events), "loop_guarded": 0, "crm_like": 0, "informational": 0,
                  "conflicts_resolved": 0, "conflicts_pending": 0, "deletions": 0}
        seen = set()

        for event in events:
            seen.add(event.external_id)
            mirror = mirrors.get(event.external_id)

            if mirror is not None and mirror.appointment_id is not None:
                # Originated from the CRM; compare instead of importing
                counts["loop_guarded"] += 1
                appointment = self.db.get(Appointment, mirror.appointment_id)
                if appointment is not None and not options.dry_run:
                    self._review_conflicts(connection, appointment, event, counts)
            elif is_appointment_related_event(event):
                counts["crm_like"] += 1
            else:
                # Foreign events are never turned into appointments
                counts["informational"] += 1
            result.skipped += 1

        if not options.dry_run:
            self._detect_deletions(connection, mirrors, seen, start, end, counts)

        result.pending_conflicts += counts["conflicts_pending"]
        self.sync_log.log_operation(
            connection.id, None, SyncOperation.SYNC, SyncDirection.CALENDAR_TO_CRM, SyncLogStatus.SUCCESS,
            f"Reviewed {len(events)} calendar event(s), {counts['informational']} not imported",
            counts,
        )

    def _review_conflicts(self, connection, appointment, event, counts):
        conflicts = self.detector.detect_conflicts(appointment, event, connection.provider,
                                                 connection_id=connection.id)
        if not conflicts:
            return
        resolution = self.resolver.resolve_conflicts(conflicts, self.conflict_strategy, appointment, connection.id)
        counts["conflicts_resolved"] += len(resolution.resolved)
        counts["conflicts_pending"] += len(resolution.pending)

    def _detect_deletions(self, connection, mirrors, seen, start, end, counts):
        for external_id, mirror in mirrors.items():
            if external_id in seen or mirror.appointment_id is None:
                continue
            mirror_start = ensure_utc(mirror.start_time)
            if mirror_start is None or mirror_start < start or mirror_start > end:
                continue
            appointment = self.db.get(Appointment, mirror.appointment_id)
            if appointment is None or appointment.get_external_event_id(connection.provider) != external_id:
                continue

            counts["deletions"] += 1
            conflicts = self.detector.detect_conflicts(appointment, None, connection.provider, mirror_count=1)
            resolution = self.resolver.resolve_conflicts(conflicts, self.conflict_strategy, appointment,
                                                         connection.id)
            counts["conflicts_pending"] += len(resolution.pending)

    # ========== HELPERS ==========

    def _get_connection(self, connection) -> CalendarConnection:
        if isinstance(connection, CalendarConnection):
            return connection
        try:
            found = self.db.get(CalendarConnection, _as_uuid(connection))
        except ValueError:
            found = None
        if found is None:
            raise ConnectionNotFoundError(f"Calendar connection {connection} not found")
        return found

    def _window(self, options: SyncOptions) -> Tuple[datetime, datetime]:
        if options.time_range:
            return ensure_utc(options.time_range.start), ensure_utc(options.time_range.end)
        now = utcnow()
        window = timedelta(days=self.window_days)
        return now - window, now + window

    def _reject(self, connection, result: SyncResult, message: str) -> SyncResult:
        logger.warning(f"Sync rejected for connection {connection.id}: {message}")
        result.success = False
        result.errors.append(message)
        self.sync_log.log_operation(connection.id, None, SyncOperation.SYNC,
                                    SyncDirection(connection.sync_direction), SyncLogStatus.ERROR, message)
        return result

    def _finish(self, connection, result: SyncResult, direction: SyncDirection, expired: bool) -> SyncResult:
        if expired or connection.sync_status == ConnectionStatus.EXPIRED.value:
            connection.sync_status = ConnectionStatus.EXPIRED.value
        elif result.errors:
            connection.sync_status = ConnectionStatus.ERROR.value
        else:
            connection.sync_status = ConnectionStatus.CONNECTED.value

        connection.sync_error = "; ".join(result.errors[:5]) if result.errors else None
        connection.last_sync_at = utcnow()
        result.success = not result.errors

        message = (
            f"Sync completed: {result.created} created, {result.updated} updated, "
            f"{result.deleted} deleted, {result.skipped} skipped, {len(result.errors)} error(s)"
        )
        self.sync_log.log_operation(
            connection.id, None, SyncOperation.SYNC, direction,
            SyncLogStatus.SUCCESS if result.success else SyncLogStatus.ERROR, message,
            result.model_dump(),
        )
        logger.info(f"Connection {connection.id}: {message}")
        return result

    def _record_item_error(self, appointment: Appointment, result: SyncResult, error: Exception) -> None:
        message = get_error_message(error)
        result.errors.append(f"Appointment {appointment.id}: {message}")
        appointment.calendar_sync_status = CalendarSyncStatus.ERROR.value
        appointment.calendar_sync_error = message
        self.db.commit()

    @staticmethod
    def _mark_synced(appointment: Appointment) -> None:
        appointment.calendar_sync_status = CalendarSyncStatus.SYNCED.value
        appointment.calendar_sync_error = None
        appointment.last_calendar_sync_at = utcnow()

    def _find_mirror(self, connection, appointment) -> Optional[CalendarEvent]:
        mirrors = (
            self.db.query(CalendarEvent)
            .filter(
                CalendarEvent.calendar_connection_id == connection.id,
                CalendarEvent.appointment_id == appointment.id,
                CalendarEvent.status != MIRROR_DELETED,
            )
            .all()
        )
        if len(mirrors) > 1:
            raise DuplicateEventError(
                f"{len(mirrors)} calendar events mirror appointment {appointment.id}"
            )
        return mirrors[0] if mirrors else None

    def _deleted_mirror_count(self, connection, appointment) -> int:
        return (
            self.db.query(CalendarEvent)
            .filter(
                CalendarEvent.calendar_connection_id == connection.id,
                CalendarEvent.appointment_id == appointment.id,
                CalendarEvent.status == MIRROR_DELETED,
            )
            .count()
        )

    def _upsert_mirror(self, connection, appointment, external_id: str, payload: EventPayload) -> CalendarEvent:
        mirror = (
            self.db.query(CalendarEvent)
            .filter(
                CalendarEvent.calendar_connection_id == connection.id,
                CalendarEvent.external_id == external_id,
            )
            .first()
        )
        if mirror is None:
            mirror = CalendarEvent(
                calendar_connection_id=connection.id,
                external_id=external_id,
                provider=connection.provider,
            )
            self.db.add(mirror)

        mirror.appointment_id = appointment.id
        mirror.title = payload.title
        mirror.description = payload.description
        mirror.start_time = payload.start_time
        mirror.end_time = payload.end_time
        mirror.location = payload.location
        mirror.status = EventStatus.CONFIRMED.value if payload.status != EventStatus.CANCELLED \
            else EventStatus.CANCELLED.value
        mirror.sync_status = CalendarSyncStatus.SYNCED.value
        mirror.last_modified = utcnow()
        return mirror

    def _mark_mirror_deleted(self, connection, external_id: str) -> None:
        mirrors = (
            self.db.query(CalendarEvent)
            .filter(
                CalendarEvent.calendar_connection_id == connection.id,
                CalendarEvent.external_id == external_id,
            )
            .all()
        )
        for mirror in mirrors:
            mirror.status = MIRROR_DELETED
            mirror.sync_status = CalendarSyncStatus.SYNCED.value
            mirror.last_modified = utcnow()


def _as_uuid(value: Union[UUID, str]) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))
