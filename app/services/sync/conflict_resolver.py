# app/services/sync/conflict_resolver.py
"""Apply a resolution policy to detected conflicts"""
import logging
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.models.appointment import Appointment
from app.schemas.calendar_sync import (
    CalendarSyncStatus,
    ConflictResolutionResult,
    ConflictResolutionStrategy,
    ConflictSeverity,
    ConflictType,
    ResolutionRules,
    ResolutionStrategyName,
    SyncConflict,
)
from app.services.sync.sync_log_service import SyncLogService
from app.utils.datetime_utils import ensure_utc, parse_datetime, utcnow

logger = logging.getLogger(__name__)

FIELD_PRIORITY_STRATEGIES = {
    "crm": ResolutionStrategyName.CRM_WINS,
    "calendar": ResolutionStrategyName.CALENDAR_WINS,
    "newest": ResolutionStrategyName.NEWEST_WINS,
}

MERGEABLE_FIELDS = ("description",)

# Conflict field -> appointment attribute written on calendar_wins
APPOINTMENT_ATTRIBUTES = {
    "title": "title",
    "location": "location",
    "description": "notes",
}


def default_strategy() -> ConflictResolutionStrategy:
    return ConflictResolutionStrategy(
        strategy=ResolutionStrategyName.CRM_WINS,
        auto_resolve=True,
        resolution_rules=ResolutionRules(critical_fields=["customer_id", "property_id"]),
    )


class ConflictResolver:

    def __init__(self, db: Session, sync_log: SyncLogService):
        self.db = db
        self.sync_log = sync_log

    @staticmethod
    def is_auto_resolvable(conflict: SyncConflict, strategy: ConflictResolutionStrategy) -> bool:
        if not strategy.auto_resolve:
            return False
        if conflict.severity == ConflictSeverity.CRITICAL:
            return False
        if conflict.field and conflict.field in strategy.resolution_rules.critical_fields:
            return False
        # Both always go to manual review
        if conflict.type in (ConflictType.DUPLICATE_EVENT, ConflictType.DELETION_CONFLICT):
            return False
        return True

    @staticmethod
    def select_strategy(conflict: SyncConflict, strategy: ConflictResolutionStrategy) -> ResolutionStrategyName:
        priority = strategy.resolution_rules.field_priority.get(conflict.field or "")
        if priority in FIELD_PRIORITY_STRATEGIES:
            return FIELD_PRIORITY_STRATEGIES[priority]
        return strategy.strategy

    def resolve_conflicts(
            self,
            conflicts: List[SyncConflict],
            strategy: Optional[ConflictResolutionStrategy] = None,
            appointment: Optional[Appointment] = None,
            connection_id: Optional[UUID] = None
    ) -> ConflictResolutionResult:
        strategy = strategy or default_strategy()
        result = ConflictResolutionResult()

        for conflict in conflicts:
            chosen = self.select_strategy(conflict, strategy)

            if not self.is_auto_resolvable(conflict, strategy) or chosen == ResolutionStrategyName.MANUAL_REVIEW:
                result.pending.append(conflict)
                self.sync_log.log_conflict_resolution(conflict, chosen, resolved=False, connection_id=connection_id)
                continue

            target = appointment if appointment is not None and appointment.id == conflict.appointment_id \
                else self._load_appointment(conflict.appointment_id)
            if target is None:
                result.pending.append(conflict)
                self.sync_log.log_conflict_resolution(
                    conflict, chosen, resolved=False, connection_id=connection_id,
                    message=f"Conflict {conflict.type.value} deferred: appointment not found",
                )
                continue

            applied = self.apply_resolution(conflict, chosen, target)
            result.resolved.append(conflict)
            self.sync_log.log_conflict_resolution(conflict, applied, resolved=True, connection_id=connection_id)

        if result.pending:
            logger.info(f"{len(result.pending)} conflict(s) pending manual review")
        return result

    def _load_appointment(self, appointment_id: Optional[UUID]) -> Optional[Appointment]:
        if appointment_id is None:
            return None
        return self.db.get(Appointment, appointment_id)

    def apply_resolution(
            self,
            conflict: SyncConflict,
            strategy: ResolutionStrategyName,
            appointment: Appointment
    ) -> ResolutionStrategyName:
        """Write the winning side into the appointment and return the strategy actually applied"""
        if strategy == ResolutionStrategyName.NEWEST_WINS:
            # An event without a modification time counts as just edited
            calendar_ts = ensure_utc(conflict.calendar_updated_at) or utcnow()
            crm_ts = ensure_utc(conflict.crm_updated_at)
            if crm_ts is not None and crm_ts > calendar_ts:
                strategy = ResolutionStrategyName.CRM_WINS
            else:
                strategy = ResolutionStrategyName.CALENDAR_WINS

        if strategy == ResolutionStrategyName.MERGE:
            # Only two non-empty notes are merged; anything else is a plain CRM win
            if conflict.field in MERGEABLE_FIELDS and conflict.crm_value and conflict.calendar_value:
                appointment.notes = f"{conflict.crm_value}\n\n[Calendar Note: {conflict.calendar_value}]"
                appointment.calendar_sync_status = CalendarSyncStatus.PENDING.value
                return ResolutionStrategyName.MERGE
            strategy = ResolutionStrategyName.CRM_WINS

        if strategy == ResolutionStrategyName.CALENDAR_WINS:
            self._apply_calendar_value(conflict, appointment)
            return ResolutionStrategyName.CALENDAR_WINS

        # CRM stays authoritative; the next push overwrites the calendar side
        appointment.calendar_sync_status = CalendarSyncStatus.PENDING.value
        return ResolutionStrategyName.CRM_WINS

    @staticmethod
    def _apply_calendar_value(conflict: SyncConflict, appointment: Appointment) -> None:
        if conflict.type == ConflictType.TIMING_CONFLICT:
            values = conflict.calendar_value or {}
            start_time = parse_datetime(values.get("start_time"))
            end_time = parse_datetime(values.get("end_time"))
            if start_time:
                appointment.start_time = start_time
            if end_time:
                appointment.end_time = end_time
            return

        attribute = APPOINTMENT_ATTRIBUTES.get(conflict.field or "")
        if attribute:
            setattr(appointment, attribute, conflict.calendar_value)
