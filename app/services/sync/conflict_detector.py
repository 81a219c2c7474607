# app/services/sync/conflict_detector.py
"""Detect divergence between an appointment and its external event"""
import logging
from typing import List, Optional, Union
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.config.settings import get_settings
from app.models.appointment import Appointment
from app.models.calendar_event import CalendarEvent
from app.schemas.calendar_events import (
    AppleRawEvent,
    CalendarProvider,
    EventStatus,
    GoogleRawEvent,
    NormalizedEvent,
    normalize_event,
)
from app.schemas.calendar_sync import (
    INACTIVE_APPOINTMENT_STATUSES,
    ConflictSeverity,
    ConflictType,
    ResolutionStrategyName,
    SyncConflict,
)
from app.services.sync.event_mapping import event_end_time, extract_user_notes
from app.utils.datetime_utils import ensure_utc, minutes_between

settings = get_settings()

logger = logging.getLogger(__name__)

HIGH_SEVERITY_MINUTES = 60

# field -> (appointment attribute, severity, suggested resolution)
COMPARED_FIELDS = {
    "title": ("title", ConflictSeverity.LOW, ResolutionStrategyName.CRM_WINS),
    "location": ("location", ConflictSeverity.MEDIUM, ResolutionStrategyName.CRM_WINS),
    "description": ("notes", ConflictSeverity.LOW, ResolutionStrategyName.MERGE),
}

ExternalEvent = Union[GoogleRawEvent, AppleRawEvent, NormalizedEvent, dict]


def _text(value: Optional[str]) -> str:
    return (value or "").strip()


class ConflictDetector:
    """Each rule is independent, so one pair can yield several conflicts"""

    def __init__(self, db: Optional[Session] = None, threshold_minutes: Optional[int] = None):
        self.db = db
        self.threshold_minutes = (
            threshold_minutes if threshold_minutes is not None else settings.CONFLICT_THRESHOLD_MINUTES
        )

    def detect_conflicts(
            self,
            appointment: Appointment,
            external_event: Optional[ExternalEvent],
            provider: Union[CalendarProvider, str],
            mirror_count: Optional[int] = None,
            connection_id: Optional[UUID] = None
    ) -> List[SyncConflict]:
        provider = CalendarProvider(provider)
        conflicts: List[SyncConflict] = []

        duplicate = self._detect_duplicate(appointment, provider, mirror_count, connection_id)
        if duplicate:
            conflicts.append(duplicate)

        if external_event is None:
            conflicts.append(self._deletion_conflict(appointment, None, "Event removed from calendar"))
            return conflicts

        event = normalize_event(external_event, provider)

        if event.status == EventStatus.CANCELLED.value:
            if appointment.status not in INACTIVE_APPOINTMENT_STATUSES:
                conflicts.append(self._deletion_conflict(appointment, event, "Event cancelled in calendar"))
            return conflicts

        timing = self._detect_timing(appointment, event)
        if timing:
            conflicts.append(timing)

        conflicts.extend(self._detect_data_mismatches(appointment, event))

        if conflicts:
            logger.debug(f"Detected {len(conflicts)} conflict(s) for appointment {appointment.id}")
        return conflicts

    def _detect_timing(self, appointment: Appointment, event: NormalizedEvent) -> Optional[SyncConflict]:
        if event.start_time is None:
            return None

        crm_start = ensure_utc(appointment.start_time)
        crm_end = event_end_time(appointment)
        start_diff = minutes_between(crm_start, event.start_time)
        end_diff = minutes_between(crm_end, event.end_time) if event.end_time else 0.0

        if start_diff <= self.threshold_minutes and end_diff <= self.threshold_minutes:
            return None

        max_diff = max(start_diff, end_diff)
        return SyncConflict(
            type=ConflictType.TIMING_CONFLICT,
            severity=ConflictSeverity.HIGH if max_diff > HIGH_SEVERITY_MINUTES else ConflictSeverity.MEDIUM,
            appointment_id=appointment.id,
            external_event_id=event.external_id,
            field="timing",
            crm_value={"start_time": crm_start, "end_time": crm_end},
            calendar_value={"start_time": event.start_time, "end_time": event.end_time},
            crm_updated_at=ensure_utc(appointment.updated_at),
            calendar_updated_at=event.last_modified,
            time_difference_minutes=max_diff,
            suggested_resolution=ResolutionStrategyName.NEWEST_WINS,
        )

    def _detect_data_mismatches(self, appointment: Appointment, event: NormalizedEvent) -> List[SyncConflict]:
        calendar_values = {
            "title": _text(event.title),
            "location": _text(event.location),
            "description": extract_user_notes(event.description),
        }

        conflicts = []
        for field, (attribute, severity, suggestion) in COMPARED_FIELDS.items():
            crm_value = _text(getattr(appointment, attribute))
            calendar_value = calendar_values[field]
            if crm_value == calendar_value:
                continue
            conflicts.append(SyncConflict(
                type=ConflictType.DATA_MISMATCH,
                severity=severity,
                appointment_id=appointment.id,
                external_event_id=event.external_id,
                field=field,
                crm_value=crm_value,
                calendar_value=calendar_value,
                crm_updated_at=ensure_utc(appointment.updated_at),
                calendar_updated_at=event.last_modified,
                suggested_resolution=suggestion,
            ))
        return conflicts

    def _detect_duplicate(self, appointment: Appointment, provider: CalendarProvider,
                          mirror_count: Optional[int], connection_id: Optional[UUID]) -> Optional[SyncConflict]:
        if mirror_count is None:
            if self.db is None:
                return None
            mirror_count = self._mirror_count(appointment, provider, connection_id)
        if mirror_count <= 1:
            return None
        return SyncConflict(
            type=ConflictType.DUPLICATE_EVENT,
            severity=ConflictSeverity.MEDIUM,
            appointment_id=appointment.id,
            field="event",
            crm_value=1,
            calendar_value=mirror_count,
            suggested_resolution=ResolutionStrategyName.MANUAL_REVIEW,
        )

    def _mirror_count(self, appointment: Appointment, provider: CalendarProvider,
                      connection_id: Optional[UUID]) -> int:
        # One mirror per connection is expected, so two calendars of the same provider are not duplicates
        query = (
            self.db.query(CalendarEvent.calendar_connection_id, func.count(CalendarEvent.id))
            .filter(
                CalendarEvent.appointment_id == appointment.id,
                CalendarEvent.provider == provider.value,
                CalendarEvent.status != "deleted",
            )
        )
        if connection_id is not None:
            query = query.filter(CalendarEvent.calendar_connection_id == connection_id)
        counts = [count for _, count in query.group_by(CalendarEvent.calendar_connection_id).all()]
        return max(counts, default=0)

    @staticmethod
    def _deletion_conflict(appointment: Appointment, event: Optional[NormalizedEvent], reason: str) -> SyncConflict:
        logger.info(f"Deletion conflict for appointment {appointment.id}: {reason}")
        return SyncConflict(
            type=ConflictType.DELETION_CONFLICT,
            severity=ConflictSeverity.HIGH,
            appointment_id=appointment.id,
            external_event_id=event.external_id if event else None,
            field="event",
            crm_value=appointment.status,
            calendar_value=event.status if event else None,
            crm_updated_at=ensure_utc(appointment.updated_at),
            calendar_updated_at=event.last_modified if event else None,
            suggested_resolution=ResolutionStrategyName.MANUAL_REVIEW,
        )
