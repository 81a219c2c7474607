# app/services/sync/sync_log_service.py
"""Append-only sync audit log and the statistics computed from it"""
from datetime import datetime, timedelta, date
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID
import logging

from sqlalchemy.orm import Session

from app.models.sync_log import SyncLog
from app.schemas.calendar_sync import (
    ConflictStats,
    RecentSyncError,
    SyncConflict,
    SyncDirection,
    SyncLogStatus,
    SyncOperation,
    SyncStats,
)
from app.utils.datetime_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

SENSITIVE_KEY_PARTS = ("token", "secret", "password")
CONFLICT_LOG_KIND = "conflict_resolution"
RECENT_ERROR_LIMIT = 5


def scrub_details(value: Any) -> Any:
    """Drop credential-looking keys and make values JSON-safe"""
    if isinstance(value, dict):
        return {
            str(key): scrub_details(item)
            for key, item in value.items()
            if not any(part in str(key).lower() for part in SENSITIVE_KEY_PARTS)
        }
    if isinstance(value, (list, tuple)):
        return [scrub_details(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    return value


class SyncLogService:

    def __init__(self, db: Session):
        self.db = db

    def log_operation(
            self,
            connection_id: Optional[UUID],
            appointment_id: Optional[UUID],
            operation: str,
            direction: str,
            status: str,
            message: Optional[str] = None,
            details: Optional[Dict[str, Any]] = None
    ) -> SyncLog:
        entry = SyncLog(
            calendar_connection_id=connection_id,
            appointment_id=appointment_id,
            operation=getattr(operation, "value", operation),
            direction=getattr(direction, "value", direction),
            status=getattr(status, "value", status),
            message=message,
            details=scrub_details(details or {}),
        )
        self.db.add(entry)
        self.db.commit()
        return entry

    def log_conflict_resolution(
            self,
            conflict: SyncConflict,
            strategy: str,
            resolved: bool,
            connection_id: Optional[UUID] = None,
            message: Optional[str] = None
    ) -> SyncLog:
        strategy = getattr(strategy, "value", strategy)
        if message is None:
            message = (
                f"Conflict {conflict.type.value} on {conflict.field or 'event'} resolved via {strategy}"
                if resolved else
                f"Conflict {conflict.type.value} on {conflict.field or 'event'} deferred to manual review"
            )
        return self.log_operation(
            connection_id=connection_id,
            appointment_id=conflict.appointment_id,
            operation=SyncOperation.SYNC,
            direction=SyncDirection.BIDIRECTIONAL,
            status=SyncLogStatus.SUCCESS if resolved else SyncLogStatus.SKIPPED,
            message=message,
            details={
                "kind": CONFLICT_LOG_KIND,
                "conflict_id": conflict.id,
                "conflict_type": conflict.type,
                "severity": conflict.severity,
                "field": conflict.field,
                "strategy": strategy,
                "resolved": resolved,
                "crm_value": conflict.crm_value,
                "calendar_value": conflict.calendar_value,
                "external_event_id": conflict.external_event_id,
            },
        )

    def get_recent_logs(self, connection_id: UUID, limit: int = 50) -> List[SyncLog]:
        return (
            self.db.query(SyncLog)
            .filter(SyncLog.calendar_connection_id == connection_id)
            .order_by(SyncLog.created_at.desc())
            .limit(limit)
            .all()
        )

    def get_sync_stats(self, connection_id: UUID, days: int = 30) -> SyncStats:
        since = utcnow() - timedelta(days=days)
        logs = (
            self.db.query(SyncLog)
            .filter(
                SyncLog.calendar_connection_id == connection_id,
                SyncLog.created_at >= since,
            )
            .order_by(SyncLog.created_at.desc())
            .all()
        )

        stats = SyncStats(total_operations=len(logs))
        for log in logs:
            if log.status == SyncLogStatus.SUCCESS.value:
                stats.successful += 1
            elif log.status == SyncLogStatus.ERROR.value:
                stats.failed += 1
            elif log.status == SyncLogStatus.SKIPPED.value:
                stats.skipped += 1

            if log.operation in stats.by_operation:
                stats.by_operation[log.operation] += 1
            if log.direction in stats.by_direction:
                stats.by_direction[log.direction] += 1

        if logs:
            stats.last_sync = ensure_utc(logs[0].created_at)

        stats.recent_errors = [
            RecentSyncError(
                date=ensure_utc(log.created_at),
                operation=log.operation,
                status=log.status,
                message=log.message,
            )
            for log in logs
            if log.status == SyncLogStatus.ERROR.value
        ][:RECENT_ERROR_LIMIT]

        return stats

    def get_conflict_stats(self, days: int = 30) -> ConflictStats:
        since = utcnow() - timedelta(days=days)
        logs = (
            self.db.query(SyncLog)
            .filter(
                SyncLog.operation == SyncOperation.SYNC.value,
                SyncLog.direction == SyncDirection.BIDIRECTIONAL.value,
                SyncLog.created_at >= since,
            )
            .all()
        )

        stats = ConflictStats()
        for log in logs:
            details = log.details or {}
            if details.get("kind") != CONFLICT_LOG_KIND:
                continue

            stats.total_conflicts += 1
            if details.get("resolved"):
                stats.auto_resolved += 1
            else:
                stats.manual_resolution += 1

            for bucket, key in (
                    (stats.by_type, "conflict_type"),
                    (stats.by_severity, "severity"),
                    (stats.resolution_strategies, "strategy"),
            ):
                value = details.get(key)
                if value in bucket:
                    bucket[value] += 1

        return stats
