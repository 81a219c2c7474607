# app/schemas/calendar_sync.py
from __future__ import annotations
from pydantic import BaseModel, Field, field_validator
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
from uuid import UUID, uuid4


class SyncDirection(str, Enum):
    CRM_TO_CALENDAR = "crm_to_calendar"
    CALENDAR_TO_CRM = "calendar_to_crm"
    BIDIRECTIONAL = "bidirectional"

    def includes_push(self) -> bool:
        return self in (SyncDirection.CRM_TO_CALENDAR, SyncDirection.BIDIRECTIONAL)

    def includes_pull(self) -> bool:
        return self in (SyncDirection.CALENDAR_TO_CRM, SyncDirection.BIDIRECTIONAL)


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    SYNCING = "syncing"
    ERROR = "error"
    EXPIRED = "expired"
    DISCONNECTED = "disconnected"


class AppointmentStatus(str, Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


INACTIVE_APPOINTMENT_STATUSES = (AppointmentStatus.CANCELLED.value, AppointmentStatus.COMPLETED.value)


class CalendarSyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


class SyncOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SYNC = "sync"


class SyncLogStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class SyncAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    SKIP = "skip"


# ========== SYNC REQUEST / RESULT ==========

class TimeRange(BaseModel):
    start: datetime
    end: datetime

    @field_validator("end")
    @classmethod
    def end_after_start(cls, v: datetime, info) -> datetime:
        start = info.data.get("start")
        if start and v <= start:
            raise ValueError("End of time range must be after its start")
        return v


class SyncOptions(BaseModel):
    """Options accepted by SyncOrchestrator.sync_connection"""
    direction: Optional[SyncDirection] = Field(None, description="Overrides the connection's direction")
    time_range: Optional[TimeRange] = Field(None, description="Overrides the default +/- window")
    force_sync: bool = Field(False, description="Include appointments already marked synced")
    dry_run: bool = Field(False, description="Only determine and count actions")


class SyncResult(BaseModel):
    success: bool = False
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: List[str] = Field(default_factory=list)
    pending_conflicts: int = 0


class RecentSyncError(BaseModel):
    date: Optional[datetime] = None
    operation: str
    status: str
    message: Optional[str] = None


class SyncStats(BaseModel):
    total_operations: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    by_operation: Dict[str, int] = Field(default_factory=lambda: {op.value: 0 for op in SyncOperation})
    by_direction: Dict[str, int] = Field(
        default_factory=lambda: {
            SyncDirection.CRM_TO_CALENDAR.value: 0,
            SyncDirection.CALENDAR_TO_CRM.value: 0,
        }
    )
    last_sync: Optional[datetime] = None
    recent_errors: List[RecentSyncError] = Field(default_factory=list)


# ========== CONFLICTS ==========

class ConflictType(str, Enum):
    TIMING_CONFLICT = "timing_conflict"
    DATA_MISMATCH = "data_mismatch"
    DUPLICATE_EVENT = "duplicate_event"
    DELETION_CONFLICT = "deletion_conflict"


class ConflictSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ResolutionStrategyName(str, Enum):
    CRM_WINS = "crm_wins"
    CALENDAR_WINS = "calendar_wins"
    NEWEST_WINS = "newest_wins"
    MERGE = "merge"
    MANUAL_REVIEW = "manual_review"


class SyncConflict(BaseModel):
    """In-memory conflict value; only its resolution is persisted"""
    id: str = Field(default_factory=lambda: uuid4().hex)
    type: ConflictType
    severity: ConflictSeverity
    appointment_id: Optional[UUID] = None
    external_event_id: Optional[str] = None
    field: Optional[str] = None
    crm_value: Any = None
    calendar_value: Any = None
    crm_updated_at: Optional[datetime] = None
    calendar_updated_at: Optional[datetime] = None
    time_difference_minutes: Optional[float] = None
    suggested_resolution: ResolutionStrategyName
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ResolutionRules(BaseModel):
    field_priority: Dict[str, str] = Field(default_factory=dict, description="field -> crm | calendar | newest")
    time_threshold: Optional[int] = Field(None, ge=0, description="Timing tolerance in minutes")
    critical_fields: List[str] = Field(default_factory=list)


class ConflictResolutionStrategy(BaseModel):
    strategy: ResolutionStrategyName = ResolutionStrategyName.CRM_WINS
    auto_resolve: bool = True
    resolution_rules: ResolutionRules = Field(default_factory=ResolutionRules)


class ConflictResolutionResult(BaseModel):
    resolved: List[SyncConflict] = Field(default_factory=list)
    pending: List[SyncConflict] = Field(default_factory=list)


class ConflictStats(BaseModel):
    total_conflicts: int = 0
    auto_resolved: int = 0
    manual_resolution: int = 0
    by_type: Dict[str, int] = Field(default_factory=lambda: {t.value: 0 for t in ConflictType})
    by_severity: Dict[str, int] = Field(default_factory=lambda: {s.value: 0 for s in ConflictSeverity})
    resolution_strategies: Dict[str, int] = Field(
        default_factory=lambda: {s.value: 0 for s in ResolutionStrategyName}
    )


# ========== TOKENS ==========

class TokenHealthStatus(str, Enum):
    HEALTHY = "healthy"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"
    INVALID = "invalid"


class TokenHealth(BaseModel):
    status: TokenHealthStatus
    expires_at: Optional[datetime] = None
    minutes_to_expiry: Optional[int] = None
    needs_refresh: bool = False
    can_refresh: bool = False


class TokenMaintenanceResult(BaseModel):
    checked: int = 0
    refreshed: int = 0
    expired: int = 0
    errors: int = 0
    summary: Dict[str, int] = Field(default_factory=lambda: {s.value: 0 for s in TokenHealthStatus})


# ========== HTTP REQUEST BODIES ==========

class AppleConnectRequest(BaseModel):
    owner_id: str = Field(..., description="CRM user owning the connection")
    username: str = Field(..., description="Apple ID")
    password: str = Field(..., description="App-specific password")
    calendar_url: Optional[str] = Field(None, description="CalDAV calendar URL; first calendar if omitted")


class ConnectionUpdateRequest(BaseModel):
    sync_direction: Optional[SyncDirection] = None
    auto_sync: Optional[bool] = None
    calendar_id: Optional[str] = None
