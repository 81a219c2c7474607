from .calendar_events import (
    CalendarProvider,
    EventStatus,
    GoogleEventTime,
    GoogleRawEvent,
    AppleRawEvent,
    NormalizedEvent,
    normalize_event,
    EventPayload,
    TokenSet,
    CredentialContext
)

from .calendar_sync import (
    SyncDirection,
    ConnectionStatus,
    AppointmentStatus,
    INACTIVE_APPOINTMENT_STATUSES,
    CalendarSyncStatus,
    SyncOperation,
    SyncLogStatus,
    SyncAction,
    TimeRange,
    SyncOptions,
    SyncResult,
    RecentSyncError,
    SyncStats,
    ConflictType,
    ConflictSeverity,
    ResolutionStrategyName,
    SyncConflict,
    ResolutionRules,
    ConflictResolutionStrategy,
    ConflictResolutionResult,
    ConflictStats,
    TokenHealthStatus,
    TokenHealth,
    TokenMaintenanceResult,
    AppleConnectRequest,
    ConnectionUpdateRequest
)
