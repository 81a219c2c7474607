# app/models/sync_log.py
from sqlalchemy import Column, String, DateTime, JSON, Text, ForeignKey
from sqlalchemy.dialects.postgresql import UUID
import uuid
from app.models.base import Base
from app.utils.datetime_utils import utcnow


class SyncLog(Base):
    """Append-only audit entry, one per sync decision"""
    __tablename__ = "calendar_sync_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    calendar_connection_id = Column(
        UUID(as_uuid=True), ForeignKey("calendar_connections.id", ondelete="CASCADE"), nullable=True, index=True
    )
    appointment_id = Column(UUID(as_uuid=True), nullable=True)
    operation = Column(String(20), nullable=False)  # create, update, delete, sync
    direction = Column(String(20), nullable=False)  # crm_to_calendar, calendar_to_crm, bidirectional
    status = Column(String(20), nullable=False)  # success, error, skipped
    message = Column(Text)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)

    def to_dict(self):
        return {
            "id": str(self.id),
            "connection_id": str(self.calendar_connection_id) if self.calendar_connection_id else None,
            "appointment_id": str(self.appointment_id) if self.appointment_id else None,
            "operation": self.operation,
            "direction": self.direction,
            "status": self.status,
            "message": self.message,
            "details": self.details or {},
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
