# app/models/appointment.py
from sqlalchemy import Column, String, Text, DateTime
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.sql import func
from app.models.base import Base
import uuid

# Per-provider column holding the external event id
EXTERNAL_EVENT_ID_FIELDS = {
    "google": "google_calendar_event_id",
    "apple": "apple_calendar_event_id",
}


class Appointment(Base):
    """Scheduling record owned by the CRM; the sync engine only writes the sync fields"""
    __tablename__ = "appointments"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(String(64), nullable=False, index=True)

    # References
    customer_id = Column(String(64), nullable=True)
    property_id = Column(String(64), nullable=True)

    # Appointment details
    title = Column(String(300), nullable=False)
    description = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    location = Column(String(500), nullable=True)
    appointment_type = Column(String(50), default="viewing")
    start_time = Column(DateTime(timezone=True), nullable=False, index=True)
    end_time = Column(DateTime(timezone=True), nullable=True)

    # Status tracking
    status = Column(String(20), default="scheduled")  # scheduled, confirmed, cancelled, completed

    # Calendar sync
    google_calendar_event_id = Column(String(1024), nullable=True)
    apple_calendar_event_id = Column(String(1024), nullable=True)
    calendar_sync_status = Column(String(20), default="pending")  # pending, synced, error
    calendar_sync_error = Column(Text, nullable=True)
    last_calendar_sync_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<Appointment(id={self.id}, title={self.title}, status={self.status})>"

    def get_external_event_id(self, provider: str):
        field = EXTERNAL_EVENT_ID_FIELDS.get(provider)
        return getattr(self, field) if field else None

    def set_external_event_id(self, provider: str, event_id):
        field = EXTERNAL_EVENT_ID_FIELDS.get(provider)
        if field:
            setattr(self, field, event_id)
