# app/models/calendar_event.py
from sqlalchemy import Column, String, Text, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.models.base import Base
import uuid


class CalendarEvent(Base):
    """Local mirror of an externally visible event, never authoritative over Appointment"""
    __tablename__ = "calendar_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    calendar_connection_id = Column(
        UUID(as_uuid=True), ForeignKey("calendar_connections.id", ondelete="CASCADE"), nullable=False
    )
    # Back-reference only; appointments are owned by the scheduling subsystem
    appointment_id = Column(UUID(as_uuid=True), ForeignKey("appointments.id", ondelete="SET NULL"), nullable=True)

    external_id = Column(String(1024), nullable=False)
    provider = Column(String(20), nullable=False)

    # Snapshot of what was last pushed or pulled
    title = Column(String(300), nullable=False)
    description = Column(Text)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    location = Column(String(500))
    status = Column(String(20), nullable=False, default="confirmed")  # confirmed, cancelled, deleted
    sync_status = Column(String(20), default="synced")  # synced, pending, error
    last_modified = Column(DateTime(timezone=True))

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    connection = relationship("CalendarConnection", back_populates="events")

    __table_args__ = (
        Index("idx_calendar_events_connection_external", "calendar_connection_id", "external_id"),
        Index("idx_calendar_events_appointment", "appointment_id"),
    )

    def __repr__(self):
        return f"<CalendarEvent(id={self.id}, external_id={self.external_id}, status={self.status})>"
