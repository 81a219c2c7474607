# app/models/calendar_connection.py
from sqlalchemy import Column, String, Boolean, DateTime, LargeBinary, Text, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.models.base import Base
import uuid


class CalendarConnection(Base):
    __tablename__ = "calendar_connections"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(String(64), nullable=False, index=True)

    provider = Column(String(20), nullable=False)  # 'google', 'apple'
    calendar_id = Column(String(512), nullable=False)  # Google calendar id or CalDAV calendar URL
    calendar_name = Column(String(200))
    account_email = Column(String(320))  # Apple ID for CalDAV connections

    # OAuth tokens, Fernet-encrypted (see app.utils.encryption)
    access_token_encrypted = Column(LargeBinary)
    refresh_token_encrypted = Column(LargeBinary)
    token_expires_at = Column(DateTime(timezone=True))

    # Sync settings
    sync_direction = Column(String(20), default="bidirectional")  # crm_to_calendar, calendar_to_crm, bidirectional
    auto_sync = Column(Boolean, default=True)
    sync_status = Column(String(20), default="connected")  # connected, syncing, error, expired, disconnected
    sync_error = Column(Text)
    last_sync_at = Column(DateTime(timezone=True))

    # Soft-deactivated on disconnect so the audit history stays intact
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    events = relationship("CalendarEvent", back_populates="connection")

    __table_args__ = (
        Index("idx_calendar_connections_owner_provider", "owner_id", "provider"),
    )

    def __repr__(self):
        return f"<CalendarConnection(id={self.id}, provider={self.provider}, status={self.sync_status})>"

    def to_dict(self):
        """Convert to dictionary for API responses (never includes tokens)"""
        return {
            "id": str(self.id),
            "owner_id": self.owner_id,
            "provider": self.provider,
            "calendar_id": self.calendar_id,
            "calendar_name": self.calendar_name,
            "account_email": self.account_email,
            "sync_direction": self.sync_direction,
            "auto_sync": self.auto_sync,
            "sync_status": self.sync_status,
            "sync_error": self.sync_error,
            "is_active": self.is_active,
            "token_expires_at": self.token_expires_at.isoformat() if self.token_expires_at else None,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
