# app/models/__init__.py
"""ORM models; importing this package registers every table on Base.metadata"""
from .base import Base
from .calendar_connection import CalendarConnection
from .appointment import Appointment
from .calendar_event import CalendarEvent
from .sync_log import SyncLog

__all__ = ["Base", "CalendarConnection", "Appointment", "CalendarEvent", "SyncLog"]
