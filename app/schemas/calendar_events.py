# app/schemas/calendar_events.py
from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field, SecretStr
from typing import Optional, List, Literal, Union
from datetime import datetime, timezone
from enum import Enum

from app.utils.datetime_utils import parse_datetime


class CalendarProvider(str, Enum):
    GOOGLE = "google"
    APPLE = "apple"


class EventStatus(str, Enum):
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


# ========== PROVIDER-NATIVE EVENT SHAPES ==========

class GoogleEventTime(BaseModel):
    """Google `start`/`end` object; all-day events only carry `date`"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    date_time: Optional[str] = Field(None, alias="dateTime")
    date: Optional[str] = None
    time_zone: Optional[str] = Field(None, alias="timeZone")

    def as_datetime(self) -> Optional[datetime]:
        return parse_datetime(self.date_time or self.date)


class GoogleRawEvent(BaseModel):
    """Event resource as returned by events.list / events.insert"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    provider: Literal["google"] = "google"
    id: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    status: Optional[str] = None
    start: Optional[GoogleEventTime] = None
    end: Optional[GoogleEventTime] = None
    updated: Optional[str] = None

    def normalize(self) -> NormalizedEvent:
        return NormalizedEvent(
            external_id=self.id,
            provider=CalendarProvider.GOOGLE,
            title=self.summary,
            description=self.description,
            location=self.location,
            start_time=self.start.as_datetime() if self.start else None,
            end_time=self.end.as_datetime() if self.end else None,
            status=(self.status or EventStatus.CONFIRMED.value).lower(),
            last_modified=parse_datetime(self.updated),
        )


class AppleRawEvent(BaseModel):
    """VEVENT properties read from a CalDAV calendar"""
    model_config = ConfigDict(extra="ignore")

    provider: Literal["apple"] = "apple"
    uid: Optional[str] = None
    summary: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    status: Optional[str] = None  # CONFIRMED, TENTATIVE, CANCELLED
    dtstart: Optional[datetime] = None
    dtend: Optional[datetime] = None
    last_modified: Optional[datetime] = None

    def normalize(self) -> NormalizedEvent:
        return NormalizedEvent(
            external_id=self.uid,
            provider=CalendarProvider.APPLE,
            title=self.summary,
            description=self.description,
            location=self.location,
            start_time=parse_datetime(self.dtstart),
            end_time=parse_datetime(self.dtend),
            status=(self.status or EventStatus.CONFIRMED.value).lower(),
            last_modified=parse_datetime(self.last_modified),
        )


class NormalizedEvent(BaseModel):
    """Provider-agnostic event shape consumed by conflict detection"""
    external_id: Optional[str] = None
    provider: CalendarProvider
    title: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    status: str = EventStatus.CONFIRMED.value
    last_modified: Optional[datetime] = None


def normalize_event(event: Union[GoogleRawEvent, AppleRawEvent, NormalizedEvent, dict],
                    provider: Union[CalendarProvider, str]) -> NormalizedEvent:
    """Map any provider-native event onto NormalizedEvent"""
    if isinstance(event, NormalizedEvent):
        return event
    if isinstance(event, (GoogleRawEvent, AppleRawEvent)):
        return event.normalize()

    provider = CalendarProvider(provider)
    if provider == CalendarProvider.GOOGLE:
        return GoogleRawEvent.model_validate(event).normalize()
    return AppleRawEvent.model_validate(event).normalize()


# ========== OUTBOUND EVENT SHAPE ==========

class EventPayload(BaseModel):
    """Internal event shape pushed to providers"""
    title: str
    description: str = ""
    start_time: datetime
    end_time: datetime
    location: Optional[str] = None
    status: EventStatus = EventStatus.CONFIRMED
    timezone: str = "UTC"


# ========== CREDENTIALS ==========

class TokenSet(BaseModel):
    """Tokens returned by an Authenticator"""
    access_token: SecretStr
    refresh_token: Optional[SecretStr] = None
    expires_at: Optional[datetime] = None
    scopes: List[str] = Field(default_factory=list)


class CredentialContext(BaseModel):
    """Immutable per-call credentials handed to a provider adapter"""
    model_config = ConfigDict(frozen=True)

    connection_id: Optional[str] = None
    provider: CalendarProvider
    calendar_id: Optional[str] = None
    account: Optional[str] = None
    access_token: SecretStr
    refresh_token: Optional[SecretStr] = None
    expires_at: Optional[datetime] = None
    issued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
