# app/services/calendar/apple_calendar_service.py
"""Apple iCloud calendar over CalDAV, events serialized as ICS"""
from datetime import datetime, timezone
from typing import List, Optional, Tuple
import logging

import caldav
import requests
from caldav.lib.error import AuthorizationError, DAVError, NotFoundError
from icalendar import Calendar as ICalendar
from icalendar import Event as IEvent

from app.config.settings import get_settings
from app.core.exceptions import (
    AuthenticationError,
    CalendarSyncError,
    ConnectionExpiredError,
    ProviderRequestError,
    TransientNetworkError,
    UnsupportedProviderError,
    get_error_message,
)
from app.schemas.calendar_events import (
    AppleRawEvent,
    CalendarProvider,
    CredentialContext,
    EventPayload,
    NormalizedEvent,
    TokenSet,
)
from app.services.calendar.base import Authenticator, ProviderAdapter
from app.utils.datetime_utils import ensure_utc, parse_datetime

settings = get_settings()

logger = logging.getLogger(__name__)

PRODID = "-//Calendar Sync Service//CalDAV//DE"


class AppleAuthenticator(Authenticator):
    """App-specific passwords do not expire and cannot be refreshed"""

    def exchange_code(self, code: str) -> TokenSet:
        raise UnsupportedProviderError("Apple calendar does not use an authorization code flow")

    def refresh_token(self, refresh_token: str) -> TokenSet:
        raise ConnectionExpiredError(
            "Apple credentials cannot be refreshed, re-authentication required"
        )


def build_ics(uid: str, payload: EventPayload) -> str:
    """Serialize the internal event shape as a single-VEVENT calendar"""
    cal = ICalendar()
    cal.add('prodid', PRODID)
    cal.add('version', '2.0')

    event = IEvent()
    event.add('uid', uid)
    event.add('summary', payload.title)
    event.add('description', payload.description or "")
    event.add('dtstart', ensure_utc(payload.start_time))
    event.add('dtend', ensure_utc(payload.end_time))
    if payload.location:
        event.add('location', payload.location)
    event.add('status', payload.status.value.upper())
    event.add('dtstamp', datetime.now(timezone.utc))
    cal.add_component(event)

    return cal.to_ical().decode("utf-8")


def parse_ics(data) -> List[AppleRawEvent]:
    if isinstance(data, bytes):
        data = data.decode("utf-8")
    if not data:
        return []

    events = []
    for component in ICalendar.from_ical(data).walk('VEVENT'):
        events.append(AppleRawEvent(
            uid=str(component.get('uid', '')) or None,
            summary=_text(component.get('summary')),
            description=_text(component.get('description')),
            location=_text(component.get('location')),
            status=_text(component.get('status')),
            dtstart=_when(component.get('dtstart')),
            dtend=_when(component.get('dtend')),
            last_modified=_when(component.get('last-modified')),
        ))
    return events


def _text(value) -> Optional[str]:
    return str(value) if value is not None else None


def _when(value) -> Optional[datetime]:
    if value is None:
        return None
    return parse_datetime(value.dt)


class AppleCalendarAdapter(ProviderAdapter):
    """CalDAV adapter; the credential context carries Apple ID and app-specific password"""

    provider = CalendarProvider.APPLE.value

    def __init__(self, authenticator: Optional[AppleAuthenticator] = None,
                 server_url: Optional[str] = None, timeout: Optional[int] = None):
        super().__init__(authenticator or AppleAuthenticator())
        self.server_url = server_url or settings.APPLE_CALDAV_URL
        self.timeout = timeout or settings.PROVIDER_REQUEST_TIMEOUT_SECONDS

    def _client(self, username: Optional[str], password: str) -> caldav.DAVClient:
        return caldav.DAVClient(
            url=self.server_url,
            username=username,
            password=password,
            timeout=self.timeout,
        )

    def _calendar(self, ctx: CredentialContext):
        client = self._client(ctx.account, ctx.access_token.get_secret_value())
        if ctx.calendar_id:
            return client.calendar(url=ctx.calendar_id)
        calendars = client.principal().calendars()
        if not calendars:
            raise CalendarSyncError("No calendars found on CalDAV server")
        return calendars[0]

    def translate_error(self, error: Exception) -> Exception:
        if isinstance(error, AuthorizationError):
            return AuthenticationError(f"CalDAV authorization failed: {get_error_message(error)}", status_code=401)
        if isinstance(error, NotFoundError):
            return ProviderRequestError(f"CalDAV resource not found: {get_error_message(error)}", status_code=404)
        if isinstance(error, requests.exceptions.RequestException):
            return TransientNetworkError(get_error_message(error))
        if isinstance(error, DAVError):
            return ProviderRequestError(f"CalDAV error: {get_error_message(error)}")
        return super().translate_error(error)

    async def create_event(self, ctx: CredentialContext, payload: EventPayload, event_id: str) -> str:
        # The resource is addressed by UID, so saving it again overwrites
        ics = build_ics(event_id, payload)

        def _save():
            self._calendar(ctx).save_event(ics)

        await self._run("create_event", _save)
        return event_id

    async def update_event(self, ctx: CredentialContext, external_id: str, payload: EventPayload) -> None:
        ics = build_ics(external_id, payload)

        def _save():
            existing = self._calendar(ctx).event_by_uid(external_id)
            existing.data = ics
            existing.save()

        await self._run("update_event", _save)

    async def delete_event(self, ctx: CredentialContext, external_id: str) -> None:
        def _delete():
            try:
                self._calendar(ctx).event_by_uid(external_id).delete()
            except NotFoundError:
                logger.info(f"CalDAV event {external_id} already deleted")

        await self._run("delete_event", _delete)

    async def list_events(self, ctx: CredentialContext, start: datetime, end: datetime) -> List[NormalizedEvent]:
        def _search():
            results = self._calendar(ctx).search(
                start=ensure_utc(start), end=ensure_utc(end), event=True, expand=True
            )
            raw_events = []
            for caldav_event in results:
                raw_events.extend(parse_ics(caldav_event.data))
            return raw_events

        raw_events = await self._run("list_events", _search)
        return [event.normalize() for event in raw_events]

    async def test_connection(self, ctx: CredentialContext) -> bool:
        def _ping():
            self._calendar(ctx).get_display_name()

        await self._run("test_connection", _ping)
        return True

    async def discover_calendar(self, username: str, password: str,
                                calendar_url: Optional[str] = None) -> Tuple[str, str]:
        """Validate the credentials by a principal lookup and pick a calendar"""
        def _discover():
            calendars = self._client(username, password).principal().calendars()
            if not calendars:
                raise CalendarSyncError("No calendars found on CalDAV server")
            if calendar_url:
                for cal in calendars:
                    if str(cal.url) == calendar_url:
                        return str(cal.url), cal.name or "iCloud Calendar"
                raise CalendarSyncError(f"Calendar '{calendar_url}' not found")
            first = calendars[0]
            return str(first.url), first.name or "iCloud Calendar"

        return await self._run("discover_calendar", _discover)
