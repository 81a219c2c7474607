# app/services/calendar/google_calendar_service.py
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple
import logging

import httplib2
import requests
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_httplib2 import AuthorizedHttp
from google_auth_oauthlib.flow import Flow
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from app.config.settings import get_settings
from app.core.exceptions import (
    AuthenticationError,
    CalendarSyncError,
    ProviderRequestError,
    TransientNetworkError,
    get_error_message,
)
from app.schemas.calendar_events import (
    CalendarProvider,
    CredentialContext,
    EventPayload,
    GoogleRawEvent,
    NormalizedEvent,
    TokenSet,
)
from app.services.calendar.base import Authenticator, ProviderAdapter
from app.utils.datetime_utils import ensure_utc

settings = get_settings()

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = (429, 500, 502, 503, 504)
GONE_STATUS_CODES = (404, 410)
CONFLICT_STATUS_CODE = 409
LIST_PAGE_SIZE = 2500
REVOKE_URL = "https://oauth2.googleapis.com/revoke"


class GoogleAuthenticator(Authenticator):
    SCOPES = ['https://www.googleapis.com/auth/calendar']

    def __init__(self):
        # OAuth credentials from Google Cloud Console
        self.client_config = {
            "web": {
                "client_id": settings.GOOGLE_CLIENT_ID,
                "client_secret": settings.GOOGLE_CLIENT_SECRET,
                "redirect_uris": [settings.GOOGLE_REDIRECT_URI],
                "auth_uri": "https://accounts.google.com/o/oauth2/auth",
                "token_uri": "https://oauth2.googleapis.com/token"
            }
        }

    def _flow(self) -> Flow:
        if not self.client_config['web']['redirect_uris'][0]:
            raise ValueError("GOOGLE_REDIRECT_URI is not set")
        return Flow.from_client_config(
            self.client_config,
            scopes=self.SCOPES,
            redirect_uri=self.client_config['web']['redirect_uris'][0]
        )

    def generate_authorization_url(self, state: str) -> str:
        """Step 1: OAuth consent URL; `state` is a one-time CSRF nonce"""
        authorization_url, _ = self._flow().authorization_url(
            access_type='offline',  # Gets refresh token
            include_granted_scopes='true',
            prompt='consent',  # Force consent screen to get refresh token
            state=state
        )
        logger.info("Generated Google authorization URL")
        return authorization_url

    def exchange_code(self, code: str) -> TokenSet:
        """Step 2: Exchange authorization code for tokens"""
        flow = self._flow()
        try:
            flow.fetch_token(code=code)
        except Exception as e:
            logger.error(f"Failed to exchange code for tokens: {get_error_message(e)}")
            raise AuthenticationError(f"Authorization code exchange failed: {get_error_message(e)}") from e

        logger.info("Successfully exchanged authorization code for tokens")
        return self._token_set(flow.credentials)

    def refresh_token(self, refresh_token: str) -> TokenSet:
        """Refresh expired access token using refresh token"""
        credentials = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=self.client_config['web']['token_uri'],
            client_id=self.client_config['web']['client_id'],
            client_secret=self.client_config['web']['client_secret']
        )
        try:
            credentials.refresh(Request())
        except RefreshError as e:
            message = get_error_message(e)
            error_code = "invalid_grant" if "invalid_grant" in message else None
            raise AuthenticationError(f"Token refresh failed: {message}", error_code=error_code) from e
        except TransportError as e:
            raise TransientNetworkError(f"Token refresh failed: {get_error_message(e)}") from e

        # Google keeps the refresh token unless it rotates it
        return self._token_set(credentials, fallback_refresh_token=refresh_token)

    def revoke(self, token: str) -> bool:
        response = requests.post(
            REVOKE_URL,
            params={"token": token},
            headers={"content-type": "application/x-www-form-urlencoded"},
            timeout=settings.PROVIDER_REQUEST_TIMEOUT_SECONDS,
        )
        if response.status_code != 200:
            logger.warning(f"Google token revocation returned {response.status_code}")
            return False
        return True

    @staticmethod
    def _token_set(credentials: Credentials, fallback_refresh_token: Optional[str] = None) -> TokenSet:
        # google-auth reports expiry as naive UTC
        expires_at = ensure_utc(credentials.expiry) if credentials.expiry else (
            datetime.now(timezone.utc) + timedelta(hours=1)
        )
        return TokenSet(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token or fallback_refresh_token,
            expires_at=expires_at,
            scopes=list(credentials.scopes or []),
        )


class GoogleCalendarAdapter(ProviderAdapter):
    """events.insert/update/delete/list against the Google Calendar v3 API"""

    provider = CalendarProvider.GOOGLE.value

    def __init__(self, authenticator: Optional[GoogleAuthenticator] = None, timeout: Optional[int] = None):
        super().__init__(authenticator or GoogleAuthenticator())
        self.timeout = timeout or settings.PROVIDER_REQUEST_TIMEOUT_SECONDS

    def _service(self, ctx: CredentialContext):
        # Built per call so concurrent connections never share credentials
        credentials = Credentials(token=ctx.access_token.get_secret_value())
        http = AuthorizedHttp(credentials, http=httplib2.Http(timeout=self.timeout))
        return build('calendar', 'v3', http=http, cache_discovery=False)

    @staticmethod
    def _calendar_id(ctx: CredentialContext) -> str:
        return ctx.calendar_id or 'primary'

    @staticmethod
    def build_event_body(payload: EventPayload) -> dict:
        return {
            "summary": payload.title,
            "description": payload.description,
            "start": {"dateTime": ensure_utc(payload.start_time).isoformat(), "timeZone": payload.timezone},
            "end": {"dateTime": ensure_utc(payload.end_time).isoformat(), "timeZone": payload.timezone},
            "location": payload.location or "",
            "status": payload.status.value,
        }

    def translate_error(self, error: Exception) -> Exception:
        if isinstance(error, HttpError):
            status = getattr(error.resp, "status", None)
            status = int(status) if status is not None else None
            message = f"Google Calendar API error {status}: {getattr(error, 'reason', None) or error}"
            if status in (401, 403):
                return AuthenticationError(message, status_code=status)
            if status in TRANSIENT_STATUS_CODES:
                return TransientNetworkError(message)
            return ProviderRequestError(message, status_code=status)
        if isinstance(error, RefreshError):
            message = get_error_message(error)
            error_code = "invalid_grant" if "invalid_grant" in message else None
            return AuthenticationError(message, error_code=error_code)
        if isinstance(error, (TransportError, httplib2.HttpLib2Error)):
            return TransientNetworkError(get_error_message(error))
        return super().translate_error(error)

    async def create_event(self, ctx: CredentialContext, payload: EventPayload, event_id: str) -> str:
        body = {**self.build_event_body(payload), "id": event_id}

        def _insert():
            events = self._service(ctx).events()
            try:
                return events.insert(calendarId=self._calendar_id(ctx), body=body).execute()
            except HttpError as e:
                if int(getattr(e.resp, "status", 0)) != CONFLICT_STATUS_CODE:
                    raise
                # Stored by an earlier attempt whose response was lost
                logger.info(f"Google event {event_id} already exists, updating it")
                return events.update(
                    calendarId=self._calendar_id(ctx), eventId=event_id, body=body
                ).execute()

        created = await self._run("create_event", _insert)
        return created.get("id") or event_id

    async def update_event(self, ctx: CredentialContext, external_id: str, payload: EventPayload) -> None:
        body = self.build_event_body(payload)

        def _update():
            return self._service(ctx).events().update(
                calendarId=self._calendar_id(ctx), eventId=external_id, body=body
            ).execute()

        await self._run("update_event", _update)

    async def delete_event(self, ctx: CredentialContext, external_id: str) -> None:
        def _delete():
            try:
                self._service(ctx).events().delete(
                    calendarId=self._calendar_id(ctx), eventId=external_id
                ).execute()
            except HttpError as e:
                # Already gone on the provider side
                if int(getattr(e.resp, "status", 0)) in GONE_STATUS_CODES:
                    logger.info(f"Google event {external_id} already deleted")
                    return
                raise

        await self._run("delete_event", _delete)

    async def list_events(self, ctx: CredentialContext, start: datetime, end: datetime) -> List[NormalizedEvent]:
        def _list():
            service = self._service(ctx)
            items = []
            page_token = None
            while True:
                response = service.events().list(
                    calendarId=self._calendar_id(ctx),
                    timeMin=ensure_utc(start).isoformat(),
                    timeMax=ensure_utc(end).isoformat(),
                    singleEvents=True,
                    orderBy='startTime',
                    maxResults=LIST_PAGE_SIZE,
                    pageToken=page_token,
                ).execute()
                items.extend(response.get("items", []))
                page_token = response.get("nextPageToken")
                if not page_token:
                    return items

        items = await self._run("list_events", _list)
        return [GoogleRawEvent.model_validate(item).normalize() for item in items]

    async def test_connection(self, ctx: CredentialContext) -> bool:
        def _get():
            return self._service(ctx).calendars().get(calendarId=self._calendar_id(ctx)).execute()

        await self._run("test_connection", _get)
        return True

    async def primary_calendar(self, ctx: CredentialContext) -> Tuple[str, str]:
        """Return (calendar id, display name) of the account's primary calendar"""
        def _list():
            return self._service(ctx).calendarList().list().execute()

        calendar_list = await self._run("calendar_list", _list)
        for cal in calendar_list.get("items", []):
            if cal.get("primary"):
                return cal["id"], cal.get("summary") or "Primary Calendar"
        raise CalendarSyncError("No primary calendar found")
