"""Pytest configuration and fixtures."""

import os
from collections import defaultdict
from datetime import timedelta
from typing import Dict, List, Optional

from cryptography.fernet import Fernet

# Settings are cached on first import, so the environment goes first
os.environ.setdefault("CALENDAR_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.exceptions import TransientNetworkError
from app.models import Appointment, Base, CalendarConnection
from app.schemas.calendar_events import CredentialContext, EventPayload, NormalizedEvent, TokenSet
from app.services.calendar.base import Authenticator, ProviderAdapter
from app.services.sync.credential_store import CredentialStore
from app.services.sync.retry_executor import RetryExecutor
from app.services.sync.sync_log_service import SyncLogService
from app.services.sync.sync_orchestrator import SyncOrchestrator
from app.utils.datetime_utils import utcnow
from app.utils.encryption import encrypt_token


class FakeAuthenticator(Authenticator):
    """Token endpoint double; counts refreshes and can be told to fail"""

    def __init__(self):
        self.refresh_calls = 0
        self.refresh_error: Optional[Exception] = None
        self.revoked: List[str] = []

    def exchange_code(self, code: str) -> TokenSet:
        return TokenSet(
            access_token=f"access-{code}",
            refresh_token="refresh-from-code",
            expires_at=utcnow() + timedelta(hours=1),
        )

    def refresh_token(self, refresh_token: str) -> TokenSet:
        self.refresh_calls += 1
        if self.refresh_error is not None:
            raise self.refresh_error
        return TokenSet(
            access_token=f"refreshed-{self.refresh_calls}",
            expires_at=utcnow() + timedelta(hours=1),
        )

    def revoke(self, token: str) -> bool:
        self.revoked.append(token)
        return True

    def generate_authorization_url(self, state: str) -> str:
        return f"https://accounts.example.com/o/oauth2/auth?state={state}"


class FakeAdapter(ProviderAdapter):
    """In-memory calendar that records every call it receives"""

    def __init__(self, provider: str = "google"):
        super().__init__(FakeAuthenticator())
        self.provider = provider
        self.events: Dict[str, NormalizedEvent] = {}
        self.calls: List[tuple] = []
        self.contexts: List[CredentialContext] = []
        self.queued_errors: Dict[str, List[Exception]] = defaultdict(list)
        self.always_errors: Dict[str, Exception] = {}
        self.lost_responses: Dict[str, int] = defaultdict(int)

    def fail(self, operation: str, *errors: Exception) -> None:
        self.queued_errors[operation].extend(errors)

    def fail_always(self, operation: str, error: Exception) -> None:
        self.always_errors[operation] = error

    def lose_response(self, operation: str, count: int = 1) -> None:
        """Apply the next `count` calls, then fail as if the reply never arrived"""
        self.lost_responses[operation] += count

    def calls_for(self, operation: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == operation]

    def _record(self, operation: str, ctx: CredentialContext, *args) -> None:
        self.calls.append((operation,) + args)
        self.contexts.append(ctx)
        if operation in self.always_errors:
            raise self.always_errors[operation]
        if self.queued_errors[operation]:
            raise self.queued_errors[operation].pop(0)

    def _as_event(self, external_id: str, payload: EventPayload) -> NormalizedEvent:
        return NormalizedEvent(
            external_id=external_id,
            provider=self.provider,
            title=payload.title,
            description=payload.description,
            location=payload.location,
            start_time=payload.start_time,
            end_time=payload.end_time,
            status=payload.status.value,
            last_modified=utcnow(),
        )

    async def create_event(self, ctx, payload, event_id):
        self._record("create", ctx, payload.title)
        self.events[event_id] = self._as_event(event_id, payload)
        if self.lost_responses["create"]:
            self.lost_responses["create"] -= 1
            raise TransientNetworkError("Connection reset while reading response")
        return event_id

    async def update_event(self, ctx, external_id, payload):
        self._record("update", ctx, external_id)
        self.events[external_id] = self._as_event(external_id, payload)

    async def delete_event(self, ctx, external_id):
        self._record("delete", ctx, external_id)
        self.events.pop(external_id, None)

    async def list_events(self, ctx, start, end):
        self._record("list", ctx)
        return [e for e in self.events.values() if e.start_time is None or start <= e.start_time <= end]

    async def test_connection(self, ctx):
        self._record("test", ctx)
        return True

    async def primary_calendar(self, ctx):
        return "agent@example.com", "Agent Calendar"

    async def discover_calendar(self, username, password, calendar_url=None):
        return calendar_url or "https://caldav.example.com/123/calendars/home/", "Privat"


class FakeRedis:
    """Subset of redis.asyncio.Redis used by the OAuth state service and health check"""

    def __init__(self):
        self.store: Dict[str, bytes] = {}
        self.ttls: Dict[str, int] = {}
        self.available = True

    async def ping(self):
        if not self.available:
            raise ConnectionError("Connection refused")
        return True

    async def set(self, key, value, ex=None):
        self.store[key] = value.encode() if isinstance(value, str) else value
        self.ttls[key] = ex
        return True

    async def get(self, key):
        return self.store.get(key)

    async def delete(self, key):
        return 1 if self.store.pop(key, None) is not None else 0


@pytest.fixture
def db():
    """Fresh in-memory database per test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def adapters():
    return {"google": FakeAdapter("google"), "apple": FakeAdapter("apple")}


@pytest.fixture
def google(adapters):
    return adapters["google"]


@pytest.fixture
def redis_client():
    return FakeRedis()


@pytest.fixture
def sleeps():
    """Delays requested by the retry executor."""
    return []


@pytest.fixture
def credential_store(db, adapters):
    return CredentialStore(db, adapters)


@pytest.fixture
def executor(db, credential_store, sleeps):
    async def no_sleep(delay):
        sleeps.append(delay)

    return RetryExecutor(credential_store, SyncLogService(db), max_attempts=3, base_delay=1.0, sleep=no_sleep)


@pytest.fixture
def orchestrator(db, adapters, credential_store, executor):
    return SyncOrchestrator(db, adapters, credential_store=credential_store, executor=executor)


@pytest.fixture
def make_connection(db):
    def _make(owner_id="agent-1", provider="google", access_token="access-0", refresh_token="refresh-0",
              expires_in: Optional[timedelta] = timedelta(hours=1), **fields):
        connection = CalendarConnection(
            owner_id=owner_id,
            provider=provider,
            calendar_id=fields.pop("calendar_id", "primary"),
            calendar_name=fields.pop("calendar_name", "Agent Calendar"),
            access_token_encrypted=encrypt_token(access_token),
            refresh_token_encrypted=encrypt_token(refresh_token),
            token_expires_at=utcnow() + expires_in if expires_in is not None else None,
            sync_direction=fields.pop("sync_direction", "bidirectional"),
            auto_sync=fields.pop("auto_sync", True),
            sync_status=fields.pop("sync_status", "connected"),
            is_active=fields.pop("is_active", True),
            **fields,
        )
        db.add(connection)
        db.commit()
        db.refresh(connection)
        return connection

    return _make


@pytest.fixture
def make_appointment(db):
    def _make(owner_id="agent-1", title="Besichtigung Seestraße 12", starts_in=timedelta(days=1),
              duration=timedelta(hours=1), **fields):
        start = (utcnow() + starts_in).replace(microsecond=0)
        appointment = Appointment(
            owner_id=owner_id,
            title=title,
            start_time=start,
            end_time=start + duration if duration is not None else None,
            appointment_type=fields.pop("appointment_type", "viewing"),
            status=fields.pop("status", "scheduled"),
            calendar_sync_status=fields.pop("calendar_sync_status", "pending"),
            **fields,
        )
        db.add(appointment)
        db.commit()
        db.refresh(appointment)
        return appointment

    return _make
