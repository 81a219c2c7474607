"""Tests for the calendar HTTP routes."""

import uuid
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from app.api.dependencies import get_calendar_adapters, get_oauth_state_service
from app.config.database import get_db
from app.config.redis import get_redis
from app.main import app
from app.models import CalendarConnection
from app.services.calendar.oauth_state import OAuthStateService
from app.utils.encryption import decrypt_token

API = "/api/v1/calendar"


@pytest.fixture
def client(db, adapters, redis_client):
    """Test client with database, adapters and Redis swapped for test doubles."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_calendar_adapters] = lambda: adapters
    app.dependency_overrides[get_redis] = lambda: redis_client
    app.dependency_overrides[get_oauth_state_service] = lambda: OAuthStateService(redis_client, ttl_seconds=600)
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def authorize(client, owner_id="agent-1"):
    response = client.get(f"{API}/google/authorize", params={"owner_id": owner_id})
    assert response.status_code == 200
    url = response.json()["authorization_url"]
    return parse_qs(urlparse(url).query)["state"][0]


class TestGoogleOAuth:

    def test_authorize_stores_state(self, client, redis_client):
        state = authorize(client)

        key = f"calendar_oauth_state:{state}"
        assert redis_client.store[key] == b"agent-1"
        assert redis_client.ttls[key] == 600

    def test_callback_creates_connection(self, db, client, redis_client):
        state = authorize(client)

        response = client.get(f"{API}/google/callback", params={"code": "abc", "state": state})

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["calendar_id"] == "agent@example.com"
        connection = db.get(CalendarConnection, uuid.UUID(body["connection_id"]))
        assert connection.owner_id == "agent-1"
        assert decrypt_token(connection.access_token_encrypted) == "access-abc"
        assert decrypt_token(connection.refresh_token_encrypted) == "refresh-from-code"
        # State is single use
        assert redis_client.store == {}

    def test_callback_with_unknown_state(self, client):
        response = client.get(f"{API}/google/callback", params={"code": "abc", "state": "forged"})

        assert response.status_code == 400

    def test_reauthorization_reuses_connection(self, db, client):
        first = client.get(f"{API}/google/callback", params={"code": "a", "state": authorize(client)}).json()
        second = client.get(f"{API}/google/callback", params={"code": "b", "state": authorize(client)}).json()

        assert first["connection_id"] == second["connection_id"]
        assert db.query(CalendarConnection).count() == 1


class TestAppleConnect:

    def test_connect(self, db, client):
        response = client.post(f"{API}/apple/connect", json={
            "owner_id": "agent-1",
            "username": "agent@icloud.com",
            "password": "abcd-efgh-ijkl-mnop",
        })

        assert response.status_code == 200
        connection = response.json()["connection"]
        assert connection["provider"] == "apple"
        assert connection["calendar_id"] == "https://caldav.example.com/123/calendars/home/"
        assert connection["account_email"] == "agent@icloud.com"
        assert connection["token_expires_at"] is None
        assert "password" not in str(connection)


class TestConnections:

    def test_list_update_and_disconnect(self, client, google, make_connection):
        connection = make_connection()
        make_connection(owner_id="agent-2")

        listed = client.get(f"{API}/connections", params={"owner_id": "agent-1"}).json()["connections"]
        assert [c["id"] for c in listed] == [str(connection.id)]

        updated = client.patch(f"{API}/connections/{connection.id}",
                               json={"auto_sync": False, "sync_direction": "crm_to_calendar"})
        assert updated.status_code == 200
        assert updated.json()["connection"]["auto_sync"] is False
        assert updated.json()["connection"]["sync_direction"] == "crm_to_calendar"

        response = client.delete(f"{API}/connections/{connection.id}")
        assert response.status_code == 200
        assert google.authenticator.revoked == ["refresh-0"]

        remaining = client.get(f"{API}/connections", params={"owner_id": "agent-1"}).json()["connections"]
        assert remaining == []
        with_inactive = client.get(f"{API}/connections",
                                   params={"owner_id": "agent-1", "include_inactive": True}).json()
        assert with_inactive["connections"][0]["sync_status"] == "disconnected"

    def test_unknown_connection(self, client):
        assert client.delete(f"{API}/connections/{uuid.uuid4()}").status_code == 404
        assert client.post(f"{API}/connections/not-a-uuid/test").status_code == 404

    def test_connection_test(self, client, google, make_connection):
        connection = make_connection()

        response = client.post(f"{API}/connections/{connection.id}/test")

        assert response.json() == {"success": True, "status": "connected", "message": "Connection OK"}
        assert len(google.calls_for("test")) == 1

    def test_manual_token_refresh(self, client, google, make_connection):
        connection = make_connection(expires_in=timedelta(minutes=30))

        response = client.post(f"{API}/connections/{connection.id}/refresh-token")

        assert response.status_code == 200
        assert response.json()["token_health"]["status"] == "healthy"
        assert google.authenticator.refresh_calls == 1

    def test_refresh_without_refresh_token(self, client, make_connection):
        connection = make_connection(refresh_token=None)

        response = client.post(f"{API}/connections/{connection.id}/refresh-token")

        assert response.status_code == 409


class TestSyncRoutes:

    def test_sync_connection(self, client, google, make_connection, make_appointment):
        connection = make_connection()
        make_appointment()

        response = client.post(f"{API}/sync/{connection.id}")

        assert response.status_code == 200
        assert response.json()["created"] == 1
        assert response.json()["success"] is True

    def test_sync_with_dry_run_option(self, client, google, make_connection, make_appointment):
        connection = make_connection()
        make_appointment()

        response = client.post(f"{API}/sync/{connection.id}", json={"dry_run": True})

        assert response.json()["created"] == 0
        assert google.calls_for("create") == []

    def test_sync_unknown_connection(self, client):
        assert client.post(f"{API}/sync/{uuid.uuid4()}").status_code == 404

    def test_sync_owner(self, client, make_connection, make_appointment):
        connection = make_connection()
        make_appointment()

        response = client.post(f"{API}/sync/owner/agent-1")

        assert response.status_code == 200
        assert response.json()["results"][str(connection.id)]["created"] == 1

    def test_sync_appointment(self, client, make_connection, make_appointment):
        make_connection()
        appointment = make_appointment()

        response = client.post(f"{API}/appointments/{appointment.id}/sync")

        assert response.status_code == 200
        assert list(response.json()["results"].values())[0]["created"] == 1

    @pytest.mark.parametrize("appointment_id", [str(uuid.uuid4()), "not-a-uuid"])
    def test_sync_unknown_appointment(self, client, appointment_id):
        assert client.post(f"{API}/appointments/{appointment_id}/sync").status_code == 404

    def test_stats_and_logs(self, client, make_connection, make_appointment):
        connection = make_connection()
        make_appointment()
        client.post(f"{API}/sync/{connection.id}")

        stats = client.get(f"{API}/sync/{connection.id}/stats").json()
        assert stats["by_operation"]["create"] == 1
        assert stats["successful"] >= 1
        assert stats["last_sync"] is not None

        logs = client.get(f"{API}/sync/{connection.id}/logs", params={"limit": 2}).json()["logs"]
        assert len(logs) == 2

    def test_conflict_stats(self, client):
        response = client.get(f"{API}/conflicts/stats")

        assert response.status_code == 200
        assert response.json()["total_conflicts"] == 0


class TestTokenRoutes:

    def test_token_health(self, client, make_connection):
        make_connection(expires_in=timedelta(minutes=3))

        connections = client.get(f"{API}/tokens/health", params={"owner_id": "agent-1"}).json()["connections"]

        assert connections[0]["health"]["status"] == "expiring_soon"

    def test_run_maintenance(self, client, google, make_connection):
        make_connection(expires_in=timedelta(minutes=3))

        response = client.post(f"{API}/tokens/maintenance/run")

        assert response.json()["refreshed"] == 1


class TestServiceRoutes:

    def test_calendar_health_reports_timings(self, client, make_connection):
        connection = make_connection(expires_in=timedelta(minutes=30))
        client.post(f"{API}/connections/{connection.id}/refresh-token")

        providers = client.get(f"{API}/health").json()["providers"]

        assert providers["google"]["by_operation"]["refresh_token"]["count"] == 1
        assert providers["apple"]["count"] == 0

    def test_correlation_id_header(self, client):
        response = client.get("/health/", headers={"X-Correlation-ID": "req-123"})

        assert response.status_code == 200
        assert response.headers["X-Correlation-ID"] == "req-123"

    def test_detailed_health_counts_connections(self, client, make_connection):
        make_connection()
        make_connection(owner_id="agent-2", sync_status="expired")
        make_connection(owner_id="agent-3", is_active=False, sync_status="disconnected")

        body = client.get("/health/detailed").json()

        assert body["overall"] == "healthy"
        assert body["database"] == body["redis"] == body["token_encryption"] == "healthy"
        assert body["connections"] == {"connected": 1, "expired": 1}

    def test_detailed_health_with_redis_down(self, client, redis_client):
        redis_client.available = False

        response = client.get("/health/detailed")

        assert response.status_code == 200
        assert response.json()["redis"].startswith("unhealthy")
        assert response.json()["overall"] == "degraded"

    def test_api_index(self, client):
        body = client.get("/api/v1/").json()

        assert body["providers"] == ["google", "apple"]
        assert body["endpoints"]["health"] == "/api/v1/calendar/health"
