"""Tests for the Celery entry points (run synchronously)."""

import uuid
from datetime import timedelta

import pytest

from app.services.sync.sync_orchestrator import SyncOrchestrator
from app.services.sync.token_maintenance_service import TokenMaintenanceService
from app.tasks import calendar_tasks


@pytest.fixture
def wired_tasks(monkeypatch, db, adapters):
    """Point the tasks at the test database and fake adapters."""
    monkeypatch.setattr(calendar_tasks, "SessionLocal", lambda: db)
    monkeypatch.setattr(calendar_tasks, "SyncOrchestrator", lambda session: SyncOrchestrator(session, adapters))
    monkeypatch.setattr(calendar_tasks, "TokenMaintenanceService",
                        lambda session: TokenMaintenanceService(session, adapters))
    return calendar_tasks


class TestCalendarTasks:

    def test_auto_sync(self, wired_tasks, google, make_connection, make_appointment):
        connection = make_connection()
        connection_id = str(connection.id)
        make_appointment()

        summary = wired_tasks.auto_sync_calendars()

        assert summary["agent-1"][connection_id]["created"] == 1
        assert len(google.calls_for("create")) == 1

    def test_sync_connection(self, wired_tasks, make_connection, make_appointment):
        connection_id = str(make_connection().id)
        make_appointment()

        result = wired_tasks.sync_connection(connection_id)

        assert result["success"] is True
        assert result["created"] == 1

    def test_sync_unknown_connection(self, wired_tasks):
        result = wired_tasks.sync_connection(str(uuid.uuid4()))

        assert result == {"status": "failed", "reason": "connection_not_found"}

    def test_sync_malformed_connection_id(self, wired_tasks):
        result = wired_tasks.sync_connection("not-a-uuid")

        assert result == {"status": "failed", "reason": "connection_not_found"}

    def test_sync_unknown_appointment(self, wired_tasks):
        result = wired_tasks.sync_appointment(str(uuid.uuid4()))

        assert result == {"status": "failed", "reason": "appointment_not_found"}

    def test_token_maintenance(self, wired_tasks, google, make_connection):
        make_connection(expires_in=timedelta(minutes=3))

        result = wired_tasks.run_token_maintenance()

        assert result["checked"] == 1
        assert result["refreshed"] == 1
        assert google.authenticator.refresh_calls == 1
