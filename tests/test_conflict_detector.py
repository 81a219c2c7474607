"""Tests for conflict detection between appointments and calendar events."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from app.models import Appointment, CalendarEvent
from app.schemas.calendar_events import NormalizedEvent
from app.schemas.calendar_sync import ConflictSeverity, ConflictType, ResolutionStrategyName
from app.services.sync.conflict_detector import ConflictDetector
from app.services.sync.event_mapping import build_event_description

START = datetime(2026, 11, 3, 14, 0, tzinfo=timezone.utc)


@pytest.fixture
def detector():
    return ConflictDetector(threshold_minutes=5)


@pytest.fixture
def appointment():
    return Appointment(
        id=uuid.uuid4(),
        owner_id="agent-1",
        title="Besichtigung Seestraße 12",
        notes="Schlüssel beim Nachbarn",
        location="Seestraße 12, Konstanz",
        appointment_type="viewing",
        status="scheduled",
        start_time=START,
        end_time=START + timedelta(hours=1),
        updated_at=START - timedelta(days=1),
    )


def mirror_event(appointment, **overrides):
    """Calendar event exactly as the CRM pushed it"""
    values = {
        "external_id": "evt-1",
        "provider": "google",
        "title": appointment.title,
        "description": build_event_description(appointment),
        "location": appointment.location,
        "start_time": appointment.start_time,
        "end_time": appointment.end_time,
        "status": "confirmed",
        "last_modified": START - timedelta(hours=2),
    }
    values.update(overrides)
    return NormalizedEvent(**values)


class TestNoConflict:
    """Events that match the appointment."""

    def test_identical_event(self, detector, appointment):
        assert detector.detect_conflicts(appointment, mirror_event(appointment), "google") == []

    def test_shift_within_threshold(self, detector, appointment):
        event = mirror_event(appointment, start_time=START + timedelta(minutes=3),
                             end_time=START + timedelta(minutes=63))
        assert detector.detect_conflicts(appointment, event, "google") == []

    def test_cancelled_event_for_cancelled_appointment(self, detector, appointment):
        appointment.status = "cancelled"
        event = mirror_event(appointment, status="cancelled")
        assert detector.detect_conflicts(appointment, event, "google") == []


class TestDataMismatch:
    """Field-by-field comparison."""

    def test_translated_title(self, detector, appointment):
        event = mirror_event(appointment, title="Viewing Seestraße 12")

        conflicts = detector.detect_conflicts(appointment, event, "google")

        assert len(conflicts) == 1
        conflict = conflicts[0]
        assert conflict.type == ConflictType.DATA_MISMATCH
        assert conflict.field == "title"
        assert conflict.severity == ConflictSeverity.LOW
        assert conflict.suggested_resolution == ResolutionStrategyName.CRM_WINS
        assert conflict.crm_value == "Besichtigung Seestraße 12"
        assert conflict.calendar_value == "Viewing Seestraße 12"

    def test_location_is_medium(self, detector, appointment):
        event = mirror_event(appointment, location="Marktstätte 1, Konstanz")

        conflicts = detector.detect_conflicts(appointment, event, "google")

        assert [(c.field, c.severity) for c in conflicts] == [("location", ConflictSeverity.MEDIUM)]

    def test_edited_notes_suggest_merge(self, detector, appointment):
        event = mirror_event(appointment, description="Bitte klingeln")

        conflicts = detector.detect_conflicts(appointment, event, "google")

        assert len(conflicts) == 1
        assert conflicts[0].field == "description"
        assert conflicts[0].suggested_resolution == ResolutionStrategyName.MERGE
        assert conflicts[0].calendar_value == "Bitte klingeln"

    def test_crm_generated_block_is_ignored(self, detector, appointment):
        appointment.status = "confirmed"
        # Status label differs in the generated block, notes are unchanged
        event = mirror_event(appointment)
        appointment.status = "scheduled"

        assert detector.detect_conflicts(appointment, event, "google") == []


class TestTimingConflict:
    """Start / end divergence beyond the threshold."""

    def test_medium_shift(self, detector, appointment):
        event = mirror_event(appointment, start_time=START + timedelta(minutes=30),
                             end_time=START + timedelta(minutes=90))

        conflicts = detector.detect_conflicts(appointment, event, "google")

        assert len(conflicts) == 1
        conflict = conflicts[0]
        assert conflict.type == ConflictType.TIMING_CONFLICT
        assert conflict.severity == ConflictSeverity.MEDIUM
        assert conflict.time_difference_minutes == 30
        assert conflict.suggested_resolution == ResolutionStrategyName.NEWEST_WINS
        assert conflict.calendar_value["start_time"] == START + timedelta(minutes=30)

    def test_large_shift_is_high(self, detector, appointment):
        event = mirror_event(appointment, start_time=START + timedelta(hours=2),
                             end_time=START + timedelta(hours=3))

        conflicts = detector.detect_conflicts(appointment, event, "google")

        assert conflicts[0].severity == ConflictSeverity.HIGH

    def test_missing_end_uses_default_duration(self, detector, appointment):
        appointment.end_time = None
        event = mirror_event(appointment, end_time=START + timedelta(hours=1))

        assert detector.detect_conflicts(appointment, event, "google") == []

    def test_timing_and_title_together(self, detector, appointment):
        event = mirror_event(appointment, title="Viewing", start_time=START + timedelta(minutes=20),
                             end_time=START + timedelta(minutes=80))

        types = {c.type for c in detector.detect_conflicts(appointment, event, "google")}

        assert types == {ConflictType.TIMING_CONFLICT, ConflictType.DATA_MISMATCH}


class TestDeletionAndDuplicates:

    def test_missing_event(self, detector, appointment):
        conflicts = detector.detect_conflicts(appointment, None, "google")

        assert len(conflicts) == 1
        assert conflicts[0].type == ConflictType.DELETION_CONFLICT
        assert conflicts[0].severity == ConflictSeverity.HIGH
        assert conflicts[0].suggested_resolution == ResolutionStrategyName.MANUAL_REVIEW

    def test_cancelled_event_for_active_appointment(self, detector, appointment):
        event = mirror_event(appointment, status="cancelled", title="Something else")

        conflicts = detector.detect_conflicts(appointment, event, "google")

        assert [c.type for c in conflicts] == [ConflictType.DELETION_CONFLICT]
        assert conflicts[0].external_event_id == "evt-1"

    def test_duplicate_mirrors(self, detector, appointment):
        conflicts = detector.detect_conflicts(appointment, mirror_event(appointment), "google", mirror_count=2)

        assert len(conflicts) == 1
        assert conflicts[0].type == ConflictType.DUPLICATE_EVENT
        assert conflicts[0].severity == ConflictSeverity.MEDIUM
        assert conflicts[0].calendar_value == 2


class TestStoredMirrors:
    """Duplicate detection against the mirror table"""

    @staticmethod
    def add_mirror(db, connection, appointment, external_id):
        db.add(CalendarEvent(
            calendar_connection_id=connection.id,
            appointment_id=appointment.id,
            external_id=external_id,
            provider=connection.provider,
            title=appointment.title,
            start_time=appointment.start_time,
            end_time=appointment.end_time,
        ))
        db.commit()

    def test_one_mirror_per_calendar_is_not_a_duplicate(self, db, make_connection, make_appointment):
        work = make_connection(calendar_id="work@example.com")
        private = make_connection(calendar_id="private@example.com")
        appointment = make_appointment()
        self.add_mirror(db, work, appointment, "w-1")
        self.add_mirror(db, private, appointment, "p-1")
        detector = ConflictDetector(db)

        for connection_id in (work.id, private.id, None):
            conflicts = detector.detect_conflicts(appointment, None, "google", connection_id=connection_id)
            assert ConflictType.DUPLICATE_EVENT not in [c.type for c in conflicts]

    def test_two_mirrors_in_one_calendar(self, db, make_connection, make_appointment):
        work = make_connection(calendar_id="work@example.com")
        private = make_connection(calendar_id="private@example.com")
        appointment = make_appointment()
        self.add_mirror(db, work, appointment, "w-1")
        self.add_mirror(db, work, appointment, "w-2")
        self.add_mirror(db, private, appointment, "p-1")
        detector = ConflictDetector(db)

        duplicates = [c for c in detector.detect_conflicts(appointment, None, "google", connection_id=work.id)
                      if c.type == ConflictType.DUPLICATE_EVENT]
        assert len(duplicates) == 1
        assert duplicates[0].calendar_value == 2

        others = detector.detect_conflicts(appointment, None, "google", connection_id=private.id)
        assert ConflictType.DUPLICATE_EVENT not in [c.type for c in others]


class TestProviderNativeInput:
    """Raw provider payloads are normalized before comparison."""

    def test_google_dict(self, detector, appointment):
        raw = {
            "id": "g-1",
            "summary": appointment.title,
            "description": build_event_description(appointment),
            "location": appointment.location,
            "status": "confirmed",
            "start": {"dateTime": "2026-11-03T15:00:00+01:00", "timeZone": "Europe/Berlin"},
            "end": {"dateTime": "2026-11-03T16:00:00+01:00", "timeZone": "Europe/Berlin"},
            "updated": "2026-11-02T10:00:00Z",
        }
        assert detector.detect_conflicts(appointment, raw, "google") == []

    def test_apple_dict_cancelled(self, detector, appointment):
        raw = {
            "uid": "a-1",
            "summary": appointment.title,
            "status": "CANCELLED",
            "dtstart": START,
            "dtend": START + timedelta(hours=1),
        }
        conflicts = detector.detect_conflicts(appointment, raw, "apple")

        assert [c.type for c in conflicts] == [ConflictType.DELETION_CONFLICT]
