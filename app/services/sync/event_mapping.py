# app/services/sync/event_mapping.py
"""Appointment -> outbound event mapping and CRM event recognition"""
from datetime import timedelta
from typing import Optional
from uuid import NAMESPACE_URL, uuid5

from app.config.settings import get_settings
from app.models.appointment import Appointment
from app.schemas.calendar_events import EventPayload, EventStatus, NormalizedEvent
from app.utils.datetime_utils import ensure_utc

settings = get_settings()

DEFAULT_DURATION = timedelta(hours=1)

APPOINTMENT_TYPE_LABELS = {
    "property_viewing": "Besichtigung",
    "viewing": "Besichtigung",
    "consultation": "Beratung",
    "valuation": "Bewertung",
    "contract_signing": "Vertragsunterzeichnung",
    "follow_up": "Nachfassgespräch",
}

APPOINTMENT_STATUS_LABELS = {
    "scheduled": "Geplant",
    "confirmed": "Bestätigt",
    "completed": "Abgeschlossen",
    "cancelled": "Abgesagt",
    "rescheduled": "Verschoben",
    "no_show": "Nicht erschienen",
}

# Titles the CRM gives its own events
APPOINTMENT_KEYWORDS = (
    "besichtigung",
    "beratung",
    "bewertung",
    "vertragsunterzeichnung",
    "property viewing",
    "consultation",
    "valuation",
    "contract signing",
)


def signature_footer() -> str:
    return f"--- {settings.CRM_EVENT_SIGNATURE} ---"


def build_event_description(appointment: Appointment) -> str:
    description = ""

    if appointment.notes:
        description += f"{appointment.notes}\n\n"

    appointment_type = appointment.appointment_type or ""
    status = appointment.status or ""
    description += f"Terminart: {APPOINTMENT_TYPE_LABELS.get(appointment_type, appointment_type)}\n"
    description += f"Status: {APPOINTMENT_STATUS_LABELS.get(status, status)}\n"

    if appointment.customer_id:
        description += f"Kunde: {appointment.customer_id}\n"
    if appointment.property_id:
        description += f"Immobilie: {appointment.property_id}\n"

    description += f"\n{signature_footer()}"
    return description


def strip_signature(description: Optional[str]) -> str:
    """Drop the CRM footer so only user-entered text remains"""
    if not description:
        return ""
    footer = signature_footer()
    if footer in description:
        description = description.split(footer, 1)[0]
    return description.strip()


def event_end_time(appointment: Appointment):
    if appointment.end_time:
        return ensure_utc(appointment.end_time)
    return ensure_utc(appointment.start_time) + DEFAULT_DURATION


def build_event_payload(appointment: Appointment) -> EventPayload:
    status = EventStatus.CANCELLED if appointment.status == "cancelled" else EventStatus.CONFIRMED
    return EventPayload(
        title=appointment.title,
        description=build_event_description(appointment),
        start_time=ensure_utc(appointment.start_time),
        end_time=event_end_time(appointment),
        location=appointment.location,
        status=status,
        timezone=settings.CALENDAR_TIMEZONE,
    )


def derive_event_id(connection_id, appointment_id, generation: int = 0) -> str:
    """Stable external id for an appointment's event in one calendar

    Retrying a create with the same id cannot duplicate the event. The
    generation counts earlier mirrors that were deleted, so a re-created
    event never reuses an id the provider may still hold in its trash.
    Hex digits are valid in both Google event ids and CalDAV UIDs.
    """
    return uuid5(NAMESPACE_URL, f"calendar-sync:{connection_id}:{appointment_id}:{generation}").hex

def is_appointment_related_event(event: NormalizedEvent) -> bool:
    """Heuristic for events that look like they came from the CRM"""
    if event.description and settings.CRM_EVENT_SIGNATURE in event.description:
        return True
    title = (event.title or "").lower()
    return any(keyword in title for keyword in APPOINTMENT_KEYWORDS)


def extract_user_notes(description: Optional[str]) -> str:
    """Free text of a pulled description, without the CRM-generated block"""
    text = strip_signature(description)
    if "Terminart:" in text:
        text = text.split("Terminart:", 1)[0]
    return text.strip()
