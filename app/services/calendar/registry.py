# app/services/calendar/registry.py
from typing import Dict

from app.core.exceptions import UnsupportedProviderError
from app.schemas.calendar_events import CalendarProvider
from app.services.calendar.apple_calendar_service import AppleCalendarAdapter
from app.services.calendar.base import ProviderAdapter
from app.services.calendar.google_calendar_service import GoogleCalendarAdapter

_default_adapters: Dict[str, ProviderAdapter] = {}


def build_default_adapters() -> Dict[str, ProviderAdapter]:
    return {
        CalendarProvider.GOOGLE.value: GoogleCalendarAdapter(),
        CalendarProvider.APPLE.value: AppleCalendarAdapter(),
    }


def get_default_adapters() -> Dict[str, ProviderAdapter]:
    """Process-wide adapters; they hold no credentials, only timing stats"""
    if not _default_adapters:
        _default_adapters.update(build_default_adapters())
    return _default_adapters


def get_adapter(adapters: Dict[str, ProviderAdapter], provider: str) -> ProviderAdapter:
    adapter = adapters.get(provider)
    if adapter is None:
        raise UnsupportedProviderError(f"Unsupported calendar provider: {provider}")
    return adapter
