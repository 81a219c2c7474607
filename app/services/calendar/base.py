# app/services/calendar/base.py
"""Provider adapter and authenticator contracts"""
import asyncio
import logging
import socket
import time
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

import requests

from app.core.exceptions import CalendarSyncError, TransientNetworkError, get_error_message
from app.schemas.calendar_events import CredentialContext, EventPayload, NormalizedEvent, TokenSet

logger = logging.getLogger(__name__)

TIMING_HISTORY_SIZE = 100


class Authenticator(ABC):
    """Per-provider token capability consumed by the sync engine"""

    @abstractmethod
    def exchange_code(self, code: str) -> TokenSet:
        ...

    @abstractmethod
    def refresh_token(self, refresh_token: str) -> TokenSet:
        ...

    def revoke(self, token: str) -> bool:
        return False


class ProviderAdapter(ABC):
    """One implementation per external calendar provider.

    Adapters only know the provider's request and response shapes. They
    receive an immutable CredentialContext on every call and never hold
    credentials between calls.
    """

    provider: str = ""

    def __init__(self, authenticator: Optional[Authenticator] = None):
        self.authenticator = authenticator
        self._timings: Deque[Dict[str, Any]] = deque(maxlen=TIMING_HISTORY_SIZE)

    @abstractmethod
    async def create_event(self, ctx: CredentialContext, payload: EventPayload, event_id: str) -> str:
        """Create the event under `event_id` and return its external id

        Calling it again with the same id must not produce a second event.
        """

    @abstractmethod
    async def update_event(self, ctx: CredentialContext, external_id: str, payload: EventPayload) -> None:
        ...

    @abstractmethod
    async def delete_event(self, ctx: CredentialContext, external_id: str) -> None:
        ...

    @abstractmethod
    async def list_events(self, ctx: CredentialContext, start: datetime, end: datetime) -> List[NormalizedEvent]:
        ...

    @abstractmethod
    async def test_connection(self, ctx: CredentialContext) -> bool:
        ...

    async def refresh_credentials(self, refresh_token: str) -> TokenSet:
        if self.authenticator is None:
            raise CalendarSyncError(f"No authenticator configured for provider '{self.provider}'")
        return await self._run("refresh_token", self.authenticator.refresh_token, refresh_token)

    async def exchange_code(self, code: str) -> TokenSet:
        if self.authenticator is None:
            raise CalendarSyncError(f"No authenticator configured for provider '{self.provider}'")
        return await self._run("exchange_code", self.authenticator.exchange_code, code)

    async def revoke_token(self, token: str) -> bool:
        if self.authenticator is None:
            return False
        return await self._run("revoke_token", self.authenticator.revoke, token)

    def translate_error(self, error: Exception) -> Exception:
        """Map SDK errors onto the sync error taxonomy"""
        if isinstance(error, CalendarSyncError):
            return error
        if isinstance(error, (socket.timeout, TimeoutError, ConnectionError,
                              requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
            return TransientNetworkError(get_error_message(error))
        return error

    async def _run(self, operation: str, func: Callable, *args, **kwargs):
        """Run a blocking SDK call on a worker thread, recording its duration"""
        started = time.perf_counter()
        success = False
        try:
            result = await asyncio.to_thread(func, *args, **kwargs)
            success = True
            return result
        except Exception as e:
            translated = self.translate_error(e)
            if translated is e:
                raise
            raise translated from e
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            self._timings.append({"operation": operation, "duration_ms": duration_ms, "success": success})
            logger.debug(f"{self.provider} {operation} took {duration_ms:.0f}ms (success={success})")

    def timing_statistics(self) -> Dict[str, Any]:
        timings = list(self._timings)
        if not timings:
            return {"count": 0, "success_rate": None, "average_ms": None, "by_operation": {}}

        by_operation: Dict[str, Dict[str, Any]] = {}
        for entry in timings:
            op = by_operation.setdefault(entry["operation"], {"count": 0, "failures": 0, "total_ms": 0.0})
            op["count"] += 1
            op["total_ms"] += entry["duration_ms"]
            if not entry["success"]:
                op["failures"] += 1

        return {
            "count": len(timings),
            "success_rate": sum(1 for t in timings if t["success"]) / len(timings),
            "average_ms": sum(t["duration_ms"] for t in timings) / len(timings),
            "by_operation": {
                name: {
                    "count": op["count"],
                    "failures": op["failures"],
                    "average_ms": op["total_ms"] / op["count"],
                }
                for name, op in by_operation.items()
            },
        }
