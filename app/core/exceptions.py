# app/core/exceptions.py
"""Error taxonomy of the calendar sync engine"""
from typing import Optional

AUTH_STATUS_CODES = (401, 403)
AUTH_ERROR_KEYWORDS = (
    "token",
    "auth",
    "unauthorized",
    "forbidden",
    "invalid_grant",
)
UNRECOVERABLE_AUTH_CODES = ("invalid_grant",)


class CalendarSyncError(Exception):
    """Base class for sync engine failures"""


class TransientNetworkError(CalendarSyncError):
    """Timeouts, connection resets, 429 and 5xx responses"""


class ProviderRequestError(CalendarSyncError):
    """Provider rejected a request for a non-auth reason"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationError(CalendarSyncError):
    """Provider refused the credentials; a refresh may fix it"""

    def __init__(
            self,
            message: str,
            status_code: Optional[int] = None,
            error_code: Optional[str] = None
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class ConnectionExpiredError(AuthenticationError):
    """Credentials cannot be refreshed; the owner has to re-authenticate"""


class UnsupportedProviderError(CalendarSyncError):
    """Connection references a provider without an adapter"""


class DuplicateEventError(CalendarSyncError):
    """More than one external event mirrors the same appointment"""


class ConnectionNotFoundError(CalendarSyncError):
    """No calendar connection with the given id"""


class AppointmentNotFoundError(CalendarSyncError):
    """No appointment with the given id"""


class RetryExhaustedError(CalendarSyncError):
    """Provider call kept failing after the last allowed attempt"""

    def __init__(self, message: str, attempts: int, last_error: Optional[Exception] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


def get_error_message(error: object) -> str:
    if isinstance(error, BaseException):
        return str(error) or error.__class__.__name__
    if isinstance(error, str):
        return error
    return "Unknown error occurred"


def is_auth_error(error: BaseException) -> bool:
    """Classify an error as an authentication failure.

    Calendar APIs return 401/403 both for expired tokens and for
    transient clock skew, so status codes and message keywords are
    both taken into account.
    """
    if isinstance(error, AuthenticationError):
        return True
    # Already classified as something else; a "token" in the message must not flip it
    if isinstance(error, (TransientNetworkError, RetryExhaustedError)):
        return False

    status_code = getattr(error, "status_code", None)
    if status_code in AUTH_STATUS_CODES:
        return True
    if isinstance(error, ProviderRequestError) and status_code is not None:
        return False

    message = get_error_message(error).lower()
    return any(keyword in message for keyword in AUTH_ERROR_KEYWORDS)


def is_unrecoverable_auth_error(error: BaseException) -> bool:
    error_code = getattr(error, "error_code", None)
    if error_code in UNRECOVERABLE_AUTH_CODES:
        return True
    message = get_error_message(error).lower()
    return any(code in message for code in UNRECOVERABLE_AUTH_CODES)
