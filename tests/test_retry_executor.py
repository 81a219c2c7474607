"""Tests for bounded retries around provider calls."""

from datetime import timedelta

import pytest

from app.core.exceptions import (
    AuthenticationError,
    ConnectionExpiredError,
    ProviderRequestError,
    RetryExhaustedError,
    TransientNetworkError,
    UnsupportedProviderError,
    is_auth_error,
)
from app.models import SyncLog


def counting(result=None, errors=()):
    """Operation that raises the given errors in order, then returns `result`"""
    pending = list(errors)
    calls = []

    async def operation(ctx):
        calls.append(ctx)
        if pending:
            raise pending.pop(0)
        return result

    operation.calls = calls
    return operation


def always(error):
    calls = []

    async def operation(ctx):
        calls.append(ctx)
        raise error

    operation.calls = calls
    return operation


@pytest.mark.asyncio
class TestRetryExecutor:

    async def test_first_attempt_succeeds(self, db, executor, make_connection, sleeps):
        connection = make_connection()
        operation = counting(result="evt-1")

        assert await executor.execute_with_retry(operation, connection) == "evt-1"
        assert len(operation.calls) == 1
        assert operation.calls[0].access_token.get_secret_value() == "access-0"
        assert sleeps == []
        assert db.query(SyncLog).count() == 0

    async def test_transient_errors_back_off_linearly(self, executor, make_connection, sleeps):
        connection = make_connection()
        operation = counting(result="ok", errors=[TransientNetworkError("timeout"),
                                                  TransientNetworkError("503")])

        assert await executor.execute_with_retry(operation, connection) == "ok"
        assert len(operation.calls) == 3
        assert sleeps == [1.0, 2.0]

    async def test_auth_errors_stop_after_three_attempts(self, db, executor, google, make_connection, sleeps):
        connection = make_connection()
        operation = always(AuthenticationError("401 unauthorized", status_code=401))

        with pytest.raises(ConnectionExpiredError) as exc_info:
            await executor.execute_with_retry(operation, connection, operation_name="Create event")

        assert len(operation.calls) == 3
        # Forced refresh between attempts, none after the last one
        assert google.authenticator.refresh_calls == 2
        assert sleeps == []
        assert "re-authentication required" in str(exc_info.value)
        db.refresh(connection)
        assert connection.sync_status == "expired"

        logs = db.query(SyncLog).all()
        assert len(logs) == 1
        assert logs[0].status == "error"
        assert logs[0].details["attempts"] == 3

    async def test_refreshed_credentials_used_on_next_attempt(self, executor, make_connection):
        connection = make_connection()
        operation = counting(result="ok", errors=[AuthenticationError("401", status_code=401)])

        await executor.execute_with_retry(operation, connection)

        tokens = [ctx.access_token.get_secret_value() for ctx in operation.calls]
        assert tokens == ["access-0", "refreshed-1"]

    async def test_exhausted_transient_errors(self, db, executor, make_connection):
        connection = make_connection()
        operation = always(TransientNetworkError("connection reset"))

        with pytest.raises(RetryExhaustedError) as exc_info:
            await executor.execute_with_retry(operation, connection)

        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, TransientNetworkError)
        db.refresh(connection)
        assert connection.sync_status == "connected"
        assert db.query(SyncLog).count() == 1

    async def test_expired_connection_rejected_without_calls(self, db, executor, make_connection):
        connection = make_connection(sync_status="expired")
        operation = counting(result="ok")

        with pytest.raises(ConnectionExpiredError):
            await executor.execute_with_retry(operation, connection)

        assert operation.calls == []
        assert db.query(SyncLog).one().status == "error"

    async def test_unrefreshable_credentials_abort_immediately(self, db, executor, google, make_connection):
        connection = make_connection(refresh_token=None)
        operation = always(AuthenticationError("401", status_code=401))

        with pytest.raises(ConnectionExpiredError):
            await executor.execute_with_retry(operation, connection)

        assert len(operation.calls) == 1
        assert google.authenticator.refresh_calls == 0
        db.refresh(connection)
        assert connection.sync_status == "expired"

    async def test_unsupported_provider_is_not_retried(self, executor, make_connection):
        connection = make_connection()
        operation = always(UnsupportedProviderError("Unsupported calendar provider: outlook"))

        with pytest.raises(UnsupportedProviderError):
            await executor.execute_with_retry(operation, connection)

        assert len(operation.calls) == 1

    async def test_token_near_expiry_refreshed_before_call(self, db, executor, google, make_connection):
        connection = make_connection(expires_in=timedelta(minutes=3))
        operation = counting(result="ok")

        await executor.execute_with_retry(operation, connection)

        assert google.authenticator.refresh_calls == 1
        assert operation.calls[0].access_token.get_secret_value() == "refreshed-1"

    async def test_transient_error_mentioning_token_is_not_auth(self, db, executor, google, make_connection,
                                                                sleeps):
        connection = make_connection()
        operation = always(TransientNetworkError("Timed out fetching oauth2 token endpoint"))

        with pytest.raises(RetryExhaustedError):
            await executor.execute_with_retry(operation, connection)

        assert len(operation.calls) == 3
        assert sleeps == [1.0, 2.0]
        assert google.authenticator.refresh_calls == 0
        db.refresh(connection)
        assert connection.sync_status == "connected"

    async def test_bad_request_mentioning_auth_is_not_auth(self, db, executor, google, make_connection):
        connection = make_connection()
        operation = always(ProviderRequestError("Invalid attendee: authority header missing", status_code=400))

        with pytest.raises(RetryExhaustedError):
            await executor.execute_with_retry(operation, connection)

        assert google.authenticator.refresh_calls == 0
        db.refresh(connection)
        assert connection.sync_status == "connected"


class TestIsAuthError:

    @pytest.mark.parametrize("error, expected", [
        (AuthenticationError("expired"), True),
        (ProviderRequestError("Forbidden", status_code=403), True),
        (ValueError("invalid_grant: token revoked"), True),
        (TransientNetworkError("token endpoint unreachable"), False),
        (ProviderRequestError("unauthorized attendee domain", status_code=400), False),
        (RetryExhaustedError("auth refresh failed after 3 attempts", attempts=3), False),
        (ValueError("bad payload"), False),
    ])
    def test_classification(self, error, expected):
        assert is_auth_error(error) is expected
