"""
Tests for retry classification and the backoff executor.
"""
from __future__ import annotations

import errno
import logging

import httpx
import pytest

from imagesync.cancel import CancelContext
from imagesync.errors import (
    CopyError,
    DeadlineExceeded,
    DigestMismatch,
    OperationCancelled,
    RegistryError,
)
from imagesync.retry import is_retryable, run_with_retry


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://registry.example.com/v2/")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError(f"HTTP {status}", request=request, response=response)


def _wrapped(outer: Exception, cause: BaseException) -> Exception:
    try:
        raise outer from cause
    except Exception as e:
        return e


class TestIsRetryable:

    def test_http_401_not_retryable(self):
        assert is_retryable(_status_error(401)) is False

    @pytest.mark.parametrize("status", [429, 500, 502, 503])
    def test_other_http_statuses_retryable(self, status):
        assert is_retryable(_status_error(status)) is True

    def test_connection_reset_retryable(self):
        assert is_retryable(ConnectionResetError(errno.ECONNRESET, "connection reset by peer")) is True

    def test_httpx_transport_errors_retryable(self):
        assert is_retryable(httpx.ReadTimeout("timed out")) is True
        assert is_retryable(httpx.RemoteProtocolError("server disconnected")) is True

    def test_connection_refused_not_retryable(self):
        assert is_retryable(ConnectionRefusedError(errno.ECONNREFUSED, "connection refused")) is False

    def test_connection_refused_in_cause_chain_not_retryable(self):
        err = _wrapped(httpx.ConnectError("connect failed"), ConnectionRefusedError(errno.ECONNREFUSED, "refused"))
        assert is_retryable(err) is False

    @pytest.mark.parametrize("code", ["UNAUTHORIZED", "NAME_UNKNOWN", "MANIFEST_UNKNOWN"])
    def test_permanent_registry_codes(self, code):
        assert is_retryable(RegistryError(code)) is False

    @pytest.mark.parametrize("code", ["TOOMANYREQUESTS", "UNKNOWN", "BLOB_UNKNOWN"])
    def test_other_registry_codes_retryable(self, code):
        assert is_retryable(RegistryError(code)) is True

    def test_aggregate_with_one_permanent_cause_not_retryable(self):
        group = ExceptionGroup("errors", [ConnectionResetError("reset"), _status_error(401)])
        assert is_retryable(group) is False

    def test_aggregate_of_retryable_causes_retryable(self):
        group = ExceptionGroup("errors", [ConnectionResetError("reset"), RegistryError("TOOMANYREQUESTS")])
        assert is_retryable(group) is True

    def test_digest_mismatch_never_retried(self):
        assert is_retryable(DigestMismatch("sha256:aa", "sha256:bb")) is False

    def test_cancellation_never_retried(self):
        assert is_retryable(OperationCancelled()) is False
        assert is_retryable(DeadlineExceeded()) is False

    def test_wrapped_error_classified_by_cause(self):
        assert is_retryable(_wrapped(CopyError("copy failed"), ConnectionResetError("reset"))) is True
        assert is_retryable(_wrapped(CopyError("copy failed"), _status_error(401))) is False

    def test_unknown_errors_not_retryable(self):
        assert is_retryable(RuntimeError("boom")) is False
        assert is_retryable(KeyError("missing")) is False


class TestRunWithRetry:

    def test_success_on_first_attempt(self, no_sleep):
        assert run_with_retry(None, lambda: 42, 3) == 42
        assert no_sleep == []

    def test_two_retryable_failures_then_success(self, no_sleep):
        calls = []

        def operation():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionResetError("reset")
            return "ok"

        assert run_with_retry(CancelContext.background(), operation, 3) == "ok"
        assert len(calls) == 3
        assert no_sleep == [1, 2]

    def test_non_retryable_error_attempted_once(self, no_sleep):
        calls = []

        def operation():
            calls.append(1)
            raise _status_error(401)

        with pytest.raises(httpx.HTTPStatusError):
            run_with_retry(CancelContext.background(), operation, 3)
        assert len(calls) == 1
        assert no_sleep == []

    def test_zero_retries_means_one_attempt(self, no_sleep):
        calls = []

        def operation():
            calls.append(1)
            raise ConnectionResetError("reset")

        with pytest.raises(ConnectionResetError):
            run_with_retry(CancelContext.background(), operation, 0)
        assert len(calls) == 1

    def test_exhausted_retries_raise_last_error(self, no_sleep):
        errors = [ConnectionResetError("first"), ConnectionResetError("second"), ConnectionResetError("third")]

        def operation():
            raise errors.pop(0)

        with pytest.raises(ConnectionResetError, match="third"):
            run_with_retry(CancelContext.background(), operation, 2)
        assert no_sleep == [1, 2]

    def test_backoff_doubles(self, no_sleep):
        def operation():
            raise ConnectionResetError("reset")

        with pytest.raises(ConnectionResetError):
            run_with_retry(CancelContext.background(), operation, 4)
        assert no_sleep == [1, 2, 4, 8]

    def test_cancelled_during_wait_raises_original_error(self):
        ctx = CancelContext.background()
        calls = []

        def operation():
            calls.append(1)
            ctx.cancel()
            raise ConnectionResetError("reset")

        with pytest.raises(ConnectionResetError):
            run_with_retry(ctx, operation, 5)
        assert len(calls) == 1

    def test_deadline_interrupts_wait(self):
        ctx = CancelContext.background().with_timeout(0.05)
        calls = []

        def operation():
            calls.append(1)
            raise ConnectionResetError("reset")

        with pytest.raises(ConnectionResetError):
            run_with_retry(ctx, operation, 5)
        assert len(calls) == 1

    def test_retries_logged_as_warnings(self, no_sleep, caplog):
        log = logging.getLogger("test.retry")
        attempts = []

        def operation():
            attempts.append(1)
            if len(attempts) == 1:
                raise ConnectionResetError("reset")

        with caplog.at_level(logging.WARNING, logger="test.retry"):
            run_with_retry(None, operation, 2, description="copying busybox", logger=log)

        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert "copying busybox" in warnings[0].getMessage()
        assert "attempt 1/3" in warnings[0].getMessage()

    def test_negative_attempts_rejected(self):
        with pytest.raises(ValueError):
            run_with_retry(None, lambda: None, -1)
