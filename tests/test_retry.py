"""
Tests for retry classification, backoff and the retry loop.
"""
import pytest

from dashboard.errors import DecodeError, HttpError, NetworkError, RequestTimeoutError
from dashboard.retry import (
    MUTATION_RETRY_POLICY,
    QUERY_RETRY_POLICY,
    RetryPolicy,
    run_with_retry,
)


def _flaky(*outcomes):
    """A callable that raises or returns each outcome in turn."""
    remaining = list(outcomes)
    calls = []

    def fn():
        calls.append(1)
        outcome = remaining.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    fn.calls = calls
    return fn


class TestClassification:
    @pytest.mark.parametrize("status", [400, 401, 403, 404, 409, 422, 499])
    def test_client_errors_are_final(self, status):
        assert QUERY_RETRY_POLICY.is_retryable(HttpError(status)) is False

    @pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
    def test_retryable_statuses(self, status):
        assert QUERY_RETRY_POLICY.is_retryable(HttpError(status)) is True

    def test_failures_without_a_status_are_retryable(self):
        assert QUERY_RETRY_POLICY.is_retryable(NetworkError("down")) is True
        assert QUERY_RETRY_POLICY.is_retryable(RequestTimeoutError("slow")) is True
        assert QUERY_RETRY_POLICY.is_retryable(DecodeError("garbled")) is True

    def test_programming_errors_are_not_retried(self):
        assert QUERY_RETRY_POLICY.is_retryable(KeyError("x")) is False


class TestBackoff:
    def test_exponential_delay(self):
        assert [QUERY_RETRY_POLICY.delay_for_attempt(n) for n in range(4)] == [1.0, 2.0, 4.0, 8.0]

    def test_delay_is_capped(self):
        assert QUERY_RETRY_POLICY.delay_for_attempt(10) == 30.0

    def test_attempt_budgets(self):
        assert QUERY_RETRY_POLICY.max_attempts == 4
        assert MUTATION_RETRY_POLICY.max_attempts == 2

    def test_policy_is_plain_data(self):
        data = MUTATION_RETRY_POLICY.to_dict()
        assert data["name"] == "mutation"
        assert data["non_retryable_status_ranges"] == [[400, 499]]
        assert data["retryable_status_exceptions"] == [408, 429]

    def test_zero_attempts_rejected(self):
        with pytest.raises(ValueError):
            RetryPolicy(name="broken", max_attempts=0)


class TestRunWithRetry:
    def test_rate_limited_then_success(self, sleeps):
        fn = _flaky(HttpError(429, "Too Many Requests"), {"ok": True})

        assert run_with_retry(fn, QUERY_RETRY_POLICY, sleep=sleeps.append) == {"ok": True}
        assert len(fn.calls) == 2
        assert sleeps == [1.0]

    def test_not_found_is_not_retried(self, sleeps):
        fn = _flaky(HttpError(404, "Not Found"))

        with pytest.raises(HttpError):
            run_with_retry(fn, QUERY_RETRY_POLICY, sleep=sleeps.append)
        assert len(fn.calls) == 1
        assert sleeps == []

    def test_budget_exhaustion_raises_last_error(self, sleeps):
        last = HttpError(503, "Service Unavailable")
        fn = _flaky(HttpError(500), HttpError(502), HttpError(504), last)

        with pytest.raises(HttpError) as exc_info:
            run_with_retry(fn, QUERY_RETRY_POLICY, sleep=sleeps.append)
        assert exc_info.value is last
        assert len(fn.calls) == 4
        assert sleeps == [1.0, 2.0, 4.0]

    def test_on_attempt_sees_each_attempt(self, sleeps):
        attempts = []
        fn = _flaky(NetworkError("down"), "done")

        run_with_retry(fn, MUTATION_RETRY_POLICY, sleep=sleeps.append, on_attempt=attempts.append)
        assert attempts == [1, 2]
