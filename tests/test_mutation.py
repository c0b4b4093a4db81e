"""
Tests for the mutation executor: one retry, post-success invalidation and
error reporting.
"""
import logging

import pytest

from dashboard.errors import HttpError, RequestTimeoutError
from dashboard.mutation import LoggingErrorSink, MutationExecutor


class SpyCoordinator:
    def __init__(self):
        self.invalidated = []

    def invalidate(self, prefix, refetch_active=True):
        self.invalidated.append(prefix)
        return 1


class RecordingSink:
    def __init__(self):
        self.reports = []

    def report(self, error, context):
        self.reports.append((error, context))


class BrokenSink:
    def report(self, error, context):
        raise RuntimeError("sink unavailable")


def _outcomes(*outcomes):
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


@pytest.fixture
def spy():
    return SpyCoordinator()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def executor(spy, sink, sleeps):
    return MutationExecutor(spy, sink=sink, sleep=sleeps.append)


class TestMutationExecutor:
    def test_success_invalidates_each_prefix_once(self, executor, spy, sink):
        fn = _outcomes({"id": "a-1", "status": "clocked_in"})

        result = executor.mutate(fn, invalidates=[("labor",), ("materials",)], name="clock-in")

        assert result == {"id": "a-1", "status": "clocked_in"}
        assert spy.invalidated == [("labor",), ("materials",)]
        assert sink.reports == []

    def test_one_retry_after_timeout(self, executor, spy, sleeps):
        fn = _outcomes(RequestTimeoutError("slow backend"), {"ok": True})

        assert executor.mutate(fn, invalidates=[("labor",)]) == {"ok": True}
        assert len(fn.calls) == 2
        assert sleeps == [1.0]
        # Invalidation happens once, after the successful attempt
        assert spy.invalidated == [("labor",)]
        assert executor.get_stats()["retried"] == 1

    def test_persistent_failure_is_reported_and_raised(self, executor, spy, sink):
        last = HttpError(503, "Service Unavailable")
        fn = _outcomes(HttpError(500), last)

        with pytest.raises(HttpError) as exc_info:
            executor.mutate(fn, invalidates=[("ncrs",)], name="create-ncr", context={"endpoint": "/ncrs"})

        assert exc_info.value is last
        assert len(fn.calls) == 2
        assert spy.invalidated == []
        error, context = sink.reports[0]
        assert error is last
        assert context == {"name": "create-ncr", "attempts": 2, "endpoint": "/ncrs"}
        assert executor.get_stats()["failed"] == 1

    def test_client_error_is_not_retried(self, executor, sink, sleeps):
        fn = _outcomes(HttpError(422, "Unprocessable Entity"))

        with pytest.raises(HttpError):
            executor.mutate(fn, name="consume-material")

        assert len(fn.calls) == 1
        assert sleeps == []
        assert sink.reports[0][1]["attempts"] == 1

    def test_sink_failure_does_not_mask_the_error(self, spy, sleeps):
        executor = MutationExecutor(spy, sink=BrokenSink(), sleep=sleeps.append)

        with pytest.raises(HttpError):
            executor.mutate(_outcomes(HttpError(400)), name="clock-out")

    def test_without_coordinator(self, sink, sleeps):
        executor = MutationExecutor(sink=sink, sleep=sleeps.append)
        assert executor.mutate(lambda: "done", invalidates=[("labor",)]) == "done"

    def test_stats_include_policy(self, executor):
        stats = executor.get_stats()
        assert stats["policy"]["max_attempts"] == 2
        assert stats["succeeded"] == 0


class TestLoggingErrorSink:
    def test_reports_at_error_level(self, caplog):
        sink = LoggingErrorSink()
        with caplog.at_level(logging.ERROR, logger="mutation.errors"):
            sink.report(HttpError(409, "Conflict"), {"name": "update-ncr-status"})

        assert len(caplog.records) == 1
        assert "update-ncr-status" in caplog.records[0].getMessage()
        assert "409" in caplog.records[0].getMessage()
