"""
Tests for request coalescing across threads.
"""
import threading

import pytest

from dashboard.cache.coalescer import RequestCoalescer


def _run_concurrently(count, target):
    results = [None] * count
    errors = [None] * count

    def worker(i):
        try:
            results[i] = target()
        except Exception as e:
            errors[i] = e

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    return threads, results, errors


class TestRequestCoalescer:
    def test_concurrent_callers_share_one_fetch(self, wait_until):
        coalescer = RequestCoalescer()
        release = threading.Event()
        calls = []

        def fetch():
            calls.append(1)
            release.wait(5)
            return {"labor": ["a-1"]}

        threads, results, errors = _run_concurrently(
            5, lambda: coalescer.get_or_fetch(("labor", "op-1"), fetch)
        )
        assert wait_until(lambda: coalescer.get_stats()["fetches_joined"] == 4)
        release.set()
        for t in threads:
            t.join(5)

        assert len(calls) == 1
        assert errors == [None] * 5
        assert all(r == {"labor": ["a-1"]} for r in results)
        assert coalescer.active_requests == 0

    def test_failure_is_shared_by_every_waiter(self, wait_until):
        coalescer = RequestCoalescer()
        release = threading.Event()
        failure = RuntimeError("backend down")

        def fetch():
            release.wait(5)
            raise failure

        threads, results, errors = _run_concurrently(
            3, lambda: coalescer.get_or_fetch("ncrs", fetch)
        )
        assert wait_until(lambda: coalescer.get_stats()["fetches_joined"] == 2)
        release.set()
        for t in threads:
            t.join(5)

        assert errors == [failure] * 3

    def test_completed_fetch_is_not_reused(self):
        coalescer = RequestCoalescer()
        calls = []

        def fetch():
            calls.append(1)
            return len(calls)

        assert coalescer.get_or_fetch("k", fetch) == 1
        assert coalescer.get_or_fetch("k", fetch) == 2
        assert not coalescer.is_in_flight("k")

    def test_distinct_keys_fetch_independently(self):
        coalescer = RequestCoalescer()
        assert coalescer.get_or_fetch("a", lambda: "A") == "A"
        assert coalescer.get_or_fetch("b", lambda: "B") == "B"
        assert coalescer.get_stats()["fetches_started"] == 2

    def test_waiter_timeout(self, wait_until):
        coalescer = RequestCoalescer(timeout=0.05)
        release = threading.Event()

        initiator = threading.Thread(
            target=coalescer.get_or_fetch, args=("slow", lambda: release.wait(5))
        )
        initiator.start()
        try:
            assert wait_until(lambda: coalescer.is_in_flight("slow"))
            with pytest.raises(TimeoutError):
                coalescer.get_or_fetch("slow", lambda: "never called")
        finally:
            release.set()
            initiator.join(5)
