"""
Shared fixtures: a scripted network session, a manual clock and a
polling helper for assertions about background threads.
"""
import json
import threading
import time
from typing import Any, Callable, List, Optional

import pytest
import requests
from requests.structures import CaseInsensitiveDict


def make_response(
    status: int = 200,
    json_body: Any = None,
    content: Optional[bytes] = None,
    reason: Optional[str] = None,
    headers: Optional[dict] = None,
) -> requests.Response:
    """Build a requests.Response without a network."""
    response = requests.Response()
    response.status_code = status
    if content is None:
        content = json.dumps(json_body).encode("utf-8") if json_body is not None else b""
    response._content = content
    response.headers = CaseInsensitiveDict(headers or {"Content-Type": "application/json"})
    response.reason = reason if reason is not None else ("OK" if status == 200 else "")
    return response


class FakeSession:
    """
    Stands in for requests.Session.send().

    Answers from `handler` if given, else from the `responses` queue,
    else with an empty 200. Exceptions in either are raised.
    """

    def __init__(
        self,
        responses: Optional[List[Any]] = None,
        handler: Optional[Callable[[requests.PreparedRequest], Any]] = None,
    ):
        self.responses = list(responses or [])
        self.handler = handler
        self.requests: List[requests.PreparedRequest] = []
        self.send_kwargs: List[dict] = []
        self.closed = False
        self._lock = threading.Lock()

    def send(self, request, **kwargs):
        with self._lock:
            self.requests.append(request)
            self.send_kwargs.append(kwargs)
            if self.handler is not None:
                result = None
            elif self.responses:
                result = self.responses.pop(0)
            else:
                result = make_response(200, json_body={})
        if self.handler is not None:
            result = self.handler(request)
        if isinstance(result, BaseException):
            raise result
        return result

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.requests)

    def close(self):
        self.closed = True


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def response_factory():
    """Factory for canned requests.Response objects."""
    return make_response


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def session_factory():
    return FakeSession


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    """Recorded backoff delays instead of real sleeps."""
    return []


@pytest.fixture
def wait_until():
    return _wait_until
