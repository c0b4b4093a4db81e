"""
Request coalescing: one in-flight fetch per query key.

Concurrent readers of the same key share the result of a single fetch;
no duplicate network calls are issued for a key while one is pending.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Hashable, List, Optional

logger = logging.getLogger("cache.coalescer")


@dataclass
class InFlightFetch:
    """Tracks an in-progress fetch for one key."""
    event: threading.Event = field(default_factory=threading.Event)
    result: Optional[Any] = None
    error: Optional[BaseException] = None
    started_at: float = field(default_factory=time.time)
    waiter_count: int = 0


class RequestCoalescer:
    """
    Ensures concurrent requests for the same key share one fetch.

    Pattern:
    - First caller for a key runs the fetch in its own thread
    - Later callers for the same key wait on the Event
    - When the fetch completes, every waiter gets the same result or error

    Usage:
        coalescer = RequestCoalescer()
        labor = coalescer.get_or_fetch(("labor", "op-7"), fetch_labor)
    """

    def __init__(self, timeout: Optional[float] = None):
        """
        Args:
            timeout: Max seconds a waiter blocks on someone else's fetch;
                None waits for the fetch to finish however long it takes
        """
        self._in_flight: Dict[Hashable, InFlightFetch] = {}
        self._lock = threading.Lock()
        self._timeout = timeout
        self._started = 0
        self._joined = 0

    def get_or_fetch(
        self,
        key: Hashable,
        fetch_fn: Callable[[], Any],
    ) -> Any:
        """
        Either join the in-flight fetch for key or start a new one.

        Args:
            key: Logical key of the fetch
            fetch_fn: Called only if no fetch for key is pending

        Raises:
            TimeoutError: Waiting for another caller's fetch timed out
            Exception: Whatever fetch_fn raised, re-raised for every waiter
        """
        with self._lock:
            in_flight = self._in_flight.get(key)
            if in_flight is not None:
                in_flight.waiter_count += 1
                self._joined += 1
                is_initiator = False
                logger.debug(f"Coalescing fetch for {key} (waiters: {in_flight.waiter_count})")
            else:
                in_flight = InFlightFetch()
                self._in_flight[key] = in_flight
                self._started += 1
                is_initiator = True
                logger.debug(f"Initiating fetch for {key}")

        if is_initiator:
            try:
                in_flight.result = fetch_fn()
            except Exception as e:
                in_flight.error = e
                logger.debug(f"Fetch failed for {key}: {e}")
            finally:
                with self._lock:
                    self._in_flight.pop(key, None)
                in_flight.event.set()

            if in_flight.error is not None:
                raise in_flight.error
            return in_flight.result

        if not in_flight.event.wait(timeout=self._timeout):
            logger.error(f"Timeout waiting for coalesced fetch: {key}")
            raise TimeoutError(f"Fetch for {key} timed out after {self._timeout}s")

        if in_flight.error is not None:
            raise in_flight.error
        return in_flight.result

    def is_in_flight(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._in_flight

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight fetches."""
        with self._lock:
            return len(self._in_flight)

    def active_keys(self) -> List[Hashable]:
        with self._lock:
            return list(self._in_flight.keys())

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        with self._lock:
            return {
                "active_requests": len(self._in_flight),
                "active_keys": [repr(k) for k in self._in_flight],
                "fetches_started": self._started,
                "fetches_joined": self._joined,
            }
