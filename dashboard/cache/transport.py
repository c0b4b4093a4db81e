"""
Transport-level caches that sit between the Request Gateway and the network.

Each outgoing request is matched against the static rule table:
- static assets go through the AssetCacheManager (cache-first)
- API calls go through the ApiResponseCacheManager (network-first + timeout)
- anything else passes straight through to the network session
"""
import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Dict, Optional, Sequence

import requests
from requests.structures import CaseInsensitiveDict

from dashboard.errors import RequestTimeoutError
from .core import CacheEntry, CacheStrategy
from .rules import DEFAULT_CACHE_RULES, CacheRule, find_rule, make_cache_key
from .store import PersistentCacheStore

logger = logging.getLogger("cache.transport")

CACHE_HEADER = "X-Transport-Cache"


def response_from_entry(entry: CacheEntry, request: requests.PreparedRequest) -> requests.Response:
    """Rebuild a requests.Response from a stored entry."""
    response = requests.Response()
    response.status_code = entry.source_status
    response._content = entry.value
    response.headers = CaseInsensitiveDict(entry.headers)
    response.headers[CACHE_HEADER] = "hit"
    response.url = request.url
    response.request = request
    response.reason = "OK" if entry.source_status == 200 else ""
    return response


class TransportCacheManager(ABC):
    """
    Shared plumbing for one cache rule: lookup, store, stats.
    Subclasses implement the rule's strategy in fetch().
    """

    def __init__(
        self,
        rule: CacheRule,
        store: PersistentCacheStore,
        session: requests.Session,
        clock: Callable[[], float] = time.time,
    ):
        self.rule = rule
        self._store = store
        self._session = session
        self._clock = clock
        self._stats_lock = threading.Lock()
        self._stats = {
            "stored": 0,
            "rejected": 0,
            "evicted": 0,
        }

    def _count(self, name: str, amount: int = 1) -> None:
        with self._stats_lock:
            self._stats[name] = self._stats.get(name, 0) + amount

    def lookup(self, key: str) -> Optional[CacheEntry]:
        """Return a non-expired entry for key; expired entries count as absent."""
        entry = self._store.get(self.rule.cache_name, key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            logger.debug(f"Expired entry ignored: {key} [age={entry.age_seconds(self._clock()):.1f}s]")
            return None
        return entry

    def store_response(self, key: str, response: requests.Response) -> bool:
        """
        Persist a response if its status is acceptable for this rule.

        Returns True if stored.
        """
        if response.status_code not in self.rule.acceptable_statuses:
            self._count("rejected")
            logger.debug(f"Not caching {key}: status {response.status_code}")
            return False
        if not self._store.is_open:
            return False

        now = self._clock()
        entry = CacheEntry(
            key=key,
            value=response.content or b"",
            stored_at=now,
            expires_at=now + self.rule.max_age_seconds,
            source_status=response.status_code,
            headers={k: v for k, v in response.headers.items() if k != CACHE_HEADER},
            cache_name=self.rule.cache_name,
        )
        evicted = self._store.put(entry, self.rule.max_entries)
        self._count("stored")
        if evicted:
            self._count("evicted", evicted)
        return True

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = dict(self._stats)
        stats["cache_name"] = self.rule.cache_name
        stats["strategy"] = self.rule.strategy.value
        return stats

    def shutdown(self) -> None:
        """Release resources owned by the manager."""

    @abstractmethod
    def fetch(self, request: requests.PreparedRequest, timeout: Optional[float] = None) -> requests.Response:
        """Resolve a request under this manager's strategy."""


class AssetCacheManager(TransportCacheManager):
    """
    Cache-first handling for static assets (images, scripts, styles).

    A valid entry is served without touching the network. On a miss the
    network is called and a failure propagates unmodified; there is no
    fallback asset.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._stats.update({"hits": 0, "misses": 0})

    def fetch(self, request: requests.PreparedRequest, timeout: Optional[float] = None) -> requests.Response:
        key = make_cache_key(request.method, request.url)

        entry = self.lookup(key)
        if entry is not None:
            self._count("hits")
            logger.debug(f"ASSET HIT: {key}")
            return response_from_entry(entry, request)

        self._count("misses")
        logger.debug(f"ASSET MISS: {key}")
        response = self._session.send(request, timeout=timeout)
        self.store_response(key, response)
        return response


class ApiResponseCacheManager(TransportCacheManager):
    """
    Network-first handling for API calls.

    The network call races the rule's timeout on a worker thread. If the
    timeout wins, the most recent non-expired entry is served; with no
    entry the request fails with RequestTimeoutError. The network call is
    not cancelled: a late response still refreshes the store.
    """

    def __init__(self, *args, max_workers: int = 4, **kwargs):
        super().__init__(*args, **kwargs)
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="api-cache-network",
        )
        self._stats.update({"network": 0, "fallbacks": 0, "timeouts": 0, "late_stores": 0})

    def fetch(self, request: requests.PreparedRequest, timeout: Optional[float] = None) -> requests.Response:
        key = make_cache_key(request.method, request.url)
        network_timeout = self.rule.network_timeout_seconds

        future: Future = self._pool.submit(self._session.send, request, timeout=timeout)
        try:
            response = future.result(timeout=network_timeout)
        except FutureTimeoutError:
            self._count("timeouts")
            future.add_done_callback(lambda f: self._store_late(key, f))
            entry = self.lookup(key)
            if entry is not None:
                self._count("fallbacks")
                logger.warning(
                    f"API TIMEOUT, serving cached: {key} "
                    f"[age={entry.age_seconds(self._clock()):.1f}s]"
                )
                return response_from_entry(entry, request)
            logger.warning(f"API TIMEOUT, no cached entry: {key}")
            raise RequestTimeoutError(
                f"No response within {network_timeout}s and no cached entry",
                url=request.url,
            )
        except requests.RequestException as e:
            entry = self.lookup(key)
            if entry is not None:
                self._count("fallbacks")
                logger.warning(f"API NETWORK ERROR, serving cached: {key} - {e}")
                return response_from_entry(entry, request)
            raise

        self._count("network")
        self.store_response(key, response)
        return response

    def _store_late(self, key: str, future: Future) -> None:
        """Store a response that arrived after the timeout."""
        if future.cancelled() or future.exception() is not None:
            return
        try:
            if self.store_response(key, future.result()):
                self._count("late_stores")
                logger.debug(f"Late response stored: {key}")
        except Exception as e:
            logger.warning(f"Failed to store late response for {key}: {e}")

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False)


_MANAGER_TYPES = {
    CacheStrategy.CACHE_FIRST: AssetCacheManager,
    CacheStrategy.NETWORK_FIRST: ApiResponseCacheManager,
}


class CacheRouter:
    """
    The transport boundary: routes each request to the cache manager of
    its first matching rule, or straight to the network.
    """

    def __init__(
        self,
        session: requests.Session,
        store: PersistentCacheStore,
        rules: Sequence[CacheRule] = DEFAULT_CACHE_RULES,
        clock: Callable[[], float] = time.time,
        enabled: bool = True,
    ):
        self._session = session
        self._store = store
        self._rules = tuple(rules)
        self._clock = clock
        self.enabled = enabled
        self._managers: Dict[str, TransportCacheManager] = {}
        self._stats_lock = threading.Lock()
        self._passthrough = 0

    def init(self) -> None:
        """Build one manager per declared rule."""
        for rule in self._rules:
            manager_cls = _MANAGER_TYPES[rule.strategy]
            self._managers[rule.name] = manager_cls(
                rule, self._store, self._session, clock=self._clock
            )
        logger.info(f"Transport caches ready: {[r.cache_name for r in self._rules]}")

    def shutdown(self) -> None:
        for manager in self._managers.values():
            manager.shutdown()
        self._managers.clear()

    def manager_for(self, rule_name: str) -> TransportCacheManager:
        return self._managers[rule_name]

    def send(
        self,
        request: requests.PreparedRequest,
        timeout: Optional[float] = None,
        bypass_cache: bool = False,
    ) -> requests.Response:
        """Send a prepared request through the matching cache, if any."""
        rule = None
        if self.enabled and not bypass_cache:
            rule = find_rule(request.method, request.url, self._rules)

        if rule is None or rule.name not in self._managers:
            with self._stats_lock:
                self._passthrough += 1
            return self._session.send(request, timeout=timeout)

        return self._managers[rule.name].fetch(request, timeout=timeout)

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            passthrough = self._passthrough
        return {
            "enabled": self.enabled,
            "passthrough": passthrough,
            "managers": {name: m.get_stats() for name, m in self._managers.items()},
        }
