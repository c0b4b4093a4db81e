"""
In-memory query cache with freshness windows, stale-while-revalidate,
request coalescing and garbage collection of unused entries.
"""
import dataclasses
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Union

from dashboard.retry import QUERY_RETRY_POLICY, RetryPolicy, run_with_retry
from .coalescer import RequestCoalescer
from .core import QueryKey, QueryResult, QueryState, QueryStatus

logger = logging.getLogger("cache.coordinator")

KeyLike = Union[str, Sequence[Any]]

DEFAULT_STALE_SECONDS = 30.0
DEFAULT_GC_SECONDS = 300.0


def normalize_key(key: KeyLike) -> QueryKey:
    """Query keys are tuples; a bare string becomes a one-element key."""
    if isinstance(key, str):
        return (key,)
    if isinstance(key, tuple):
        return key
    return tuple(key)


def key_matches(key: QueryKey, prefix: QueryKey) -> bool:
    """True if key starts with every element of prefix."""
    return key[:len(prefix)] == prefix


class QuerySubscription:
    """
    An active interest in one query key.

    While at least one subscription is open the entry is never garbage
    collected, and it is revalidated on focus, reconnect and invalidation.
    """

    def __init__(self, coordinator: "QueryCacheCoordinator", key: QueryKey):
        self._coordinator = coordinator
        self.key = key
        self._closed = False

    def read(self, force_refresh: bool = False) -> QueryResult:
        return self._coordinator.read(self.key, force_refresh=force_refresh)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._coordinator._unsubscribe(self.key)

    @property
    def closed(self) -> bool:
        return self._closed

    def __enter__(self) -> "QuerySubscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class QueryCacheCoordinator:
    """
    Per-process query cache with:
    - A freshness window after which data is served stale and revalidated
    - Request coalescing for concurrent reads of one key
    - Background revalidation on a worker pool
    - Retry with backoff for failed fetches
    - Garbage collection of entries nobody subscribes to
    """

    def __init__(
        self,
        stale_seconds: float = DEFAULT_STALE_SECONDS,
        gc_seconds: float = DEFAULT_GC_SECONDS,
        retry_policy: RetryPolicy = QUERY_RETRY_POLICY,
        max_revalidation_workers: int = 4,
        gc_interval_seconds: Optional[float] = 30.0,
        refetch_on_window_focus: bool = True,
        refetch_on_reconnect: bool = True,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            stale_seconds: Freshness window
            gc_seconds: Inactivity window after which unsubscribed entries are dropped
            retry_policy: Retry policy applied to every fetch
            max_revalidation_workers: Thread pool size for background revalidation
            gc_interval_seconds: Period of the GC thread; None disables the thread
            refetch_on_window_focus: Whether on_focus() marks entries stale
            refetch_on_reconnect: Whether on_reconnect() marks entries stale
            clock: Time source, injectable for tests
            sleep: Backoff sleep, injectable for tests
        """
        if gc_seconds < stale_seconds:
            raise ValueError("gc_seconds must not be shorter than stale_seconds")

        self.stale_seconds = stale_seconds
        self.gc_seconds = gc_seconds
        self.retry_policy = retry_policy
        self.refetch_on_window_focus = refetch_on_window_focus
        self.refetch_on_reconnect = refetch_on_reconnect
        self._clock = clock
        self._sleep = sleep
        self._gc_interval = gc_interval_seconds
        self._max_workers = max_revalidation_workers

        self._queries: Dict[QueryKey, QueryState] = {}
        self._lock = threading.RLock()
        self._coalescer = RequestCoalescer()

        self._revalidation_pool: Optional[ThreadPoolExecutor] = None
        self._revalidating: Set[QueryKey] = set()
        self._gc_stop = threading.Event()
        self._gc_thread: Optional[threading.Thread] = None
        self._online = True

        self._stats = {
            "hits_fresh": 0,
            "hits_stale": 0,
            "misses": 0,
            "revalidations": 0,
            "network_fetches": 0,
            "fetch_failures": 0,
            "evictions": 0,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def init(self) -> None:
        """Start the revalidation pool and the periodic GC thread."""
        if self._revalidation_pool is None:
            self._revalidation_pool = ThreadPoolExecutor(
                max_workers=self._max_workers,
                thread_name_prefix="query-revalidate",
            )
        if self._gc_interval and self._gc_thread is None:
            self._gc_stop.clear()
            self._gc_thread = threading.Thread(
                target=self._gc_loop, name="query-gc", daemon=True
            )
            self._gc_thread.start()
        logger.info(
            f"Query cache ready (stale={self.stale_seconds}s, gc={self.gc_seconds}s, "
            f"retry={self.retry_policy.max_attempts} attempts)"
        )

    def shutdown(self) -> None:
        """Stop background work. In-flight fetches are left to finish."""
        self._gc_stop.set()
        if self._gc_thread is not None:
            self._gc_thread.join(timeout=5)
            self._gc_thread = None
        if self._revalidation_pool is not None:
            self._revalidation_pool.shutdown(wait=False)
            self._revalidation_pool = None

    def _gc_loop(self) -> None:
        while not self._gc_stop.wait(self._gc_interval):
            try:
                self.collect_garbage()
            except Exception as e:
                logger.error(f"Query GC pass failed: {e}")

    # =========================================================================
    # Reads
    # =========================================================================

    def read(
        self,
        key: KeyLike,
        fetcher: Optional[Callable[[], Any]] = None,
        force_refresh: bool = False,
    ) -> QueryResult:
        """
        Return the current data for key plus its status.

        - Fresh data is returned without a fetch
        - Stale data is returned immediately while a background fetch runs
        - With no data the caller waits on the (coalesced) fetch

        Args:
            key: Query key
            fetcher: Zero-argument callable producing the data; remembered
                for background revalidation
            force_refresh: Skip the cached value and wait for a fetch

        Raises:
            RequestError: The fetch failed and no data was available
        """
        key = normalize_key(key)
        now = self._clock()
        self.collect_garbage(now)

        with self._lock:
            state = self._queries.get(key)
            if state is None:
                state = QueryState(key=key, created_at=now)
                self._queries[key] = state
            if fetcher is not None:
                state.fetcher = fetcher
            if state.fetcher is None:
                raise ValueError(f"No fetcher registered for query {key}")
            fetcher = state.fetcher

            if state.has_data and not force_refresh:
                # A failed fetch leaves the entry unfresh even inside the window
                if state.status != QueryStatus.ERROR and not state.is_stale(now, self.stale_seconds):
                    self._stats["hits_fresh"] += 1
                    logger.debug(f"QUERY HIT (fresh): {key}")
                    return self._result(state, QueryStatus.FRESH)

                self._stats["hits_stale"] += 1
                status = QueryStatus.ERROR if state.status == QueryStatus.ERROR else QueryStatus.STALE
                snapshot = self._result(state, status)
            else:
                snapshot = None
                self._stats["misses"] += 1

        if snapshot is not None:
            logger.info(f"QUERY HIT (stale, revalidating): {key}")
            self.revalidate(key)
            return snapshot

        logger.info(f"QUERY MISS: {key}" if not force_refresh else f"QUERY FORCE REFRESH: {key}")
        data = self._fetch(key, fetcher)
        with self._lock:
            state = self._queries.get(key)
            if state is not None and state.has_data:
                return self._result(state, QueryStatus.FRESH)
        # Entry was removed while fetching
        return QueryResult(key=key, data=data, status=QueryStatus.FRESH, updated_at=self._clock())

    def _result(self, state: QueryState, status: QueryStatus) -> QueryResult:
        return QueryResult(
            key=state.key,
            data=state.data,
            status=status,
            error=state.error,
            updated_at=state.last_fetched_at,
        )

    def _fetch(self, key: QueryKey, fetcher: Callable[[], Any]) -> Any:
        """Fetch through the coalescer so only one fetch per key is in flight."""

        def run() -> Any:
            generation = None
            with self._lock:
                state = self._queries.get(key)
                if state is not None:
                    state.in_flight = True
                    state.status = QueryStatus.FETCHING
                    state.generation += 1
                    generation = state.generation
                self._stats["network_fetches"] += 1

            try:
                data = run_with_retry(
                    fetcher,
                    self.retry_policy,
                    sleep=self._sleep,
                    label=f"query {key}",
                )
            except Exception as e:
                with self._lock:
                    self._stats["fetch_failures"] += 1
                    state = self._queries.get(key)
                    if state is not None:
                        state.in_flight = False
                        state.status = QueryStatus.ERROR
                        state.error = e
                logger.warning(f"Query fetch failed: {key} - {e}")
                raise

            with self._lock:
                state = self._queries.get(key)
                if state is not None:
                    state.data = data
                    state.has_data = True
                    state.last_fetched_at = self._clock()
                    state.status = QueryStatus.FRESH
                    state.error = None
                    state.in_flight = False
                    # An invalidation that landed mid-fetch bumped the generation
                    state.invalidated = state.generation != generation
            return data

        return self._coalescer.get_or_fetch(key, run)

    def revalidate(self, key: KeyLike) -> bool:
        """
        Schedule a background fetch for key unless one is already running.

        Returns True if a fetch was scheduled.
        """
        key = normalize_key(key)
        with self._lock:
            state = self._queries.get(key)
            if (
                state is None
                or state.fetcher is None
                or state.in_flight
                or key in self._revalidating
                or self._revalidation_pool is None
                or not self._online
            ):
                return False
            self._revalidating.add(key)
            fetcher = state.fetcher
            pool = self._revalidation_pool

        def do_revalidate():
            try:
                logger.debug(f"Background revalidation started: {key}")
                self._fetch(key, fetcher)
                with self._lock:
                    self._stats["revalidations"] += 1
                logger.debug(f"Background revalidation complete: {key}")
            except Exception as e:
                logger.warning(f"Background revalidation failed: {key} - {e}")
            finally:
                with self._lock:
                    self._revalidating.discard(key)

        try:
            pool.submit(do_revalidate)
        except RuntimeError:
            # Pool shut down between the check and the submit
            with self._lock:
                self._revalidating.discard(key)
            return False
        return True

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def subscribe(self, key: KeyLike, fetcher: Optional[Callable[[], Any]] = None) -> QuerySubscription:
        """Register an active subscriber for key."""
        key = normalize_key(key)
        with self._lock:
            state = self._queries.get(key)
            if state is None:
                state = QueryState(key=key, created_at=self._clock())
                self._queries[key] = state
            if fetcher is not None:
                state.fetcher = fetcher
            state.subscribers += 1
            state.inactive_since = None
        return QuerySubscription(self, key)

    def _unsubscribe(self, key: QueryKey) -> None:
        with self._lock:
            state = self._queries.get(key)
            if state is None:
                return
            state.subscribers = max(0, state.subscribers - 1)
            if state.subscribers == 0:
                state.inactive_since = self._clock()

    # =========================================================================
    # Invalidation and revalidation triggers
    # =========================================================================

    def invalidate(self, prefix: KeyLike, refetch_active: bool = True) -> int:
        """
        Mark every query whose key starts with prefix as stale.

        Subscribed queries are revalidated in the background; the rest are
        refetched on their next read.

        Returns:
            Number of queries invalidated
        """
        prefix = normalize_key(prefix)
        to_refetch: List[QueryKey] = []
        with self._lock:
            matched = [s for k, s in self._queries.items() if key_matches(k, prefix)]
            for state in matched:
                self._mark_stale(state)
                if state.subscribers > 0:
                    to_refetch.append(state.key)

        if matched:
            logger.info(f"Invalidated {len(matched)} queries matching {prefix}")
        if refetch_active:
            for key in to_refetch:
                self.revalidate(key)
        return len(matched)

    def _mark_stale(self, state: QueryState) -> None:
        state.invalidated = True
        # Bumping the generation makes an in-flight fetch leave the entry stale
        state.generation += 1
        if state.has_data and state.status == QueryStatus.FRESH:
            state.status = QueryStatus.STALE

    def _mark_all_stale_and_refetch(self, reason: str) -> int:
        to_refetch: List[QueryKey] = []
        with self._lock:
            for state in self._queries.values():
                if not state.has_data:
                    continue
                self._mark_stale(state)
                if state.subscribers > 0:
                    to_refetch.append(state.key)

        scheduled = sum(1 for key in to_refetch if self.revalidate(key))
        logger.info(f"{reason}: revalidating {scheduled} active queries")
        return scheduled

    def on_focus(self) -> int:
        """Window focus regained: active queries go stale and refetch."""
        if not self.refetch_on_window_focus:
            return 0
        return self._mark_all_stale_and_refetch("Focus regained")

    def on_reconnect(self) -> int:
        """Network came back: active queries go stale and refetch."""
        if not self.refetch_on_reconnect:
            return 0
        return self._mark_all_stale_and_refetch("Network reconnected")

    def set_online(self, online: bool) -> None:
        """
        Record connectivity. Background revalidation pauses while offline;
        an offline-to-online transition triggers on_reconnect().
        """
        with self._lock:
            was_online = self._online
            self._online = online
        if online and not was_online:
            self.on_reconnect()
        elif not online and was_online:
            logger.warning("Network offline: background revalidation paused")

    @property
    def online(self) -> bool:
        return self._online

    # =========================================================================
    # Direct state access
    # =========================================================================

    def get_state(self, key: KeyLike) -> Optional[QueryState]:
        """A snapshot of the state for key with its status brought up to date."""
        key = normalize_key(key)
        with self._lock:
            state = self._queries.get(key)
            if state is None:
                return None
            return dataclasses.replace(state, status=self._current_status(state))

    def _current_status(self, state: QueryState) -> QueryStatus:
        if state.in_flight:
            return QueryStatus.FETCHING
        if state.status == QueryStatus.ERROR:
            return QueryStatus.ERROR
        if not state.has_data:
            return QueryStatus.IDLE
        if state.is_stale(self._clock(), self.stale_seconds):
            return QueryStatus.STALE
        return QueryStatus.FRESH

    def set_data(self, key: KeyLike, data: Any) -> None:
        """Store data for key as if it had just been fetched."""
        key = normalize_key(key)
        now = self._clock()
        with self._lock:
            state = self._queries.get(key)
            if state is None:
                state = QueryState(key=key, created_at=now)
                self._queries[key] = state
            state.data = data
            state.has_data = True
            state.last_fetched_at = now
            state.status = QueryStatus.FRESH
            state.error = None
            state.invalidated = False

    def remove(self, key: KeyLike) -> bool:
        """Drop the entry for key. Returns True if it existed."""
        key = normalize_key(key)
        with self._lock:
            return self._queries.pop(key, None) is not None

    def clear(self) -> int:
        """Drop every entry."""
        with self._lock:
            count = len(self._queries)
            self._queries.clear()
        logger.info(f"Cleared {count} query entries")
        return count

    def keys(self) -> List[QueryKey]:
        with self._lock:
            return list(self._queries.keys())

    def collect_garbage(self, now: Optional[float] = None) -> int:
        """
        Evict entries with no subscriber and no fetch in progress whose
        inactivity exceeds the GC window.

        Returns:
            Number of entries evicted
        """
        now = self._clock() if now is None else now
        with self._lock:
            expired = [
                key for key, state in self._queries.items()
                if state.subscribers == 0
                and not state.in_flight
                and key not in self._revalidating
                and now - state.gc_reference() >= self.gc_seconds
            ]
            for key in expired:
                del self._queries[key]
            self._stats["evictions"] += len(expired)

        if expired:
            logger.info(f"Garbage collected {len(expired)} inactive queries")
        return len(expired)

    def get_stats(self) -> Dict[str, Any]:
        """Get query cache statistics."""
        coalescer_stats = self._coalescer.get_stats()
        with self._lock:
            total_hits = self._stats["hits_fresh"] + self._stats["hits_stale"]
            total_reads = total_hits + self._stats["misses"]
            hit_rate = (total_hits / total_reads * 100) if total_reads > 0 else 0
            by_status: Dict[str, int] = {}
            for state in self._queries.values():
                status = self._current_status(state).value
                by_status[status] = by_status.get(status, 0) + 1

            return {
                "entries": len(self._queries),
                "by_status": by_status,
                **self._stats,
                "hit_rate_percent": round(hit_rate, 1),
                "revalidating_count": len(self._revalidating),
                "online": self._online,
                "coalescer": coalescer_stats,
            }

