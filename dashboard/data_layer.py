"""
Explicit wiring of the data-access layer.

Everything here is constructed per instance and started/stopped through
init()/shutdown(); there is no module-level cache state.
"""
import dataclasses
import logging
import time
from typing import Any, Callable, Dict, Optional, Sequence

import requests

from config.settings import Settings
from dashboard.api_client import ManufacturingApiClient
from dashboard.cache.query import QueryCacheCoordinator
from dashboard.cache.rules import DEFAULT_CACHE_RULES, CacheRule
from dashboard.cache.store import PersistentCacheStore
from dashboard.cache.transport import CacheRouter
from dashboard.gateway import RequestGateway
from dashboard.mutation import ErrorSink, MutationExecutor
from dashboard.retry import MUTATION_RETRY_POLICY, QUERY_RETRY_POLICY

logger = logging.getLogger("data_layer")


class DataAccessLayer:
    """
    Owns the transport caches, gateway, query coordinator and mutation
    executor for one process.

    Usage:
        with DataAccessLayer(Settings()) as layer:
            labor = layer.api.get_labor_assignments("op-42")
    """

    def __init__(
        self,
        settings: Settings,
        session: Optional[requests.Session] = None,
        rules: Sequence[CacheRule] = DEFAULT_CACHE_RULES,
        sink: Optional[ErrorSink] = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self._owns_session = session is None
        self.session = session or requests.Session()

        self.store = PersistentCacheStore(settings.cache_db_path, clock=clock)
        self.router = CacheRouter(
            self.session,
            self.store,
            rules=rules,
            clock=clock,
            enabled=settings.cache_enabled,
        )
        self.gateway = RequestGateway(
            settings.api_root,
            transport=self.router,
            auth_token=settings.api_auth_token,
            timeout=settings.request_timeout_seconds,
        )
        self.coordinator = QueryCacheCoordinator(
            stale_seconds=settings.query_stale_seconds,
            gc_seconds=settings.query_gc_seconds,
            retry_policy=dataclasses.replace(
                QUERY_RETRY_POLICY, max_attempts=settings.query_max_attempts
            ),
            max_revalidation_workers=settings.revalidation_workers,
            gc_interval_seconds=settings.query_gc_interval_seconds,
            refetch_on_window_focus=settings.refetch_on_window_focus,
            refetch_on_reconnect=settings.refetch_on_reconnect,
            clock=clock,
            sleep=sleep,
        )
        self.executor = MutationExecutor(
            self.coordinator,
            sink=sink,
            retry_policy=dataclasses.replace(
                MUTATION_RETRY_POLICY, max_attempts=settings.mutation_max_attempts
            ),
            sleep=sleep,
        )
        self.api = ManufacturingApiClient(
            self.gateway,
            self.coordinator,
            self.executor,
            send_idempotency_keys=settings.send_idempotency_keys,
        )
        self._started = False

    def init(self) -> None:
        """Open the persistent store and start background work."""
        if self._started:
            return
        if self.settings.cache_enabled:
            self.store.init()
            self.store.purge_expired()
            self.router.init()
        self.coordinator.init()
        self._started = True
        logger.info(f"Data-access layer started against {self.settings.api_root}")

    def shutdown(self) -> None:
        """Stop background work and release the store and session."""
        if not self._started:
            return
        self.coordinator.shutdown()
        self.router.shutdown()
        self.store.shutdown()
        if self._owns_session:
            self.session.close()
        self._started = False
        logger.info("Data-access layer stopped")

    @property
    def started(self) -> bool:
        return self._started

    def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "queries": self.coordinator.get_stats(),
            "mutations": self.executor.get_stats(),
            "transport": self.router.get_stats(),
        }
        if self.store.is_open:
            stats["store"] = self.store.get_stats()
        return stats

    def __enter__(self) -> "DataAccessLayer":
        self.init()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()
