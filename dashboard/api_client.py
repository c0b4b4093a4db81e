"""
Manufacturing API client for the operator dashboard.

Reads go through the query cache, writes through the mutation executor,
and both reach the backend via the Request Gateway.
"""
import logging
import uuid
from typing import Any, Dict, Optional, Sequence

from dashboard.cache.core import QueryResult
from dashboard.cache.query import KeyLike, QueryCacheCoordinator
from dashboard.gateway import RequestGateway
from dashboard.mutation import MutationExecutor
from dashboard.query_keys import (
    HealthKeys,
    LaborKeys,
    MaterialKeys,
    NcrKeys,
    QualityCheckKeys,
)

logger = logging.getLogger("api_client")

IDEMPOTENCY_HEADER = "Idempotency-Key"


class ManufacturingApiClient:
    """Typed entry points for the labor, material, NCR and quality resources."""

    def __init__(
        self,
        gateway: RequestGateway,
        coordinator: QueryCacheCoordinator,
        executor: MutationExecutor,
        send_idempotency_keys: bool = True,
    ):
        self._gateway = gateway
        self._coordinator = coordinator
        self._executor = executor
        self._send_idempotency_keys = send_idempotency_keys

    def _query(
        self,
        key: KeyLike,
        endpoint: str,
        force_refresh: bool = False,
    ) -> QueryResult:
        """Read endpoint through the query cache under key."""

        def fetch():
            return self._gateway.send(endpoint, "GET")

        return self._coordinator.read(key, fetch, force_refresh=force_refresh)

    def _mutate(
        self,
        endpoint: str,
        method: str,
        body: Any = None,
        invalidates: Sequence[KeyLike] = (),
        name: Optional[str] = None,
    ) -> Any:
        """
        Send a state-changing request.

        The idempotency key is generated once here, so the executor's
        retry re-sends the same key and the server can drop the duplicate.
        """
        headers = {}
        if self._send_idempotency_keys:
            headers[IDEMPOTENCY_HEADER] = str(uuid.uuid4())

        def send():
            return self._gateway.send(endpoint, method, body=body, headers=headers)

        return self._executor.mutate(
            send,
            invalidates=invalidates,
            name=name or f"{method} {endpoint}",
            context={"endpoint": endpoint, "method": method, **headers},
        )

    # ===== LABOR =====

    def get_labor_assignments(self, operation_id: str, force_refresh: bool = False) -> QueryResult:
        return self._query(
            LaborKeys.by_operation(operation_id),
            f"/operations/{operation_id}/labor",
            force_refresh=force_refresh,
        )

    def get_labor_summary(self, operation_id: str, force_refresh: bool = False) -> QueryResult:
        return self._query(
            LaborKeys.summary(operation_id),
            f"/operations/{operation_id}/labor/summary",
            force_refresh=force_refresh,
        )

    def clock_in(self, assignment_id: str) -> Any:
        return self._mutate(
            f"/labor/{assignment_id}/clock-in", "POST",
            invalidates=[LaborKeys.all], name="clock-in",
        )

    def clock_out(self, assignment_id: str) -> Any:
        return self._mutate(
            f"/labor/{assignment_id}/clock-out", "POST",
            invalidates=[LaborKeys.all], name="clock-out",
        )

    def start_break(self, assignment_id: str) -> Any:
        return self._mutate(
            f"/labor/{assignment_id}/break/start", "POST",
            invalidates=[LaborKeys.all], name="break-start",
        )

    def end_break(self, assignment_id: str) -> Any:
        return self._mutate(
            f"/labor/{assignment_id}/break/end", "POST",
            invalidates=[LaborKeys.all], name="break-end",
        )

    # ===== MATERIALS =====

    def get_material_consumption(self, operation_id: str, force_refresh: bool = False) -> QueryResult:
        return self._query(
            MaterialKeys.by_operation(operation_id),
            f"/operations/{operation_id}/materials",
            force_refresh=force_refresh,
        )

    def get_material_summary(self, operation_id: str, force_refresh: bool = False) -> QueryResult:
        return self._query(
            MaterialKeys.summary(operation_id),
            f"/operations/{operation_id}/materials/summary",
            force_refresh=force_refresh,
        )

    def record_material_consumption(self, data: Dict[str, Any]) -> Any:
        return self._mutate(
            "/materials/consume", "POST", body=data,
            invalidates=[MaterialKeys.all], name="consume-material",
        )

    # ===== NON-CONFORMANCE =====

    def get_ncrs(self, operation_id: str, force_refresh: bool = False) -> QueryResult:
        return self._query(
            NcrKeys.by_operation(operation_id),
            f"/operations/{operation_id}/ncrs",
            force_refresh=force_refresh,
        )

    def get_ncr_summary(self, operation_id: str, force_refresh: bool = False) -> QueryResult:
        return self._query(
            NcrKeys.summary(operation_id),
            f"/operations/{operation_id}/ncrs/summary",
            force_refresh=force_refresh,
        )

    def create_ncr(self, data: Dict[str, Any]) -> Any:
        return self._mutate(
            "/ncrs", "POST", body=data,
            invalidates=[NcrKeys.all], name="create-ncr",
        )

    def update_ncr_status(self, ncr_id: str, status: str, notes: Optional[str] = None) -> Any:
        body: Dict[str, Any] = {"status": status}
        if notes is not None:
            body["notes"] = notes
        return self._mutate(
            f"/ncrs/{ncr_id}/status", "PATCH", body=body,
            invalidates=[NcrKeys.all], name="update-ncr-status",
        )

    # ===== QUALITY =====

    def get_quality_checks(self, operation_id: str, force_refresh: bool = False) -> QueryResult:
        return self._query(
            QualityCheckKeys.by_operation(operation_id),
            f"/operations/{operation_id}/quality-checks",
            force_refresh=force_refresh,
        )

    def record_quality_check(self, data: Dict[str, Any]) -> Any:
        return self._mutate(
            "/quality-checks", "POST", body=data,
            invalidates=[QualityCheckKeys.all], name="record-quality-check",
        )

    # ===== HEALTH =====

    def get_health(self, force_refresh: bool = False) -> QueryResult:
        return self._query(HealthKeys.basic(), "/health", force_refresh=force_refresh)
