"""
Operator Dashboard - backend-for-frontend FastAPI application

Exposes the resilient data-access layer to the shop-floor tablet UI.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse

from config.settings import Settings, settings as default_settings
from dashboard.cache.core import QueryResult
from dashboard.data_layer import DataAccessLayer
from dashboard.errors import ErrorKind, RequestError
from dashboard.schemas import (
    MaterialConsumptionCreate,
    MutationEnvelope,
    NcrCreate,
    NcrStatusUpdate,
    QualityCheckCreate,
    QueryEnvelope,
)

load_dotenv()

logger = logging.getLogger("dashboard")

# Version tracking
APP_VERSION = "v0.3.0"
APP_NAME = "Operator Dashboard"

# Gateway error kind -> status returned to the tablet
ERROR_STATUS = {
    ErrorKind.NETWORK: 503,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.DECODE: 502,
}


def _envelope(result: QueryResult) -> QueryEnvelope:
    return QueryEnvelope(data=result.data, meta=result.to_meta())


def create_app(
    app_settings: Optional[Settings] = None,
    layer: Optional[DataAccessLayer] = None,
) -> FastAPI:
    """
    Build the dashboard app.

    Args:
        app_settings: Settings to build the data layer from
        layer: Pre-built data layer (tests inject one with a fake session)
    """
    app_settings = app_settings or default_settings
    logging.basicConfig(level=getattr(logging, app_settings.log_level.upper(), logging.INFO))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        data_layer = layer or DataAccessLayer(app_settings)
        data_layer.init()
        app.state.data_layer = data_layer
        logger.info(f"{APP_NAME} {APP_VERSION} serving data from {app_settings.api_root}")
        try:
            yield
        finally:
            data_layer.shutdown()

    app = FastAPI(
        title=APP_NAME,
        description="Resilient data access for shop-floor operator tablets",
        version=APP_VERSION,
        lifespan=lifespan,
    )

    def get_layer(request: Request) -> DataAccessLayer:
        return request.app.state.data_layer

    @app.exception_handler(RequestError)
    async def request_error_handler(request: Request, exc: RequestError):
        status_code = exc.status if exc.kind == ErrorKind.HTTP else ERROR_STATUS[exc.kind]
        return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "ok", "mode": "live"}

    @app.get("/version")
    def version_info():
        """Version information endpoint."""
        return {
            "name": APP_NAME,
            "version": APP_VERSION,
            "full": f"{APP_NAME} {APP_VERSION}",
        }

    @app.get("/cache/stats")
    def cache_stats(request: Request):
        """Get cache statistics for every layer."""
        return get_layer(request).get_stats()

    # ===== REVALIDATION TRIGGERS =====

    @app.post("/events/focus")
    def window_focus(request: Request):
        """Tablet regained focus: revalidate active queries."""
        return {"revalidating": get_layer(request).coordinator.on_focus()}

    @app.post("/events/reconnect")
    def network_reconnect(request: Request):
        """Tablet regained connectivity: revalidate active queries."""
        return {"revalidating": get_layer(request).coordinator.on_reconnect()}

    # ===== LABOR =====

    @app.get("/operations/{operation_id}/labor", response_model=QueryEnvelope)
    def labor_assignments(
        operation_id: str,
        request: Request,
        forceRefresh: bool = Query(default=False, description="Bypass the query cache"),
    ):
        return _envelope(get_layer(request).api.get_labor_assignments(operation_id, forceRefresh))

    @app.get("/operations/{operation_id}/labor/summary", response_model=QueryEnvelope)
    def labor_summary(operation_id: str, request: Request, forceRefresh: bool = False):
        return _envelope(get_layer(request).api.get_labor_summary(operation_id, forceRefresh))

    @app.post("/labor/{assignment_id}/clock-in", response_model=MutationEnvelope)
    def clock_in(assignment_id: str, request: Request):
        return MutationEnvelope(data=get_layer(request).api.clock_in(assignment_id))

    @app.post("/labor/{assignment_id}/clock-out", response_model=MutationEnvelope)
    def clock_out(assignment_id: str, request: Request):
        return MutationEnvelope(data=get_layer(request).api.clock_out(assignment_id))

    @app.post("/labor/{assignment_id}/break/start", response_model=MutationEnvelope)
    def start_break(assignment_id: str, request: Request):
        return MutationEnvelope(data=get_layer(request).api.start_break(assignment_id))

    @app.post("/labor/{assignment_id}/break/end", response_model=MutationEnvelope)
    def end_break(assignment_id: str, request: Request):
        return MutationEnvelope(data=get_layer(request).api.end_break(assignment_id))

    # ===== MATERIALS =====

    @app.get("/operations/{operation_id}/materials", response_model=QueryEnvelope)
    def material_consumption(operation_id: str, request: Request, forceRefresh: bool = False):
        return _envelope(get_layer(request).api.get_material_consumption(operation_id, forceRefresh))

    @app.get("/operations/{operation_id}/materials/summary", response_model=QueryEnvelope)
    def material_summary(operation_id: str, request: Request, forceRefresh: bool = False):
        return _envelope(get_layer(request).api.get_material_summary(operation_id, forceRefresh))

    @app.post("/materials/consume", response_model=MutationEnvelope)
    def consume_material(payload: MaterialConsumptionCreate, request: Request):
        data = get_layer(request).api.record_material_consumption(payload.model_dump(exclude_none=True))
        return MutationEnvelope(data=data)

    # ===== NON-CONFORMANCE =====

    @app.get("/operations/{operation_id}/ncrs", response_model=QueryEnvelope)
    def ncrs(operation_id: str, request: Request, forceRefresh: bool = False):
        return _envelope(get_layer(request).api.get_ncrs(operation_id, forceRefresh))

    @app.get("/operations/{operation_id}/ncrs/summary", response_model=QueryEnvelope)
    def ncr_summary(operation_id: str, request: Request, forceRefresh: bool = False):
        return _envelope(get_layer(request).api.get_ncr_summary(operation_id, forceRefresh))

    @app.post("/ncrs", response_model=MutationEnvelope)
    def create_ncr(payload: NcrCreate, request: Request):
        data = get_layer(request).api.create_ncr(payload.model_dump(exclude_none=True))
        return MutationEnvelope(data=data)

    @app.patch("/ncrs/{ncr_id}/status", response_model=MutationEnvelope)
    def update_ncr_status(ncr_id: str, payload: NcrStatusUpdate, request: Request):
        data = get_layer(request).api.update_ncr_status(ncr_id, payload.status, payload.notes)
        return MutationEnvelope(data=data)

    # ===== QUALITY =====

    @app.get("/operations/{operation_id}/quality-checks", response_model=QueryEnvelope)
    def quality_checks(operation_id: str, request: Request, forceRefresh: bool = False):
        return _envelope(get_layer(request).api.get_quality_checks(operation_id, forceRefresh))

    @app.post("/quality-checks", response_model=MutationEnvelope)
    def record_quality_check(payload: QualityCheckCreate, request: Request):
        data = get_layer(request).api.record_quality_check(payload.model_dump(exclude_none=True))
        return MutationEnvelope(data=data)

    return app


app = create_app()
