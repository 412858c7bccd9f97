"""
Main Application - FastAPI application setup.
"""

import asyncio
import contextlib
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import generate_latest
from sqlalchemy.exc import SQLAlchemyError
from starlette.routing import Match

from giftcard_engine.api.admin_routes import router as admin_router
from giftcard_engine.api.dependencies import close_purchase_provider, get_purchase_provider
from giftcard_engine.api.routes import router
from giftcard_engine.api.status_routes import router as status_router
from giftcard_engine.config import settings
from giftcard_engine.db.migration_runner import run_migrations
from giftcard_engine.db.session import close_engines, get_write_session
from giftcard_engine.observability import (
    get_logger,
    log_context,
    metrics,
    setup_logging,
    setup_tracing,
)
from giftcard_engine.observability.tracing import instrument_fastapi
from giftcard_engine.services.reconciliation import PurchaseReconciler

# Setup logging before anything else
setup_logging()
logger = get_logger(__name__)


async def reconcile_once() -> None:
    """Run one reconciliation sweep in its own session."""
    async with get_write_session() as session:
        await PurchaseReconciler(session, get_purchase_provider()).sweep(
            stale_minutes=settings.reconciliation_stale_minutes
        )


async def reconciliation_loop(interval_seconds: int) -> None:
    """Sweep stale external purchases until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await reconcile_once()
        except SQLAlchemyError as e:
            # Next tick retries; the pending rows are still there
            metrics.record_error(type(e).__name__, "reconciliation")
            logger.error("reconciliation_sweep_failed", error=str(e))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    logger.info(
        "application_starting",
        service=settings.api_title,
        version=settings.api_version,
        tracing_enabled=settings.tracing_enabled,
        metrics_enabled=settings.metrics_enabled,
        external_purchase_configured=settings.external_purchase_configured,
    )

    if settings.run_migrations_on_startup:
        await asyncio.to_thread(run_migrations)

    sweeper: asyncio.Task[None] | None = None
    if settings.reconciliation_interval_seconds > 0:
        sweeper = asyncio.create_task(
            reconciliation_loop(settings.reconciliation_interval_seconds)
        )

    yield

    logger.info("application_shutting_down")
    if sweeper is not None:
        sweeper.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper
    await close_purchase_provider()
    await close_engines()
    logger.info("database_engines_closed")


app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description=settings.api_description,
    lifespan=lifespan,
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """422 with errors reduced to JSON-safe fields."""
    errors = [
        {
            "type": error.get("type"),
            "loc": error.get("loc"),
            "msg": error.get("msg"),
            **({"ctx": {k: str(v) for k, v in error["ctx"].items()}} if "ctx" in error else {}),
        }
        for error in exc.errors()
    ]
    # No body preview: provision and import payloads can carry card codes
    logger.warning(
        "validation_error", path=request.url.path, method=request.method, errors=errors
    )
    return JSONResponse(status_code=422, content={"detail": errors})


setup_tracing()
instrument_fastapi(app)


def route_template(request: Request) -> str:
    """Path template for metric labels, so ids in the URL don't explode cardinality."""
    for route in request.app.router.routes:
        match, _ = route.matches(request.scope)
        if match == Match.FULL:
            return getattr(route, "path", request.url.path)
    return "unmatched"


@app.middleware("http")
async def request_metrics_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Time each request, label metrics by route and echo the caller's request id."""
    endpoint = route_template(request)
    method = request.method
    request_id = request.headers.get("X-Request-ID")
    in_progress = metrics.http_requests_in_progress.labels(endpoint=endpoint, method=method)
    in_progress.inc()
    started = time.perf_counter()

    try:
        with log_context(request_id=request_id):
            response = await call_next(request)
    except Exception as e:
        duration = time.perf_counter() - started
        metrics.record_http_request(endpoint, method, 500, duration)
        metrics.record_error(type(e).__name__, "http_request")
        logger.error(
            "request_failed",
            method=method,
            endpoint=endpoint,
            duration_seconds=duration,
            request_id=request_id,
            exc_info=True,
        )
        raise
    finally:
        in_progress.dec()

    duration = time.perf_counter() - started
    metrics.record_http_request(endpoint, method, response.status_code, duration)
    logger.info(
        "request_completed",
        method=method,
        endpoint=endpoint,
        status_code=response.status_code,
        duration_seconds=duration,
        request_id=request_id,
    )
    if request_id:
        response.headers["X-Request-ID"] = request_id
    return response


app.include_router(router)  # Provisioning API (for campaign services)
app.include_router(admin_router)  # Admin API
app.include_router(status_router)  # Public status


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "service": settings.api_title,
        "version": settings.api_version,
        "status": "running",
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    return PlainTextResponse(generate_latest())


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "giftcard_engine.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
