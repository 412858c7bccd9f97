"""
Status API routes - Health checks for provisioning dependencies.

Public endpoint (no auth) for status page aggregation.
Results are cached briefly so repeated polling does not hit dependencies.
"""

import asyncio
import time
from datetime import UTC, datetime
from enum import Enum

from fastapi import APIRouter
from pydantic import BaseModel, Field
from sqlalchemy import text
from structlog import get_logger

from giftcard_engine.api.dependencies import get_purchase_provider
from giftcard_engine.config import settings
from giftcard_engine.db.session import get_write_session
from giftcard_engine.services.purchase_provider import ExternalPurchaseProvider

logger = get_logger(__name__)
router = APIRouter(tags=["status"])

CHECK_TIMEOUT = 5.0  # seconds
DEGRADED_LATENCY_THRESHOLD = 1000  # ms

_status_cache: dict[str, tuple[datetime, "ServiceStatusResponse"]] = {}
_CACHE_TTL_SECONDS = 10


class StatusLevel(str, Enum):
    """Status levels for health checks."""

    OPERATIONAL = "operational"
    DEGRADED = "degraded"
    OUTAGE = "outage"
    NOT_CONFIGURED = "not_configured"


class ProviderStatus(BaseModel):
    """Status of a single dependency."""

    status: StatusLevel
    latency_ms: int | None = None
    last_check: str = Field(..., description="ISO 8601 timestamp")
    message: str | None = None


class ServiceStatusResponse(BaseModel):
    """Response for /v1/status endpoint."""

    service: str
    status: StatusLevel
    timestamp: str = Field(..., description="ISO 8601 timestamp")
    version: str
    providers: dict[str, ProviderStatus]


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _timed_status(latency_ms: int, timestamp: str) -> ProviderStatus:
    slow = latency_ms > DEGRADED_LATENCY_THRESHOLD
    return ProviderStatus(
        status=StatusLevel.DEGRADED if slow else StatusLevel.OPERATIONAL,
        latency_ms=latency_ms,
        last_check=timestamp,
        message="High latency" if slow else None,
    )


def _outage(timestamp: str, message: str, timed_out: bool = False) -> ProviderStatus:
    return ProviderStatus(
        status=StatusLevel.OUTAGE,
        latency_ms=int(CHECK_TIMEOUT * 1000) if timed_out else None,
        last_check=timestamp,
        message=message,
    )


async def check_postgresql() -> ProviderStatus:
    """Round-trip `SELECT 1` on the primary."""
    timestamp = _now()
    start = time.perf_counter()

    try:
        async with get_write_session() as db:
            await asyncio.wait_for(db.execute(text("SELECT 1")), timeout=CHECK_TIMEOUT)
    except TimeoutError:
        return _outage(timestamp, "Timeout", timed_out=True)
    except Exception as e:
        logger.warning("postgresql_health_check_failed", error=str(e))
        return _outage(timestamp, "Connection failed")

    return _timed_status(_elapsed_ms(start), timestamp)


async def check_purchase_provider(provider: ExternalPurchaseProvider) -> ProviderStatus:
    """Probe the external purchase API, if credentials are configured."""
    timestamp = _now()

    # Unconfigured provider only disables the fallback path
    if not provider.is_configured():
        return ProviderStatus(
            status=StatusLevel.NOT_CONFIGURED,
            last_check=timestamp,
            message="External purchase credentials not set",
        )

    start = time.perf_counter()
    try:
        reachable = await asyncio.wait_for(provider.check_connection(), timeout=CHECK_TIMEOUT)
    except TimeoutError:
        return _outage(timestamp, "Timeout", timed_out=True)

    if not reachable:
        logger.warning("purchase_provider_health_check_failed")
        return _outage(timestamp, "Connection failed")

    return _timed_status(_elapsed_ms(start), timestamp)


def calculate_overall_status(providers: dict[str, ProviderStatus]) -> StatusLevel:
    """
    Overall status from dependency statuses.

    The database is required. The purchase provider only degrades the
    service, since inventory claims keep working without it.
    """
    database = providers.get("postgresql")
    if database is not None and database.status == StatusLevel.OUTAGE:
        return StatusLevel.OUTAGE

    statuses = [p.status for p in providers.values()]
    if StatusLevel.OUTAGE in statuses or StatusLevel.DEGRADED in statuses:
        return StatusLevel.DEGRADED
    return StatusLevel.OPERATIONAL


@router.get("/v1/status", response_model=ServiceStatusResponse)
async def get_status() -> ServiceStatusResponse:
    """
    Service status for status page aggregation.

    Checks run concurrently; the response is cached for a few seconds.
    """
    cache_key = "status"
    now = datetime.now(UTC)

    if cache_key in _status_cache:
        cached_time, cached_response = _status_cache[cache_key]
        age_seconds = (now - cached_time).total_seconds()
        if age_seconds < _CACHE_TTL_SECONDS:
            logger.debug("status_cache_hit", age_seconds=age_seconds)
            return cached_response

    postgresql_status, provider_status = await asyncio.gather(
        check_postgresql(),
        check_purchase_provider(get_purchase_provider()),
    )

    providers = {
        "postgresql": postgresql_status,
        "external_purchase": provider_status,
    }

    response = ServiceStatusResponse(
        service=settings.service_name,
        status=calculate_overall_status(providers),
        timestamp=now.isoformat(),
        version=settings.api_version,
        providers=providers,
    )

    _status_cache[cache_key] = (now, response)
    return response
