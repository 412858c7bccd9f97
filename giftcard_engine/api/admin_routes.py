"""
Admin API routes for revocation, provisioning health and maintenance.

Protected by bearer tokens. Every route requires the admin role.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from giftcard_engine.api.dependencies import get_purchase_provider, require_admin_role
from giftcard_engine.config import settings
from giftcard_engine.db.session import get_read_db, get_write_db
from giftcard_engine.exceptions import (
    AlreadyRevokedError,
    AssignmentNotFoundError,
    AuthorizationError,
    DatabaseError,
    InvalidRevokeReasonError,
)
from giftcard_engine.models.api import (
    DeliveryStatus,
    ErrorCodeItem,
    ErrorCodesResponse,
    ErrorCodeStatItem,
    ErrorStatsResponse,
    FailedAttemptItem,
    FailedAttemptsResponse,
    InventoryLevelItem,
    InventoryLevelsResponse,
    ProvisioningHealthResponse,
    ReconciliationResponse,
    RevocationCheckResponse,
    RevokeData,
    RevokeLogItem,
    RevokeLogResponse,
    RevokeRequest,
    RevokeResponse,
    TraceCleanupResponse,
)
from giftcard_engine.models.domain import AdminActor
from giftcard_engine.services.error_taxonomy import ERROR_CODES, describe
from giftcard_engine.services.health_monitor import HealthMonitor
from giftcard_engine.services.reconciliation import PurchaseReconciler
from giftcard_engine.services.revocation import RevocationService
from giftcard_engine.services.tillo_provider import TilloProvider
from giftcard_engine.services.trace_store import TraceStore

logger = get_logger(__name__)
router = APIRouter(prefix="/v1/admin", tags=["admin"])


def _health_monitor(db: AsyncSession) -> HealthMonitor:
    return HealthMonitor(
        db,
        healthy_threshold=settings.inventory_healthy_threshold,
        low_threshold=settings.inventory_low_threshold,
    )


# ============================================================================
# Revocation
# ============================================================================


@router.post("/gift-cards/revoke", response_model=RevokeResponse)
async def revoke_gift_card(
    request: RevokeRequest,
    db: AsyncSession = Depends(get_write_db),
    admin: AdminActor = Depends(require_admin_role),
) -> RevokeResponse:
    """
    Revoke a provisioned gift card.

    csv-sourced cards return to inventory. Requires admin role.
    """
    service = RevocationService(db, min_reason_length=settings.revocation_min_reason_length)
    try:
        result = await service.revoke(request.assignment_id, request.reason, admin)
    except AuthorizationError as exc:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=str(exc),
        ) from exc
    except InvalidRevokeReasonError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except AssignmentNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Gift card assignment not found",
        ) from exc
    except AlreadyRevokedError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This gift card has already been revoked",
        ) from exc
    except DatabaseError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Revocation could not be completed",
        ) from exc

    return RevokeResponse(
        success=result.success,
        message=result.message,
        data=RevokeData(
            assignment_id=result.assignment_id,
            recipient_name=result.recipient_name,
            card_value=float(result.card_value) if result.card_value is not None else None,
            brand_name=result.brand_name,
            original_status=result.original_status,
            revoked_at=result.revoked_at,
            revoked_by=result.revoked_by,
            card_returned_to_inventory=result.card_returned_to_inventory,
        ),
        warnings=list(result.warnings),
    )


@router.get(
    "/gift-cards/revoke/{assignment_id}/check", response_model=RevocationCheckResponse
)
async def check_revocation(
    assignment_id: UUID,
    db: AsyncSession = Depends(get_read_db),
    admin: AdminActor = Depends(require_admin_role),
) -> RevocationCheckResponse:
    """Whether an assignment can be revoked, with warnings for the operator."""
    try:
        check = await RevocationService(db).check_revocation(assignment_id)
    except AssignmentNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Gift card assignment not found",
        ) from exc

    return RevocationCheckResponse(
        assignment_id=check.assignment_id,
        can_revoke=check.can_revoke,
        reason=check.reason,
        warnings=list(check.warnings),
    )


@router.get("/gift-cards/revocations", response_model=RevokeLogResponse)
async def list_revocations(
    campaign_id: UUID | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_read_db),
    admin: AdminActor = Depends(require_admin_role),
) -> RevokeLogResponse:
    """Revoke audit log, newest first."""
    entries = await RevocationService(db).list_revocations(campaign_id=campaign_id, limit=limit)
    return RevokeLogResponse(
        entries=[
            RevokeLogItem(
                id=entry.id,
                assignment_id=entry.assignment_id,
                inventory_card_id=entry.inventory_card_id,
                recipient_id=entry.recipient_id,
                campaign_id=entry.campaign_id,
                revoked_by=entry.revoked_by,
                reason=entry.reason,
                original_delivery_status=DeliveryStatus(entry.original_delivery_status),
                card_value=float(entry.card_value) if entry.card_value is not None else None,
                brand_name=entry.brand_name,
                card_returned_to_inventory=entry.card_returned_to_inventory,
                revoked_at=entry.revoked_at,
            )
            for entry in entries
        ]
    )


# ============================================================================
# Provisioning Health
# ============================================================================


@router.get("/provisioning/health", response_model=ProvisioningHealthResponse)
async def get_provisioning_health(
    hours: int = Query(settings.health_window_hours, ge=1, le=24 * 30),
    db: AsyncSession = Depends(get_read_db),
    admin: AdminActor = Depends(require_admin_role),
) -> ProvisioningHealthResponse:
    """Success rate, timing and top error over a rolling window."""
    snapshot = await _health_monitor(db).get_health(hours)
    return ProvisioningHealthResponse(
        window_hours=snapshot.window_hours,
        total_attempts=snapshot.total_attempts,
        successful_attempts=snapshot.successful_attempts,
        failed_attempts=snapshot.failed_attempts,
        success_rate=snapshot.success_rate,
        avg_duration_ms=snapshot.avg_duration_ms,
        top_error_code=snapshot.top_error_code,
        top_error_count=snapshot.top_error_count,
    )


@router.get("/provisioning/errors", response_model=ErrorStatsResponse)
async def get_error_stats(
    hours: int = Query(settings.health_window_hours, ge=1, le=24 * 30),
    db: AsyncSession = Depends(get_read_db),
    admin: AdminActor = Depends(require_admin_role),
) -> ErrorStatsResponse:
    """Per-code failure counts with remediation hints."""
    stats = await _health_monitor(db).get_error_stats(hours)
    items = []
    for stat in stats:
        definition = describe(stat.error_code)
        items.append(
            ErrorCodeStatItem(
                error_code=stat.error_code,
                occurrences=stat.occurrences,
                last_occurred=stat.last_occurred,
                affected_campaigns=stat.affected_campaigns,
                description=definition.description,
                recommendation=definition.recommendation,
            )
        )
    return ErrorStatsResponse(window_hours=hours, errors=items)


@router.get("/provisioning/failures", response_model=FailedAttemptsResponse)
async def get_recent_failures(
    limit: int = Query(50, ge=1, le=500),
    campaign_id: UUID | None = Query(None),
    hours: int = Query(settings.health_window_hours, ge=1, le=24 * 30),
    db: AsyncSession = Depends(get_read_db),
    admin: AdminActor = Depends(require_admin_role),
) -> FailedAttemptsResponse:
    """Most recent failed provisioning attempts."""
    failures = await _health_monitor(db).get_recent_failures(
        limit=limit, campaign_id=campaign_id, hours=hours
    )
    return FailedAttemptsResponse(
        failures=[
            FailedAttemptItem(
                request_id=f.request_id,
                campaign_id=f.campaign_id,
                recipient_id=f.recipient_id,
                brand_id=f.brand_id,
                denomination=float(f.denomination) if f.denomination is not None else None,
                step_name=f.step_name,
                error_code=f.error_code,
                error_message=f.error_message,
                failed_at=f.failed_at,
            )
            for f in failures
        ]
    )


@router.get("/provisioning/error-codes", response_model=ErrorCodesResponse)
async def list_error_codes(
    admin: AdminActor = Depends(require_admin_role),
) -> ErrorCodesResponse:
    """The full provisioning error taxonomy."""
    return ErrorCodesResponse(
        codes=[
            ErrorCodeItem(
                code=definition.code.value,
                category=definition.category.value,
                description=definition.description,
                recommendation=definition.recommendation,
                severity=definition.severity.value,
                can_retry=definition.can_retry,
                requires_campaign_edit=definition.requires_campaign_edit,
            )
            for definition in ERROR_CODES.values()
        ]
    )


@router.get("/inventory/levels", response_model=InventoryLevelsResponse)
async def get_inventory_levels(
    db: AsyncSession = Depends(get_read_db),
    admin: AdminActor = Depends(require_admin_role),
) -> InventoryLevelsResponse:
    """Available stock per enabled brand/denomination."""
    levels = await _health_monitor(db).get_inventory_levels()
    return InventoryLevelsResponse(
        levels=[
            InventoryLevelItem(
                brand_id=level.brand_id,
                brand_name=level.brand_name,
                denomination=float(level.denomination),
                available=level.available,
                level=level.level,
            )
            for level in levels
        ]
    )


# ============================================================================
# Maintenance
# ============================================================================


@router.post("/provisioning/reconcile", response_model=ReconciliationResponse)
async def reconcile_external_purchases(
    db: AsyncSession = Depends(get_write_db),
    provider: TilloProvider = Depends(get_purchase_provider),
    admin: AdminActor = Depends(require_admin_role),
) -> ReconciliationResponse:
    """Resolve stale pending external purchases now."""
    summary = await PurchaseReconciler(db, provider).sweep(
        stale_minutes=settings.reconciliation_stale_minutes
    )
    logger.info("reconciliation_triggered", actor_id=admin.actor_id, examined=summary.examined)
    return ReconciliationResponse(
        examined=summary.examined,
        reconciled=summary.reconciled,
        failed=summary.failed,
        still_pending=summary.still_pending,
    )


@router.post("/provisioning/traces/cleanup", response_model=TraceCleanupResponse)
async def cleanup_traces(
    days: int = Query(settings.trace_retention_days, ge=1, le=3650),
    db: AsyncSession = Depends(get_write_db),
    admin: AdminActor = Depends(require_admin_role),
) -> TraceCleanupResponse:
    """Delete provisioning trace rows older than `days`."""
    deleted = await TraceStore(db).cleanup_old_traces(days)
    logger.info("trace_cleanup_triggered", actor_id=admin.actor_id, deleted_rows=deleted)
    return TraceCleanupResponse(deleted_rows=deleted, retention_days=days)
