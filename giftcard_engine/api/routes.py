"""
API Routes - FastAPI endpoints for gift card provisioning.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from giftcard_engine.api.dependencies import get_waterfall, require_service_or_admin
from giftcard_engine.db.session import get_read_db, get_write_db
from giftcard_engine.models.api import (
    BilledEntityType,
    CardResponse,
    CreditBalanceResponse,
    InventoryCountResponse,
    ProvisionErrorResponse,
    ProvisioningTraceResponse,
    ProvisionRequest,
    ProvisionResponse,
    TraceStepItem,
)
from giftcard_engine.models.domain import AdminActor, AssignmentOutcome, InventoryCardData
from giftcard_engine.services.assignments import AssignmentService
from giftcard_engine.services.billing_ledger import BillingLedger
from giftcard_engine.services.inventory import InventoryStore
from giftcard_engine.services.provisioning import ProvisioningWaterfall
from giftcard_engine.services.trace_store import TraceStore

router = APIRouter()


def to_card_response(card: InventoryCardData) -> CardResponse:
    """Convert domain card to API model."""
    return CardResponse(
        id=card.card_id,
        brand_id=card.brand_id,
        denomination=float(card.denomination),
        status=card.status,
        card_code=card.card_code,
        card_number=card.card_number,
        expiration_date=card.expiration_date.isoformat() if card.expiration_date else None,
        source=card.source,
    )


def to_provision_response(outcome: AssignmentOutcome) -> ProvisionResponse:
    """Convert an assignment outcome to the API response."""
    result = outcome.result
    return ProvisionResponse(
        success=result.success,
        source=result.source,
        card=to_card_response(result.card) if result.card else None,
        cost_basis=float(result.cost_basis) if result.cost_basis is not None else None,
        client_price=float(result.client_price) if result.client_price is not None else None,
        error=(
            ProvisionErrorResponse(
                code=result.error.code,
                message=result.error.message,
                recommendation=result.error.recommendation,
                can_retry=result.error.can_retry,
            )
            if result.error
            else None
        ),
        request_id=result.request_id,
        assignment_id=outcome.assignment_id,
    )


@router.post("/v1/gift-cards/provision", response_model=ProvisionResponse)
async def provision_gift_card(
    request: ProvisionRequest,
    db: AsyncSession = Depends(get_write_db),
    waterfall: ProvisioningWaterfall = Depends(get_waterfall),
    actor: AdminActor = Depends(require_service_or_admin),
) -> ProvisionResponse:
    """
    Provision a gift card for a recipient.

    Write operation - requires primary database.
    Failures are returned in the body with a stable GC-xxx code.
    """
    service = AssignmentService(db, waterfall)
    outcome = await service.provision_for_recipient(
        campaign_id=request.campaign_id,
        recipient_id=request.recipient_id,
        brand_id=request.brand_id,
        denomination=Decimal(str(request.denomination)),
        condition_number=request.condition_number,
        recipient_name=request.recipient_name,
        billed_entity_type=request.billed_entity_type,
        billed_entity_id=request.billed_entity_id,
        request_id=request.request_id,
        simulation_batch_id=request.simulation_batch_id,
    )
    return to_provision_response(outcome)


@router.get("/v1/gift-cards/inventory/count", response_model=InventoryCountResponse)
async def get_inventory_count(
    brand_id: UUID = Query(...),
    denomination: float = Query(..., gt=0),
    db: AsyncSession = Depends(get_read_db),
    actor: AdminActor = Depends(require_service_or_admin),
) -> InventoryCountResponse:
    """Available unexpired cards for a brand/denomination."""
    available = await InventoryStore(db).count_available(brand_id, Decimal(str(denomination)))
    return InventoryCountResponse(
        brand_id=brand_id, denomination=denomination, available=available
    )


@router.get(
    "/v1/gift-cards/credits/{entity_type}/{entity_id}",
    response_model=CreditBalanceResponse,
)
async def get_available_credits(
    entity_type: BilledEntityType,
    entity_id: UUID,
    db: AsyncSession = Depends(get_read_db),
    actor: AdminActor = Depends(require_service_or_admin),
) -> CreditBalanceResponse:
    """
    Credits remaining for a billed entity.

    Used by admission control before provisioning is attempted.
    """
    credits = await BillingLedger(db).get_available_credits(entity_type, entity_id)
    return CreditBalanceResponse(
        entity_type=entity_type, entity_id=entity_id, available_credits=float(credits)
    )


@router.get("/v1/gift-cards/traces/{request_id}", response_model=ProvisioningTraceResponse)
async def get_provisioning_trace(
    request_id: str,
    db: AsyncSession = Depends(get_read_db),
    actor: AdminActor = Depends(require_service_or_admin),
) -> ProvisioningTraceResponse:
    """Step-by-step trace of one provisioning attempt."""
    steps = await TraceStore(db).get_trace(request_id)
    if not steps:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No provisioning trace for request {request_id}",
        )
    return ProvisioningTraceResponse(
        request_id=request_id,
        steps=[
            TraceStepItem(
                step_number=step.step_number,
                step_name=step.step_name,
                status=step.status,
                duration_ms=step.duration_ms,
                details=step.details,
                error_code=step.error_code,
                error_message=step.error_message,
                created_at=step.created_at,
            )
            for step in steps
        ],
    )
