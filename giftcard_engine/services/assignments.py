"""
Assignment Service - Grants one card per recipient, campaign and condition.

Caller of the provisioning waterfall. Owns the "already provisioned"
check, the assignment row and the billing entry for a successful grant.
"""

from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from giftcard_engine.db.models import RecipientGiftCard
from giftcard_engine.exceptions import BillingRecordError, InventoryTransitionError
from giftcard_engine.models.api import BilledEntityType, CardSource, DeliveryStatus
from giftcard_engine.models.domain import (
    AssignmentOutcome,
    BillingEntryIntent,
    ProvisionResult,
)
from giftcard_engine.services.billing_ledger import BillingLedger
from giftcard_engine.services.error_taxonomy import ProvisioningErrorCode, describe
from giftcard_engine.services.inventory import InventoryStore
from giftcard_engine.services.provisioning import ProvisioningWaterfall, build_error

logger = get_logger(__name__)


class AssignmentService:
    """Provisions cards for recipients and records the grant."""

    def __init__(self, session: AsyncSession, waterfall: ProvisioningWaterfall) -> None:
        self.session = session
        self.waterfall = waterfall
        self.inventory = InventoryStore(session)
        self.ledger = BillingLedger(session)

    async def find_existing(
        self, recipient_id: UUID, campaign_id: UUID, condition_number: int
    ) -> RecipientGiftCard | None:
        """Assignment already held for this recipient/campaign/condition, if any."""
        result = await self.session.execute(
            select(RecipientGiftCard).where(
                RecipientGiftCard.recipient_id == recipient_id,
                RecipientGiftCard.campaign_id == campaign_id,
                RecipientGiftCard.condition_number == condition_number,
            )
        )
        return result.scalar_one_or_none()

    async def provision_for_recipient(
        self,
        campaign_id: UUID,
        recipient_id: UUID,
        brand_id: UUID,
        denomination: Decimal,
        condition_number: int = 1,
        recipient_name: str | None = None,
        billed_entity_type: BilledEntityType | None = None,
        billed_entity_id: UUID | None = None,
        request_id: str | None = None,
        simulation_batch_id: str | None = None,
    ) -> AssignmentOutcome:
        """
        Grant a card to a recipient for one campaign condition.

        Billing failures do not undo the grant; they are logged and
        returned as warnings.
        """
        request_id = request_id or str(uuid4())

        existing = await self.find_existing(recipient_id, campaign_id, condition_number)
        if existing is not None:
            logger.info(
                "gift_card_already_provisioned",
                recipient_id=str(recipient_id),
                campaign_id=str(campaign_id),
                condition_number=condition_number,
                assignment_id=str(existing.id),
            )
            return AssignmentOutcome(
                result=self._already_provisioned(request_id, existing.id),
                assignment_id=existing.id,
            )

        warnings: list[str] = []
        if billed_entity_type is not None and billed_entity_id is not None:
            credits = await self.ledger.get_available_credits(billed_entity_type, billed_entity_id)
            if credits < denomination:
                warnings.append(
                    f"{describe(ProvisioningErrorCode.INSUFFICIENT_CREDITS).description}: "
                    f"{credits} available for a ${denomination} card"
                )
                logger.warning(
                    "billed_entity_low_credits",
                    entity_type=billed_entity_type.value,
                    entity_id=str(billed_entity_id),
                    available=str(credits),
                    required=str(denomination),
                )

        result = await self.waterfall.provision(
            brand_id=brand_id,
            denomination=denomination,
            recipient_id=recipient_id,
            campaign_id=campaign_id,
            request_id=request_id,
            simulation_batch_id=simulation_batch_id,
            billed_entity_type=billed_entity_type,
        )
        if not result.success or result.card is None:
            return AssignmentOutcome(result=result, warnings=tuple(warnings))

        assignment = RecipientGiftCard(
            recipient_id=recipient_id,
            campaign_id=campaign_id,
            condition_number=condition_number,
            recipient_name=recipient_name,
            brand_id=brand_id,
            denomination=result.card.denomination,
            inventory_card_id=result.card.card_id,
            delivery_status=DeliveryStatus.PENDING.value,
            simulation_batch_id=simulation_batch_id,
        )
        self.session.add(assignment)
        try:
            await self.session.flush()
            await self.session.commit()
        except IntegrityError as e:
            # Lost the race on (recipient, campaign, condition)
            await self.session.rollback()
            logger.warning(
                "assignment_race_lost",
                recipient_id=str(recipient_id),
                campaign_id=str(campaign_id),
                condition_number=condition_number,
                error=str(e),
            )
            await self._undo_claim(result)
            winner = await self.find_existing(recipient_id, campaign_id, condition_number)
            winner_id = winner.id if winner is not None else None
            return AssignmentOutcome(
                result=self._already_provisioned(request_id, winner_id),
                assignment_id=winner_id,
                warnings=tuple(warnings),
            )

        assignment_id = assignment.id
        try:
            await self.ledger.record_billing(
                BillingEntryIntent.from_result(
                    result,
                    recipient_id=recipient_id,
                    campaign_id=campaign_id,
                    billed_entity_type=billed_entity_type,
                    billed_entity_id=billed_entity_id,
                    simulation_batch_id=simulation_batch_id,
                )
            )
        except BillingRecordError as e:
            warnings.append(f"{e.code}: {describe(e.code).description}")
            logger.error(
                "assignment_billing_failed",
                assignment_id=str(assignment_id),
                error_code=e.code,
                error=e.message,
            )

        logger.info(
            "gift_card_assigned",
            assignment_id=str(assignment_id),
            card_id=str(result.card.card_id),
            source=result.source.value,
        )
        return AssignmentOutcome(
            result=result, assignment_id=assignment_id, warnings=tuple(warnings)
        )

    async def _undo_claim(self, result: ProvisionResult) -> None:
        """Return the loser's csv card to the pool; external cards need manual review."""
        if result.card is None:
            return
        if result.source != CardSource.CSV:
            logger.error(
                "external_card_orphaned_by_race",
                card_id=str(result.card.card_id),
                order_reference=result.external_order_reference,
            )
            return
        try:
            await self.inventory.release(result.card.card_id)
        except (InventoryTransitionError, SQLAlchemyError) as e:
            await self.session.rollback()
            logger.error(
                "race_loser_release_failed", card_id=str(result.card.card_id), error=str(e)
            )

    @staticmethod
    def _already_provisioned(request_id: str, assignment_id: UUID | None) -> ProvisionResult:
        return ProvisionResult(
            success=False,
            source=CardSource.CSV,
            request_id=request_id,
            error=build_error(
                ProvisioningErrorCode.ALREADY_PROVISIONED,
                f"Gift card already provisioned (assignment {assignment_id})",
            ),
        )
