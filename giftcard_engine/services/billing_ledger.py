"""
Billing Ledger - Append-only record of every billed gift card.

NO DICTIONARIES - All operations use strongly typed domain models.

All writes follow the pattern:
1. Insert
2. Flush to database
3. Read back and verify
4. Commit
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from giftcard_engine.db.models import CreditAccount, GiftCardBillingLedger
from giftcard_engine.exceptions import BillingRecordError, WriteVerificationError
from giftcard_engine.models.api import BilledEntityType, LedgerTransactionType
from giftcard_engine.models.domain import BillingEntryIntent, BillingRecord
from giftcard_engine.observability.metrics import metrics

logger = get_logger(__name__)


def _source_label(transaction_type: LedgerTransactionType) -> str:
    if transaction_type == LedgerTransactionType.PURCHASE_FROM_INVENTORY:
        return "csv"
    return "external"


class BillingLedger:
    """Writes and reads the gift card billing ledger."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with database session."""
        self.session = session

    async def record_billing(self, intent: BillingEntryIntent) -> BillingRecord:
        """
        Append one ledger entry with write verification.

        Raises:
            BillingRecordError: If the insert fails or cannot be verified
        """
        entry = GiftCardBillingLedger(
            transaction_type=intent.transaction_type.value,
            billed_entity_type=(
                intent.billed_entity_type.value if intent.billed_entity_type else None
            ),
            billed_entity_id=intent.billed_entity_id,
            recipient_id=intent.recipient_id,
            campaign_id=intent.campaign_id,
            brand_id=intent.brand_id,
            denomination=intent.denomination,
            cost_basis=intent.cost_basis,
            client_price=intent.client_price,
            inventory_card_id=intent.inventory_card_id,
            request_id=intent.request_id,
            external_transaction_id=intent.external_transaction_id,
            external_order_reference=intent.external_order_reference,
            simulation_batch_id=intent.simulation_batch_id,
        )
        source = _source_label(intent.transaction_type)

        try:
            self.session.add(entry)
            await self.session.flush()

            # populate_existing forces a SELECT instead of returning the identity-map object
            verified = await self.session.get(
                GiftCardBillingLedger, entry.id, populate_existing=True
            )
            if verified is None:
                raise WriteVerificationError(f"Ledger entry {entry.id} not found after insert")
            if verified.client_price != intent.client_price:
                raise WriteVerificationError(
                    f"Ledger client_price mismatch: {verified.client_price} != "
                    f"{intent.client_price}"
                )

            await self.session.commit()
        except (SQLAlchemyError, WriteVerificationError) as e:
            await self.session.rollback()
            metrics.record_billing_entry(source, success=False)
            logger.error(
                "billing_entry_failed",
                recipient_id=str(intent.recipient_id),
                campaign_id=str(intent.campaign_id),
                request_id=intent.request_id,
                error=str(e),
            )
            raise BillingRecordError(f"Billing entry failed: {e}") from e

        metrics.record_billing_entry(source, success=True)
        logger.info(
            "billing_entry_recorded",
            entry_id=str(verified.id),
            transaction_type=intent.transaction_type.value,
            client_price=str(intent.client_price),
            cost_basis=str(intent.cost_basis),
            request_id=intent.request_id,
        )
        return BillingRecord(
            entry_id=verified.id,
            billed_at=verified.billed_at,
            client_price=verified.client_price,
            cost_basis=verified.cost_basis,
        )

    async def get_available_credits(
        self, entity_type: BilledEntityType, entity_id: UUID
    ) -> Decimal:
        """
        Credits remaining for an entity.

        Missing or inactive accounts have no credits.
        """
        result = await self.session.execute(
            select(CreditAccount).where(
                CreditAccount.entity_type == entity_type.value,
                CreditAccount.entity_id == entity_id,
            )
        )
        account = result.scalar_one_or_none()
        if account is None or account.status != "active":
            return Decimal("0")
        return Decimal(account.credits_remaining)

    async def find_latest_entry(
        self, recipient_id: UUID, campaign_id: UUID
    ) -> GiftCardBillingLedger | None:
        """Most recent ledger entry for a recipient in a campaign."""
        result = await self.session.execute(
            select(GiftCardBillingLedger)
            .where(
                GiftCardBillingLedger.recipient_id == recipient_id,
                GiftCardBillingLedger.campaign_id == campaign_id,
            )
            .order_by(GiftCardBillingLedger.billed_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
