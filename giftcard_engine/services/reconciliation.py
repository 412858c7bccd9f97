"""
External Purchase Journal and Reconciliation Sweep.

A journal row is committed before every external purchase call. If the
process dies or the call times out after the provider charged us, the
row stays pending and the sweep asks the provider what happened.
"""

import hashlib
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from giftcard_engine.db.models import ExternalGiftCardPurchase, GiftCardInventory
from giftcard_engine.exceptions import ExternalPurchaseError
from giftcard_engine.models.api import ExternalPurchaseStatus
from giftcard_engine.models.domain import ReconciliationSummary
from giftcard_engine.services.inventory import InventoryStore
from giftcard_engine.services.purchase_provider import (
    ExternalCardResult,
    ExternalPurchaseProvider,
)

logger = get_logger(__name__)

_MAX_REFERENCE_LENGTH = 120


def build_reference(campaign_id: UUID, recipient_id: UUID, request_id: str) -> str:
    """
    Idempotency reference for one attempt.

    Long request ids are hashed so the reference stays within provider limits.
    """
    reference = f"{campaign_id.hex[:8]}-{recipient_id.hex[:8]}-{request_id}"
    if len(reference) <= _MAX_REFERENCE_LENGTH:
        return reference
    digest = hashlib.sha256(request_id.encode("utf-8")).hexdigest()[:32]
    return f"{campaign_id.hex[:8]}-{recipient_id.hex[:8]}-{digest}"


class ExternalPurchaseJournal:
    """Durable record of external purchase attempts."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with database session."""
        self.session = session

    async def open(
        self,
        reference: str,
        brand_id: UUID,
        denomination: Decimal,
        recipient_id: UUID,
        campaign_id: UUID,
        request_id: str,
    ) -> ExternalGiftCardPurchase:
        """
        Commit a pending row for the reference, or return the existing one.

        A retried request with the same request_id reuses its journal row.
        """
        now = datetime.now(UTC)
        await self.session.execute(
            insert(ExternalGiftCardPurchase)
            .values(
                reference=reference,
                brand_id=brand_id,
                denomination=denomination,
                recipient_id=recipient_id,
                campaign_id=campaign_id,
                request_id=request_id,
                status=ExternalPurchaseStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            .on_conflict_do_nothing(index_elements=["reference"])
        )
        await self.session.commit()

        result = await self.session.execute(
            select(ExternalGiftCardPurchase).where(ExternalGiftCardPurchase.reference == reference)
        )
        purchase = result.scalar_one()
        logger.info(
            "external_purchase_journaled",
            reference=reference,
            status=purchase.status,
            request_id=request_id,
        )
        return purchase

    async def mark_completed(
        self, reference: str, provider_transaction_id: str, inventory_card_id: UUID
    ) -> None:
        """Remote order placed and card recorded locally."""
        await self._set_status(
            reference,
            ExternalPurchaseStatus.COMPLETED,
            provider_transaction_id=provider_transaction_id,
            inventory_card_id=inventory_card_id,
        )

    async def mark_failed(self, reference: str, error_message: str) -> None:
        """Provider rejected the order; nothing was bought."""
        await self._set_status(
            reference, ExternalPurchaseStatus.FAILED, error_message=error_message[:2000]
        )

    async def mark_reconciled(
        self, reference: str, provider_transaction_id: str, inventory_card_id: UUID
    ) -> None:
        """Order found by the sweep and recorded after the fact."""
        await self._set_status(
            reference,
            ExternalPurchaseStatus.RECONCILED,
            provider_transaction_id=provider_transaction_id,
            inventory_card_id=inventory_card_id,
        )

    async def find_stale_pending(
        self, older_than: timedelta, limit: int = 100
    ) -> list[ExternalGiftCardPurchase]:
        """Pending rows created before now - older_than, oldest first."""
        cutoff = datetime.now(UTC) - older_than
        result = await self.session.execute(
            select(ExternalGiftCardPurchase)
            .where(
                ExternalGiftCardPurchase.status == ExternalPurchaseStatus.PENDING.value,
                ExternalGiftCardPurchase.created_at < cutoff,
            )
            .order_by(ExternalGiftCardPurchase.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def _set_status(
        self,
        reference: str,
        status: ExternalPurchaseStatus,
        **values: object,
    ) -> None:
        await self.session.execute(
            update(ExternalGiftCardPurchase)
            .where(ExternalGiftCardPurchase.reference == reference)
            .values(status=status.value, updated_at=datetime.now(UTC), **values)
        )
        await self.session.commit()
        logger.info("external_purchase_status_changed", reference=reference, status=status.value)


class PurchaseReconciler:
    """Resolves pending external purchases against the provider."""

    def __init__(self, session: AsyncSession, provider: ExternalPurchaseProvider) -> None:
        self.session = session
        self.provider = provider
        self.journal = ExternalPurchaseJournal(session)
        self.inventory = InventoryStore(session)

    async def sweep(self, stale_minutes: int, limit: int = 100) -> ReconciliationSummary:
        """
        Look up every stale pending purchase at the provider.

        Found orders are recorded as claimed cards for the original recipient,
        orders the provider never saw are marked failed and lookup errors
        leave the row pending for the next sweep.
        """
        if not self.provider.is_configured():
            logger.warning("reconciliation_skipped_provider_not_configured")
            return ReconciliationSummary(examined=0, reconciled=0, failed=0, still_pending=0)

        stale = await self.journal.find_stale_pending(timedelta(minutes=stale_minutes), limit)
        pending = [
            (
                p.reference,
                p.brand_id,
                Decimal(p.denomination),
                p.recipient_id,
                p.campaign_id,
            )
            for p in stale
        ]

        reconciled = failed = still_pending = 0
        for reference, brand_id, denomination, recipient_id, campaign_id in pending:
            try:
                order = await self.provider.find_order(reference)
            except ExternalPurchaseError as e:
                still_pending += 1
                logger.warning("reconciliation_lookup_failed", reference=reference, error=str(e))
                continue

            if order is None:
                await self.journal.mark_failed(reference, "Order not found at provider")
                failed += 1
                continue

            card_id = await self._record_card(
                reference=reference,
                brand_id=brand_id,
                denomination=denomination,
                recipient_id=recipient_id,
                campaign_id=campaign_id,
                order=order,
            )
            if card_id is None:
                still_pending += 1
                continue

            await self.journal.mark_reconciled(reference, order.transaction_id, card_id)
            reconciled += 1

        summary = ReconciliationSummary(
            examined=len(pending),
            reconciled=reconciled,
            failed=failed,
            still_pending=still_pending,
        )
        logger.info(
            "reconciliation_sweep_complete",
            examined=summary.examined,
            reconciled=summary.reconciled,
            failed=summary.failed,
            still_pending=summary.still_pending,
        )
        return summary

    async def _record_card(
        self,
        reference: str,
        brand_id: UUID,
        denomination: Decimal,
        recipient_id: UUID,
        campaign_id: UUID,
        order: ExternalCardResult,
    ) -> UUID | None:
        """Insert the recovered card, or find it if an earlier attempt already did."""
        try:
            card = await self.inventory.record_external_card(
                brand_id=brand_id,
                denomination=denomination,
                card_code=order.card_code,
                recipient_id=recipient_id,
                campaign_id=campaign_id,
                card_number=order.card_number,
                expiration_date=order.expiration_date,
                external_order_reference=reference,
            )
            return card.card_id
        except IntegrityError:
            await self.session.rollback()
            result = await self.session.execute(
                select(GiftCardInventory.id).where(GiftCardInventory.card_code == order.card_code)
            )
            existing = result.scalar_one_or_none()
            if existing is None:
                logger.error("reconciliation_card_record_failed", reference=reference)
            return existing
