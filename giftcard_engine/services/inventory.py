"""
Inventory Store - Owns gift card rows and their status transitions.

The claim is a single conditional UPDATE ... RETURNING over a
FOR UPDATE SKIP LOCKED subquery. Concurrent claimers never block on
each other's candidate row and never receive the same card.
"""

from datetime import UTC, date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Update, and_, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased
from structlog import get_logger

from giftcard_engine.db.models import GiftCardBrand, GiftCardDenomination, GiftCardInventory
from giftcard_engine.exceptions import InventoryTransitionError, WriteVerificationError
from giftcard_engine.models.api import CardSource, CardStatus
from giftcard_engine.models.domain import (
    ImportedCard,
    ImportSummary,
    InventoryCardData,
)
from giftcard_engine.observability.metrics import metrics

logger = get_logger(__name__)


def build_claim_statement(
    brand_id: UUID,
    denomination: Decimal,
    recipient_id: UUID,
    campaign_id: UUID,
    today: date,
    claimed_at: datetime,
) -> Update:
    """
    Build the atomic claim statement.

    The oldest unexpired available card is locked with SKIP LOCKED and
    flipped to claimed in the same statement. The outer status predicate
    re-checks availability so the update is a compare-and-swap.
    """
    candidate_row = aliased(GiftCardInventory)
    candidate = (
        select(candidate_row.id)
        .where(
            candidate_row.brand_id == brand_id,
            candidate_row.denomination == denomination,
            candidate_row.status == CardStatus.AVAILABLE.value,
            or_(
                candidate_row.expiration_date.is_(None),
                candidate_row.expiration_date > today,
            ),
        )
        .order_by(candidate_row.created_at)
        .limit(1)
        .with_for_update(skip_locked=True)
        .scalar_subquery()
    )
    return (
        update(GiftCardInventory)
        .where(
            GiftCardInventory.id == candidate,
            GiftCardInventory.status == CardStatus.AVAILABLE.value,
        )
        .values(
            status=CardStatus.CLAIMED.value,
            assigned_recipient_id=recipient_id,
            assigned_campaign_id=campaign_id,
            assigned_at=claimed_at,
            updated_at=claimed_at,
        )
        .returning(GiftCardInventory)
        .execution_options(synchronize_session=False)
    )


def to_card_data(card: GiftCardInventory) -> InventoryCardData:
    """Convert ORM row to immutable domain snapshot."""
    return InventoryCardData(
        card_id=card.id,
        brand_id=card.brand_id,
        denomination=Decimal(card.denomination),
        status=CardStatus(card.status),
        card_code=card.card_code,
        card_number=card.card_number,
        assigned_recipient_id=card.assigned_recipient_id,
        assigned_campaign_id=card.assigned_campaign_id,
        assigned_at=card.assigned_at,
        expiration_date=card.expiration_date,
        source=CardSource(card.source),
    )


class InventoryStore:
    """Service for claiming, recording and releasing inventory cards."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with database session."""
        self.session = session

    async def claim_available(
        self,
        brand_id: UUID,
        denomination: Decimal,
        recipient_id: UUID,
        campaign_id: UUID,
    ) -> InventoryCardData | None:
        """
        Atomically claim one available card.

        Returns:
            The claimed card, or None when no matching card is available
        """
        now = datetime.now(UTC)
        stmt = build_claim_statement(
            brand_id=brand_id,
            denomination=denomination,
            recipient_id=recipient_id,
            campaign_id=campaign_id,
            today=now.date(),
            claimed_at=now,
        )
        result = await self.session.execute(stmt)
        card = result.scalar_one_or_none()

        if card is None:
            await self.session.rollback()
            metrics.record_inventory_claim(claimed=False)
            logger.debug(
                "inventory_claim_miss",
                brand_id=str(brand_id),
                denomination=str(denomination),
            )
            return None

        await self.session.commit()
        metrics.record_inventory_claim(claimed=True)
        logger.info(
            "inventory_card_claimed",
            card_id=str(card.id),
            brand_id=str(brand_id),
            denomination=str(denomination),
            recipient_id=str(recipient_id),
            campaign_id=str(campaign_id),
        )
        return to_card_data(card)

    async def release(self, card_id: UUID) -> InventoryCardData:
        """
        Return a csv-sourced card to the available pool.

        Clears every assignment field. Used only by revocation.

        Raises:
            InventoryTransitionError: If the card is missing, already available
                or was purchased externally
        """
        stmt = (
            update(GiftCardInventory)
            .where(
                GiftCardInventory.id == card_id,
                GiftCardInventory.source == CardSource.CSV.value,
                GiftCardInventory.status != CardStatus.AVAILABLE.value,
            )
            .values(
                status=CardStatus.AVAILABLE.value,
                assigned_recipient_id=None,
                assigned_campaign_id=None,
                assigned_at=None,
                updated_at=datetime.now(UTC),
            )
            .returning(GiftCardInventory)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        card = result.scalar_one_or_none()
        if card is None:
            await self.session.rollback()
            raise InventoryTransitionError(card_id, CardStatus.AVAILABLE.value)

        await self.session.commit()
        logger.info("inventory_card_released", card_id=str(card_id))
        return to_card_data(card)

    async def mark_revoked(self, card_id: UUID) -> InventoryCardData:
        """
        Mark a card revoked without returning it to the pool.

        Externally purchased cards end here; they cannot be resold.
        """
        return await self._transition(card_id, CardStatus.REVOKED, from_statuses=None)

    async def mark_delivered(self, card_id: UUID) -> InventoryCardData:
        """Move a claimed card to delivered."""
        return await self._transition(
            card_id, CardStatus.DELIVERED, from_statuses=(CardStatus.CLAIMED,)
        )

    async def mark_redeemed(self, card_id: UUID) -> InventoryCardData:
        """Move a delivered card to redeemed."""
        return await self._transition(
            card_id, CardStatus.REDEEMED, from_statuses=(CardStatus.DELIVERED,)
        )

    async def record_external_card(
        self,
        brand_id: UUID,
        denomination: Decimal,
        card_code: str,
        recipient_id: UUID,
        campaign_id: UUID,
        card_number: str | None = None,
        expiration_date: date | None = None,
        external_order_reference: str | None = None,
    ) -> InventoryCardData:
        """
        Insert a card bought on demand, already claimed for its recipient.

        Raises:
            WriteVerificationError: If the row cannot be read back
        """
        now = datetime.now(UTC)
        card = GiftCardInventory(
            brand_id=brand_id,
            denomination=denomination,
            status=CardStatus.CLAIMED.value,
            source=CardSource.EXTERNAL.value,
            card_code=card_code,
            card_number=card_number,
            expiration_date=expiration_date,
            assigned_recipient_id=recipient_id,
            assigned_campaign_id=campaign_id,
            assigned_at=now,
            external_order_reference=external_order_reference,
            created_at=now,
            updated_at=now,
        )
        self.session.add(card)
        await self.session.flush()

        verified = await self.session.get(GiftCardInventory, card.id, populate_existing=True)
        if verified is None:
            raise WriteVerificationError(f"External card {card.id} not found after insert")

        await self.session.commit()
        logger.info(
            "external_card_recorded",
            card_id=str(card.id),
            brand_id=str(brand_id),
            denomination=str(denomination),
            order_reference=external_order_reference,
        )
        return to_card_data(verified)

    async def get_card(self, card_id: UUID) -> InventoryCardData | None:
        """Load one card by id."""
        card = await self.session.get(GiftCardInventory, card_id)
        return to_card_data(card) if card is not None else None

    async def count_available(self, brand_id: UUID, denomination: Decimal) -> int:
        """Count unexpired available cards for a brand/denomination."""
        stmt = select(func.count(GiftCardInventory.id)).where(
            GiftCardInventory.brand_id == brand_id,
            GiftCardInventory.denomination == denomination,
            GiftCardInventory.status == CardStatus.AVAILABLE.value,
            or_(
                GiftCardInventory.expiration_date.is_(None),
                GiftCardInventory.expiration_date > datetime.now(UTC).date(),
            ),
        )
        result = await self.session.execute(stmt)
        return int(result.scalar_one_or_none() or 0)

    async def available_levels(self) -> list[tuple[UUID, str, Decimal, int]]:
        """
        Available card counts per enabled brand and denomination.

        Configured denominations with no cards are included with a count of 0.

        Returns:
            (brand_id, brand_name, denomination, available) tuples
        """
        stmt = (
            select(
                GiftCardDenomination.brand_id,
                GiftCardBrand.brand_name,
                GiftCardDenomination.denomination,
                func.count(GiftCardInventory.id),
            )
            .join(GiftCardBrand, GiftCardBrand.id == GiftCardDenomination.brand_id)
            .outerjoin(
                GiftCardInventory,
                and_(
                    GiftCardInventory.brand_id == GiftCardDenomination.brand_id,
                    GiftCardInventory.denomination == GiftCardDenomination.denomination,
                    GiftCardInventory.status == CardStatus.AVAILABLE.value,
                ),
            )
            .where(
                GiftCardBrand.is_enabled_by_admin.is_(True),
                GiftCardDenomination.is_enabled_by_admin.is_(True),
            )
            .group_by(
                GiftCardDenomination.brand_id,
                GiftCardBrand.brand_name,
                GiftCardDenomination.denomination,
            )
            .order_by(GiftCardBrand.brand_name, GiftCardDenomination.denomination)
        )
        result = await self.session.execute(stmt)
        return [
            (row[0], row[1], Decimal(row[2]), int(row[3])) for row in result.fetchall()
        ]

    async def import_cards(
        self,
        brand_id: UUID,
        denomination: Decimal,
        cards: list[ImportedCard],
        upload_batch_id: str,
    ) -> ImportSummary:
        """
        Bulk insert available cards from the CSV import pipeline.

        Card codes already present are skipped.
        """
        if denomination <= 0:
            raise ValueError(f"Denomination must be positive: {denomination}")
        if not cards:
            return ImportSummary(upload_batch_id=upload_batch_id, inserted=0, skipped_duplicates=0)

        now = datetime.now(UTC)
        stmt = (
            insert(GiftCardInventory)
            .values(
                [
                    {
                        "brand_id": brand_id,
                        "denomination": denomination,
                        "status": CardStatus.AVAILABLE.value,
                        "source": CardSource.CSV.value,
                        "card_code": card.card_code.strip(),
                        "card_number": card.card_number,
                        "expiration_date": card.expiration_date,
                        "upload_batch_id": upload_batch_id,
                        "created_at": now,
                        "updated_at": now,
                    }
                    for card in cards
                ]
            )
            .on_conflict_do_nothing(index_elements=["card_code"])
            .returning(GiftCardInventory.id)
        )
        result = await self.session.execute(stmt)
        inserted = len(result.fetchall())
        await self.session.commit()

        summary = ImportSummary(
            upload_batch_id=upload_batch_id,
            inserted=inserted,
            skipped_duplicates=len(cards) - inserted,
        )
        logger.info(
            "inventory_cards_imported",
            brand_id=str(brand_id),
            denomination=str(denomination),
            upload_batch_id=upload_batch_id,
            inserted=summary.inserted,
            skipped_duplicates=summary.skipped_duplicates,
        )
        return summary

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _transition(
        self,
        card_id: UUID,
        target: CardStatus,
        from_statuses: tuple[CardStatus, ...] | None,
    ) -> InventoryCardData:
        """Conditionally move a card to target; from_statuses=None means any non-revoked."""
        conditions = [GiftCardInventory.id == card_id]
        if from_statuses is None:
            conditions.append(
                GiftCardInventory.status.notin_(
                    [CardStatus.REVOKED.value, CardStatus.AVAILABLE.value]
                )
            )
        else:
            conditions.append(GiftCardInventory.status.in_([s.value for s in from_statuses]))

        stmt = (
            update(GiftCardInventory)
            .where(*conditions)
            .values(status=target.value, updated_at=datetime.now(UTC))
            .returning(GiftCardInventory)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        card = result.scalar_one_or_none()
        if card is None:
            await self.session.rollback()
            raise InventoryTransitionError(card_id, target.value)

        await self.session.commit()
        logger.info("inventory_card_transitioned", card_id=str(card_id), status=target.value)
        return to_card_data(card)
