"""
Revocation Service - Admin-only reversal of a provisioned gift card.

The assignment update is the durable source of truth and is committed
first. Returning the card to inventory is best-effort; the audit log
entry carries a snapshot taken before anything changed.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from giftcard_engine.db.models import (
    GiftCardBrand,
    GiftCardInventory,
    GiftCardRevokeLog,
    RecipientGiftCard,
)
from giftcard_engine.exceptions import (
    AlreadyRevokedError,
    AssignmentNotFoundError,
    AuthorizationError,
    DatabaseError,
    InvalidRevokeReasonError,
    InventoryTransitionError,
)
from giftcard_engine.models.api import CardSource, CardStatus, DeliveryStatus
from giftcard_engine.models.domain import (
    AdminActor,
    RevocationCheck,
    RevocationSnapshot,
    RevokeResult,
)
from giftcard_engine.observability.metrics import metrics
from giftcard_engine.services.billing_ledger import BillingLedger
from giftcard_engine.services.inventory import InventoryStore

logger = get_logger(__name__)

REVOKE_PERMISSION = "gift_cards:revoke"

USED_CARD_WARNING = (
    "This card appears to have been used. The balance may be reduced or zero."
)
EXTERNAL_CARD_WARNING = (
    "This is an API-provisioned card. Revocation will not refund the external purchase."
)
DELIVERED_WARNING = "This card was already delivered to the recipient."
AUDIT_LOG_WARNING = "Revocation succeeded but its audit log entry could not be written."


def validate_reason(reason: str | None, min_length: int = 10) -> str:
    """
    Trim and length-check a revoke reason.

    Raises:
        InvalidRevokeReasonError: If the trimmed reason is too short
    """
    trimmed = (reason or "").strip()
    if len(trimmed) < min_length:
        raise InvalidRevokeReasonError(min_length, len(trimmed))
    return trimmed


def evaluate_revocation(
    assignment_id: UUID,
    delivery_status: DeliveryStatus,
    snapshot: RevocationSnapshot,
) -> RevocationCheck:
    """Decide whether an assignment can be revoked and what to warn about."""
    if delivery_status == DeliveryStatus.REVOKED:
        return RevocationCheck(
            assignment_id=assignment_id,
            can_revoke=False,
            reason="This gift card has already been revoked",
        )

    warnings: list[str] = []
    if snapshot.card_status == CardStatus.REDEEMED:
        warnings.append(USED_CARD_WARNING)
    elif delivery_status == DeliveryStatus.DELIVERED:
        warnings.append(DELIVERED_WARNING)
    if snapshot.card_source == CardSource.EXTERNAL:
        warnings.append(EXTERNAL_CARD_WARNING)

    return RevocationCheck(assignment_id=assignment_id, can_revoke=True, warnings=tuple(warnings))


class RevocationService:
    """Revokes assignments and keeps the revoke audit log."""

    def __init__(self, session: AsyncSession, min_reason_length: int = 10) -> None:
        self.session = session
        self.min_reason_length = min_reason_length
        self.inventory = InventoryStore(session)
        self.ledger = BillingLedger(session)

    async def revoke(self, assignment_id: UUID, reason: str, actor: AdminActor) -> RevokeResult:
        """
        Revoke an assignment.

        Raises:
            AuthorizationError: Actor is not an admin
            InvalidRevokeReasonError: Reason shorter than the minimum after trimming
            AssignmentNotFoundError: No such assignment
            AlreadyRevokedError: Assignment was revoked before
            DatabaseError: The revoke itself could not be committed
        """
        if not actor.is_admin:
            metrics.record_revocation("unauthorized")
            raise AuthorizationError(REVOKE_PERMISSION)
        try:
            trimmed_reason = validate_reason(reason, self.min_reason_length)
        except InvalidRevokeReasonError:
            metrics.record_revocation("invalid_reason")
            raise

        # (a) Lock, load and snapshot
        result = await self.session.execute(
            select(RecipientGiftCard)
            .where(RecipientGiftCard.id == assignment_id)
            .with_for_update()
        )
        assignment = result.scalar_one_or_none()
        if assignment is None:
            await self.session.rollback()
            metrics.record_revocation("not_found")
            raise AssignmentNotFoundError(assignment_id)

        original_status = DeliveryStatus(assignment.delivery_status)
        if original_status == DeliveryStatus.REVOKED:
            await self.session.rollback()
            metrics.record_revocation("already_revoked")
            raise AlreadyRevokedError(assignment_id)

        snapshot = await self._snapshot(assignment)
        check = evaluate_revocation(assignment_id, original_status, snapshot)
        recipient_id = assignment.recipient_id
        campaign_id = assignment.campaign_id
        recipient_name = assignment.recipient_name

        # (b) Durable revoke
        revoked_at = datetime.now(UTC)
        assignment.delivery_status = DeliveryStatus.REVOKED.value
        assignment.revoked_at = revoked_at
        assignment.revoked_by = actor.actor_id
        assignment.revoke_reason = trimmed_reason
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            metrics.record_revocation("error")
            logger.error("revoke_commit_failed", assignment_id=str(assignment_id), error=str(e))
            raise DatabaseError(f"Failed to revoke assignment {assignment_id}: {e}") from e

        # (c) Card disposition, best effort
        warnings = list(check.warnings)
        returned = False
        if snapshot.inventory_card_id is not None and snapshot.card_source == CardSource.CSV:
            returned = await self._return_to_inventory(snapshot.inventory_card_id)
            if not returned:
                warnings.append("Card could not be returned to inventory; check it manually.")
        elif snapshot.inventory_card_id is not None:
            await self._retire_external_card(snapshot.inventory_card_id)

        # (d) Audit log, best effort once (b) has committed
        if not await self._write_log(
            assignment_id=assignment_id,
            recipient_id=recipient_id,
            campaign_id=campaign_id,
            actor=actor,
            reason=trimmed_reason,
            original_status=original_status,
            snapshot=snapshot,
            returned=returned,
            revoked_at=revoked_at,
        ):
            warnings.append(AUDIT_LOG_WARNING)

        metrics.record_revocation("revoked")
        logger.info(
            "gift_card_revoked",
            assignment_id=str(assignment_id),
            revoked_by=actor.actor_id,
            original_status=original_status.value,
            card_returned_to_inventory=returned,
        )
        message = "Gift card revoked"
        if returned:
            message += " and returned to inventory"
        return RevokeResult(
            success=True,
            message=message,
            assignment_id=assignment_id,
            recipient_name=recipient_name,
            card_value=snapshot.card_value,
            brand_name=snapshot.brand_name,
            original_status=original_status,
            revoked_at=revoked_at,
            revoked_by=actor.actor_id,
            card_returned_to_inventory=returned,
            warnings=tuple(warnings),
        )

    async def check_revocation(self, assignment_id: UUID) -> RevocationCheck:
        """Pre-flight check for the admin UI."""
        assignment = await self.session.get(RecipientGiftCard, assignment_id)
        if assignment is None:
            raise AssignmentNotFoundError(assignment_id)
        snapshot = await self._snapshot(assignment)
        return evaluate_revocation(
            assignment_id, DeliveryStatus(assignment.delivery_status), snapshot
        )

    async def list_revocations(
        self, campaign_id: UUID | None = None, limit: int = 50
    ) -> list[GiftCardRevokeLog]:
        """Newest revoke log entries, optionally for one campaign."""
        stmt = select(GiftCardRevokeLog).order_by(GiftCardRevokeLog.revoked_at.desc()).limit(limit)
        if campaign_id is not None:
            stmt = stmt.where(GiftCardRevokeLog.campaign_id == campaign_id)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _snapshot(self, assignment: RecipientGiftCard) -> RevocationSnapshot:
        """Card value and brand: linked card, then billing ledger, then the assignment."""
        if assignment.inventory_card_id is not None:
            card = await self.session.get(GiftCardInventory, assignment.inventory_card_id)
            if card is not None:
                return RevocationSnapshot(
                    card_value=Decimal(card.denomination),
                    brand_name=await self._brand_name(card.brand_id),
                    inventory_card_id=card.id,
                    card_source=CardSource(card.source),
                    card_status=CardStatus(card.status),
                )

        entry = await self.ledger.find_latest_entry(assignment.recipient_id, assignment.campaign_id)
        if entry is not None:
            return RevocationSnapshot(
                card_value=Decimal(entry.denomination),
                brand_name=await self._brand_name(entry.brand_id),
                inventory_card_id=None,
                card_source=None,
            )

        return RevocationSnapshot(
            card_value=(
                Decimal(assignment.denomination) if assignment.denomination is not None else None
            ),
            brand_name=await self._brand_name(assignment.brand_id),
            inventory_card_id=None,
            card_source=None,
        )

    async def _brand_name(self, brand_id: UUID | None) -> str | None:
        if brand_id is None:
            return None
        brand = await self.session.get(GiftCardBrand, brand_id)
        return brand.brand_name if brand is not None else None

    async def _return_to_inventory(self, card_id: UUID) -> bool:
        try:
            await self.inventory.release(card_id)
        except (InventoryTransitionError, SQLAlchemyError) as e:
            await self.session.rollback()
            logger.error("revoke_inventory_release_failed", card_id=str(card_id), error=str(e))
            return False
        return True

    async def _retire_external_card(self, card_id: UUID) -> None:
        try:
            await self.inventory.mark_revoked(card_id)
        except (InventoryTransitionError, SQLAlchemyError) as e:
            await self.session.rollback()
            logger.error("revoke_external_card_update_failed", card_id=str(card_id), error=str(e))

    async def _write_log(
        self,
        assignment_id: UUID,
        recipient_id: UUID,
        campaign_id: UUID,
        actor: AdminActor,
        reason: str,
        original_status: DeliveryStatus,
        snapshot: RevocationSnapshot,
        returned: bool,
        revoked_at: datetime,
    ) -> bool:
        self.session.add(
            GiftCardRevokeLog(
                assignment_id=assignment_id,
                inventory_card_id=snapshot.inventory_card_id,
                recipient_id=recipient_id,
                campaign_id=campaign_id,
                revoked_by=actor.actor_id,
                reason=reason,
                original_delivery_status=original_status.value,
                card_value=snapshot.card_value,
                brand_name=snapshot.brand_name,
                card_returned_to_inventory=returned,
                revoked_at=revoked_at,
            )
        )
        try:
            await self.session.commit()
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error(
                "revoke_log_write_failed", assignment_id=str(assignment_id), error=str(e)
            )
            return False
        return True
