"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, date, datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from giftcard_engine.models.api import CardSource, CardStatus, DeliveryStatus


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


MONEY = Numeric(10, 2)


class GiftCardBrand(Base):
    """
    ORM model for gift_card_brands table.

    A brand with an external purchase code can be bought on demand when
    inventory runs out.
    """

    __tablename__ = "gift_card_brands"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    brand_name: Mapped[str] = mapped_column(String(255), nullable=False)
    brand_code: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    external_purchase_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    is_enabled_by_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    logo_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (Index("idx_gift_card_brands_enabled", "is_enabled_by_admin"),)

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<GiftCardBrand(id={self.id}, brand_code={self.brand_code})>"


class GiftCardDenomination(Base):
    """
    ORM model for gift_card_denominations table.

    Per-brand face values with cost basis and optional custom pricing.
    """

    __tablename__ = "gift_card_denominations"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    brand_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("gift_card_brands.id", ondelete="CASCADE"),
        nullable=False,
    )
    denomination: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    is_enabled_by_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Cost per sourcing path
    cost_basis: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    external_cost_per_card: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)

    # Client-facing pricing
    use_custom_pricing: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    client_price: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    agency_price: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("denomination > 0", name="ck_denomination_positive"),
        CheckConstraint("cost_basis IS NULL OR cost_basis >= 0", name="ck_cost_basis_non_negative"),
        CheckConstraint(
            "client_price IS NULL OR client_price >= 0", name="ck_client_price_non_negative"
        ),
        UniqueConstraint("brand_id", "denomination", name="uq_brand_denomination"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<GiftCardDenomination(brand_id={self.brand_id}, denomination={self.denomination})>"


class GiftCardInventory(Base):
    """
    ORM model for gift_card_inventory table.

    One row per physical card code. Assignment columns are populated
    exactly when the card is not available.
    """

    __tablename__ = "gift_card_inventory"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    brand_id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("gift_card_brands.id", ondelete="RESTRICT"),
        nullable=False,
    )
    denomination: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CardStatus.AVAILABLE.value
    )
    source: Mapped[str] = mapped_column(String(20), nullable=False, default=CardSource.CSV.value)

    # Card secrets
    card_code: Mapped[str] = mapped_column(String(512), nullable=False, unique=True)
    card_number: Mapped[str | None] = mapped_column(String(255), nullable=True)
    expiration_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    # Assignment
    assigned_recipient_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True), nullable=True
    )
    assigned_campaign_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    assigned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Provenance
    upload_batch_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_order_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('available', 'claimed', 'delivered', 'redeemed', 'revoked')",
            name="ck_inventory_status",
        ),
        CheckConstraint("source IN ('csv', 'external')", name="ck_inventory_source"),
        CheckConstraint("denomination > 0", name="ck_inventory_denomination_positive"),
        CheckConstraint(
            "(status = 'available' AND assigned_recipient_id IS NULL "
            "AND assigned_campaign_id IS NULL AND assigned_at IS NULL) OR "
            "(status <> 'available' AND assigned_recipient_id IS NOT NULL "
            "AND assigned_campaign_id IS NOT NULL AND assigned_at IS NOT NULL)",
            name="ck_inventory_assignment_matches_status",
        ),
        Index(
            "idx_inventory_claimable",
            "brand_id",
            "denomination",
            "created_at",
            postgresql_where=(status == CardStatus.AVAILABLE.value),
        ),
        Index("idx_inventory_recipient", "assigned_recipient_id"),
        Index("idx_inventory_upload_batch", "upload_batch_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<GiftCardInventory(id={self.id}, brand_id={self.brand_id}, "
            f"denomination={self.denomination}, status={self.status})>"
        )


class RecipientGiftCard(Base):
    """
    ORM model for recipient_gift_cards table.

    One assignment per recipient, campaign and condition. inventory_card_id
    is NULL for legacy rows that predate the direct card link.
    """

    __tablename__ = "recipient_gift_cards"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    recipient_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    campaign_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    condition_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    recipient_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    brand_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    denomination: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    inventory_card_id: Mapped[UUID | None] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("gift_card_inventory.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Delivery
    delivery_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DeliveryStatus.PENDING.value
    )
    delivery_method: Mapped[str | None] = mapped_column(String(20), nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Revocation
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    revoke_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    simulation_batch_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "delivery_status IN ('pending', 'delivered', 'failed', 'revoked')",
            name="ck_assignment_delivery_status",
        ),
        CheckConstraint(
            "delivery_method IS NULL OR delivery_method IN ('sms', 'email', 'call_center', 'api')",
            name="ck_assignment_delivery_method",
        ),
        UniqueConstraint(
            "recipient_id",
            "campaign_id",
            "condition_number",
            name="uq_recipient_campaign_condition",
        ),
        Index("idx_recipient_gift_cards_campaign", "campaign_id"),
        Index(
            "idx_recipient_gift_cards_card",
            "inventory_card_id",
            postgresql_where=(inventory_card_id.isnot(None)),
        ),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<RecipientGiftCard(id={self.id}, recipient_id={self.recipient_id}, "
            f"delivery_status={self.delivery_status})>"
        )


class CreditAccount(Base):
    """ORM model for credit_accounts table (agency/client/campaign balances)."""

    __tablename__ = "credit_accounts"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    entity_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    credits_remaining: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), nullable=False, default=Decimal("0")
    )
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "entity_type IN ('agency', 'client', 'campaign')", name="ck_credit_entity_type"
        ),
        CheckConstraint(
            "status IN ('active', 'suspended', 'depleted')", name="ck_credit_account_status"
        ),
        UniqueConstraint("entity_type", "entity_id", name="uq_credit_account_entity"),
    )


class GiftCardBillingLedger(Base):
    """
    ORM model for gift_card_billing_ledger table.

    IMMUTABLE - rows are only ever inserted.
    """

    __tablename__ = "gift_card_billing_ledger"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    transaction_type: Mapped[str] = mapped_column(String(50), nullable=False)

    billed_entity_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    billed_entity_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)

    recipient_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    campaign_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    brand_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    denomination: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    cost_basis: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    client_price: Mapped[Decimal] = mapped_column(MONEY, nullable=False)

    inventory_card_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_order_reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    simulation_batch_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    billed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "transaction_type IN ('purchase_from_inventory', 'purchase_from_external')",
            name="ck_ledger_transaction_type",
        ),
        CheckConstraint("denomination > 0", name="ck_ledger_denomination_positive"),
        CheckConstraint("cost_basis >= 0", name="ck_ledger_cost_non_negative"),
        CheckConstraint("client_price >= 0", name="ck_ledger_price_non_negative"),
        Index("idx_ledger_recipient_campaign", "recipient_id", "campaign_id", "billed_at"),
        Index("idx_ledger_billed_entity", "billed_entity_type", "billed_entity_id"),
        Index("idx_ledger_billed_at", "billed_at"),
    )


class GiftCardRevokeLog(Base):
    """
    ORM model for gift_card_revoke_log table.

    Denormalized audit snapshot with no foreign keys so entries outlive
    the rows they describe.
    """

    __tablename__ = "gift_card_revoke_log"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    assignment_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    inventory_card_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    recipient_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    campaign_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    revoked_by: Mapped[str] = mapped_column(String(255), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    original_delivery_status: Mapped[str] = mapped_column(String(20), nullable=False)
    card_value: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    brand_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    card_returned_to_inventory: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    revoked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("char_length(reason) >= 10", name="ck_revoke_reason_length"),
        Index("idx_revoke_log_assignment", "assignment_id"),
        Index("idx_revoke_log_campaign", "campaign_id", "revoked_at"),
    )


class ProvisioningTraceStep(Base):
    """
    ORM model for gift_card_provisioning_trace table.

    Every step of every provisioning attempt, keyed by request_id.
    """

    __tablename__ = "gift_card_provisioning_trace"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    request_id: Mapped[str] = mapped_column(String(255), nullable=False)
    campaign_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    recipient_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    brand_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    denomination: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    step_number: Mapped[int] = mapped_column(Integer, nullable=False)
    step_name: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    details: Mapped[dict[str, str]] = mapped_column(JSONB, nullable=False, default=dict)
    error_code: Mapped[str | None] = mapped_column(String(10), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('started', 'completed', 'failed', 'skipped')", name="ck_trace_status"
        ),
        Index("idx_trace_request_id", "request_id", "step_number"),
        Index("idx_trace_created_at", "created_at"),
        Index(
            "idx_trace_failures",
            "error_code",
            "created_at",
            postgresql_where=(status == "failed"),
        ),
    )


class ExternalGiftCardPurchase(Base):
    """
    ORM model for external_gift_card_purchases table.

    Journal row written before each external purchase call. The reference
    doubles as the idempotency key sent to the provider.
    """

    __tablename__ = "external_gift_card_purchases"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)
    reference: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    brand_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    denomination: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    recipient_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    campaign_id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), nullable=False)
    request_id: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    provider_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    inventory_card_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'reconciled')",
            name="ck_external_purchase_status",
        ),
        Index(
            "idx_external_purchases_pending",
            "created_at",
            postgresql_where=(status == "pending"),
        ),
    )
