"""Initial gift card schema: brands, inventory, assignments, ledger, revoke log.

Revision ID: 2026_10_01_0001
Revises:
Create Date: 2026-10-01

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_01_0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

MONEY = sa.Numeric(10, 2)


def _id_column() -> sa.Column:
    return sa.Column(
        "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
            onupdate=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    """Create the core gift card tables."""
    op.create_table(
        "gift_card_brands",
        _id_column(),
        sa.Column("brand_name", sa.String(255), nullable=False),
        sa.Column("brand_code", sa.String(100), nullable=False, unique=True),
        sa.Column("external_purchase_code", sa.String(100), nullable=True),
        sa.Column("is_enabled_by_admin", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("logo_url", sa.String(1024), nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_gift_card_brands_enabled", "gift_card_brands", ["is_enabled_by_admin"])

    op.create_table(
        "gift_card_denominations",
        _id_column(),
        sa.Column(
            "brand_id",
            UUID(as_uuid=True),
            sa.ForeignKey("gift_card_brands.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("denomination", MONEY, nullable=False),
        sa.Column("is_enabled_by_admin", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("cost_basis", MONEY, nullable=True),
        sa.Column("external_cost_per_card", MONEY, nullable=True),
        sa.Column("use_custom_pricing", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("client_price", MONEY, nullable=True),
        sa.Column("agency_price", MONEY, nullable=True),
        *_timestamps(),
        sa.CheckConstraint("denomination > 0", name="ck_denomination_positive"),
        sa.CheckConstraint(
            "cost_basis IS NULL OR cost_basis >= 0", name="ck_cost_basis_non_negative"
        ),
        sa.CheckConstraint(
            "client_price IS NULL OR client_price >= 0", name="ck_client_price_non_negative"
        ),
        sa.UniqueConstraint("brand_id", "denomination", name="uq_brand_denomination"),
    )

    op.create_table(
        "gift_card_inventory",
        _id_column(),
        sa.Column(
            "brand_id",
            UUID(as_uuid=True),
            sa.ForeignKey("gift_card_brands.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("denomination", MONEY, nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="available"),
        sa.Column("source", sa.String(20), nullable=False, server_default="csv"),
        sa.Column("card_code", sa.String(512), nullable=False, unique=True),
        sa.Column("card_number", sa.String(255), nullable=True),
        sa.Column("expiration_date", sa.Date, nullable=True),
        sa.Column("assigned_recipient_id", UUID(as_uuid=True), nullable=True),
        sa.Column("assigned_campaign_id", UUID(as_uuid=True), nullable=True),
        sa.Column("assigned_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("upload_batch_id", sa.String(255), nullable=True),
        sa.Column("external_order_reference", sa.String(255), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('available', 'claimed', 'delivered', 'redeemed', 'revoked')",
            name="ck_inventory_status",
        ),
        sa.CheckConstraint("source IN ('csv', 'external')", name="ck_inventory_source"),
        sa.CheckConstraint("denomination > 0", name="ck_inventory_denomination_positive"),
        sa.CheckConstraint(
            "(status = 'available' AND assigned_recipient_id IS NULL "
            "AND assigned_campaign_id IS NULL AND assigned_at IS NULL) OR "
            "(status <> 'available' AND assigned_recipient_id IS NOT NULL "
            "AND assigned_campaign_id IS NOT NULL AND assigned_at IS NOT NULL)",
            name="ck_inventory_assignment_matches_status",
        ),
    )
    # Claim path scans only available rows, oldest first
    op.create_index(
        "idx_inventory_claimable",
        "gift_card_inventory",
        ["brand_id", "denomination", "created_at"],
        postgresql_where=sa.text("status = 'available'"),
    )
    op.create_index("idx_inventory_recipient", "gift_card_inventory", ["assigned_recipient_id"])
    op.create_index("idx_inventory_upload_batch", "gift_card_inventory", ["upload_batch_id"])

    # Assignments identify their card by code until the direct link lands
    op.create_table(
        "recipient_gift_cards",
        _id_column(),
        sa.Column("recipient_id", UUID(as_uuid=True), nullable=False),
        sa.Column("campaign_id", UUID(as_uuid=True), nullable=False),
        sa.Column("condition_number", sa.Integer, nullable=False, server_default="1"),
        sa.Column("recipient_name", sa.String(255), nullable=True),
        sa.Column("brand_id", UUID(as_uuid=True), nullable=True),
        sa.Column("denomination", MONEY, nullable=True),
        sa.Column("legacy_card_code", sa.String(512), nullable=True),
        sa.Column("delivery_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("delivery_method", sa.String(20), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_by", sa.String(255), nullable=True),
        sa.Column("revoke_reason", sa.Text, nullable=True),
        sa.Column("simulation_batch_id", sa.String(255), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "delivery_status IN ('pending', 'delivered', 'failed', 'revoked')",
            name="ck_assignment_delivery_status",
        ),
        sa.CheckConstraint(
            "delivery_method IS NULL OR delivery_method IN ('sms', 'email', 'call_center', 'api')",
            name="ck_assignment_delivery_method",
        ),
        sa.UniqueConstraint(
            "recipient_id",
            "campaign_id",
            "condition_number",
            name="uq_recipient_campaign_condition",
        ),
    )
    op.create_index("idx_recipient_gift_cards_campaign", "recipient_gift_cards", ["campaign_id"])

    op.create_table(
        "credit_accounts",
        _id_column(),
        sa.Column("entity_type", sa.String(20), nullable=False),
        sa.Column("entity_id", UUID(as_uuid=True), nullable=False),
        sa.Column("credits_remaining", sa.Numeric(12, 2), nullable=False, server_default="0"),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        *_timestamps(),
        sa.CheckConstraint(
            "entity_type IN ('agency', 'client', 'campaign')", name="ck_credit_entity_type"
        ),
        sa.CheckConstraint(
            "status IN ('active', 'suspended', 'depleted')", name="ck_credit_account_status"
        ),
        sa.UniqueConstraint("entity_type", "entity_id", name="uq_credit_account_entity"),
    )

    # Billing ledger - append-only
    op.create_table(
        "gift_card_billing_ledger",
        _id_column(),
        sa.Column("transaction_type", sa.String(50), nullable=False),
        sa.Column("billed_entity_type", sa.String(20), nullable=True),
        sa.Column("billed_entity_id", UUID(as_uuid=True), nullable=True),
        sa.Column("recipient_id", UUID(as_uuid=True), nullable=False),
        sa.Column("campaign_id", UUID(as_uuid=True), nullable=False),
        sa.Column("brand_id", UUID(as_uuid=True), nullable=False),
        sa.Column("denomination", MONEY, nullable=False),
        sa.Column("cost_basis", MONEY, nullable=False),
        sa.Column("client_price", MONEY, nullable=False),
        sa.Column("inventory_card_id", UUID(as_uuid=True), nullable=True),
        sa.Column("request_id", sa.String(255), nullable=True),
        sa.Column("external_transaction_id", sa.String(255), nullable=True),
        sa.Column("external_order_reference", sa.String(255), nullable=True),
        sa.Column("simulation_batch_id", sa.String(255), nullable=True),
        sa.Column(
            "billed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.CheckConstraint(
            "transaction_type IN ('purchase_from_inventory', 'purchase_from_external')",
            name="ck_ledger_transaction_type",
        ),
        sa.CheckConstraint("denomination > 0", name="ck_ledger_denomination_positive"),
        sa.CheckConstraint("cost_basis >= 0", name="ck_ledger_cost_non_negative"),
        sa.CheckConstraint("client_price >= 0", name="ck_ledger_price_non_negative"),
    )
    op.create_index(
        "idx_ledger_recipient_campaign",
        "gift_card_billing_ledger",
        ["recipient_id", "campaign_id", "billed_at"],
    )
    op.create_index(
        "idx_ledger_billed_entity",
        "gift_card_billing_ledger",
        ["billed_entity_type", "billed_entity_id"],
    )
    op.create_index("idx_ledger_billed_at", "gift_card_billing_ledger", ["billed_at"])

    # Revoke log - no foreign keys so entries outlive what they describe
    op.create_table(
        "gift_card_revoke_log",
        _id_column(),
        sa.Column("assignment_id", UUID(as_uuid=True), nullable=False),
        sa.Column("inventory_card_id", UUID(as_uuid=True), nullable=True),
        sa.Column("recipient_id", UUID(as_uuid=True), nullable=False),
        sa.Column("campaign_id", UUID(as_uuid=True), nullable=False),
        sa.Column("revoked_by", sa.String(255), nullable=False),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("original_delivery_status", sa.String(20), nullable=False),
        sa.Column("card_value", MONEY, nullable=True),
        sa.Column("brand_name", sa.String(255), nullable=True),
        sa.Column(
            "card_returned_to_inventory", sa.Boolean, nullable=False, server_default="false"
        ),
        sa.Column(
            "revoked_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.CheckConstraint("char_length(reason) >= 10", name="ck_revoke_reason_length"),
    )
    op.create_index("idx_revoke_log_assignment", "gift_card_revoke_log", ["assignment_id"])
    op.create_index(
        "idx_revoke_log_campaign", "gift_card_revoke_log", ["campaign_id", "revoked_at"]
    )


def downgrade() -> None:
    """Drop the core gift card tables."""
    op.drop_table("gift_card_revoke_log")
    op.drop_table("gift_card_billing_ledger")
    op.drop_table("credit_accounts")
    op.drop_table("recipient_gift_cards")
    op.drop_table("gift_card_inventory")
    op.drop_table("gift_card_denominations")
    op.drop_table("gift_card_brands")
