"""Add provisioning trace, external purchase journal and direct card link.

Replaces recipient_gift_cards.legacy_card_code with inventory_card_id.
Legacy rows are matched to inventory by card code; unmatched rows keep
a NULL link and revocation falls back to the billing ledger.

Revision ID: 2026_10_01_0002
Revises: 2026_10_01_0001
Create Date: 2026-10-01

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "2026_10_01_0002"
down_revision: str | None = "2026_10_01_0001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create trace and journal tables, then backfill the card link."""
    op.create_table(
        "gift_card_provisioning_trace",
        sa.Column(
            "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
        ),
        sa.Column("request_id", sa.String(255), nullable=False),
        sa.Column("campaign_id", UUID(as_uuid=True), nullable=True),
        sa.Column("recipient_id", UUID(as_uuid=True), nullable=True),
        sa.Column("brand_id", UUID(as_uuid=True), nullable=True),
        sa.Column("denomination", sa.Numeric(10, 2), nullable=True),
        sa.Column("step_number", sa.Integer, nullable=False),
        sa.Column("step_name", sa.String(50), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("duration_ms", sa.Integer, nullable=True),
        sa.Column("details", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("error_code", sa.String(10), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column(
            "created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()
        ),
        sa.CheckConstraint(
            "status IN ('started', 'completed', 'failed', 'skipped')", name="ck_trace_status"
        ),
    )
    op.create_index(
        "idx_trace_request_id", "gift_card_provisioning_trace", ["request_id", "step_number"]
    )
    op.create_index("idx_trace_created_at", "gift_card_provisioning_trace", ["created_at"])
    op.create_index(
        "idx_trace_failures",
        "gift_card_provisioning_trace",
        ["error_code", "created_at"],
        postgresql_where=sa.text("status = 'failed'"),
    )

    op.create_table(
        "external_gift_card_purchases",
        sa.Column(
            "id", UUID(as_uuid=True), primary_key=True, server_default=sa.text("gen_random_uuid()")
        ),
        sa.Column("reference", sa.String(255), nullable=False, unique=True),
        sa.Column("brand_id", UUID(as_uuid=True), nullable=False),
        sa.Column("denomination", sa.Numeric(10, 2), nullable=False),
        sa.Column("recipient_id", UUID(as_uuid=True), nullable=False),
        sa.Column("campaign_id", UUID(as_uuid=True), nullable=False),
        sa.Column("request_id", sa.String(255), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("provider_transaction_id", sa.String(255), nullable=True),
        sa.Column("inventory_card_id", UUID(as_uuid=True), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
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
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'reconciled')",
            name="ck_external_purchase_status",
        ),
    )
    op.create_index(
        "idx_external_purchases_pending",
        "external_gift_card_purchases",
        ["created_at"],
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.add_column(
        "recipient_gift_cards",
        sa.Column(
            "inventory_card_id",
            UUID(as_uuid=True),
            sa.ForeignKey("gift_card_inventory.id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    op.execute(
        """
        UPDATE recipient_gift_cards AS r
        SET inventory_card_id = i.id
        FROM gift_card_inventory AS i
        WHERE r.inventory_card_id IS NULL
          AND r.legacy_card_code IS NOT NULL
          AND i.card_code = r.legacy_card_code
        """
    )
    op.create_index(
        "idx_recipient_gift_cards_card",
        "recipient_gift_cards",
        ["inventory_card_id"],
        postgresql_where=sa.text("inventory_card_id IS NOT NULL"),
    )
    op.drop_column("recipient_gift_cards", "legacy_card_code")


def downgrade() -> None:
    """Restore the code-based card reference and drop the new tables."""
    op.add_column(
        "recipient_gift_cards",
        sa.Column("legacy_card_code", sa.String(512), nullable=True),
    )
    op.execute(
        """
        UPDATE recipient_gift_cards AS r
        SET legacy_card_code = i.card_code
        FROM gift_card_inventory AS i
        WHERE r.inventory_card_id = i.id
        """
    )
    op.drop_index("idx_recipient_gift_cards_card", table_name="recipient_gift_cards")
    op.drop_column("recipient_gift_cards", "inventory_card_id")

    op.drop_table("external_gift_card_purchases")
    op.drop_table("gift_card_provisioning_trace")
