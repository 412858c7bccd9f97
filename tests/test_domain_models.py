"""
Tests for domain model invariants.
"""

from datetime import UTC, datetime
from decimal import Decimal
from uuid import uuid4

import pytest

from conftest import create_card_data
from giftcard_engine.models.api import CardSource, CardStatus
from giftcard_engine.models.domain import (
    AdminActor,
    BrandConfig,
    HealthSnapshot,
    ImportedCard,
    InventoryCardData,
    PriceQuote,
    ProvisionResult,
)
from giftcard_engine.services.provisioning import build_error


class TestInventoryCardData:
    """Assignment fields track availability."""

    def test_available_card_without_assignment(self):
        """Available cards carry no assignment."""
        card = create_card_data(status=CardStatus.AVAILABLE)

        assert card.assigned_recipient_id is None

    def test_available_card_with_assignment_rejected(self):
        """Available cards cannot be assigned."""
        with pytest.raises(ValueError):
            InventoryCardData(
                card_id=uuid4(),
                brand_id=uuid4(),
                denomination=Decimal("25"),
                status=CardStatus.AVAILABLE,
                card_code="C-1",
                card_number=None,
                assigned_recipient_id=uuid4(),
                assigned_campaign_id=None,
                assigned_at=None,
                expiration_date=None,
                source=CardSource.CSV,
            )

    @pytest.mark.parametrize(
        "status", [CardStatus.CLAIMED, CardStatus.DELIVERED, CardStatus.REDEEMED, CardStatus.REVOKED]
    )
    def test_assigned_statuses_need_assignment(self, status: CardStatus):
        """Every non-available status carries a recipient."""
        with pytest.raises(ValueError):
            InventoryCardData(
                card_id=uuid4(),
                brand_id=uuid4(),
                denomination=Decimal("25"),
                status=status,
                card_code="C-1",
                card_number=None,
                assigned_recipient_id=None,
                assigned_campaign_id=None,
                assigned_at=None,
                expiration_date=None,
                source=CardSource.CSV,
            )

    def test_positive_denomination(self):
        """Zero-value cards do not exist."""
        with pytest.raises(ValueError):
            InventoryCardData(
                card_id=uuid4(),
                brand_id=uuid4(),
                denomination=Decimal("0"),
                status=CardStatus.CLAIMED,
                card_code="C-1",
                card_number=None,
                assigned_recipient_id=uuid4(),
                assigned_campaign_id=uuid4(),
                assigned_at=datetime.now(UTC),
                expiration_date=None,
                source=CardSource.CSV,
            )


class TestProvisionResult:
    """Success carries a claimed card; failure carries an error."""

    def test_success_requires_card(self):
        """No card, no success."""
        with pytest.raises(ValueError):
            ProvisionResult(success=True, source=CardSource.CSV, request_id="r")

    def test_success_requires_claimed_card(self):
        """Delivered cards cannot be freshly provisioned."""
        with pytest.raises(ValueError):
            ProvisionResult(
                success=True,
                source=CardSource.CSV,
                request_id="r",
                card=create_card_data(status=CardStatus.DELIVERED),
            )

    def test_failure_requires_error(self):
        """Failures explain themselves."""
        with pytest.raises(ValueError):
            ProvisionResult(success=False, source=CardSource.CSV, request_id="r")

    def test_success_cannot_carry_error(self):
        """Mixed outcomes are rejected."""
        with pytest.raises(ValueError):
            ProvisionResult(
                success=True,
                source=CardSource.CSV,
                request_id="r",
                card=create_card_data(),
                error=build_error("GC-015", "x"),
            )


class TestSmallModels:
    """Validation on the remaining value objects."""

    def test_negative_price_rejected(self):
        """Prices are never negative."""
        with pytest.raises(ValueError):
            PriceQuote(cost_basis=Decimal("-1"), client_price=Decimal("25"))

    def test_blank_imported_code_rejected(self):
        """Whitespace is not a card code."""
        with pytest.raises(ValueError):
            ImportedCard(card_code="   ")

    def test_health_counts_must_add_up(self):
        """Inconsistent counts are rejected."""
        with pytest.raises(ValueError):
            HealthSnapshot(24, 10, 5, 4, 50.0, None, None, 0)

    def test_admin_role(self):
        """Only the admin role is admin."""
        assert AdminActor("a", None, "admin").is_admin is True
        assert AdminActor("s", None, "service").is_admin is False

    def test_brand_external_flag(self):
        """Empty provider codes disable the fallback."""
        config = BrandConfig(uuid4(), "Amazon", "", Decimal("25"), (Decimal("25"),))

        assert config.external_purchase_enabled is False
