"""
Tests for the provisioning waterfall.

Collaborators (inventory, pricing, journal) are replaced with class-bound AsyncMocks;
the external provider is the scriptable fake from conftest. Trace rows are
read back from session.add calls.
"""

import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock
from uuid import UUID, uuid4

import httpx
import pytest
from sqlalchemy.exc import SQLAlchemyError

from conftest import (
    FakePurchaseProvider,
    SharedPool,
    create_card_data,
    create_mock_purchase,
)
from giftcard_engine.db.models import ProvisioningTraceStep
from giftcard_engine.exceptions import (
    ExternalPurchaseError,
    ExternalPurchaseTimeoutError,
    GiftCardConfigurationError,
    WriteVerificationError,
)
from giftcard_engine.models.api import CardSource
from giftcard_engine.models.domain import BrandConfig, PriceQuote
from giftcard_engine.services.inventory import InventoryStore
from giftcard_engine.services.pricing import PricingCalculator
from giftcard_engine.services.provisioning import ProvisioningWaterfall, build_error
from giftcard_engine.services.purchase_provider import ExternalCardResult
from giftcard_engine.services.reconciliation import ExternalPurchaseJournal, build_reference
from giftcard_engine.services.tillo_provider import TilloProvider


BRAND_ID = UUID("aaaaaaaa-0000-0000-0000-000000000001")
RECIPIENT_ID = UUID("bbbbbbbb-0000-0000-0000-000000000002")
CAMPAIGN_ID = UUID("cccccccc-0000-0000-0000-000000000003")


def brand_config(external_code: str | None = "amazon-us") -> BrandConfig:
    return BrandConfig(
        brand_id=BRAND_ID,
        brand_name="Amazon",
        external_purchase_code=external_code,
        denomination=Decimal("25.00"),
        available_denominations=(Decimal("25.00"), Decimal("50.00")),
    )


def make_waterfall(
    session: AsyncMock,
    provider: FakePurchaseProvider,
    claim=None,
    external_code: str | None = "amazon-us",
    timeout_seconds: float = 1.0,
) -> ProvisioningWaterfall:
    """Waterfall wired to mocks; inventory misses unless claim is given."""
    waterfall = ProvisioningWaterfall(session, provider, timeout_seconds=timeout_seconds)

    waterfall.pricing = AsyncMock(spec=PricingCalculator)
    waterfall.pricing.validate_request.return_value = brand_config(external_code)
    waterfall.pricing.resolve_price.return_value = PriceQuote(
        cost_basis=Decimal("23.50"), client_price=Decimal("25.00")
    )

    waterfall.inventory = AsyncMock(spec=InventoryStore)
    waterfall.inventory.claim_available.return_value = claim
    waterfall.inventory.record_external_card.return_value = create_card_data(
        source=CardSource.EXTERNAL, brand_id=BRAND_ID
    )

    waterfall.journal = AsyncMock(spec=ExternalPurchaseJournal)
    waterfall.journal.open.return_value = create_mock_purchase(status="pending")
    return waterfall


def recorded_steps(session: AsyncMock) -> list[tuple[str, str, str | None]]:
    """(step_name, status, error_code) for every trace row written."""
    return [
        (row.step_name, row.status, row.error_code)
        for row in (call.args[0] for call in session.add.call_args_list)
        if isinstance(row, ProvisioningTraceStep)
    ]


async def provision(waterfall: ProvisioningWaterfall, **overrides):
    kwargs = {
        "brand_id": BRAND_ID,
        "denomination": Decimal("25.00"),
        "recipient_id": RECIPIENT_ID,
        "campaign_id": CAMPAIGN_ID,
        "request_id": "req-1",
    }
    kwargs.update(overrides)
    return await waterfall.provision(**kwargs)


class SlowProvider(FakePurchaseProvider):
    """Provider whose purchase never returns in time."""

    async def purchase_card(self, request):
        self.requests.append(request)
        await asyncio.sleep(5)
        raise AssertionError("unreachable")


# ============================================================================
# Inventory Path
# ============================================================================


class TestInventoryPath:
    """Cards available in inventory."""

    @pytest.mark.asyncio
    async def test_inventory_hit_never_calls_provider(
        self, db_session: AsyncMock, fake_provider: FakePurchaseProvider
    ):
        """A claimed inventory card wins; the provider is not touched."""
        card = create_card_data(brand_id=BRAND_ID)
        waterfall = make_waterfall(db_session, fake_provider, claim=card)

        result = await provision(waterfall)

        assert result.success is True
        assert result.source == CardSource.CSV
        assert result.card == card
        assert result.cost_basis == Decimal("23.50")
        assert result.client_price == Decimal("25.00")
        assert fake_provider.requests == []
        waterfall.journal.open.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_inventory_hit_trace(
        self, db_session: AsyncMock, fake_provider: FakePurchaseProvider
    ):
        """Trace records each step in order and ends with FINALIZE."""
        waterfall = make_waterfall(db_session, fake_provider, claim=create_card_data())

        await provision(waterfall)

        assert recorded_steps(db_session) == [
            ("VALIDATE_INPUT", "completed", None),
            ("VALIDATE_CONFIG", "completed", None),
            ("CLAIM_INVENTORY", "completed", None),
            ("RESOLVE_PRICING", "completed", None),
            ("FINALIZE", "completed", None),
        ]
        db_session.commit.assert_awaited()

    @pytest.mark.asyncio
    async def test_pricing_failure_falls_back_to_face_value(
        self, db_session: AsyncMock, fake_provider: FakePurchaseProvider
    ):
        """A claimed card is never lost because pricing lookup failed."""
        waterfall = make_waterfall(db_session, fake_provider, claim=create_card_data())
        waterfall.pricing.resolve_price.side_effect = SQLAlchemyError("pricing down")

        result = await provision(waterfall)

        assert result.success is True
        assert result.cost_basis == Decimal("25.00")
        assert result.client_price == Decimal("25.00")

    @pytest.mark.asyncio
    async def test_request_id_generated_when_missing(
        self, db_session: AsyncMock, fake_provider: FakePurchaseProvider
    ):
        """Callers without a request id still get a traceable one."""
        waterfall = make_waterfall(db_session, fake_provider, claim=create_card_data())

        result = await provision(waterfall, request_id=None)

        assert UUID(result.request_id)

    @pytest.mark.asyncio
    async def test_trace_write_failure_does_not_fail_provision(
        self, db_session: AsyncMock, fake_provider: FakePurchaseProvider
    ):
        """Trace persistence is best effort."""
        db_session.commit = AsyncMock(side_effect=SQLAlchemyError("trace table missing"))
        waterfall = make_waterfall(db_session, fake_provider, claim=create_card_data())

        result = await provision(waterfall)

        assert result.success is True
        db_session.rollback.assert_awaited()

    @pytest.mark.asyncio
    async def test_crash_after_claim_releases_card(
        self, db_session: AsyncMock, fake_provider: FakePurchaseProvider
    ):
        """A claimed card goes back to the pool when the attempt dies afterwards."""
        card = create_card_data(brand_id=BRAND_ID)
        waterfall = make_waterfall(db_session, fake_provider, claim=card)
        waterfall.pricing.resolve_price.side_effect = RuntimeError("quote exploded")

        result = await provision(waterfall)

        assert result.success is False
        assert result.error.code == "GC-015"
        waterfall.inventory.release.assert_awaited_once_with(card.card_id)

    @pytest.mark.asyncio
    async def test_failed_release_still_reports_unknown(
        self, db_session: AsyncMock, fake_provider: FakePurchaseProvider
    ):
        """A release that cannot run is logged; the caller still gets GC-015."""
        card = create_card_data(brand_id=BRAND_ID)
        waterfall = make_waterfall(db_session, fake_provider, claim=card)
        waterfall.pricing.resolve_price.side_effect = RuntimeError("quote exploded")
        waterfall.inventory.release.side_effect = SQLAlchemyError("connection lost")

        result = await provision(waterfall)

        assert result.error.code == "GC-015"
        assert "quote exploded" in result.error.message


# ============================================================================
# Validation Failures
# ============================================================================


class TestValidationFailures:
    """Coded failures before anything is claimed."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("denomination", ["abc", "0", Decimal("-5")])
    async def test_bad_denomination_is_missing_parameter(
        self, db_session: AsyncMock, fake_provider: FakePurchaseProvider, denomination
    ):
        """Unparseable or non-positive denominations are GC-012."""
        waterfall = make_waterfall(db_session, fake_provider)

        result = await provision(waterfall, denomination=denomination)

        assert result.success is False
        assert result.error.code == "GC-012"
        waterfall.pricing.validate_request.assert_not_awaited()
        waterfall.inventory.claim_available.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_configuration_error_code_is_surfaced(
        self, db_session: AsyncMock, fake_provider: FakePurchaseProvider
    ):
        """Validation code and message pass straight through."""
        waterfall = make_waterfall(db_session, fake_provider)
        waterfall.pricing.validate_request.side_effect = GiftCardConfigurationError(
            "$37.00 is not configured for Amazon. Available denominations: $25.00",
            code="GC-001",
        )

        result = await provision(waterfall, denomination="37")

        assert result.error.code == "GC-001"
        assert "Available denominations: $25.00" in result.error.message
        assert result.error.can_retry is False
        waterfall.inventory.claim_available.assert_not_awaited()
        assert ("VALIDATE_CONFIG", "failed", "GC-001") in recorded_steps(db_session)


# ============================================================================
# External Fallback
# ============================================================================


class TestExternalFallback:
    """Inventory miss paths."""

    @pytest.mark.asyncio
    async def test_brand_without_external_code_is_no_inventory(
        self, db_session: AsyncMock, fake_provider: FakePurchaseProvider
    ):
        """No fallback possible means GC-003."""
        waterfall = make_waterfall(db_session, fake_provider, external_code=None)

        result = await provision(waterfall)

        assert result.error.code == "GC-003"
        assert result.source == CardSource.CSV
        assert fake_provider.requests == []

    @pytest.mark.asyncio
    async def test_unconfigured_provider(self, db_session: AsyncMock):
        """Missing credentials is GC-004 with no journal row."""
        provider = FakePurchaseProvider(configured=False)
        waterfall = make_waterfall(db_session, provider)

        result = await provision(waterfall)

        assert result.error.code == "GC-004"
        assert result.source == CardSource.EXTERNAL
        waterfall.journal.open.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_external_purchase_success(
        self, db_session: AsyncMock, fake_provider: FakePurchaseProvider
    ):
        """Miss falls through to a journaled external purchase."""
        waterfall = make_waterfall(db_session, fake_provider)
        reference = build_reference(CAMPAIGN_ID, RECIPIENT_ID, "req-1")

        result = await provision(waterfall)

        assert result.success is True
        assert result.source == CardSource.EXTERNAL
        assert result.external_order_reference == reference
        assert result.external_transaction_id is not None

        request = fake_provider.requests[0]
        assert request.reference == reference
        assert request.brand_code == "amazon-us"
        assert request.denomination == Decimal("25.00")
        assert request.currency == "USD"

        waterfall.journal.open.assert_awaited_once()
        assert waterfall.journal.open.await_args.kwargs["reference"] == reference
        waterfall.journal.mark_completed.assert_awaited_once_with(
            reference, result.external_transaction_id, result.card.card_id
        )
        record_kwargs = waterfall.inventory.record_external_card.await_args.kwargs
        assert record_kwargs["recipient_id"] == RECIPIENT_ID
        assert record_kwargs["external_order_reference"] == reference

    @pytest.mark.asyncio
    async def test_external_trace(
        self, db_session: AsyncMock, fake_provider: FakePurchaseProvider
    ):
        """External path traces the miss and the purchase."""
        waterfall = make_waterfall(db_session, fake_provider)

        await provision(waterfall)

        assert [name for name, _, _ in recorded_steps(db_session)] == [
            "VALIDATE_INPUT",
            "VALIDATE_CONFIG",
            "CLAIM_INVENTORY",
            "CHECK_EXTERNAL_CONFIG",
            "EXTERNAL_PURCHASE",
            "SAVE_EXTERNAL_CARD",
            "RESOLVE_PRICING",
            "FINALIZE",
        ]

    @pytest.mark.asyncio
    async def test_timeout_leaves_journal_pending(self, db_session: AsyncMock):
        """A timed-out order may still complete; it is left for the sweep."""
        provider = SlowProvider()
        waterfall = make_waterfall(db_session, provider, timeout_seconds=0.01)

        result = await provision(waterfall)

        assert result.error.code == "GC-005"
        assert result.error.can_retry is True
        waterfall.journal.mark_failed.assert_not_awaited()
        waterfall.journal.mark_completed.assert_not_awaited()
        waterfall.inventory.record_external_card.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_client_side_timeout_error_also_pending(self, db_session: AsyncMock):
        """Provider-reported timeouts are treated like ours."""
        provider = FakePurchaseProvider(error=ExternalPurchaseTimeoutError(10.0))
        waterfall = make_waterfall(db_session, provider)

        result = await provision(waterfall)

        assert result.error.code == "GC-005"
        waterfall.journal.mark_failed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_explicit_rejection_marks_journal_failed(self, db_session: AsyncMock):
        """An HTTP rejection means nothing was bought."""
        provider = FakePurchaseProvider(
            error=ExternalPurchaseError(
                "Brand not available", status_code=422, rejected=True
            )
        )
        waterfall = make_waterfall(db_session, provider)

        result = await provision(waterfall)

        assert result.error.code == "GC-005"
        assert result.error.message == "Brand not available"
        waterfall.journal.mark_failed.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_network_failure_keeps_journal_pending(self, db_session: AsyncMock):
        """No HTTP status means the outcome is unknown."""
        provider = FakePurchaseProvider(error=ExternalPurchaseError("connection reset"))
        waterfall = make_waterfall(db_session, provider)

        result = await provision(waterfall)

        assert result.error.code == "GC-005"
        waterfall.journal.mark_failed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ambiguous_rejection_keeps_journal_pending(self, db_session: AsyncMock):
        """A status code alone does not prove the order was refused."""
        provider = FakePurchaseProvider(
            error=ExternalPurchaseError("Provider error (502)", status_code=502)
        )
        waterfall = make_waterfall(db_session, provider)

        result = await provision(waterfall)

        assert result.error.code == "GC-005"
        waterfall.journal.mark_failed.assert_not_awaited()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "response,marked_failed",
        [
            (httpx.Response(502, text="<html>bad gateway"), False),
            (httpx.Response(200, text="not json"), False),
            (httpx.Response(500, json={"message": "internal"}), False),
            (httpx.Response(422, json={"message": "Invalid face value"}), True),
            (httpx.Response(200, json={"code": "706", "message": "Brand unavailable"}), True),
        ],
    )
    async def test_gateway_outcomes_against_journal(
        self, db_session: AsyncMock, response: httpx.Response, marked_failed: bool
    ):
        """Only refusals close the journal row; other outcomes wait for the sweep."""
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: response))
        provider = TilloProvider(
            api_key="key",
            secret_key="secret",
            base_url="https://tillo.test/v2",
            http_client=client,
        )
        waterfall = make_waterfall(db_session, provider)

        result = await provision(waterfall)

        assert result.error.code == "GC-005"
        assert waterfall.journal.mark_failed.await_count == int(marked_failed)
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error", [SQLAlchemyError("insert failed"), WriteVerificationError("row missing")]
    )
    async def test_local_persist_failure_is_database_error(
        self, db_session: AsyncMock, fake_provider: FakePurchaseProvider, error
    ):
        """Purchased but unsaved cards are GC-013 and stay pending for the sweep."""
        waterfall = make_waterfall(db_session, fake_provider)
        waterfall.inventory.record_external_card.side_effect = error

        result = await provision(waterfall)

        assert result.error.code == "GC-013"
        assert "could not be saved" in result.error.message
        waterfall.journal.mark_completed.assert_not_awaited()
        waterfall.journal.mark_failed.assert_not_awaited()
        db_session.rollback.assert_awaited()

    @pytest.mark.asyncio
    async def test_completed_journal_row_is_replayed(
        self, db_session: AsyncMock, fake_provider: FakePurchaseProvider
    ):
        """Retrying a completed request returns the same card without buying again."""
        card = create_card_data(source=CardSource.EXTERNAL, brand_id=BRAND_ID)
        waterfall = make_waterfall(db_session, fake_provider)
        waterfall.journal.open.return_value = create_mock_purchase(
            status="completed", inventory_card_id=card.card_id, provider_transaction_id="txn-9"
        )
        waterfall.inventory.get_card.return_value = card

        result = await provision(waterfall)

        assert result.success is True
        assert result.card == card
        assert result.external_transaction_id == "txn-9"
        assert fake_provider.requests == []
        assert ("EXTERNAL_PURCHASE", "skipped", None) in recorded_steps(db_session)

    @pytest.mark.asyncio
    async def test_unexpected_error_is_unknown(
        self, db_session: AsyncMock, fake_provider: FakePurchaseProvider
    ):
        """Anything unclassified becomes GC-015, and the open step is still traced."""
        waterfall = make_waterfall(db_session, fake_provider)
        waterfall.inventory.claim_available.side_effect = RuntimeError("boom")

        result = await provision(waterfall)

        assert result.success is False
        assert result.error.code == "GC-015"
        assert "boom" in result.error.message
        steps = recorded_steps(db_session)
        assert ("CLAIM_INVENTORY", "started", None) in steps
        assert steps[-1] == ("FINALIZE", "failed", "GC-015")


# ============================================================================
# Concurrent Provisioning
# ============================================================================


class TestConcurrentProvisioning:
    """Two callers racing for the last inventory card."""

    @staticmethod
    def racing_waterfall(pool: SharedPool, provider, external_code: str | None):
        """Waterfall whose inventory is the shared pool."""
        session = pool.session()
        waterfall = make_waterfall(session, provider, external_code=external_code)
        waterfall.inventory = InventoryStore(session)
        waterfall.inventory.record_external_card = AsyncMock(
            return_value=create_card_data(source=CardSource.EXTERNAL, brand_id=BRAND_ID)
        )
        return waterfall

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "configured,external_code,loser_code",
        [
            (True, "amazon-us", None),
            (False, "amazon-us", "GC-004"),
            (True, None, "GC-003"),
        ],
    )
    async def test_one_card_two_callers(
        self, configured: bool, external_code: str | None, loser_code: str | None
    ):
        """Exactly one caller gets the inventory card; the other falls through."""
        pool = SharedPool(1)
        provider = FakePurchaseProvider(configured=configured)
        waterfalls = [
            self.racing_waterfall(pool, provider, external_code) for _ in range(2)
        ]

        results = await asyncio.gather(
            *[
                provision(waterfall, recipient_id=uuid4(), request_id=f"req-{index}")
                for index, waterfall in enumerate(waterfalls)
            ]
        )

        csv_wins = [r for r in results if r.success and r.source == CardSource.CSV]
        others = [r for r in results if not (r.success and r.source == CardSource.CSV)]
        assert len(csv_wins) == 1
        assert csv_wins[0].card.card_id == pool.claimed[0].id
        assert len(others) == 1
        assert pool.available == []

        loser = others[0]
        if loser_code is None:
            assert loser.success is True
            assert loser.source == CardSource.EXTERNAL
            assert len(provider.requests) == 1
        else:
            assert loser.success is False
            assert loser.error.code == loser_code
            assert provider.requests == []


class TestBuildError:
    """Tests for error construction."""

    def test_attaches_recommendation(self):
        """Taxonomy hint travels with the message."""
        error = build_error("GC-003", "No $25 Amazon cards")

        assert error.code == "GC-003"
        assert error.message == "No $25 Amazon cards"
        assert "Upload gift card inventory" in error.recommendation
        assert error.can_retry is True

    def test_unknown_code_maps_to_gc015(self):
        """Unrecognised codes fall back to the unknown entry."""
        assert build_error("GC-999", "odd").code == "GC-015"


class TestExternalCardResult:
    """Provider result shape used by the waterfall."""

    def test_optional_fields_default(self):
        """Only code, transaction and reference are required."""
        result = ExternalCardResult(card_code="X", transaction_id="t", reference=str(uuid4()))

        assert result.card_number is None
        assert result.expiration_date is None
