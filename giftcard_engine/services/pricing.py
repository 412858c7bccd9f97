"""
Pricing Calculator - Brand/denomination validation and price resolution.

NO DICTIONARIES - Quotes are immutable domain objects.
"""

from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from giftcard_engine.db.models import GiftCardBrand, GiftCardDenomination
from giftcard_engine.exceptions import GiftCardConfigurationError
from giftcard_engine.models.api import BilledEntityType, CardSource
from giftcard_engine.models.domain import BrandConfig, PriceQuote
from giftcard_engine.services.error_taxonomy import ProvisioningErrorCode

logger = get_logger(__name__)

CENT = Decimal("0.01")


def _money(value: Decimal | float | int) -> Decimal:
    return Decimal(str(value)).quantize(CENT)


def compute_price_quote(
    denomination: Decimal,
    source: CardSource,
    pricing: GiftCardDenomination | None,
    billed_entity_type: BilledEntityType | None = None,
) -> PriceQuote:
    """
    Resolve cost basis and client price from a denomination's pricing row.

    Client price is the face value unless custom pricing is switched on and
    a price is configured. Agency-billed entities use agency_price when set.
    Cost basis is cost_basis for inventory cards and external_cost_per_card
    for purchased ones; either defaults to the face value when unset.
    """
    face_value = _money(denomination)
    if pricing is None:
        return PriceQuote(cost_basis=face_value, client_price=face_value)

    client_price = face_value
    if pricing.use_custom_pricing:
        if billed_entity_type == BilledEntityType.AGENCY and pricing.agency_price is not None:
            client_price = _money(pricing.agency_price)
        elif pricing.client_price is not None:
            client_price = _money(pricing.client_price)

    # CSV cost basis never applies to externally bought cards
    if source == CardSource.EXTERNAL:
        configured = pricing.external_cost_per_card
    else:
        configured = pricing.cost_basis
    cost_basis = _money(configured) if configured is not None else face_value

    return PriceQuote(cost_basis=cost_basis, client_price=client_price)


class PricingCalculator:
    """Validates provisioning configuration and resolves prices."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize with database session."""
        self.session = session

    async def validate_request(self, brand_id: UUID, denomination: Decimal) -> BrandConfig:
        """
        Check brand and denomination setup before anything is claimed.

        Raises:
            GiftCardConfigurationError: GC-012 for a non-positive denomination,
                GC-002 for an unknown or disabled brand, GC-001 for a
                denomination that is not configured or not enabled
        """
        if denomination <= 0:
            raise GiftCardConfigurationError(
                f"Denomination must be positive, got {denomination}",
                code=ProvisioningErrorCode.MISSING_PARAMETERS.value,
            )

        brand = await self.session.get(GiftCardBrand, brand_id)
        if brand is None or not brand.is_enabled_by_admin:
            raise GiftCardConfigurationError(
                f"Brand {brand_id} not found or disabled",
                code=ProvisioningErrorCode.BRAND_NOT_FOUND.value,
            )

        result = await self.session.execute(
            select(GiftCardDenomination.denomination)
            .where(
                GiftCardDenomination.brand_id == brand_id,
                GiftCardDenomination.is_enabled_by_admin.is_(True),
            )
            .order_by(GiftCardDenomination.denomination)
        )
        available = tuple(_money(value) for value in result.scalars().all())

        if _money(denomination) not in available:
            listed = ", ".join(f"${value}" for value in available) or "none"
            raise GiftCardConfigurationError(
                f"${_money(denomination)} is not configured for {brand.brand_name}. "
                f"Available denominations: {listed}",
                code=ProvisioningErrorCode.CONDITION_CONFIG_MISSING.value,
            )

        return BrandConfig(
            brand_id=brand.id,
            brand_name=brand.brand_name,
            external_purchase_code=brand.external_purchase_code,
            denomination=_money(denomination),
            available_denominations=available,
        )

    async def resolve_price(
        self,
        brand_id: UUID,
        denomination: Decimal,
        source: CardSource,
        billed_entity_type: BilledEntityType | None = None,
    ) -> PriceQuote:
        """Resolve the quote for a provisioned card."""
        result = await self.session.execute(
            select(GiftCardDenomination).where(
                GiftCardDenomination.brand_id == brand_id,
                GiftCardDenomination.denomination == denomination,
            )
        )
        pricing = result.scalar_one_or_none()
        quote = compute_price_quote(denomination, source, pricing, billed_entity_type)

        logger.debug(
            "price_resolved",
            brand_id=str(brand_id),
            denomination=str(denomination),
            source=source.value,
            cost_basis=str(quote.cost_basis),
            client_price=str(quote.client_price),
        )
        return quote
