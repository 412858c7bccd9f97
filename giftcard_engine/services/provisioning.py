"""
Provisioning Waterfall - Inventory first, external purchase second.

NO DICTIONARIES - Every attempt ends in a typed ProvisionResult.

Flow for one attempt:
1. Validate input and brand/denomination configuration
2. Atomically claim an available inventory card
3. On a miss, buy one card from the external provider (bounded by a timeout)
4. Resolve pricing for the sourcing path

Coded failures are returned, never raised. Every step is written to the
provisioning trace keyed by request_id.
"""

import asyncio
import time
from decimal import Decimal, InvalidOperation
from uuid import UUID, uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from giftcard_engine.exceptions import (
    ExternalPurchaseError,
    ExternalPurchaseTimeoutError,
    GiftCardConfigurationError,
    InventoryTransitionError,
    WriteVerificationError,
)
from giftcard_engine.models.api import (
    BilledEntityType,
    CardSource,
    CardStatus,
    ExternalPurchaseStatus,
)
from giftcard_engine.models.domain import (
    BrandConfig,
    InventoryCardData,
    PriceQuote,
    ProvisionErrorInfo,
    ProvisionResult,
)
from giftcard_engine.observability.logging import log_context
from giftcard_engine.observability.metrics import metrics
from giftcard_engine.observability.tracing import add_span_attributes, trace_operation
from giftcard_engine.services.error_taxonomy import ProvisioningErrorCode, describe
from giftcard_engine.services.inventory import InventoryStore
from giftcard_engine.services.pricing import PricingCalculator, compute_price_quote
from giftcard_engine.services.purchase_provider import (
    ExternalPurchaseProvider,
    ExternalPurchaseRequest,
)
from giftcard_engine.services.reconciliation import ExternalPurchaseJournal, build_reference
from giftcard_engine.services.trace_store import ProvisioningTracer, TraceStep

logger = get_logger(__name__)

_Code = ProvisioningErrorCode


def build_error(code: ProvisioningErrorCode | str, message: str) -> ProvisionErrorInfo:
    """Attach taxonomy remediation to a failure message."""
    definition = describe(code)
    return ProvisionErrorInfo(
        code=definition.code.value,
        message=message,
        recommendation=definition.recommendation,
        can_retry=definition.can_retry,
    )


class ProvisioningWaterfall:
    """Obtains exactly one card per call, preferring pre-purchased inventory."""

    def __init__(
        self,
        session: AsyncSession,
        provider: ExternalPurchaseProvider,
        currency: str = "USD",
        timeout_seconds: float = 10.0,
    ) -> None:
        self.session = session
        self.provider = provider
        self.currency = currency
        self.timeout_seconds = timeout_seconds
        self.inventory = InventoryStore(session)
        self.pricing = PricingCalculator(session)
        self.journal = ExternalPurchaseJournal(session)

    async def provision(
        self,
        brand_id: UUID,
        denomination: Decimal | float | str,
        recipient_id: UUID,
        campaign_id: UUID,
        request_id: str | None = None,
        simulation_batch_id: str | None = None,
        billed_entity_type: BilledEntityType | None = None,
    ) -> ProvisionResult:
        """
        Provision one card for a recipient.

        Returns:
            ProvisionResult; failures carry a stable GC-xxx code
        """
        request_id = request_id or str(uuid4())
        amount = self._to_amount(denomination)
        tracer = ProvisioningTracer(
            self.session,
            request_id=request_id,
            campaign_id=campaign_id,
            recipient_id=recipient_id,
            brand_id=brand_id,
            denomination=amount if amount is not None and amount > 0 else None,
        )
        started = time.perf_counter()

        with log_context(request_id=request_id), trace_operation(
            "gift_card_provision",
            brand_id=str(brand_id),
            campaign_id=str(campaign_id),
            recipient_id=str(recipient_id),
            request_id=request_id,
        ) as span:
            try:
                result = await self._run(
                    tracer,
                    request_id=request_id,
                    brand_id=brand_id,
                    amount=amount,
                    recipient_id=recipient_id,
                    campaign_id=campaign_id,
                    billed_entity_type=billed_entity_type,
                )
            except Exception as e:
                await self.session.rollback()
                logger.exception(
                    "provisioning_unexpected_error",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                metrics.record_error(type(e).__name__, "provision")
                result = self._failure(
                    request_id, CardSource.CSV, _Code.UNKNOWN, f"Unexpected error: {e}"
                )

            self._finalize(tracer, result, simulation_batch_id)
            await tracer.persist()

            duration = time.perf_counter() - started
            add_span_attributes(
                span,
                success=result.success,
                source=result.source.value,
                error_code=result.error.code if result.error else None,
            )
            metrics.record_provision(
                source=result.source.value,
                success=result.success,
                duration=duration,
                error_code=result.error.code if result.error else None,
            )
            if result.success:
                logger.info(
                    "gift_card_provisioned",
                    source=result.source.value,
                    card_id=str(result.card.card_id) if result.card else None,
                    duration_ms=int(duration * 1000),
                )
            else:
                logger.warning(
                    "gift_card_provision_failed",
                    source=result.source.value,
                    error_code=result.error.code if result.error else None,
                    error_message=result.error.message if result.error else None,
                    duration_ms=int(duration * 1000),
                )
            return result

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _run(
        self,
        tracer: ProvisioningTracer,
        request_id: str,
        brand_id: UUID,
        amount: Decimal | None,
        recipient_id: UUID,
        campaign_id: UUID,
        billed_entity_type: BilledEntityType | None,
    ) -> ProvisionResult:
        # 1. Input
        step = tracer.start(TraceStep.VALIDATE_INPUT)
        if amount is None or amount <= 0:
            message = f"Denomination must be a positive amount, got {amount}"
            tracer.fail(step, _Code.MISSING_PARAMETERS.value, message)
            return self._failure(request_id, CardSource.CSV, _Code.MISSING_PARAMETERS, message)
        tracer.complete(step, {"denomination": str(amount)})

        # 2. Configuration
        step = tracer.start(TraceStep.VALIDATE_CONFIG)
        try:
            brand = await self.pricing.validate_request(brand_id, amount)
        except GiftCardConfigurationError as e:
            tracer.fail(step, e.code, e.message)
            return self._failure(request_id, CardSource.CSV, e.code, e.message)
        tracer.complete(step, {"brand_name": brand.brand_name})

        # 3. Inventory
        step = tracer.start(TraceStep.CLAIM_INVENTORY)
        card = await self.inventory.claim_available(brand_id, amount, recipient_id, campaign_id)
        if card is not None:
            tracer.complete(step, {"result": "claimed", "card_id": str(card.card_id)})
            try:
                quote = await self._resolve_price(
                    tracer, brand_id, amount, CardSource.CSV, billed_entity_type
                )
                return ProvisionResult(
                    success=True,
                    source=CardSource.CSV,
                    request_id=request_id,
                    card=card,
                    cost_basis=quote.cost_basis,
                    client_price=quote.client_price,
                )
            except Exception:
                await self._release_claim(card.card_id)
                raise
        tracer.complete(step, {"result": "miss"})

        # 4. External fallback
        return await self._purchase_external(
            tracer, request_id, brand, amount, recipient_id, campaign_id, billed_entity_type
        )

    async def _purchase_external(
        self,
        tracer: ProvisioningTracer,
        request_id: str,
        brand: BrandConfig,
        amount: Decimal,
        recipient_id: UUID,
        campaign_id: UUID,
        billed_entity_type: BilledEntityType | None,
    ) -> ProvisionResult:
        step = tracer.start(TraceStep.CHECK_EXTERNAL_CONFIG)
        if not brand.external_purchase_enabled:
            message = (
                f"No ${amount} {brand.brand_name} cards in inventory and the brand has no "
                "external purchase code"
            )
            tracer.fail(step, _Code.NO_INVENTORY.value, message)
            return self._failure(request_id, CardSource.CSV, _Code.NO_INVENTORY, message)
        if not self.provider.is_configured():
            message = "External purchase API credentials are not configured"
            tracer.fail(step, _Code.EXTERNAL_NOT_CONFIGURED.value, message)
            return self._failure(
                request_id, CardSource.EXTERNAL, _Code.EXTERNAL_NOT_CONFIGURED, message
            )
        tracer.complete(step, {"brand_code": brand.external_purchase_code or ""})

        reference = build_reference(campaign_id, recipient_id, request_id)
        purchase = await self.journal.open(
            reference=reference,
            brand_id=brand.brand_id,
            denomination=amount,
            recipient_id=recipient_id,
            campaign_id=campaign_id,
            request_id=request_id,
        )
        if (
            purchase.status
            in (ExternalPurchaseStatus.COMPLETED.value, ExternalPurchaseStatus.RECONCILED.value)
            and purchase.inventory_card_id is not None
        ):
            replayed = await self.inventory.get_card(purchase.inventory_card_id)
            if replayed is not None and replayed.status == CardStatus.CLAIMED:
                tracer.skip(TraceStep.EXTERNAL_PURCHASE, f"order {reference} already completed")
                return await self._external_success(
                    tracer,
                    request_id,
                    replayed,
                    amount,
                    billed_entity_type,
                    purchase.provider_transaction_id,
                    reference,
                )

        # Remote purchase
        step = tracer.start(TraceStep.EXTERNAL_PURCHASE)
        call_started = time.perf_counter()
        try:
            order = await asyncio.wait_for(
                self.provider.purchase_card(
                    ExternalPurchaseRequest(
                        brand_code=brand.external_purchase_code or "",
                        denomination=amount,
                        currency=self.currency,
                        reference=reference,
                    )
                ),
                timeout=self.timeout_seconds,
            )
        except (asyncio.TimeoutError, ExternalPurchaseTimeoutError):
            # Provider may still fulfil the order; the journal row stays pending.
            metrics.record_external_purchase("timeout", time.perf_counter() - call_started)
            message = f"External purchase timed out after {self.timeout_seconds}s"
            tracer.fail(step, _Code.EXTERNAL_CALL_FAILED.value, message, {"reference": reference})
            return self._failure(
                request_id, CardSource.EXTERNAL, _Code.EXTERNAL_CALL_FAILED, message
            )
        except ExternalPurchaseError as e:
            metrics.record_external_purchase("failure", time.perf_counter() - call_started)
            if e.rejected:
                await self.journal.mark_failed(reference, e.message)
            tracer.fail(step, _Code.EXTERNAL_CALL_FAILED.value, e.message, {"reference": reference})
            return self._failure(
                request_id, CardSource.EXTERNAL, _Code.EXTERNAL_CALL_FAILED, e.message
            )
        metrics.record_external_purchase("success", time.perf_counter() - call_started)
        tracer.complete(
            step, {"reference": reference, "transaction_id": order.transaction_id}
        )

        # Local record
        step = tracer.start(TraceStep.SAVE_EXTERNAL_CARD)
        try:
            card = await self.inventory.record_external_card(
                brand_id=brand.brand_id,
                denomination=amount,
                card_code=order.card_code,
                recipient_id=recipient_id,
                campaign_id=campaign_id,
                card_number=order.card_number,
                expiration_date=order.expiration_date,
                external_order_reference=reference,
            )
        except (SQLAlchemyError, WriteVerificationError) as e:
            await self.session.rollback()
            message = f"Card purchased (order {reference}) but could not be saved: {e}"
            logger.error(
                "external_card_persist_failed",
                reference=reference,
                transaction_id=order.transaction_id,
                error=str(e),
            )
            tracer.fail(step, _Code.DATABASE_ERROR.value, message, {"reference": reference})
            return self._failure(request_id, CardSource.EXTERNAL, _Code.DATABASE_ERROR, message)
        tracer.complete(step, {"card_id": str(card.card_id)})

        await self.journal.mark_completed(reference, order.transaction_id, card.card_id)
        return await self._external_success(
            tracer, request_id, card, amount, billed_entity_type, order.transaction_id, reference
        )

    async def _external_success(
        self,
        tracer: ProvisioningTracer,
        request_id: str,
        card: InventoryCardData,
        amount: Decimal,
        billed_entity_type: BilledEntityType | None,
        transaction_id: str | None,
        reference: str,
    ) -> ProvisionResult:
        quote = await self._resolve_price(
            tracer, card.brand_id, amount, CardSource.EXTERNAL, billed_entity_type
        )
        return ProvisionResult(
            success=True,
            source=CardSource.EXTERNAL,
            request_id=request_id,
            card=card,
            cost_basis=quote.cost_basis,
            client_price=quote.client_price,
            external_transaction_id=transaction_id,
            external_order_reference=reference,
        )

    async def _release_claim(self, card_id: UUID) -> None:
        """Put a claimed card back when the attempt dies before returning it."""
        await self.session.rollback()
        try:
            await self.inventory.release(card_id)
        except (InventoryTransitionError, SQLAlchemyError) as e:
            await self.session.rollback()
            logger.error("claimed_card_release_failed", card_id=str(card_id), error=str(e))

    async def _resolve_price(
        self,
        tracer: ProvisioningTracer,
        brand_id: UUID,
        amount: Decimal,
        source: CardSource,
        billed_entity_type: BilledEntityType | None,
    ) -> PriceQuote:
        """Resolve pricing; a lookup failure falls back to face value so the card is not lost."""
        step = tracer.start(TraceStep.RESOLVE_PRICING)
        try:
            quote = await self.pricing.resolve_price(brand_id, amount, source, billed_entity_type)
        except SQLAlchemyError as e:
            await self.session.rollback()
            logger.error("price_resolution_failed", brand_id=str(brand_id), error=str(e))
            quote = compute_price_quote(amount, source, None)
            tracer.complete(step, {"fallback": "face_value"})
            return quote
        tracer.complete(
            step,
            {"cost_basis": str(quote.cost_basis), "client_price": str(quote.client_price)},
        )
        return quote

    def _finalize(
        self,
        tracer: ProvisioningTracer,
        result: ProvisionResult,
        simulation_batch_id: str | None,
    ) -> None:
        step = tracer.start(TraceStep.FINALIZE)
        details = {"source": result.source.value}
        if simulation_batch_id:
            details["simulation_batch_id"] = simulation_batch_id
        if result.success and result.card is not None:
            details["card_id"] = str(result.card.card_id)
            tracer.complete(step, details)
        elif result.error is not None:
            tracer.fail(step, result.error.code, result.error.message, details)

    @staticmethod
    def _failure(
        request_id: str,
        source: CardSource,
        code: ProvisioningErrorCode | str,
        message: str,
    ) -> ProvisionResult:
        return ProvisionResult(
            success=False,
            source=source,
            request_id=request_id,
            error=build_error(code, message),
        )

    @staticmethod
    def _to_amount(denomination: Decimal | float | str) -> Decimal | None:
        try:
            return Decimal(str(denomination)).quantize(Decimal("0.01"))
        except (InvalidOperation, ValueError):
            return None
