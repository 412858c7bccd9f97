"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from giftcard_engine.models.api import (
    BilledEntityType,
    CardSource,
    CardStatus,
    DeliveryStatus,
    LedgerTransactionType,
    StockLevel,
    TraceStatus,
)


@dataclass(frozen=True)
class InventoryCardData:
    """Immutable snapshot of an inventory card."""

    card_id: UUID
    brand_id: UUID
    denomination: Decimal
    status: CardStatus
    card_code: str
    card_number: str | None
    assigned_recipient_id: UUID | None
    assigned_campaign_id: UUID | None
    assigned_at: datetime | None
    expiration_date: date | None
    source: CardSource

    def __post_init__(self) -> None:
        """Assignment fields are set iff the card is not available."""
        if self.denomination <= 0:
            raise ValueError(f"Denomination must be positive: {self.denomination}")
        if not self.card_code:
            raise ValueError("card_code cannot be empty")
        assignment = (self.assigned_recipient_id, self.assigned_campaign_id, self.assigned_at)
        if self.status == CardStatus.AVAILABLE:
            if any(value is not None for value in assignment):
                raise ValueError("Available card cannot carry assignment fields")
        elif any(value is None for value in assignment):
            raise ValueError(f"Card in status {self.status.value} must carry assignment fields")


@dataclass(frozen=True)
class BrandConfig:
    """Brand and denomination configuration validated for a provisioning request."""

    brand_id: UUID
    brand_name: str
    external_purchase_code: str | None
    denomination: Decimal
    available_denominations: tuple[Decimal, ...]

    @property
    def external_purchase_enabled(self) -> bool:
        """Brand can fall back to on-demand purchase."""
        return bool(self.external_purchase_code)


@dataclass(frozen=True)
class PriceQuote:
    """Resolved cost basis and client-facing price."""

    cost_basis: Decimal
    client_price: Decimal

    def __post_init__(self) -> None:
        """Validate price constraints."""
        if self.cost_basis < 0:
            raise ValueError(f"Cost basis cannot be negative: {self.cost_basis}")
        if self.client_price < 0:
            raise ValueError(f"Client price cannot be negative: {self.client_price}")

    @property
    def profit(self) -> Decimal:
        """Margin earned on the card."""
        return self.client_price - self.cost_basis


@dataclass(frozen=True)
class ProvisionErrorInfo:
    """Coded failure surfaced to the caller."""

    code: str
    message: str
    recommendation: str
    can_retry: bool


@dataclass(frozen=True)
class ProvisionResult:
    """Outcome of one provisioning attempt."""

    success: bool
    source: CardSource
    request_id: str
    card: InventoryCardData | None = None
    cost_basis: Decimal | None = None
    client_price: Decimal | None = None
    error: ProvisionErrorInfo | None = None
    external_transaction_id: str | None = None
    external_order_reference: str | None = None

    def __post_init__(self) -> None:
        """A success carries a claimed card; a failure carries an error."""
        if self.success:
            if self.card is None:
                raise ValueError("Successful provision must include a card")
            if self.card.status != CardStatus.CLAIMED:
                raise ValueError(f"Provisioned card must be claimed, got {self.card.status.value}")
            if self.error is not None:
                raise ValueError("Successful provision cannot carry an error")
        elif self.error is None:
            raise ValueError("Failed provision must include an error")


@dataclass(frozen=True)
class BillingEntryIntent:
    """Billing ledger entry before persistence - immutable intent."""

    recipient_id: UUID
    campaign_id: UUID
    brand_id: UUID
    denomination: Decimal
    cost_basis: Decimal
    client_price: Decimal
    transaction_type: LedgerTransactionType
    inventory_card_id: UUID | None = None
    billed_entity_type: BilledEntityType | None = None
    billed_entity_id: UUID | None = None
    request_id: str | None = None
    external_transaction_id: str | None = None
    external_order_reference: str | None = None
    simulation_batch_id: str | None = None

    def __post_init__(self) -> None:
        """Validate billing constraints."""
        if self.denomination <= 0:
            raise ValueError(f"Denomination must be positive: {self.denomination}")
        if self.cost_basis < 0 or self.client_price < 0:
            raise ValueError("Billed amounts cannot be negative")
        if (self.billed_entity_type is None) != (self.billed_entity_id is None):
            raise ValueError("billed_entity_type and billed_entity_id must be set together")

    @classmethod
    def from_result(
        cls,
        result: ProvisionResult,
        recipient_id: UUID,
        campaign_id: UUID,
        billed_entity_type: BilledEntityType | None = None,
        billed_entity_id: UUID | None = None,
        simulation_batch_id: str | None = None,
    ) -> "BillingEntryIntent":
        """Build the ledger intent for a successful provision."""
        if not result.success or result.card is None:
            raise ValueError("Only successful provisions are billed")
        card = result.card
        return cls(
            recipient_id=recipient_id,
            campaign_id=campaign_id,
            brand_id=card.brand_id,
            denomination=card.denomination,
            cost_basis=result.cost_basis if result.cost_basis is not None else card.denomination,
            client_price=(
                result.client_price if result.client_price is not None else card.denomination
            ),
            transaction_type=(
                LedgerTransactionType.PURCHASE_FROM_INVENTORY
                if result.source == CardSource.CSV
                else LedgerTransactionType.PURCHASE_FROM_EXTERNAL
            ),
            inventory_card_id=card.card_id,
            billed_entity_type=billed_entity_type,
            billed_entity_id=billed_entity_id,
            request_id=result.request_id,
            external_transaction_id=result.external_transaction_id,
            external_order_reference=result.external_order_reference,
            simulation_batch_id=simulation_batch_id,
        )


@dataclass(frozen=True)
class BillingRecord:
    """Persisted billing ledger entry."""

    entry_id: UUID
    billed_at: datetime
    client_price: Decimal
    cost_basis: Decimal

    @property
    def profit(self) -> Decimal:
        """Margin recorded for the entry."""
        return self.client_price - self.cost_basis


@dataclass(frozen=True)
class AdminActor:
    """Verified caller identity taken from a bearer token."""

    actor_id: str
    email: str | None
    role: str

    @property
    def is_admin(self) -> bool:
        """Actor may perform administrative mutations."""
        return self.role == "admin"


@dataclass(frozen=True)
class RevocationSnapshot:
    """Denormalized card details captured before a revoke mutates anything."""

    card_value: Decimal | None
    brand_name: str | None
    inventory_card_id: UUID | None
    card_source: CardSource | None
    card_status: CardStatus | None = None


@dataclass(frozen=True)
class RevokeResult:
    """Outcome of a revocation."""

    success: bool
    message: str
    assignment_id: UUID
    recipient_name: str | None
    card_value: Decimal | None
    brand_name: str | None
    original_status: DeliveryStatus
    revoked_at: datetime
    revoked_by: str
    card_returned_to_inventory: bool
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class RevocationCheck:
    """Whether an assignment can be revoked, plus operator warnings."""

    assignment_id: UUID
    can_revoke: bool
    reason: str | None = None
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class TraceStepData:
    """One recorded step of a provisioning attempt."""

    step_number: int
    step_name: str
    status: TraceStatus
    duration_ms: int | None
    details: dict[str, str] = field(default_factory=dict)
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class AttemptSummary:
    """One provisioning attempt collapsed from its trace steps."""

    request_id: str
    failed: bool
    duration_ms: int
    error_code: str | None


@dataclass(frozen=True)
class HealthSnapshot:
    """Aggregate provisioning health over a rolling window."""

    window_hours: int
    total_attempts: int
    successful_attempts: int
    failed_attempts: int
    success_rate: float
    avg_duration_ms: float | None
    top_error_code: str | None
    top_error_count: int

    def __post_init__(self) -> None:
        """Validate counts."""
        if self.successful_attempts + self.failed_attempts != self.total_attempts:
            raise ValueError("successful + failed must equal total attempts")
        if not 0 <= self.success_rate <= 100:
            raise ValueError(f"success_rate out of range: {self.success_rate}")


@dataclass(frozen=True)
class ErrorCodeStat:
    """Occurrence count for one error code."""

    error_code: str
    occurrences: int
    last_occurred: datetime | None
    affected_campaigns: int


@dataclass(frozen=True)
class FailedAttempt:
    """A failed provisioning step."""

    request_id: str
    campaign_id: UUID | None
    recipient_id: UUID | None
    brand_id: UUID | None
    denomination: Decimal | None
    step_name: str
    error_code: str | None
    error_message: str | None
    failed_at: datetime


@dataclass(frozen=True)
class InventoryLevel:
    """Available stock for one brand/denomination."""

    brand_id: UUID
    brand_name: str
    denomination: Decimal
    available: int
    level: StockLevel


@dataclass(frozen=True)
class ImportedCard:
    """A card row handed over by the CSV import pipeline."""

    card_code: str
    card_number: str | None = None
    expiration_date: date | None = None

    def __post_init__(self) -> None:
        """Validate imported card."""
        if not self.card_code or not self.card_code.strip():
            raise ValueError("card_code cannot be empty")


@dataclass(frozen=True)
class ImportSummary:
    """Result of a bulk inventory import."""

    upload_batch_id: str
    inserted: int
    skipped_duplicates: int


@dataclass(frozen=True)
class ReconciliationSummary:
    """Result of a reconciliation sweep."""

    examined: int
    reconciled: int
    failed: int
    still_pending: int


@dataclass(frozen=True)
class AssignmentOutcome:
    """Provision result plus the assignment row it produced."""

    result: ProvisionResult
    assignment_id: UUID | None = None
    warnings: tuple[str, ...] = ()
