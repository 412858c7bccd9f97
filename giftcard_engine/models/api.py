"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator


class CardStatus(str, Enum):
    """Inventory card lifecycle status."""

    AVAILABLE = "available"
    CLAIMED = "claimed"
    DELIVERED = "delivered"
    REDEEMED = "redeemed"
    REVOKED = "revoked"


class CardSource(str, Enum):
    """Where a provisioned card came from."""

    CSV = "csv"
    EXTERNAL = "external"


class DeliveryStatus(str, Enum):
    """Delivery status of a recipient assignment."""

    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"
    REVOKED = "revoked"


class BilledEntityType(str, Enum):
    """Entity that pays for a provisioned card."""

    AGENCY = "agency"
    CLIENT = "client"
    CAMPAIGN = "campaign"


class LedgerTransactionType(str, Enum):
    """Billing ledger transaction type."""

    PURCHASE_FROM_INVENTORY = "purchase_from_inventory"
    PURCHASE_FROM_EXTERNAL = "purchase_from_external"


class TraceStatus(str, Enum):
    """Status of a single provisioning trace step."""

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ExternalPurchaseStatus(str, Enum):
    """State of an external purchase journal row."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    RECONCILED = "reconciled"


class StockLevel(str, Enum):
    """Inventory stock classification."""

    HEALTHY = "healthy"
    LOW = "low"
    CRITICAL = "critical"
    EMPTY = "empty"


# ============================================================================
# Provisioning Models
# ============================================================================


class ProvisionRequest(BaseModel):
    """POST /v1/gift-cards/provision request body."""

    campaign_id: UUID
    recipient_id: UUID
    brand_id: UUID
    denomination: float = Field(..., gt=0, description="Face value of the card")
    condition_number: int = Field(default=1, ge=1)
    recipient_name: str | None = Field(None, max_length=255)
    billed_entity_type: BilledEntityType | None = None
    billed_entity_id: UUID | None = None
    request_id: str | None = Field(None, min_length=1, max_length=255)
    simulation_batch_id: str | None = Field(
        None, max_length=255, description="Marks rows created by a simulation run"
    )

    @field_validator("request_id", "simulation_batch_id")
    @classmethod
    def strip_identifiers(cls, v: str | None) -> str | None:
        """Treat blank identifiers as absent."""
        if v is None:
            return None
        v = v.strip()
        return v or None

    @model_validator(mode="after")
    def validate_billed_entity(self) -> "ProvisionRequest":
        """A billed entity needs both its type and its id."""
        if (self.billed_entity_type is None) != (self.billed_entity_id is None):
            raise ValueError("billed_entity_type and billed_entity_id must be set together")
        return self


class CardResponse(BaseModel):
    """Card details returned to the delivery notifier."""

    id: UUID
    brand_id: UUID
    denomination: float
    status: CardStatus
    card_code: str
    card_number: str | None = None
    expiration_date: str | None = None
    source: CardSource


class ProvisionErrorResponse(BaseModel):
    """Coded provisioning failure."""

    code: str
    message: str
    recommendation: str
    can_retry: bool


class ProvisionResponse(BaseModel):
    """POST /v1/gift-cards/provision response."""

    success: bool
    source: CardSource
    card: CardResponse | None = None
    cost_basis: float | None = None
    client_price: float | None = None
    error: ProvisionErrorResponse | None = None
    request_id: str
    assignment_id: UUID | None = None


class InventoryCountResponse(BaseModel):
    """GET /v1/gift-cards/inventory/count response."""

    brand_id: UUID
    denomination: float
    available: int


class CreditBalanceResponse(BaseModel):
    """GET /v1/gift-cards/credits/{entity_type}/{entity_id} response."""

    entity_type: BilledEntityType
    entity_id: UUID
    available_credits: float


# ============================================================================
# Revocation Models
# ============================================================================


class RevokeRequest(BaseModel):
    """POST /v1/admin/gift-cards/revoke request body."""

    assignment_id: UUID
    reason: str = Field(..., max_length=2000)


class RevokeData(BaseModel):
    """Snapshot of a completed revocation."""

    assignment_id: UUID
    recipient_name: str | None = None
    card_value: float | None = None
    brand_name: str | None = None
    original_status: DeliveryStatus
    revoked_at: datetime
    revoked_by: str
    card_returned_to_inventory: bool


class RevokeResponse(BaseModel):
    """POST /v1/admin/gift-cards/revoke response."""

    success: bool
    message: str
    data: RevokeData | None = None
    warnings: list[str] = Field(default_factory=list)


class RevocationCheckResponse(BaseModel):
    """Pre-flight revocation check."""

    assignment_id: UUID
    can_revoke: bool
    reason: str | None = None
    warnings: list[str] = Field(default_factory=list)


class RevokeLogItem(BaseModel):
    """Single revoke audit entry."""

    id: UUID
    assignment_id: UUID
    inventory_card_id: UUID | None = None
    recipient_id: UUID
    campaign_id: UUID
    revoked_by: str
    reason: str
    original_delivery_status: DeliveryStatus
    card_value: float | None = None
    brand_name: str | None = None
    card_returned_to_inventory: bool
    revoked_at: datetime


class RevokeLogResponse(BaseModel):
    """Revoke audit listing."""

    entries: list[RevokeLogItem]


# ============================================================================
# Health / Monitoring Models
# ============================================================================


class ProvisioningHealthResponse(BaseModel):
    """Aggregate provisioning health over a rolling window."""

    window_hours: int
    total_attempts: int
    successful_attempts: int
    failed_attempts: int
    success_rate: float
    avg_duration_ms: float | None = None
    top_error_code: str | None = None
    top_error_count: int = 0


class ErrorCodeStatItem(BaseModel):
    """Occurrences of one error code."""

    error_code: str
    occurrences: int
    last_occurred: datetime | None = None
    affected_campaigns: int
    description: str
    recommendation: str


class ErrorStatsResponse(BaseModel):
    """Per-code error counts over a window."""

    window_hours: int
    errors: list[ErrorCodeStatItem]


class FailedAttemptItem(BaseModel):
    """A failed provisioning attempt."""

    request_id: str
    campaign_id: UUID | None = None
    recipient_id: UUID | None = None
    brand_id: UUID | None = None
    denomination: float | None = None
    step_name: str
    error_code: str | None = None
    error_message: str | None = None
    failed_at: datetime


class FailedAttemptsResponse(BaseModel):
    """Recent failures listing."""

    failures: list[FailedAttemptItem]


class TraceStepItem(BaseModel):
    """One step of a provisioning attempt."""

    step_number: int
    step_name: str
    status: TraceStatus
    duration_ms: int | None = None
    details: dict[str, str] = Field(default_factory=dict)
    error_code: str | None = None
    error_message: str | None = None
    created_at: datetime


class ProvisioningTraceResponse(BaseModel):
    """Full trace for one provisioning attempt."""

    request_id: str
    steps: list[TraceStepItem]


class ErrorCodeItem(BaseModel):
    """Error taxonomy entry."""

    code: str
    category: str
    description: str
    recommendation: str
    severity: str
    can_retry: bool
    requires_campaign_edit: bool


class ErrorCodesResponse(BaseModel):
    """Full error taxonomy."""

    codes: list[ErrorCodeItem]


class InventoryLevelItem(BaseModel):
    """Available stock for one brand/denomination."""

    brand_id: UUID
    brand_name: str
    denomination: float
    available: int
    level: StockLevel


class InventoryLevelsResponse(BaseModel):
    """Stock levels across all brands."""

    levels: list[InventoryLevelItem]


class ReconciliationResponse(BaseModel):
    """Outcome of an external purchase reconciliation sweep."""

    examined: int
    reconciled: int
    failed: int
    still_pending: int


class TraceCleanupResponse(BaseModel):
    """Outcome of trace retention cleanup."""

    deleted_rows: int
    retention_days: int


class ErrorDetail(BaseModel):
    """Error detail structure."""

    detail: str
