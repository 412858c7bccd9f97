"""
Provisioning Error Taxonomy - Stable error codes with remediation hints.

Dashboards key off these codes. Codes are never renumbered or reused;
new failure modes get new codes.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Broad failure class for an error code."""

    CONFIGURATION = "configuration"
    RESOURCE = "resource"
    EXTERNAL_SERVICE = "external_service"
    STATE = "state"
    DELIVERY = "delivery"
    UNCLASSIFIED = "unclassified"


class ErrorSeverity(str, Enum):
    """Operator-facing severity."""

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class ProvisioningErrorCode(str, Enum):
    """All provisioning error codes."""

    CONDITION_CONFIG_MISSING = "GC-001"
    BRAND_NOT_FOUND = "GC-002"
    NO_INVENTORY = "GC-003"
    EXTERNAL_NOT_CONFIGURED = "GC-004"
    EXTERNAL_CALL_FAILED = "GC-005"
    INSUFFICIENT_CREDITS = "GC-006"
    BILLING_FAILED = "GC-007"
    BILLING_NOT_CONFIGURED = "GC-008"
    VERIFICATION_REQUIRED = "GC-009"
    ALREADY_PROVISIONED = "GC-010"
    INVALID_REDEMPTION_CODE = "GC-011"
    MISSING_PARAMETERS = "GC-012"
    DATABASE_ERROR = "GC-013"
    DELIVERY_FAILED = "GC-014"
    UNKNOWN = "GC-015"


@dataclass(frozen=True)
class ErrorCodeDefinition:
    """Description and remediation for one error code."""

    code: ProvisioningErrorCode
    category: ErrorCategory
    description: str
    recommendation: str
    severity: ErrorSeverity
    can_retry: bool
    requires_campaign_edit: bool


_C = ProvisioningErrorCode

ERROR_CODES: dict[ProvisioningErrorCode, ErrorCodeDefinition] = {
    definition.code: definition
    for definition in (
        ErrorCodeDefinition(
            _C.CONDITION_CONFIG_MISSING,
            ErrorCategory.CONFIGURATION,
            "Campaign condition missing gift card config",
            "Edit the campaign and configure a gift card brand and an enabled denomination "
            "for all conditions.",
            ErrorSeverity.CRITICAL,
            can_retry=False,
            requires_campaign_edit=True,
        ),
        ErrorCodeDefinition(
            _C.BRAND_NOT_FOUND,
            ErrorCategory.CONFIGURATION,
            "Gift card brand not found",
            "Verify the brand ID is correct and enabled, or choose a different brand in "
            "campaign settings.",
            ErrorSeverity.ERROR,
            can_retry=False,
            requires_campaign_edit=True,
        ),
        ErrorCodeDefinition(
            _C.NO_INVENTORY,
            ErrorCategory.RESOURCE,
            "No gift card inventory available",
            "Upload gift card inventory or configure the external purchase API for this brand.",
            ErrorSeverity.ERROR,
            can_retry=True,
            requires_campaign_edit=False,
        ),
        ErrorCodeDefinition(
            _C.EXTERNAL_NOT_CONFIGURED,
            ErrorCategory.CONFIGURATION,
            "External purchase API not configured",
            "Set EXTERNAL_PURCHASE_API_KEY and EXTERNAL_PURCHASE_SECRET_KEY.",
            ErrorSeverity.CRITICAL,
            can_retry=False,
            requires_campaign_edit=False,
        ),
        ErrorCodeDefinition(
            _C.EXTERNAL_CALL_FAILED,
            ErrorCategory.EXTERNAL_SERVICE,
            "External purchase API call failed",
            "Check the external purchase credentials and that the brand code is valid. "
            "Try again in a few minutes.",
            ErrorSeverity.ERROR,
            can_retry=True,
            requires_campaign_edit=False,
        ),
        ErrorCodeDefinition(
            _C.INSUFFICIENT_CREDITS,
            ErrorCategory.RESOURCE,
            "Insufficient credits",
            "Add credits to the client/agency account before provisioning.",
            ErrorSeverity.CRITICAL,
            can_retry=False,
            requires_campaign_edit=False,
        ),
        ErrorCodeDefinition(
            _C.BILLING_FAILED,
            ErrorCategory.RESOURCE,
            "Billing transaction failed",
            "Contact support. The card was provisioned but billing failed and may need "
            "manual reconciliation.",
            ErrorSeverity.ERROR,
            can_retry=False,
            requires_campaign_edit=False,
        ),
        ErrorCodeDefinition(
            _C.BILLING_NOT_CONFIGURED,
            ErrorCategory.CONFIGURATION,
            "Campaign billing not configured",
            "Ensure the campaign has a valid client assigned with billing configuration.",
            ErrorSeverity.CRITICAL,
            can_retry=False,
            requires_campaign_edit=True,
        ),
        ErrorCodeDefinition(
            _C.VERIFICATION_REQUIRED,
            ErrorCategory.STATE,
            "Recipient verification required",
            "Complete SMS opt-in or email verification before provisioning.",
            ErrorSeverity.WARNING,
            can_retry=True,
            requires_campaign_edit=False,
        ),
        ErrorCodeDefinition(
            _C.ALREADY_PROVISIONED,
            ErrorCategory.STATE,
            "Gift card already provisioned",
            "This recipient already has a gift card for this campaign condition.",
            ErrorSeverity.INFO,
            can_retry=False,
            requires_campaign_edit=False,
        ),
        ErrorCodeDefinition(
            _C.INVALID_REDEMPTION_CODE,
            ErrorCategory.STATE,
            "Invalid redemption code",
            "Verify the redemption code and ensure the customer is in an active campaign.",
            ErrorSeverity.WARNING,
            can_retry=True,
            requires_campaign_edit=False,
        ),
        ErrorCodeDefinition(
            _C.MISSING_PARAMETERS,
            ErrorCategory.STATE,
            "Missing required parameters",
            "Check that all required fields are provided in the request.",
            ErrorSeverity.ERROR,
            can_retry=True,
            requires_campaign_edit=False,
        ),
        ErrorCodeDefinition(
            _C.DATABASE_ERROR,
            ErrorCategory.UNCLASSIFIED,
            "Database error",
            "Check database connectivity and run pending migrations. External purchases "
            "left pending are picked up by the reconciliation sweep.",
            ErrorSeverity.CRITICAL,
            can_retry=False,
            requires_campaign_edit=False,
        ),
        ErrorCodeDefinition(
            _C.DELIVERY_FAILED,
            ErrorCategory.DELIVERY,
            "SMS/Email delivery failed",
            "Delivery notification failed but the card was provisioned. Check SMS/Email "
            "settings.",
            ErrorSeverity.WARNING,
            can_retry=True,
            requires_campaign_edit=False,
        ),
        ErrorCodeDefinition(
            _C.UNKNOWN,
            ErrorCategory.UNCLASSIFIED,
            "Unknown provisioning error",
            "Review the error details and contact support if needed.",
            ErrorSeverity.ERROR,
            can_retry=True,
            requires_campaign_edit=False,
        ),
    )
}


def describe(code: str | ProvisioningErrorCode | None) -> ErrorCodeDefinition:
    """Look up a code, treating unknown or missing codes as GC-015."""
    try:
        return ERROR_CODES[ProvisioningErrorCode(code)]
    except ValueError:
        return ERROR_CODES[ProvisioningErrorCode.UNKNOWN]


def codes_in_category(category: ErrorCategory) -> list[ProvisioningErrorCode]:
    """All codes belonging to a category, in code order."""
    return [code for code, definition in ERROR_CODES.items() if definition.category == category]
