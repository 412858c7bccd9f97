"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""

from uuid import UUID


class GiftCardError(Exception):
    """Base exception for all gift card engine errors."""

    pass


class ProvisioningError(GiftCardError):
    """Base for failures that carry a stable provisioning error code."""

    code: str = "GC-015"

    def __init__(self, message: str, code: str | None = None) -> None:
        if code is not None:
            self.code = code
        self.message = message
        super().__init__(f"[{self.code}] {message}")


class GiftCardConfigurationError(ProvisioningError):
    """Raised when brand or denomination setup is missing or disabled."""

    code = "GC-001"


class ExternalPurchaseError(ProvisioningError):
    """
    Raised when the external purchase API rejects or fails a call.

    rejected is True only when the provider definitively refused the order
    (4xx or an explicit error code); otherwise the order may have gone through.
    """

    code = "GC-005"

    def __init__(
        self, message: str, status_code: int | None = None, rejected: bool = False
    ) -> None:
        self.status_code = status_code
        self.rejected = rejected
        super().__init__(message)


class ExternalPurchaseTimeoutError(ExternalPurchaseError):
    """Raised when the external purchase API does not answer in time."""

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"External purchase timed out after {timeout_seconds}s")


class BillingRecordError(ProvisioningError):
    """Raised when a billing ledger entry cannot be written."""

    code = "GC-007"


class InventoryTransitionError(GiftCardError):
    """Raised when a card cannot move to the requested status."""

    def __init__(self, card_id: UUID, target_status: str) -> None:
        self.card_id = card_id
        self.target_status = target_status
        super().__init__(f"Card {card_id} cannot transition to {target_status}")


class AssignmentNotFoundError(GiftCardError):
    """Raised when a recipient assignment doesn't exist."""

    def __init__(self, assignment_id: UUID) -> None:
        self.assignment_id = assignment_id
        super().__init__(f"Assignment not found: {assignment_id}")


class AlreadyRevokedError(GiftCardError):
    """Raised when revoking an assignment that is already revoked."""

    def __init__(self, assignment_id: UUID) -> None:
        self.assignment_id = assignment_id
        super().__init__(f"Assignment {assignment_id} is already revoked")


class InvalidRevokeReasonError(GiftCardError):
    """Raised when a revoke reason is too short."""

    def __init__(self, min_length: int, actual_length: int) -> None:
        self.min_length = min_length
        self.actual_length = actual_length
        super().__init__(
            f"Revoke reason must be at least {min_length} characters, got {actual_length}"
        )


class WriteVerificationError(GiftCardError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class DatabaseError(GiftCardError):
    """Raised when database operation fails unexpectedly."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Database error: {message}")


class AuthenticationError(GiftCardError):
    """Raised when a bearer token cannot be verified."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Authentication failed: {message}")


class AuthorizationError(GiftCardError):
    """Raised when the caller lacks required permissions."""

    def __init__(self, required_permission: str) -> None:
        self.required_permission = required_permission
        super().__init__(f"Authorization failed: missing permission {required_permission}")
