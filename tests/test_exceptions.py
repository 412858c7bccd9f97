"""
Tests for the exception hierarchy.
"""

from uuid import uuid4

from giftcard_engine.exceptions import (
    AlreadyRevokedError,
    BillingRecordError,
    ExternalPurchaseError,
    ExternalPurchaseTimeoutError,
    GiftCardConfigurationError,
    GiftCardError,
    InvalidRevokeReasonError,
    InventoryTransitionError,
    ProvisioningError,
)


class TestProvisioningErrors:
    """Coded provisioning errors."""

    def test_default_codes(self):
        """Each class carries its own default code."""
        assert GiftCardConfigurationError("x").code == "GC-001"
        assert ExternalPurchaseError("x").code == "GC-005"
        assert BillingRecordError("x").code == "GC-007"
        assert ProvisioningError("x").code == "GC-015"

    def test_code_override(self):
        """Instances may narrow the code."""
        error = GiftCardConfigurationError("Brand missing", code="GC-002")

        assert error.code == "GC-002"
        assert str(error) == "[GC-002] Brand missing"
        assert GiftCardConfigurationError("y").code == "GC-001"

    def test_timeout_is_external_error(self):
        """Timeouts are external failures without a status."""
        error = ExternalPurchaseTimeoutError(10.0)

        assert isinstance(error, ExternalPurchaseError)
        assert error.status_code is None
        assert error.timeout_seconds == 10.0
        assert "10.0s" in error.message


class TestDomainErrors:
    """Typed attributes on non-coded errors."""

    def test_all_inherit_base(self):
        """Everything derives from GiftCardError."""
        for error in (
            AlreadyRevokedError(uuid4()),
            InvalidRevokeReasonError(10, 3),
            InventoryTransitionError(uuid4(), "available"),
            ExternalPurchaseError("x"),
        ):
            assert isinstance(error, GiftCardError)

    def test_reason_error_message(self):
        """Message states both lengths."""
        error = InvalidRevokeReasonError(10, 3)

        assert "at least 10" in str(error)
        assert "got 3" in str(error)
