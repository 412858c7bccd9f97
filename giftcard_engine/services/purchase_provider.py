"""
External Purchase Provider Protocol - Provider-agnostic interface.

NO DICTIONARIES - All data uses strongly typed models.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Protocol


@dataclass(frozen=True)
class ExternalPurchaseRequest:
    """
    Request to buy one card from the provider.

    The reference is the idempotency key; retrying with the same reference
    never buys a second card.
    """

    brand_code: str
    denomination: Decimal
    currency: str
    reference: str


@dataclass(frozen=True)
class ExternalCardResult:
    """Card returned by the provider for a completed order."""

    card_code: str
    transaction_id: str
    reference: str
    card_number: str | None = None
    expiration_date: date | None = None
    cost: Decimal | None = None


class ExternalPurchaseProvider(Protocol):
    """
    External purchase provider protocol.

    Any gift card supplier (Tillo, Tango, etc.) must implement this interface.
    """

    def is_configured(self) -> bool:
        """Whether credentials are present."""
        ...

    async def purchase_card(self, request: ExternalPurchaseRequest) -> ExternalCardResult:
        """
        Buy one card.

        Raises:
            ExternalPurchaseError: If the provider rejects or fails the order
        """
        ...

    async def find_order(self, reference: str) -> ExternalCardResult | None:
        """
        Look up an order by reference.

        Returns:
            The card if the order exists and completed, None if no order exists

        Raises:
            ExternalPurchaseError: If the lookup itself fails
        """
        ...

    async def check_connection(self) -> bool:
        """Lightweight reachability probe for the status endpoint."""
        ...
