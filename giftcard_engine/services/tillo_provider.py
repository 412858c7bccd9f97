"""
Tillo Provider Implementation - HMAC-signed REST client.

NO DICTIONARIES - Provider responses are converted to typed results at the edge.
"""

import hashlib
import hmac
import json
import time
from datetime import date
from decimal import Decimal
from typing import Any

import httpx
from structlog import get_logger

from giftcard_engine.exceptions import ExternalPurchaseError, ExternalPurchaseTimeoutError
from giftcard_engine.services.purchase_provider import (
    ExternalCardResult,
    ExternalPurchaseRequest,
)

logger = get_logger(__name__)

SUCCESS_CODE = "000"


def sign(secret_key: str, timestamp: str, body: str = "") -> str:
    """Hex HMAC-SHA256 of timestamp + body."""
    return hmac.new(
        secret_key.encode("utf-8"),
        f"{timestamp}{body}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def _parse_date(value: Any) -> date | None:
    if not value or not isinstance(value, str):
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        logger.warning("tillo_unparseable_expiration", value=value)
        return None


def _parse_card(payload: dict[str, Any], reference: str) -> ExternalCardResult:
    """Extract card fields from an order response body."""
    card = payload.get("data") or payload
    card_code = card.get("code") if payload.get("data") else None
    card_code = card_code or card.get("url") or card.get("redemption_url")
    if not card_code:
        raise ExternalPurchaseError("Provider response contained no card code")

    transaction_id = payload.get("id") or payload.get("transaction_id") or card.get("id")
    cost = card.get("cost")
    return ExternalCardResult(
        card_code=str(card_code),
        transaction_id=str(transaction_id or reference),
        reference=reference,
        card_number=card.get("card_number"),
        expiration_date=_parse_date(card.get("expiration_date") or card.get("expiry_date")),
        cost=Decimal(str(cost)) if cost is not None else None,
    )


class TilloProvider:
    """
    Tillo-compatible external purchase provider.

    Every request carries API-Key, Timestamp (epoch ms) and a Signature
    over timestamp + body.
    """

    def __init__(
        self,
        api_key: str,
        secret_key: str,
        base_url: str = "https://api.tillo.tech/v2",
        timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.secret_key = secret_key
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._http_client = http_client

    @property
    def http_client(self) -> httpx.AsyncClient:
        """Get HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    def is_configured(self) -> bool:
        """Whether both credentials are present."""
        return bool(self.api_key and self.secret_key)

    def _headers(self, body: str = "") -> dict[str, str]:
        timestamp = str(int(time.time() * 1000))
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "API-Key": self.api_key,
            "Signature": sign(self.secret_key, timestamp, body),
            "Timestamp": timestamp,
        }

    async def _request(
        self, method: str, endpoint: str, payload: dict[str, Any] | None = None
    ) -> httpx.Response:
        body = json.dumps(payload) if payload is not None else ""
        try:
            return await self.http_client.request(
                method,
                f"{self.base_url}{endpoint}",
                content=body or None,
                headers=self._headers(body),
            )
        except httpx.TimeoutException as e:
            logger.error("tillo_request_timed_out", endpoint=endpoint, error=str(e))
            raise ExternalPurchaseTimeoutError(self.timeout_seconds) from e
        except httpx.HTTPError as e:
            logger.error("tillo_request_failed", endpoint=endpoint, error=str(e))
            raise ExternalPurchaseError(f"Provider request failed: {e}") from e

    @staticmethod
    def _check_body(response: httpx.Response) -> dict[str, Any]:
        # Only 4xx is a refusal; 5xx and unreadable 2xx may hide a charged order
        refused = response.is_client_error
        try:
            payload = response.json()
        except ValueError as e:
            raise ExternalPurchaseError(
                "Provider returned invalid JSON",
                status_code=response.status_code,
                rejected=refused,
            ) from e
        if not isinstance(payload, dict):
            raise ExternalPurchaseError(
                "Provider returned an unexpected body",
                status_code=response.status_code,
                rejected=refused,
            )

        if response.is_error:
            raise ExternalPurchaseError(
                f"Provider error ({response.status_code}): "
                f"{payload.get('message') or response.reason_phrase}",
                status_code=response.status_code,
                rejected=refused,
            )

        code = payload.get("code")
        if code is not None and str(code) != SUCCESS_CODE:
            raise ExternalPurchaseError(
                f"Provider error code {code}: {payload.get('message', 'Unknown error')}",
                status_code=response.status_code,
                rejected=True,
            )
        return payload

    async def purchase_card(self, request: ExternalPurchaseRequest) -> ExternalCardResult:
        """
        Place an order for one card.

        Raises:
            ExternalPurchaseError: On transport failure, HTTP error or non-000 code
        """
        payload = {
            "brand": request.brand_code,
            "face_value": {
                "amount": float(request.denomination),
                "currency": request.currency,
            },
            "reference": request.reference,
        }
        response = await self._request("POST", "/orders", payload)
        body = self._check_body(response)
        result = _parse_card(body, request.reference)

        logger.info(
            "tillo_card_purchased",
            brand_code=request.brand_code,
            denomination=str(request.denomination),
            reference=request.reference,
            transaction_id=result.transaction_id,
        )
        return result

    async def find_order(self, reference: str) -> ExternalCardResult | None:
        """Look up an order by its reference; None when the provider has no such order."""
        response = await self._request("GET", f"/orders/{reference}")
        if response.status_code == 404:
            logger.info("tillo_order_not_found", reference=reference)
            return None
        body = self._check_body(response)
        return _parse_card(body, reference)

    async def check_connection(self) -> bool:
        """Probe the brand catalog endpoint."""
        try:
            response = await self._request("GET", "/brands")
        except ExternalPurchaseError:
            return False
        return response.status_code < 500

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
