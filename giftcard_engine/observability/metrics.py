"""
Metrics Collection with Prometheus.

Exposes provisioning, revocation and HTTP metrics for monitoring.
"""

from enum import StrEnum

from prometheus_client import Counter, Gauge, Histogram, Info

from giftcard_engine.config import settings


class MetricLabels(StrEnum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    SOURCE = "source"
    OUTCOME = "outcome"
    ERROR_CODE = "error_code"
    ERROR_TYPE = "error_type"


class ProvisioningMetrics:
    """
    Centralized metrics for the gift card provisioning engine.

    Covers:
    - HTTP requests (rate, duration, in-flight)
    - Provision attempts (source, outcome, error code, duration)
    - Inventory claims and external purchases
    - Revocations and billing entries
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "giftcard_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "giftcard_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "giftcard_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "giftcard_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Provisioning Metrics
        # ====================================================================
        self.provision_attempts_total = Counter(
            "giftcard_provision_attempts_total",
            "Total provisioning attempts",
            [MetricLabels.SOURCE, MetricLabels.OUTCOME, MetricLabels.ERROR_CODE],
        )

        self.provision_duration_seconds = Histogram(
            "giftcard_provision_duration_seconds",
            "Provisioning attempt duration in seconds",
            [MetricLabels.SOURCE],
            buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.inventory_claims_total = Counter(
            "giftcard_inventory_claims_total",
            "Inventory claim attempts by outcome",
            [MetricLabels.OUTCOME],
        )

        self.external_purchases_total = Counter(
            "giftcard_external_purchases_total",
            "External purchase API calls by outcome",
            [MetricLabels.OUTCOME],
        )

        self.external_purchase_duration_seconds = Histogram(
            "giftcard_external_purchase_duration_seconds",
            "External purchase API call duration in seconds",
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        # ====================================================================
        # Revocation / Billing Metrics
        # ====================================================================
        self.revocations_total = Counter(
            "giftcard_revocations_total",
            "Revocations by outcome",
            [MetricLabels.OUTCOME],
        )

        self.billing_entries_total = Counter(
            "giftcard_billing_entries_total",
            "Billing ledger entries by source",
            [MetricLabels.SOURCE, "success"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "giftcard_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_provision(
        self, source: str, success: bool, duration: float, error_code: str | None = None
    ) -> None:
        """Record a provisioning attempt."""
        self.provision_attempts_total.labels(
            source=source,
            outcome="success" if success else "failure",
            error_code=error_code or "none",
        ).inc()
        self.provision_duration_seconds.labels(source=source).observe(duration)

    def record_inventory_claim(self, claimed: bool) -> None:
        """Record an inventory claim attempt."""
        self.inventory_claims_total.labels(outcome="claimed" if claimed else "miss").inc()

    def record_external_purchase(self, outcome: str, duration: float) -> None:
        """Record an external purchase call (success, failure, timeout)."""
        self.external_purchases_total.labels(outcome=outcome).inc()
        self.external_purchase_duration_seconds.observe(duration)

    def record_revocation(self, outcome: str) -> None:
        """Record a revocation outcome."""
        self.revocations_total.labels(outcome=outcome).inc()

    def record_billing_entry(self, source: str, success: bool) -> None:
        """Record a billing ledger write."""
        self.billing_entries_total.labels(source=source, success=str(success)).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = ProvisioningMetrics()
