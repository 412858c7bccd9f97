"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Gift Card Provisioning API"
    api_version: str = "0.1.0"
    api_description: str = "Gift card provisioning, billing and revocation engine"

    # Authorization - tokens are issued by the identity provider, only verified here
    admin_jwt_secret: str = ""
    admin_jwt_algorithm: str = "HS256"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "giftcard-provisioning-api"

    # External purchase API (Tillo-compatible)
    external_purchase_api_key: str = ""
    external_purchase_secret_key: str = ""
    external_purchase_base_url: str = "https://api.tillo.tech/v2"
    external_purchase_currency: str = "USD"
    external_purchase_timeout_seconds: float = 10.0

    # Revocation
    revocation_min_reason_length: int = 10

    # Provisioning trace + health monitoring
    trace_retention_days: int = 30
    health_window_hours: int = 24
    reconciliation_stale_minutes: int = 15
    reconciliation_interval_seconds: int = 300  # 0 disables the background sweep
    inventory_healthy_threshold: int = 50
    inventory_low_threshold: int = 10

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if self.external_purchase_timeout_seconds <= 0:
            errors.append("EXTERNAL_PURCHASE_TIMEOUT_SECONDS must be positive")

        if self.inventory_low_threshold > self.inventory_healthy_threshold:
            errors.append("INVENTORY_LOW_THRESHOLD cannot exceed INVENTORY_HEALTHY_THRESHOLD")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url

    @property
    def external_purchase_configured(self) -> bool:
        """Whether credentials for the external purchase API are present."""
        return bool(self.external_purchase_api_key and self.external_purchase_secret_key)


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
