"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIB = 1024 * 1024


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = False

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Pixelmeter API"
    api_version: str = "0.1.0"
    api_description: str = "Metered image optimization with credit billing"

    # Session tokens
    jwt_secret: str = ""  # Access token signing secret (generate with: openssl rand -hex 32)
    jwt_refresh_secret: str = ""  # Refresh token signing secret, must differ from jwt_secret
    access_token_minutes: int = 15
    refresh_token_days: int = 7

    # Credits
    signup_credits: int = 10  # Balance granted to password signups

    # Payment Provider - Freemius
    freemius_secret_key: str = ""  # Shared secret used for X-FS-Signature HMAC
    webhook_unsigned_event_types: str = "user.created"  # Comma-separated allow-list
    webhook_unsigned_plan_ids: str = "34244"  # Plans an unsigned event may provision

    @property
    def unsigned_event_types(self) -> frozenset[str]:
        """Event types accepted without a signature header."""
        return frozenset(
            event_type.strip()
            for event_type in self.webhook_unsigned_event_types.split(",")
            if event_type.strip()
        )

    @property
    def unsigned_plan_ids(self) -> frozenset[str]:
        """Plan IDs an unsigned event may carry."""
        return frozenset(
            plan_id.strip()
            for plan_id in self.webhook_unsigned_plan_ids.split(",")
            if plan_id.strip()
        )

    # Object Storage - Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    storage_bucket: str = "temp-uploads"
    storage_timeout_seconds: float = 20.0
    result_url_ttl_seconds: int = 600

    # Transfer / Transform
    inline_threshold_bytes: int = 4 * MIB
    transform_timeout_seconds: float = 30.0
    max_output_width: int = 1920
    default_quality: int = 80

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "pixelmeter-api"

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
        This prevents silent failures that only manifest at runtime.
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        # Both token secrets are required and must not be shared
        if not self.jwt_secret:
            errors.append("JWT_SECRET is required but empty or missing")
        if not self.jwt_refresh_secret:
            errors.append("JWT_REFRESH_SECRET is required but empty or missing")
        elif self.jwt_refresh_secret == self.jwt_secret:
            errors.append("JWT_REFRESH_SECRET must differ from JWT_SECRET")

        if self.inline_threshold_bytes <= 0:
            errors.append("INLINE_THRESHOLD_BYTES must be positive")

        if not 1 <= self.default_quality <= 100:
            errors.append("DEFAULT_QUALITY must be between 1 and 100")

        # If we have errors, fail immediately with clear messaging
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


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
