"""Configuration management for Courier."""

import logging
import secrets
import warnings
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings

from courier.models.subscription import RetryPolicy

logger = logging.getLogger(__name__)


def _generate_dev_secret_key() -> str:
    """Generate a random secret key for development use.

    Tokens signed with it are invalidated on restart, which is acceptable
    outside production.

    Returns:
        A cryptographically secure random hex string (64 characters).
    """
    return secrets.token_hex(32)


class Settings(BaseSettings):
    """Courier configuration loaded from environment variables.

    All settings can be overridden via environment variables with
    the COURIER_ prefix. For example:
        COURIER_QDRANT_URL=http://localhost:6333
        COURIER_RETRY_DEFAULTS__MAX_RETRIES=5

    Security Notes:
        - In production (COURIER_ENV=production), auth is enabled by default
        - A missing secret key in production raises an error
        - Disabling auth in production logs a warning
    """

    # Environment
    env: Literal["development", "production", "test"] = Field(
        default="development",
        description="Environment: development, production, or test",
    )

    # Storage
    qdrant_url: str = Field(
        default="http://localhost:6333",
        description="Qdrant connection URL",
    )
    qdrant_api_key: str | None = Field(
        default=None,
        description="Qdrant API key (for cloud)",
    )
    collection_prefix: str = Field(
        default="courier",
        description="Prefix for Qdrant collection names",
    )
    storage_max_scroll_limit: int = Field(
        default=10000,
        ge=100,
        le=100000,
        description="Maximum records fetched by a single scroll when paginating logs",
    )

    # Delivery
    delivery_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=300,
        description="Hard timeout for every outbound webhook POST",
    )
    inline_delivery: bool = Field(
        default=True,
        description=(
            "Attempt the first delivery inside ingest. When false, new entries are "
            "queued as due retries and only the sweep talks to endpoints."
        ),
    )
    inline_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Budget for the inline first attempt made from the write path",
    )
    response_body_limit: int = Field(
        default=4096,
        ge=0,
        le=65536,
        description="Characters of endpoint response body kept in the activity log",
    )
    max_concurrent_deliveries: int = Field(
        default=10,
        ge=1,
        le=200,
        description="Upper bound on simultaneous outbound connections per fan-out",
    )
    user_agent: str = Field(
        default="Courier-Webhooks/0.1",
        description="User-Agent header sent with every delivery",
    )

    # Retry
    retry_defaults: RetryPolicy = Field(
        default_factory=RetryPolicy,
        description="Retry policy for subscriptions created without one",
    )
    max_retry_delay_seconds: int = Field(
        default=3600,
        ge=1,
        description="Cap on any single computed backoff delay",
    )

    # Sweep
    sweep_enabled: bool = Field(
        default=False,
        description="Run the retry sweep loop inside the API process",
    )
    sweep_interval_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Seconds between sweep runs",
    )
    sweep_batch_size: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Maximum due entries loaded per sweep run",
    )
    claim_stale_seconds: int = Field(
        default=300,
        ge=1,
        description=(
            "A pending entry claimed longer ago than this is released back to "
            "retrying. Must exceed the delivery timeout."
        ),
    )

    # Ingestion
    strict_tenant_resolution: bool = Field(
        default=False,
        description="Answer 404 on HTTP ingest for unknown tenants instead of a soft 200",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        description="Log output format",
    )

    # Authentication
    auth_enabled: bool | None = Field(
        default=None,
        description=(
            "Enable Bearer token authentication. "
            "If not set, defaults to True in production, False otherwise."
        ),
    )
    auth_secret_key: str | None = Field(
        default=None,
        description=(
            "Secret key for token validation (HMAC). "
            "REQUIRED in production. In dev/test, a random key is generated if not set."
        ),
    )
    auth_token_expire_minutes: int = Field(
        default=60,
        ge=1,
        description="Token expiration time in minutes",
    )

    # CORS Configuration
    cors_enabled: bool = Field(
        default=True,
        description="Enable CORS middleware",
    )
    cors_allow_origins: list[str] = Field(
        default_factory=lambda: ["*"],
        description="List of allowed CORS origins",
    )
    cors_allow_methods: list[str] = Field(
        default_factory=lambda: ["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        description="Allowed HTTP methods for CORS requests",
    )
    cors_allow_headers: list[str] = Field(
        default_factory=lambda: ["*"],
        description="Allowed headers for CORS requests",
    )
    cors_allow_credentials: bool = Field(
        default=False,
        description="Allow credentials in CORS requests",
    )
    cors_max_age: int = Field(
        default=600,
        ge=0,
        le=86400,
        description="Max age (seconds) for CORS preflight cache",
    )

    _runtime_dev_secret: str | None = None

    model_config = {
        "env_prefix": "COURIER_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_nested_delimiter": "__",
    }

    @model_validator(mode="after")
    def validate_delivery_budgets(self) -> "Settings":
        """The inline budget can only shorten the hard delivery timeout."""
        if self.inline_timeout_seconds > self.delivery_timeout_seconds:
            raise ValueError(
                f"inline_timeout_seconds ({self.inline_timeout_seconds}) must not exceed "
                f"delivery_timeout_seconds ({self.delivery_timeout_seconds})"
            )
        if self.claim_stale_seconds <= self.delivery_timeout_seconds:
            raise ValueError(
                f"claim_stale_seconds ({self.claim_stale_seconds}) must exceed "
                f"delivery_timeout_seconds ({self.delivery_timeout_seconds}), otherwise "
                f"in-flight attempts get released to other workers"
            )
        return self

    @model_validator(mode="after")
    def validate_security_settings(self) -> "Settings":
        """Validate security settings based on environment.

        - In production, a secret key MUST be explicitly provided
        - In dev/test, a random key is generated if not provided
        - In production, disabling auth logs a warning
        - Resolves auth_enabled default based on environment
        """
        is_production = self.env == "production"

        if self.auth_enabled is None:
            object.__setattr__(self, "auth_enabled", is_production)

        if is_production:
            if self.auth_secret_key is None:
                raise ValueError(
                    "COURIER_AUTH_SECRET_KEY must be set in production. "
                    'Generate one with: python -c "import secrets; print(secrets.token_hex(32))"'
                )

            if not self.auth_enabled:
                warnings.warn(
                    "Authentication is disabled in production environment. "
                    "Set COURIER_AUTH_ENABLED=true to enable.",
                    UserWarning,
                    stacklevel=2,
                )
                logger.warning("Authentication disabled in production")
        elif self.auth_secret_key is None:
            object.__setattr__(self, "_runtime_dev_secret", _generate_dev_secret_key())
            logger.debug("Generated random auth secret for development")

        return self

    @property
    def is_auth_enabled(self) -> bool:
        """Get resolved auth_enabled value (always bool, never None)."""
        if self.auth_enabled is None:
            return self.env == "production"
        return self.auth_enabled

    @property
    def effective_auth_secret_key(self) -> str:
        """Get the effective secret key for authentication.

        Raises:
            ValueError: If no secret key is available (should not happen
                after validation).
        """
        if self.auth_secret_key is not None:
            return self.auth_secret_key
        if self._runtime_dev_secret is not None:
            return self._runtime_dev_secret
        raise ValueError("No auth secret key available")


# Global settings instance
settings = Settings()
