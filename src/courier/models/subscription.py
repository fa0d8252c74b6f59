"""Subscription models: a tenant's webhook endpoint and its retry policy."""

import secrets
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, field_validator, model_validator

from .base import generate_id, utc_now


def generate_secret() -> str:
    """Generate a signing secret (32 random bytes, hex encoded)."""
    return secrets.token_hex(32)


def _normalize_names(values: list[str]) -> list[str]:
    seen: list[str] = []
    for value in values:
        name = value.strip().lower()
        if name and name not in seen:
            seen.append(name)
    return seen


class RetryPolicy(BaseModel):
    """How often and how fast a failed delivery is retried.

    Delay scheduled after failed attempt n (1-based):
        initial_delay_ms * backoff_multiplier ** (n - 1)

    Attributes:
        max_retries: Total delivery attempts, including the first one.
        backoff_multiplier: Growth factor between consecutive delays.
        initial_delay_ms: Delay after the first failed attempt.
    """

    model_config = ConfigDict(extra="forbid")

    max_retries: int = Field(default=3, ge=1, le=20, description="Total delivery attempts")
    backoff_multiplier: float = Field(
        default=2.0, ge=1.0, le=10.0, description="Delay growth factor"
    )
    initial_delay_ms: int = Field(
        default=1000, ge=0, le=86_400_000, description="Delay after the first failure"
    )


class Subscription(BaseModel):
    """A tenant's configured webhook endpoint.

    Attributes:
        id: Unique identifier.
        tenant_id: Owning tenant.
        name: Display name.
        url: Absolute http(s) URL receiving the POSTs.
        enabled: Disabled subscriptions never match.
        resources: Resource names of interest (e.g. "students").
        events: Event names of interest, generic ("insert") or
            composite ("student.created").
        secret: HMAC signing secret. Empty means deliveries are unsigned.
        bearer_token: Sent as ``Authorization: Bearer <token>`` when set.
        body_template: Optional JSON object replacing the default body.
        retry_policy: Retry behaviour for failed deliveries.
        created_at: When the subscription was created.
        updated_at: When the subscription was last modified.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("sub"))
    tenant_id: str = Field(min_length=1, description="Owning tenant")
    name: str = Field(min_length=1, max_length=200, description="Display name")
    url: HttpUrl = Field(description="Endpoint receiving webhook POSTs")
    enabled: bool = Field(default=True)
    resources: list[str] = Field(default_factory=list)
    events: list[str] = Field(default_factory=list)
    secret: str = Field(default_factory=generate_secret, description="HMAC signing secret")
    bearer_token: str | None = Field(default=None)
    body_template: str | None = Field(default=None)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("resources", "events")
    @classmethod
    def _dedupe(cls, values: list[str]) -> list[str]:
        return _normalize_names(values)

    @model_validator(mode="after")
    def _require_interest_when_enabled(self) -> "Subscription":
        if self.enabled and (not self.resources or not self.events):
            raise ValueError(
                "enabled subscriptions need at least one resource and one event"
            )
        return self

    def subscribes_to(self, resource: str, event: str) -> bool:
        """Check if this subscription wants ``event`` on ``resource``."""
        return (
            self.enabled
            and resource.strip().lower() in self.resources
            and event.strip().lower() in self.events
        )

    @property
    def is_signed(self) -> bool:
        return bool(self.secret)

    @property
    def masked_secret(self) -> str | None:
        """Secret reduced to its last four characters, for display."""
        if not self.secret:
            return None
        return f"****{self.secret[-4:]}"


__all__ = ["RetryPolicy", "Subscription", "generate_secret"]
