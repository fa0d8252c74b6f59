"""Pydantic schemas for API request/response models."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from courier.models import DeliveryStatus, Operation, RetryPolicy


def _template_to_str(value: Any) -> Any:
    """Accept body templates as JSON objects or as JSON text."""
    if isinstance(value, dict):
        return json.dumps(value, separators=(",", ":"))
    return value


class HealthResponse(BaseModel):
    """Response for health check."""

    model_config = ConfigDict(extra="forbid")

    status: str = Field(description="healthy or unhealthy")
    version: str
    storage_connected: bool
    sweep_running: bool = False


class TenantRequest(BaseModel):
    """Request body for registering or updating a tenant."""

    model_config = ConfigDict(extra="forbid")

    slug: str = Field(min_length=1, max_length=100, description="URL-friendly alias")
    name: str = Field(default="", max_length=200)


class TenantResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    slug: str
    name: str
    created_at: str


class SubscriptionCreateRequest(BaseModel):
    """Request body for creating a subscription.

    Attributes:
        name: Display name.
        url: Absolute http(s) endpoint URL.
        resources: Resource names of interest.
        events: Event names of interest (generic or composite).
        enabled: Whether the subscription matches events.
        secret: Signing secret. Omit to generate one; "" for unsigned delivery.
        bearer_token: Optional bearer token.
        body_template: Optional JSON object template for the request body.
        retry_policy: Optional retry policy.
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1, max_length=200)
    url: str = Field(min_length=1)
    resources: list[str] = Field(default_factory=list)
    events: list[str] = Field(default_factory=list)
    enabled: bool = True
    secret: str | None = None
    bearer_token: str | None = None
    body_template: str | None = None
    retry_policy: RetryPolicy | None = None

    @field_validator("body_template", mode="before")
    @classmethod
    def _template_text(cls, value: Any) -> Any:
        return _template_to_str(value)


class SubscriptionUpdateRequest(BaseModel):
    """Partial update of a subscription. Only fields sent are changed."""

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, min_length=1, max_length=200)
    url: str | None = None
    resources: list[str] | None = None
    events: list[str] | None = None
    enabled: bool | None = None
    secret: str | None = None
    bearer_token: str | None = None
    body_template: str | None = None
    retry_policy: RetryPolicy | None = None

    @field_validator("body_template", mode="before")
    @classmethod
    def _template_text(cls, value: Any) -> Any:
        return _template_to_str(value)


class SubscriptionResponse(BaseModel):
    """A subscription as shown to its tenant.

    ``secret`` is only returned in full by the create endpoint; elsewhere
    it is masked.
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    tenant_id: str
    name: str
    url: str
    enabled: bool
    resources: list[str]
    events: list[str]
    signed: bool
    secret: str | None
    has_bearer_token: bool
    body_template: str | None
    retry_policy: RetryPolicy
    created_at: str
    updated_at: str


class SubscriptionListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    items: list[SubscriptionResponse]
    total: int
    page: int
    page_size: int
    has_more: bool


class SendTestRequest(BaseModel):
    """Request body for sending a test webhook."""

    model_config = ConfigDict(extra="forbid")

    url: str | None = Field(default=None, description="Override URL for this test")


class SendTestResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool
    status_code: int | None
    response_body: str | None
    error: str | None
    duration_ms: float


class IngestRequest(BaseModel):
    """Domain event reported by the host application.

    Fields are optional at the schema level so that missing ones produce
    a 400 with the field name instead of a generic validation failure.
    Unknown extra fields are ignored.
    """

    model_config = ConfigDict(extra="ignore")

    event: str | None = None
    table: str | None = None
    operation: str | None = None
    organization_id: str | None = None
    org_slug: str | None = None
    record: dict[str, Any] | None = None
    old_record: dict[str, Any] | None = None
    timestamp: datetime | None = None

    @property
    def tenant_ref(self) -> str | None:
        return self.organization_id or self.org_slug

    def parsed_operation(self) -> Operation | None:
        if not self.operation:
            return None
        try:
            return Operation(self.operation.strip().lower())
        except ValueError:
            return None


class IngestResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    success: bool = True
    delivery_ids: list[str] = Field(default_factory=list)
    note: str | None = None


class AttemptResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    attempt_number: int
    ok: bool
    status_code: int | None
    response_body: str | None
    error: str | None
    duration_ms: float
    created_at: str


class DeliveryResponse(BaseModel):
    """One activity log entry."""

    model_config = ConfigDict(extra="forbid")

    id: str
    subscription_id: str
    event: str
    resource: str
    operation: Operation
    record_id: str | None
    status: DeliveryStatus
    attempt: int
    max_attempts: int
    response_code: int | None
    response_snippet: str | None
    error: str | None
    next_retry_at: str | None
    created_at: str
    updated_at: str
    completed_at: str | None
    payload: dict[str, Any] | None = None


class DeliveryListResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    items: list[DeliveryResponse]
    total: int
    page: int
    page_size: int
    has_more: bool


class DeliveryDetailResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    delivery: DeliveryResponse
    attempts: list[AttemptResponse]


class SweepResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    processed: int
