"""API helper functions: model to response conversion."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from .schemas import (
    AttemptResponse,
    DeliveryResponse,
    SendTestResponse,
    SubscriptionResponse,
    TenantResponse,
)

if TYPE_CHECKING:
    from courier.models import DeliveryAttempt, Subscription, Tenant, WebhookDelivery
    from courier.webhooks import AttemptResult

# Characters of response body shown in log listings
RESPONSE_SNIPPET_LENGTH = 500


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def tenant_to_response(tenant: Tenant) -> TenantResponse:
    return TenantResponse(
        id=tenant.id,
        slug=tenant.slug,
        name=tenant.name,
        created_at=tenant.created_at.isoformat(),
    )


def subscription_to_response(
    subscription: Subscription,
    reveal_secret: bool = False,
) -> SubscriptionResponse:
    """Convert a Subscription to its API representation.

    Args:
        subscription: The subscription.
        reveal_secret: Return the full secret instead of the masked form.
            Only the create endpoint does this.
    """
    secret = subscription.secret if reveal_secret else subscription.masked_secret
    return SubscriptionResponse(
        id=subscription.id,
        tenant_id=subscription.tenant_id,
        name=subscription.name,
        url=str(subscription.url),
        enabled=subscription.enabled,
        resources=subscription.resources,
        events=subscription.events,
        signed=subscription.is_signed,
        secret=secret or None,
        has_bearer_token=bool(subscription.bearer_token),
        body_template=subscription.body_template,
        retry_policy=subscription.retry_policy,
        created_at=subscription.created_at.isoformat(),
        updated_at=subscription.updated_at.isoformat(),
    )


def delivery_to_response(
    delivery: WebhookDelivery,
    include_payload: bool = False,
) -> DeliveryResponse:
    """Convert an activity log entry to its API representation.

    Listings carry a snippet of the response body; the detail view adds
    the payload that was sent.
    """
    snippet = delivery.response_body[:RESPONSE_SNIPPET_LENGTH] if delivery.response_body else None
    return DeliveryResponse(
        id=delivery.id,
        subscription_id=delivery.subscription_id,
        event=delivery.event,
        resource=delivery.resource,
        operation=delivery.operation,
        record_id=delivery.record_id,
        status=delivery.status,
        attempt=delivery.attempt,
        max_attempts=delivery.max_attempts,
        response_code=delivery.response_code,
        response_snippet=snippet,
        error=delivery.error,
        next_retry_at=_iso(delivery.next_retry_at),
        created_at=delivery.created_at.isoformat(),
        updated_at=delivery.updated_at.isoformat(),
        completed_at=_iso(delivery.completed_at),
        payload=delivery.payload.to_wire() if include_payload else None,
    )


def attempt_to_response(attempt: DeliveryAttempt) -> AttemptResponse:
    return AttemptResponse(
        attempt_number=attempt.attempt_number,
        ok=attempt.ok,
        status_code=attempt.status_code,
        response_body=attempt.response_body,
        error=attempt.error,
        duration_ms=round(attempt.duration_ms, 1),
        created_at=attempt.created_at.isoformat(),
    )


def attempt_result_to_response(result: AttemptResult) -> SendTestResponse:
    return SendTestResponse(
        success=result.ok,
        status_code=result.status_code,
        response_body=result.response_body,
        error=result.error,
        duration_ms=round(result.duration_ms, 1),
    )
