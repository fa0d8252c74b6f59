"""Delivery models: the activity log entry and its per-attempt history.

A WebhookDelivery tracks one (event, subscription) pair from creation to a
terminal state. Every HTTP attempt made for it is recorded as a separate,
immutable DeliveryAttempt.
"""

from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .base import generate_id, utc_now
from .event import Operation, WebhookPayload
from .subscription import Subscription


class DeliveryStatus(str, Enum):
    """Lifecycle state of an activity log entry.

    pending: created, or claimed by a worker and in flight.
    retrying: failed with attempts left, waiting for ``next_retry_at``.
    success, failed, exhausted: terminal.
    """

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    RETRYING = "retrying"
    EXHAUSTED = "exhausted"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({DeliveryStatus.SUCCESS, DeliveryStatus.FAILED, DeliveryStatus.EXHAUSTED})


class WebhookDelivery(BaseModel):
    """Activity log entry for one event delivered to one subscription.

    The retry policy is snapshotted at creation so that editing a
    subscription never changes the schedule of entries already in flight.

    Attributes:
        id: Unique identifier.
        subscription_id: Target subscription.
        tenant_id: Owning tenant.
        event: Event name the subscription matched under.
        resource: Resource (table) of the originating event.
        operation: Operation of the originating event.
        record_id: Primary key of the affected row, if known.
        payload: Wire payload; retries resend it unchanged.
        status: Current lifecycle state.
        attempt: Attempts made so far.
        max_attempts: Total attempts allowed.
        backoff_multiplier: Delay growth factor.
        initial_delay_ms: Delay after the first failed attempt.
        response_code: HTTP status of the latest attempt.
        response_body: Truncated response body of the latest attempt.
        error: Error of the latest attempt.
        next_retry_at: When the entry becomes due. Only set while
            pending or retrying.
        claim_token: Token of the worker currently holding the entry.
        claimed_at: When the current claim was taken.
        created_at: When the entry was created.
        updated_at: When the entry last changed.
        completed_at: When the entry reached a terminal state.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=lambda: generate_id("dlv"))
    subscription_id: str
    tenant_id: str
    event: str
    resource: str
    operation: Operation
    record_id: str | None = None
    payload: WebhookPayload
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempt: int = Field(default=0, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    initial_delay_ms: int = Field(default=1000, ge=0)
    response_code: int | None = None
    response_body: str | None = None
    error: str | None = None
    next_retry_at: datetime | None = None
    claim_token: str | None = None
    claimed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    @model_validator(mode="after")
    def _check_state(self) -> "WebhookDelivery":
        if self.attempt > self.max_attempts:
            raise ValueError(
                f"attempt ({self.attempt}) exceeds max_attempts ({self.max_attempts})"
            )
        if self.status.is_terminal and self.next_retry_at is not None:
            raise ValueError(f"{self.status.value} entries cannot carry next_retry_at")
        return self

    @classmethod
    def for_subscription(
        cls,
        subscription: Subscription,
        payload: WebhookPayload,
        record_id: str | None = None,
        now: datetime | None = None,
    ) -> "WebhookDelivery":
        """Create a pending entry with the subscription's retry policy snapshot."""
        now = now or utc_now()
        policy = subscription.retry_policy
        return cls(
            subscription_id=subscription.id,
            tenant_id=subscription.tenant_id,
            event=payload.event,
            resource=payload.table,
            operation=payload.operation,
            record_id=record_id,
            payload=payload,
            max_attempts=policy.max_retries,
            backoff_multiplier=policy.backoff_multiplier,
            initial_delay_ms=policy.initial_delay_ms,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def attempts_left(self) -> int:
        return self.max_attempts - self.attempt

    def _record_outcome(
        self,
        now: datetime,
        response_code: int | None,
        response_body: str | None,
        error: str | None,
    ) -> None:
        self.response_code = response_code
        self.response_body = response_body
        self.error = error
        self.claim_token = None
        self.claimed_at = None
        self.updated_at = now

    def mark_success(
        self, now: datetime, response_code: int | None, response_body: str | None
    ) -> None:
        self._record_outcome(now, response_code, response_body, None)
        self.status = DeliveryStatus.SUCCESS
        self.next_retry_at = None
        self.completed_at = now

    def mark_retrying(
        self,
        now: datetime,
        delay: timedelta,
        response_code: int | None,
        response_body: str | None,
        error: str | None,
    ) -> None:
        self._record_outcome(now, response_code, response_body, error)
        self.status = DeliveryStatus.RETRYING
        self.next_retry_at = now + delay

    def mark_exhausted(
        self,
        now: datetime,
        response_code: int | None,
        response_body: str | None,
        error: str | None,
    ) -> None:
        self._record_outcome(now, response_code, response_body, error)
        self.status = DeliveryStatus.EXHAUSTED
        self.next_retry_at = None
        self.completed_at = now

    def mark_failed(self, now: datetime, error: str) -> None:
        """Terminal failure that retrying cannot fix, e.g. bad configuration."""
        self._record_outcome(now, self.response_code, self.response_body, error)
        self.status = DeliveryStatus.FAILED
        self.next_retry_at = None
        self.completed_at = now

    def queue(self, now: datetime) -> None:
        """Make the entry due immediately without attempting it."""
        self.status = DeliveryStatus.RETRYING
        self.next_retry_at = now
        self.claim_token = None
        self.claimed_at = None
        self.updated_at = now


class DeliveryAttempt(BaseModel):
    """Immutable record of one HTTP attempt for a delivery.

    Attributes:
        id: Unique identifier.
        delivery_id: Entry the attempt belongs to.
        subscription_id: Target subscription.
        tenant_id: Owning tenant.
        attempt_number: 1-based attempt number.
        ok: True when the endpoint answered 2xx.
        status_code: HTTP status, absent on transport errors.
        response_body: Truncated response body.
        error: Transport error or non-2xx description.
        duration_ms: Wall time of the attempt.
        created_at: When the attempt finished.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=lambda: generate_id("att"))
    delivery_id: str
    subscription_id: str
    tenant_id: str
    attempt_number: int = Field(ge=1)
    ok: bool
    status_code: int | None = None
    response_body: str | None = None
    error: str | None = None
    duration_ms: float = Field(default=0.0, ge=0)
    created_at: datetime = Field(default_factory=utc_now)


__all__ = ["DeliveryAttempt", "DeliveryStatus", "WebhookDelivery"]
