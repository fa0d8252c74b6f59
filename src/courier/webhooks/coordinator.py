"""Dispatch coordinator: fan-out, outcome bookkeeping and the retry sweep.

Lifecycle of an activity log entry:

    pending --2xx--> success
    pending --failure, attempts left--> retrying --due, claimed--> pending
    pending --failure on last attempt--> exhausted
    pending --bad template / subscription gone--> failed

``pending`` doubles as the claimed state: an entry is only ever attempted
by the worker whose claim token it carries.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from courier.config import Settings
from courier.config import settings as default_settings
from courier.exceptions import ConfigurationError, ValidationError
from courier.models import (
    DeliveryAttempt,
    DomainEvent,
    Subscription,
    WebhookDelivery,
    utc_now,
)

from .executor import AttemptResult, DeliveryExecutor
from .registry import SubscriptionRegistry

if TYPE_CHECKING:
    from courier.storage import CourierStorage

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def compute_backoff_delay(
    initial_delay_ms: int,
    multiplier: float,
    attempt_number: int,
    max_delay_seconds: float | None = None,
) -> timedelta:
    """Delay before the attempt that follows failed attempt ``attempt_number``.

    ``initial_delay_ms * multiplier ** (attempt_number - 1)``, capped at
    ``max_delay_seconds`` when given.

    Examples:
        compute_backoff_delay(1000, 2.0, 1) -> 1s
        compute_backoff_delay(1000, 2.0, 3) -> 4s
    """
    delay_ms = initial_delay_ms * multiplier ** max(attempt_number - 1, 0)
    if max_delay_seconds is not None:
        delay_ms = min(delay_ms, max_delay_seconds * 1000)
    return timedelta(milliseconds=delay_ms)


class DispatchCoordinator:
    """Turns domain events into delivery entries and drives them to completion.

    Example:
        ```python
        coordinator = DispatchCoordinator(storage, registry, executor)

        # From the host application's write path
        delivery_ids = await coordinator.ingest(event)

        # Periodically, from a sweep worker
        processed = await coordinator.run_due_retries()
        ```
    """

    def __init__(
        self,
        storage: CourierStorage,
        registry: SubscriptionRegistry,
        executor: DeliveryExecutor,
        settings: Settings | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            storage: Persistence for tenants and the activity log.
            registry: Subscription lookup.
            executor: Outbound HTTP.
            settings: Delivery, retry and sweep settings.
            clock: Source of "now"; defaults to the wall clock.
        """
        self._storage = storage
        self._registry = registry
        self._executor = executor
        self._settings = settings or default_settings
        self._clock = clock or utc_now
        self._semaphore = asyncio.Semaphore(self._settings.max_concurrent_deliveries)

    def now(self) -> datetime:
        """Current time according to the coordinator's clock."""
        return self._clock()

    async def ingest(self, event: DomainEvent) -> list[str]:
        """Fan an event out to every matching subscription of its tenant.

        Creates one activity log entry per matched subscription and, in
        inline mode, makes the first attempt for each before returning.
        Never raises: the caller's write has already committed, and a
        webhook problem must not turn it into an error.

        Returns:
            IDs of the entries created; empty for unknown tenants or when
            nothing matched.
        """
        try:
            return await self._ingest(event)
        except Exception:
            # Firewall between webhook processing and the host's write path
            logger.exception(
                "Failed to ingest %s on %s for tenant %s",
                event.operation.value,
                event.resource,
                event.tenant_id,
            )
            return []

    async def _match(self, tenant_id: str, event: DomainEvent) -> list[tuple[Subscription, str]]:
        """Subscriptions interested in ``event``, each with the first name it matched."""
        matches: list[tuple[Subscription, str]] = []
        seen: set[str] = set()
        for name in event.candidate_event_names():
            for subscription in await self._registry.find_matching(tenant_id, event.resource, name):
                if subscription.id in seen:
                    continue
                seen.add(subscription.id)
                matches.append((subscription, name))
        return matches

    async def _ingest(self, event: DomainEvent) -> list[str]:
        tenant = await self._storage.resolve_tenant(event.tenant_id)
        if tenant is None:
            logger.warning(
                "Dropping %s on %s: unknown tenant %r",
                event.operation.value,
                event.resource,
                event.tenant_id,
            )
            return []

        matches = await self._match(tenant.id, event)
        if not matches:
            logger.debug(
                "No subscriptions for %s on %s in tenant %s",
                event.operation.value,
                event.resource,
                tenant.id,
            )
            return []

        now = self._clock()
        inline = self._settings.inline_delivery
        work: list[tuple[Subscription, WebhookDelivery]] = []

        for subscription, name in matches:
            payload = self._executor.build_payload(event, name, tenant.id)
            delivery = WebhookDelivery.for_subscription(
                subscription, payload, record_id=event.record_id, now=now
            )
            if inline:
                # Claimed by this call until the first attempt is recorded
                delivery.claim_token = uuid4().hex
                delivery.claimed_at = now
            else:
                delivery.queue(now)
            await self._storage.log_delivery(delivery)
            work.append((subscription, delivery))

        logger.info(
            "Created %d deliveries for %s on %s in tenant %s",
            len(work),
            event.operation.value,
            event.resource,
            tenant.id,
        )

        if inline:
            results = await asyncio.gather(
                *(self._deliver_inline(subscription, delivery) for subscription, delivery in work),
                return_exceptions=True,
            )
            for (_, delivery), result in zip(work, results, strict=True):
                if isinstance(result, BaseException):
                    logger.error(
                        "Inline delivery %s failed unexpectedly: %s", delivery.id, result
                    )

        return [delivery.id for _, delivery in work]

    async def _deliver_inline(self, subscription: Subscription, delivery: WebhookDelivery) -> None:
        async with self._semaphore:
            await self._deliver(
                subscription,
                delivery,
                timeout_seconds=self._settings.inline_timeout_seconds,
            )

    async def _deliver(
        self,
        subscription: Subscription,
        delivery: WebhookDelivery,
        timeout_seconds: float | None = None,
    ) -> WebhookDelivery:
        """Make the next attempt for a claimed entry and record the outcome."""
        attempt_number = delivery.attempt + 1
        try:
            result = await self._executor.attempt(
                subscription,
                delivery.payload,
                attempt_number=attempt_number,
                delivery_id=delivery.id,
                timeout_seconds=timeout_seconds,
            )
        except ConfigurationError as e:
            delivery.mark_failed(self._clock(), e.message)
            await self._storage.update_delivery(delivery)
            logger.error(
                "Delivery %s to subscription %s failed permanently: %s",
                delivery.id,
                subscription.id,
                e.message,
            )
            return delivery

        await self._record_outcome(delivery, result, attempt_number)
        return delivery

    async def _record_outcome(
        self,
        delivery: WebhookDelivery,
        result: AttemptResult,
        attempt_number: int,
    ) -> None:
        now = self._clock()
        delivery.attempt = attempt_number

        await self._storage.log_attempt(
            DeliveryAttempt(
                delivery_id=delivery.id,
                subscription_id=delivery.subscription_id,
                tenant_id=delivery.tenant_id,
                attempt_number=attempt_number,
                ok=result.ok,
                status_code=result.status_code,
                response_body=result.response_body,
                error=result.error,
                duration_ms=result.duration_ms,
                created_at=now,
            )
        )

        if result.ok:
            delivery.mark_success(now, result.status_code, result.response_body)
        elif attempt_number >= delivery.max_attempts:
            delivery.mark_exhausted(now, result.status_code, result.response_body, result.error)
            logger.warning(
                "Delivery %s exhausted after %d attempts: %s",
                delivery.id,
                attempt_number,
                result.error,
            )
        else:
            delay = compute_backoff_delay(
                delivery.initial_delay_ms,
                delivery.backoff_multiplier,
                attempt_number,
                self._settings.max_retry_delay_seconds,
            )
            delivery.mark_retrying(
                now, delay, result.status_code, result.response_body, result.error
            )
            logger.info(
                "Delivery %s scheduled for attempt %d at %s",
                delivery.id,
                attempt_number + 1,
                delivery.next_retry_at.isoformat() if delivery.next_retry_at else "now",
            )

        await self._storage.update_delivery(delivery)

    async def run_due_retries(self) -> int:
        """Attempt every due ``retrying`` entry once.

        Safe to run from several workers at once: each entry is claimed
        atomically before it is attempted, and entries claimed by another
        worker are skipped. Running it again before anything new is due
        does nothing.

        Returns:
            Number of entries this call processed.
        """
        now = self._clock()
        cutoff = now - timedelta(seconds=self._settings.claim_stale_seconds)
        await self._storage.release_stale_claims(cutoff, now)

        due = await self._storage.get_due_deliveries(now, limit=self._settings.sweep_batch_size)
        if not due:
            return 0

        results = await asyncio.gather(
            *(self._retry_one(delivery) for delivery in due),
            return_exceptions=True,
        )

        processed = 0
        for delivery, result in zip(due, results, strict=True):
            if isinstance(result, BaseException):
                logger.error("Retry of delivery %s failed unexpectedly: %s", delivery.id, result)
            elif result:
                processed += 1

        logger.info("Sweep processed %d of %d due deliveries", processed, len(due))
        return processed

    async def _retry_one(self, delivery: WebhookDelivery) -> bool:
        async with self._semaphore:
            claimed = await self._storage.claim_delivery(delivery, uuid4().hex, self._clock())
            if claimed is None:
                logger.debug("Delivery %s claimed by another worker", delivery.id)
                return False

            subscription = await self._storage.get_subscription(
                claimed.tenant_id, claimed.subscription_id
            )
            if subscription is None or not subscription.enabled:
                claimed.mark_failed(self._clock(), "Subscription not found or disabled")
                await self._storage.update_delivery(claimed)
                logger.warning(
                    "Delivery %s failed: subscription %s not found or disabled",
                    claimed.id,
                    claimed.subscription_id,
                )
                return True

            await self._deliver(subscription, claimed)
            return True


async def ingest_event(
    coordinator: DispatchCoordinator,
    tenant_id: str,
    resource: str,
    operation: str,
    record: dict[str, Any],
    previous_record: dict[str, Any] | None = None,
    event: str | None = None,
    occurred_at: datetime | None = None,
) -> list[str]:
    """Convenience function to build and ingest a domain event.

    Raises:
        ValidationError: If the event fields are malformed.
    """
    try:
        domain_event = DomainEvent(
            tenant_id=tenant_id,
            resource=resource,
            operation=operation,  # type: ignore[arg-type]
            record=record,
            previous_record=previous_record,
            event=event,
            occurred_at=occurred_at or coordinator.now(),
        )
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "event"
        raise ValidationError(field, first.get("msg", "invalid value")) from e
    return await coordinator.ingest(domain_event)
