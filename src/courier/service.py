"""Core Courier service layer.

This module provides the CourierService that wires storage, the
subscription registry, the delivery executor and the dispatch coordinator
into one object.

Example:
    ```python
    from courier.service import CourierService

    async with CourierService.create() as courier:
        await courier.register_tenant("org_1", slug="acme")
        await courier.registry.create(
            "org_1",
            name="CRM",
            url="https://crm.example.com/hooks",
            resources=["students"],
            events=["student.created"],
        )
        delivery_ids = await courier.ingest(
            "acme", "students", "insert", record={"id": "stu_1"}
        )
    ```
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from courier.config import Settings
from courier.exceptions import NotFoundError, ValidationError
from courier.models import DeliveryAttempt, DeliveryStatus, Tenant, WebhookDelivery
from courier.storage import CourierStorage
from courier.webhooks import (
    AttemptResult,
    DeliveryExecutor,
    DispatchCoordinator,
    SubscriptionRegistry,
    SweepRunner,
    ingest_event,
)
from courier.webhooks.coordinator import Clock

logger = logging.getLogger(__name__)


@dataclass
class DeliveryPage:
    """One page of a tenant's activity log."""

    items: list[WebhookDelivery]
    total: int
    page: int
    page_size: int

    @property
    def has_more(self) -> bool:
        return self.page * self.page_size < self.total


@dataclass
class DeliveryDetail:
    """An activity log entry with its attempt history."""

    delivery: WebhookDelivery
    attempts: list[DeliveryAttempt] = field(default_factory=list)


@dataclass
class CourierService:
    """High-level Courier service.

    Attributes:
        storage: Storage backend (Qdrant).
        registry: Tenant-scoped subscription CRUD and matching.
        executor: Outbound HTTP delivery.
        coordinator: Fan-out, retries and the sweep.
        settings: Configuration settings.
    """

    storage: CourierStorage
    registry: SubscriptionRegistry
    executor: DeliveryExecutor
    coordinator: DispatchCoordinator
    settings: Settings

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Clock | None = None,
        storage: CourierStorage | None = None,
    ) -> CourierService:
        """Create a CourierService with default dependencies.

        Args:
            settings: Optional settings. Uses environment if None.
            transport: Optional httpx transport for outbound requests.
            clock: Optional clock for the coordinator.
            storage: Optional pre-built storage.

        Returns:
            Configured CourierService instance.
        """
        if settings is None:
            settings = Settings()

        if storage is None:
            storage = CourierStorage(
                url=settings.qdrant_url,
                api_key=settings.qdrant_api_key,
                prefix=settings.collection_prefix,
                max_scroll_limit=settings.storage_max_scroll_limit,
            )
        registry = SubscriptionRegistry(storage, default_retry_policy=settings.retry_defaults)
        executor = DeliveryExecutor(
            timeout_seconds=settings.delivery_timeout_seconds,
            response_body_limit=settings.response_body_limit,
            user_agent=settings.user_agent,
            transport=transport,
        )
        coordinator = DispatchCoordinator(
            storage, registry, executor, settings=settings, clock=clock
        )

        return cls(
            storage=storage,
            registry=registry,
            executor=executor,
            coordinator=coordinator,
            settings=settings,
        )

    async def initialize(self) -> None:
        """Initialize the service (storage collections, etc.)."""
        await self.storage.initialize()

    async def close(self) -> None:
        """Clean up resources."""
        await self.storage.close()

    async def __aenter__(self) -> CourierService:
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    def sweep_runner(self) -> SweepRunner:
        """A sweep runner for this service's coordinator."""
        return SweepRunner(self.coordinator, interval_seconds=self.settings.sweep_interval_seconds)

    async def register_tenant(self, tenant_id: str, slug: str, name: str = "") -> Tenant:
        """Register a tenant, or update the slug and name of a known one.

        Raises:
            ValidationError: If the slug is malformed or taken by another tenant.
        """
        slug = slug.strip().lower()
        owner = await self.storage.get_tenant_by_slug(slug)
        if owner is not None and owner.id != tenant_id:
            raise ValidationError("slug", f"already used by another tenant: {slug}")

        existing = await self.storage.get_tenant(tenant_id)
        data: dict[str, Any] = {"id": tenant_id, "slug": slug, "name": name}
        if existing is not None:
            data["created_at"] = existing.created_at

        try:
            tenant = Tenant.model_validate(data)
        except PydanticValidationError as e:
            first = e.errors()[0]
            field_name = ".".join(str(part) for part in first.get("loc", ())) or "tenant"
            raise ValidationError(field_name, first.get("msg", "invalid value")) from e

        await self.storage.store_tenant(tenant)
        logger.info("Registered tenant %s (slug %s)", tenant.id, tenant.slug)
        return tenant

    async def resolve_tenant(self, id_or_slug: str) -> Tenant | None:
        """Find a tenant by id or slug."""
        return await self.storage.resolve_tenant(id_or_slug)

    async def ingest(
        self,
        tenant_id: str,
        resource: str,
        operation: str,
        record: dict[str, Any],
        previous_record: dict[str, Any] | None = None,
        event: str | None = None,
        occurred_at: datetime | None = None,
    ) -> list[str]:
        """Report a committed mutation.

        Returns:
            IDs of the activity log entries created.

        Raises:
            ValidationError: If the event fields are malformed. Delivery
                problems never raise.
        """
        return await ingest_event(
            self.coordinator,
            tenant_id=tenant_id,
            resource=resource,
            operation=operation,
            record=record,
            previous_record=previous_record,
            event=event,
            occurred_at=occurred_at,
        )

    async def run_sweep(self) -> int:
        """Run the retry sweep once."""
        return await self.coordinator.run_due_retries()

    async def list_deliveries(
        self,
        tenant_id: str,
        status: DeliveryStatus | str | None = None,
        event: str | None = None,
        subscription_id: str | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> DeliveryPage:
        """List a tenant's activity log, newest first.

        Raises:
            ValidationError: If the status or pagination is invalid.
        """
        if page < 1:
            raise ValidationError("page", "must be >= 1")
        if not 1 <= page_size <= 200:
            raise ValidationError("page_size", "must be between 1 and 200")
        try:
            status_filter = DeliveryStatus(status) if status is not None else None
        except ValueError as e:
            raise ValidationError("status", f"unknown status: {status}") from e

        items, total = await self.storage.list_deliveries(
            tenant_id,
            status=status_filter,
            event=event,
            subscription_id=subscription_id,
            offset=(page - 1) * page_size,
            limit=page_size,
        )
        return DeliveryPage(items=items, total=total, page=page, page_size=page_size)

    async def get_delivery(self, tenant_id: str, delivery_id: str) -> DeliveryDetail:
        """Get an activity log entry with its attempt history.

        Raises:
            NotFoundError: If the tenant has no such entry.
        """
        delivery = await self.storage.get_delivery(tenant_id, delivery_id)
        if delivery is None:
            raise NotFoundError("delivery", delivery_id)
        attempts = await self.storage.list_attempts(tenant_id, delivery_id)
        return DeliveryDetail(delivery=delivery, attempts=attempts)

    async def send_test(
        self,
        tenant_id: str,
        subscription_id: str,
        url: str | None = None,
    ) -> AttemptResult:
        """Send a sample payload to a subscription without logging it.

        Raises:
            NotFoundError: If the tenant has no such subscription.
            ValidationError: If the override URL is invalid.
            ConfigurationError: If the subscription's body template is malformed.
        """
        subscription = await self.registry.get_by_id(tenant_id, subscription_id)
        return await self.executor.send_test(subscription, url=url)


__all__ = ["CourierService", "DeliveryDetail", "DeliveryPage"]
