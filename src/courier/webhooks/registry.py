"""Subscription registry: tenant-scoped CRUD and event matching."""

from __future__ import annotations

import builtins
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError as PydanticValidationError

from courier.exceptions import ConfigurationError, NotFoundError, ValidationError
from courier.models import RetryPolicy, Subscription, utc_now

from .template import parse_body_template

if TYPE_CHECKING:
    from courier.storage import CourierStorage

logger = logging.getLogger(__name__)

# Fields a caller may change after creation
UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "url",
        "enabled",
        "resources",
        "events",
        "secret",
        "bearer_token",
        "body_template",
        "retry_policy",
    }
)

# Fields where an explicit None clears the value; elsewhere None means "unchanged"
CLEARABLE_FIELDS = frozenset({"bearer_token", "body_template"})


@dataclass
class SubscriptionPage:
    """One page of a tenant's subscriptions."""

    items: builtins.list[Subscription]
    total: int
    page: int
    page_size: int

    @property
    def has_more(self) -> bool:
        return self.page * self.page_size < self.total


def _to_validation_error(error: PydanticValidationError) -> ValidationError:
    first = error.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", ())) or "subscription"
    return ValidationError(field, first.get("msg", "invalid value"))


def _check_body_template(template: str | None) -> None:
    if template is None:
        return
    try:
        parse_body_template(template)
    except ConfigurationError as e:
        raise ValidationError("body_template", e.message) from e


class SubscriptionRegistry:
    """Create, read, update, delete and match subscriptions.

    Every operation takes the caller's tenant. A subscription that exists
    under another tenant is reported as not found.

    Example:
        ```python
        registry = SubscriptionRegistry(storage)
        sub = await registry.create(
            "org_1",
            name="CRM sync",
            url="https://crm.example.com/hooks",
            resources=["students"],
            events=["insert", "student.created"],
        )
        matches = await registry.find_matching("org_1", "students", "insert")
        ```
    """

    def __init__(
        self,
        storage: CourierStorage,
        default_retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._storage = storage
        self._default_retry_policy = default_retry_policy or RetryPolicy()

    async def create(
        self,
        tenant_id: str,
        *,
        name: str,
        url: str,
        resources: builtins.list[str] | None = None,
        events: builtins.list[str] | None = None,
        enabled: bool = True,
        secret: str | None = None,
        bearer_token: str | None = None,
        body_template: str | None = None,
        retry_policy: RetryPolicy | dict[str, Any] | None = None,
    ) -> Subscription:
        """Register a new subscription for a tenant.

        Args:
            tenant_id: Owning tenant (id or slug).
            name: Display name.
            url: Absolute http(s) endpoint URL.
            resources: Resource names of interest.
            events: Event names of interest.
            enabled: Whether the subscription matches events.
            secret: Signing secret. None generates one; "" disables signing.
            bearer_token: Optional bearer token sent with every request.
            body_template: Optional JSON object template for the body.
            retry_policy: Retry policy; defaults to the configured defaults.

        Returns:
            The stored subscription.

        Raises:
            NotFoundError: If the tenant is unknown.
            ValidationError: If any field is invalid.
        """
        tenant = await self._storage.resolve_tenant(tenant_id)
        if tenant is None:
            raise NotFoundError("tenant", tenant_id)

        _check_body_template(body_template)

        fields: dict[str, Any] = {
            "tenant_id": tenant.id,
            "name": name,
            "url": url,
            "enabled": enabled,
            "resources": resources or [],
            "events": events or [],
            "bearer_token": bearer_token,
            "body_template": body_template,
            "retry_policy": retry_policy or self._default_retry_policy,
        }
        if secret is not None:
            fields["secret"] = secret

        try:
            subscription = Subscription.model_validate(fields)
        except PydanticValidationError as e:
            raise _to_validation_error(e) from e

        await self._storage.store_subscription(subscription)
        logger.info(
            "Created subscription %s for tenant %s (%s)",
            subscription.id,
            subscription.tenant_id,
            subscription.url,
        )
        return subscription

    async def get_by_id(self, tenant_id: str, subscription_id: str) -> Subscription:
        """Get a tenant's subscription.

        Raises:
            NotFoundError: If the tenant has no such subscription.
        """
        subscription = await self._storage.get_subscription(tenant_id, subscription_id)
        if subscription is None:
            raise NotFoundError("subscription", subscription_id)
        return subscription

    async def update(
        self, tenant_id: str, subscription_id: str, /, **changes: Any
    ) -> Subscription:
        """Apply a partial update to a tenant's subscription.

        Raises:
            NotFoundError: If the tenant has no such subscription.
            ValidationError: If a field is unknown or the result is invalid.
        """
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(sorted(unknown)[0], "field cannot be updated")

        subscription = await self.get_by_id(tenant_id, subscription_id)

        applied = {
            key: value
            for key, value in changes.items()
            if value is not None or key in CLEARABLE_FIELDS
        }
        if "body_template" in applied:
            _check_body_template(applied["body_template"])

        data = subscription.model_dump()
        data.update(applied)
        data["updated_at"] = utc_now()

        try:
            updated = Subscription.model_validate(data)
        except PydanticValidationError as e:
            raise _to_validation_error(e) from e

        await self._storage.store_subscription(updated)
        logger.info(
            "Updated subscription %s for tenant %s: %s",
            subscription_id,
            tenant_id,
            ", ".join(sorted(applied)) or "no changes",
        )
        return updated

    async def delete(self, tenant_id: str, subscription_id: str) -> None:
        """Delete a tenant's subscription.

        Raises:
            NotFoundError: If the tenant has no such subscription.
        """
        deleted = await self._storage.delete_subscription(tenant_id, subscription_id)
        if not deleted:
            raise NotFoundError("subscription", subscription_id)
        logger.info("Deleted subscription %s for tenant %s", subscription_id, tenant_id)

    async def list(self, tenant_id: str, page: int = 1, page_size: int = 50) -> SubscriptionPage:
        """List a tenant's subscriptions, newest first."""
        if page < 1:
            raise ValidationError("page", "must be >= 1")
        if not 1 <= page_size <= 200:
            raise ValidationError("page_size", "must be between 1 and 200")

        items, total = await self._storage.list_subscriptions(
            tenant_id,
            offset=(page - 1) * page_size,
            limit=page_size,
        )
        return SubscriptionPage(items=items, total=total, page=page, page_size=page_size)

    async def find_matching(
        self,
        tenant_id: str,
        resource: str,
        event: str,
    ) -> builtins.list[Subscription]:
        """Enabled subscriptions of a tenant that want ``event`` on ``resource``."""
        resource = resource.strip().lower()
        event = event.strip().lower()
        if not resource or not event:
            return []
        candidates = await self._storage.find_subscriptions(tenant_id, resource, event)
        return [
            s for s in candidates if s.tenant_id == tenant_id and s.subscribes_to(resource, event)
        ]
