"""Qdrant storage client for Courier.

This module provides the CourierStorage class that combines all storage
operations through mixins.

Example:
    ```python
    from courier.storage import CourierStorage

    async with CourierStorage() as storage:
        await storage.store_subscription(subscription)
        due = await storage.get_due_deliveries(now, limit=100)
    ```
"""

from __future__ import annotations

from typing import Any

from .base import StorageBase
from .deliveries import DeliveryMixin
from .subscriptions import SubscriptionMixin
from .tenants import TenantMixin


class CourierStorage(TenantMixin, SubscriptionMixin, DeliveryMixin, StorageBase):
    """Async Qdrant storage for tenants, subscriptions and the activity log.

    This class combines functionality from multiple mixins:
    - TenantMixin: store_tenant, get_tenant, get_tenant_by_slug, resolve_tenant
    - SubscriptionMixin: store/get/list/find/delete subscriptions
    - DeliveryMixin: delivery entries, attempt history, due queue and claims

    Attributes:
        client: Async Qdrant client instance.
    """

    async def __aenter__(self) -> CourierStorage:
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()
