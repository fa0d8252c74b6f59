"""Subscription storage operations.

Every operation is scoped to a tenant: the tenant is part of the point key
and of every filter, so one tenant can never read another's endpoints.
"""

from __future__ import annotations

from typing import Any

from qdrant_client import models

from courier.models import Subscription
from courier.storage.retry import qdrant_retry


class SubscriptionMixin:
    """Mixin providing subscription operations for CourierStorage."""

    _collection_name: Any
    _point_id: Any
    _to_point: Any
    _payload_to_model: Any
    _tenant_condition: Any
    _scroll_all: Any
    _scroll_ordered: Any
    _count: Any
    client: Any

    @qdrant_retry
    async def store_subscription(self, subscription: Subscription) -> str:
        """Store or replace a subscription.

        Returns:
            The subscription ID.
        """
        await self.client.upsert(
            collection_name=self._collection_name("subscriptions"),
            points=[self._to_point(subscription, subscription.id, subscription.tenant_id)],
        )
        return subscription.id

    @qdrant_retry
    async def get_subscription(self, tenant_id: str, subscription_id: str) -> Subscription | None:
        results = await self.client.retrieve(
            collection_name=self._collection_name("subscriptions"),
            ids=[self._point_id(subscription_id, tenant_id)],
            with_payload=True,
        )
        if not results or results[0].payload is None:
            return None
        subscription: Subscription = self._payload_to_model(results[0].payload, Subscription)
        return subscription

    @qdrant_retry
    async def list_subscriptions(
        self,
        tenant_id: str,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[Subscription], int]:
        """List a tenant's subscriptions, newest first.

        Returns:
            The requested page and the tenant's total subscription count.
        """
        scroll_filter = models.Filter(must=[self._tenant_condition(tenant_id)])
        total = await self._count("subscriptions", scroll_filter)
        payloads = await self._scroll_ordered(
            "subscriptions", scroll_filter, "created_ts", offset=offset, limit=limit
        )
        page = [self._payload_to_model(p, Subscription) for p in payloads]
        return page, total

    @qdrant_retry
    async def find_subscriptions(
        self,
        tenant_id: str,
        resource: str,
        event: str,
    ) -> list[Subscription]:
        """Enabled subscriptions of a tenant listing both resource and event."""
        scroll_filter = models.Filter(
            must=[
                self._tenant_condition(tenant_id),
                models.FieldCondition(key="enabled", match=models.MatchValue(value=True)),
                models.FieldCondition(key="resources", match=models.MatchValue(value=resource)),
                models.FieldCondition(key="events", match=models.MatchValue(value=event)),
            ]
        )
        payloads = await self._scroll_all("subscriptions", scroll_filter)
        subscriptions = [self._payload_to_model(p, Subscription) for p in payloads]
        subscriptions.sort(key=lambda s: s.created_at)
        return subscriptions

    @qdrant_retry
    async def delete_subscription(self, tenant_id: str, subscription_id: str) -> bool:
        """Delete a subscription.

        Returns:
            True if deleted, False if the tenant has no such subscription.
        """
        point_id = self._point_id(subscription_id, tenant_id)
        collection = self._collection_name("subscriptions")

        existing = await self.client.retrieve(collection_name=collection, ids=[point_id])
        if not existing:
            return False

        await self.client.delete(
            collection_name=collection,
            points_selector=models.PointIdsList(points=[point_id]),
        )
        return True
