"""Activity log storage: delivery entries and their attempt history.

Besides plain persistence this module owns the two operations that make
concurrent sweep workers safe:

- ``claim_delivery`` moves a due ``retrying`` entry to ``pending`` only if
  nobody else changed it since it was read, then reads the entry back to
  learn whether this caller's token won.
- ``release_stale_claims`` hands entries whose worker vanished mid-attempt
  back to the sweep.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from qdrant_client import models

from courier.models import DeliveryAttempt, DeliveryStatus, WebhookDelivery
from courier.storage.retry import qdrant_retry

logger = logging.getLogger(__name__)


def _match(key: str, value: Any) -> models.FieldCondition:
    return models.FieldCondition(key=key, match=models.MatchValue(value=value))


class DeliveryMixin:
    """Mixin providing activity log operations for CourierStorage."""

    _collection_name: Any
    _point_id: Any
    _to_point: Any
    _payload_to_model: Any
    _tenant_condition: Any
    _scroll_all: Any
    _scroll_ordered: Any
    _count: Any
    _max_scroll_limit: int
    client: Any

    @qdrant_retry
    async def log_delivery(self, delivery: WebhookDelivery) -> str:
        """Store a delivery entry, replacing any previous version.

        Returns:
            The delivery ID.
        """
        await self.client.upsert(
            collection_name=self._collection_name("deliveries"),
            points=[self._to_point(delivery, delivery.id, delivery.tenant_id)],
        )
        return delivery.id

    async def update_delivery(self, delivery: WebhookDelivery) -> str:
        """Persist the new state of an existing delivery entry."""
        return await self.log_delivery(delivery)

    @qdrant_retry
    async def get_delivery(self, tenant_id: str, delivery_id: str) -> WebhookDelivery | None:
        results = await self.client.retrieve(
            collection_name=self._collection_name("deliveries"),
            ids=[self._point_id(delivery_id, tenant_id)],
            with_payload=True,
        )
        if not results or results[0].payload is None:
            return None
        delivery: WebhookDelivery = self._payload_to_model(results[0].payload, WebhookDelivery)
        return delivery

    @qdrant_retry
    async def list_deliveries(
        self,
        tenant_id: str,
        status: DeliveryStatus | None = None,
        event: str | None = None,
        subscription_id: str | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[WebhookDelivery], int]:
        """List a tenant's delivery entries, newest first.

        Args:
            tenant_id: Tenant whose log is read.
            status: Optional status filter.
            event: Optional event name filter.
            subscription_id: Optional subscription filter.
            offset: Entries to skip.
            limit: Maximum entries to return.

        Returns:
            The requested page and the total number of matching entries.
        """
        conditions: list[models.Condition] = [self._tenant_condition(tenant_id)]
        if status is not None:
            conditions.append(_match("status", DeliveryStatus(status).value))
        if event is not None:
            conditions.append(_match("event", event.strip().lower()))
        if subscription_id is not None:
            conditions.append(_match("subscription_id", subscription_id))

        scroll_filter = models.Filter(must=conditions)
        total = await self._count("deliveries", scroll_filter)
        payloads = await self._scroll_ordered(
            "deliveries", scroll_filter, "created_ts", offset=offset, limit=limit
        )
        page = [self._payload_to_model(p, WebhookDelivery) for p in payloads]
        return page, total

    @qdrant_retry
    async def get_due_deliveries(self, now: datetime, limit: int = 100) -> list[WebhookDelivery]:
        """Retrying entries of any tenant whose next attempt is due, earliest first."""
        scroll_filter = models.Filter(
            must=[
                _match("status", DeliveryStatus.RETRYING.value),
                models.FieldCondition(key="next_retry_ts", range=models.Range(lte=now.timestamp())),
            ]
        )
        payloads = await self._scroll_ordered(
            "deliveries", scroll_filter, "next_retry_ts", limit=limit, descending=False
        )
        return [self._payload_to_model(p, WebhookDelivery) for p in payloads]

    @qdrant_retry
    async def claim_delivery(
        self,
        delivery: WebhookDelivery,
        token: str,
        now: datetime,
    ) -> WebhookDelivery | None:
        """Atomically take ownership of a due entry.

        The update only applies while the stored entry is still ``retrying``
        with the attempt count this caller read. Two workers racing for the
        same entry both issue the update; the read-back tells each of them
        whose token ended up stored.

        Returns:
            The claimed entry, or None if another worker got it first.
        """
        collection = self._collection_name("deliveries")
        point_id = self._point_id(delivery.id, delivery.tenant_id)
        stamp = now.isoformat()

        await self.client.set_payload(
            collection_name=collection,
            payload={
                "status": DeliveryStatus.PENDING.value,
                "claim_token": token,
                "claimed_at": stamp,
                "claimed_ts": now.timestamp(),
                "updated_at": stamp,
            },
            points=models.FilterSelector(
                filter=models.Filter(
                    must=[
                        models.HasIdCondition(has_id=[point_id]),
                        _match("status", DeliveryStatus.RETRYING.value),
                        _match("attempt", delivery.attempt),
                    ]
                )
            ),
            wait=True,
        )

        results = await self.client.retrieve(
            collection_name=collection,
            ids=[point_id],
            with_payload=True,
        )
        if not results or results[0].payload is None:
            return None
        if results[0].payload.get("claim_token") != token:
            return None
        claimed: WebhookDelivery = self._payload_to_model(results[0].payload, WebhookDelivery)
        return claimed

    @qdrant_retry
    async def release_stale_claims(self, cutoff: datetime, now: datetime) -> int:
        """Return entries claimed before ``cutoff`` to the retry queue.

        Returns:
            Number of entries released.
        """
        collection = self._collection_name("deliveries")
        stale_conditions: list[models.Condition] = [
            _match("status", DeliveryStatus.PENDING.value),
            models.FieldCondition(key="claimed_ts", range=models.Range(lte=cutoff.timestamp())),
        ]
        stale_filter = models.Filter(must=stale_conditions)

        stale, _ = await self.client.scroll(
            collection_name=collection,
            scroll_filter=stale_filter,
            limit=self._max_scroll_limit,
            with_payload=False,
        )
        if not stale:
            return 0

        stamp = now.isoformat()
        await self.client.set_payload(
            collection_name=collection,
            payload={
                "status": DeliveryStatus.RETRYING.value,
                "claim_token": None,
                "claimed_at": None,
                "claimed_ts": None,
                "next_retry_at": stamp,
                "next_retry_ts": now.timestamp(),
                "updated_at": stamp,
            },
            points=models.FilterSelector(
                filter=models.Filter(
                    must=[models.HasIdCondition(has_id=[r.id for r in stale]), *stale_conditions]
                )
            ),
            wait=True,
        )
        logger.warning("Released %d stale delivery claims older than %s", len(stale), cutoff)
        return len(stale)

    @qdrant_retry
    async def log_attempt(self, attempt: DeliveryAttempt) -> str:
        """Append one HTTP attempt to a delivery's history."""
        await self.client.upsert(
            collection_name=self._collection_name("delivery_attempts"),
            points=[self._to_point(attempt, attempt.id, attempt.tenant_id)],
        )
        return attempt.id

    @qdrant_retry
    async def list_attempts(self, tenant_id: str, delivery_id: str) -> list[DeliveryAttempt]:
        """Attempt history of a delivery, in attempt order."""
        payloads = await self._scroll_all(
            "delivery_attempts",
            models.Filter(
                must=[self._tenant_condition(tenant_id), _match("delivery_id", delivery_id)]
            ),
        )
        attempts = [self._payload_to_model(p, DeliveryAttempt) for p in payloads]
        attempts.sort(key=lambda a: (a.attempt_number, a.created_at))
        return attempts
