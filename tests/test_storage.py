"""Unit tests for Courier storage layer.

These tests use qdrant-client's local in-memory mode for fast, isolated testing.
No external Qdrant server is required.
"""

import asyncio
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta

import httpx
import pytest

from courier.exceptions import StorageError
from courier.models import (
    DeliveryAttempt,
    DeliveryStatus,
    Operation,
    Subscription,
    Tenant,
    WebhookDelivery,
    WebhookPayload,
)
from courier.storage import COLLECTION_NAMES, CourierStorage

NOW = datetime(2026, 1, 5, 12, 0, tzinfo=UTC)


def make_subscription(tenant_id: str = "org_1", **overrides) -> Subscription:
    values = {
        "tenant_id": tenant_id,
        "name": "CRM sync",
        "url": "https://crm.example.com/hooks",
        "resources": ["students"],
        "events": ["insert", "student.created"],
    }
    values.update(overrides)
    return Subscription(**values)


def make_delivery(
    tenant_id: str = "org_1",
    status: DeliveryStatus = DeliveryStatus.RETRYING,
    attempt: int = 1,
    next_retry_at: datetime | None = NOW,
    created_at: datetime = NOW,
    **overrides,
) -> WebhookDelivery:
    payload = WebhookPayload(
        event="student.created",
        table="students",
        operation=Operation.INSERT,
        record={"id": "stu_1"},
        organization_id=tenant_id,
        timestamp=created_at,
    )
    values = {
        "subscription_id": "sub_1",
        "tenant_id": tenant_id,
        "event": payload.event,
        "resource": payload.table,
        "operation": payload.operation,
        "payload": payload,
        "status": status,
        "attempt": attempt,
        "next_retry_at": next_retry_at,
        "created_at": created_at,
        "updated_at": created_at,
    }
    values.update(overrides)
    return WebhookDelivery(**values)


class TestCourierStorageInit:
    """Tests for storage initialization."""

    async def test_initialize_creates_collections(self, storage: CourierStorage):
        """initialize() should create all required collections."""
        collections = await storage.client.get_collections()
        names = {c.name for c in collections.collections}

        for kind in COLLECTION_NAMES:
            assert f"test_{kind}" in names

    async def test_ensure_collections_is_idempotent(self, storage: CourierStorage):
        await storage._ensure_collections()
        collections = await storage.client.get_collections()
        assert len(collections.collections) == len(COLLECTION_NAMES)

    async def test_memory_url_initializes_local_client(self):
        store = CourierStorage(url=":memory:", prefix="mem")
        async with store:
            collections = await store.client.get_collections()
            assert {c.name for c in collections.collections} == {
                f"mem_{kind}" for kind in COLLECTION_NAMES
            }
        assert store._client is None

    async def test_unreachable_qdrant_raises_storage_error(self, monkeypatch):
        store = CourierStorage(url=":memory:", prefix="down")

        async def refuse(self):
            raise httpx.ConnectError("connection refused")

        monkeypatch.setattr(CourierStorage, "_ensure_collections", refuse)

        with pytest.raises(StorageError, match="Cannot prepare collections"):
            await store.initialize()

    def test_client_before_initialize_raises(self):
        store = CourierStorage(prefix="test")
        with pytest.raises(RuntimeError, match="not initialized"):
            _ = store.client

    def test_point_ids_are_tenant_scoped(self):
        """The same record id under two tenants maps to two points."""
        store = CourierStorage(prefix="test")
        assert store._point_id("sub_1", "org_1") != store._point_id("sub_1", "org_2")
        assert store._point_id("sub_1", "org_1") == store._point_id("sub_1", "org_1")


class TestTenants:
    """Tests for tenant operations."""

    async def test_get_tenant(self, storage: CourierStorage):
        tenant = await storage.get_tenant("org_1")
        assert tenant is not None
        assert tenant.slug == "acme"

    async def test_get_tenant_by_slug(self, storage: CourierStorage):
        tenant = await storage.get_tenant_by_slug("globex")
        assert tenant is not None
        assert tenant.id == "org_2"

    async def test_resolve_by_id_or_slug(self, storage: CourierStorage):
        by_id = await storage.resolve_tenant("org_1")
        by_slug = await storage.resolve_tenant("ACME")
        assert by_id is not None and by_slug is not None
        assert by_id.id == by_slug.id == "org_1"

    async def test_resolve_unknown(self, storage: CourierStorage):
        assert await storage.resolve_tenant("ghost-org") is None
        assert await storage.resolve_tenant("") is None

    async def test_store_replaces(self, storage: CourierStorage):
        await storage.store_tenant(Tenant(id="org_1", slug="acme-school", name="Acme"))
        assert await storage.get_tenant_by_slug("acme") is None
        tenant = await storage.get_tenant("org_1")
        assert tenant is not None
        assert tenant.slug == "acme-school"


class TestSubscriptions:
    """Tests for subscription operations."""

    async def test_store_and_get(self, storage: CourierStorage):
        subscription = make_subscription()
        await storage.store_subscription(subscription)

        loaded = await storage.get_subscription("org_1", subscription.id)
        assert loaded == subscription

    async def test_get_under_other_tenant_returns_none(self, storage: CourierStorage):
        subscription = make_subscription()
        await storage.store_subscription(subscription)

        assert await storage.get_subscription("org_2", subscription.id) is None

    async def test_list_is_tenant_scoped_and_paginated(self, storage: CourierStorage):
        for i in range(5):
            await storage.store_subscription(
                make_subscription(name=f"sub {i}", created_at=NOW + timedelta(seconds=i))
            )
        await storage.store_subscription(make_subscription("org_2"))

        page, total = await storage.list_subscriptions("org_1", offset=0, limit=2)
        assert total == 5
        assert [s.name for s in page] == ["sub 4", "sub 3"]

        page, total = await storage.list_subscriptions("org_1", offset=4, limit=2)
        assert [s.name for s in page] == ["sub 0"]

    async def test_find_subscriptions(self, storage: CourierStorage):
        wanted = make_subscription()
        other_event = make_subscription(events=["delete"])
        other_resource = make_subscription(resources=["teachers"])
        disabled = make_subscription(enabled=False)
        other_tenant = make_subscription("org_2")
        for sub in (wanted, other_event, other_resource, disabled, other_tenant):
            await storage.store_subscription(sub)

        found = await storage.find_subscriptions("org_1", "students", "insert")
        assert [s.id for s in found] == [wanted.id]

    async def test_delete(self, storage: CourierStorage):
        subscription = make_subscription()
        await storage.store_subscription(subscription)

        assert await storage.delete_subscription("org_2", subscription.id) is False
        assert await storage.delete_subscription("org_1", subscription.id) is True
        assert await storage.get_subscription("org_1", subscription.id) is None
        assert await storage.delete_subscription("org_1", subscription.id) is False


class TestDeliveries:
    """Tests for the activity log."""

    async def test_log_and_get(self, storage: CourierStorage):
        delivery = make_delivery()
        await storage.log_delivery(delivery)

        loaded = await storage.get_delivery("org_1", delivery.id)
        assert loaded == delivery
        assert await storage.get_delivery("org_2", delivery.id) is None

    async def test_update_replaces(self, storage: CourierStorage):
        delivery = make_delivery()
        await storage.log_delivery(delivery)

        delivery.mark_success(NOW, 200, "ok")
        await storage.update_delivery(delivery)

        loaded = await storage.get_delivery("org_1", delivery.id)
        assert loaded is not None
        assert loaded.status == DeliveryStatus.SUCCESS
        assert loaded.next_retry_at is None

    async def test_list_filters_and_orders_newest_first(self, storage: CourierStorage):
        first = make_delivery(created_at=NOW)
        second = make_delivery(created_at=NOW + timedelta(seconds=1), subscription_id="sub_2")
        done = make_delivery(
            created_at=NOW + timedelta(seconds=2),
            status=DeliveryStatus.SUCCESS,
            next_retry_at=None,
        )
        foreign = make_delivery("org_2")
        for d in (first, second, done, foreign):
            await storage.log_delivery(d)

        items, total = await storage.list_deliveries("org_1")
        assert total == 3
        assert [d.id for d in items] == [done.id, second.id, first.id]

        items, total = await storage.list_deliveries("org_1", status=DeliveryStatus.RETRYING)
        assert total == 2
        assert {d.id for d in items} == {first.id, second.id}

        items, _ = await storage.list_deliveries("org_1", subscription_id="sub_2")
        assert [d.id for d in items] == [second.id]

        items, _ = await storage.list_deliveries("org_1", event="Student.Created")
        assert len(items) == 3

        items, total = await storage.list_deliveries("org_1", offset=1, limit=1)
        assert total == 3
        assert [d.id for d in items] == [second.id]

    async def test_get_due_deliveries(self, storage: CourierStorage):
        late = make_delivery(next_retry_at=NOW - timedelta(minutes=5))
        due = make_delivery("org_2", next_retry_at=NOW)
        future = make_delivery(next_retry_at=NOW + timedelta(seconds=1))
        done = make_delivery(status=DeliveryStatus.EXHAUSTED, attempt=3, next_retry_at=None)
        for d in (due, late, future, done):
            await storage.log_delivery(d)

        found = await storage.get_due_deliveries(NOW)
        assert [d.id for d in found] == [late.id, due.id]

        limited = await storage.get_due_deliveries(NOW, limit=1)
        assert [d.id for d in limited] == [late.id]


class TestListingsBeyondScrollLimit:
    """Listings stay ordered and complete when a tenant outgrows one scroll."""

    @pytest.fixture
    async def small_storage(self) -> AsyncIterator[CourierStorage]:
        store = CourierStorage(url=":memory:", prefix="capped", max_scroll_limit=100)
        await store.initialize()
        yield store
        await store.close()

    async def test_delivery_pages(self, small_storage: CourierStorage):
        deliveries = [
            make_delivery(created_at=NOW + timedelta(seconds=i)) for i in range(150)
        ]
        for d in deliveries:
            await small_storage.log_delivery(d)
        newest_first = [d.id for d in reversed(deliveries)]

        items, total = await small_storage.list_deliveries("org_1", offset=0, limit=10)
        assert total == 150
        assert [d.id for d in items] == newest_first[:10]

        items, _ = await small_storage.list_deliveries("org_1", offset=100, limit=30)
        assert [d.id for d in items] == newest_first[100:130]

        items, _ = await small_storage.list_deliveries("org_1", offset=140, limit=20)
        assert [d.id for d in items] == newest_first[140:]

    async def test_due_deliveries_earliest_first(self, small_storage: CourierStorage):
        deliveries = [
            make_delivery(next_retry_at=NOW - timedelta(seconds=i)) for i in range(120)
        ]
        for d in deliveries:
            await small_storage.log_delivery(d)

        found = await small_storage.get_due_deliveries(NOW, limit=5)

        assert [d.id for d in found] == [d.id for d in deliveries[:-6:-1]]

    async def test_subscription_pages(self, small_storage: CourierStorage):
        subscriptions = [
            make_subscription(name=f"sub {i}", created_at=NOW + timedelta(seconds=i))
            for i in range(110)
        ]
        for s in subscriptions:
            await small_storage.store_subscription(s)

        page, total = await small_storage.list_subscriptions("org_1", offset=105, limit=10)

        assert total == 110
        assert [s.name for s in page] == [f"sub {i}" for i in range(4, -1, -1)]


class TestClaims:
    """Tests for the atomic claim used by concurrent sweeps."""

    async def test_claim_moves_entry_to_pending(self, storage: CourierStorage):
        delivery = make_delivery()
        await storage.log_delivery(delivery)

        claimed = await storage.claim_delivery(delivery, "token-a", NOW)

        assert claimed is not None
        assert claimed.status == DeliveryStatus.PENDING
        assert claimed.claim_token == "token-a"
        assert claimed.claimed_at == NOW
        assert await storage.get_due_deliveries(NOW) == []

    async def test_second_claim_loses(self, storage: CourierStorage):
        delivery = make_delivery()
        await storage.log_delivery(delivery)

        assert await storage.claim_delivery(delivery, "token-a", NOW) is not None
        assert await storage.claim_delivery(delivery, "token-b", NOW) is None

        stored = await storage.get_delivery("org_1", delivery.id)
        assert stored is not None
        assert stored.claim_token == "token-a"

    async def test_concurrent_claims_have_one_winner(self, storage: CourierStorage):
        delivery = make_delivery()
        await storage.log_delivery(delivery)

        results = await asyncio.gather(
            *(storage.claim_delivery(delivery, f"token-{i}", NOW) for i in range(5))
        )

        winners = [r for r in results if r is not None]
        assert len(winners) == 1

    async def test_claim_with_stale_snapshot_loses(self, storage: CourierStorage):
        """An entry that moved on since it was read cannot be claimed."""
        delivery = make_delivery(attempt=1)
        await storage.log_delivery(delivery)

        moved = delivery.model_copy(update={"attempt": 2})
        await storage.update_delivery(moved)

        assert await storage.claim_delivery(delivery, "token-a", NOW) is None

    async def test_claim_of_terminal_entry_loses(self, storage: CourierStorage):
        delivery = make_delivery(status=DeliveryStatus.SUCCESS, next_retry_at=None)
        await storage.log_delivery(delivery)

        assert await storage.claim_delivery(delivery, "token-a", NOW) is None

    async def test_release_stale_claims(self, storage: CourierStorage):
        stale = make_delivery(
            status=DeliveryStatus.PENDING,
            claim_token="dead-worker",
            claimed_at=NOW - timedelta(minutes=10),
        )
        fresh = make_delivery(
            status=DeliveryStatus.PENDING,
            claim_token="live-worker",
            claimed_at=NOW - timedelta(seconds=5),
        )
        unclaimed = make_delivery(status=DeliveryStatus.PENDING, next_retry_at=None, attempt=0)
        for d in (stale, fresh, unclaimed):
            await storage.log_delivery(d)

        released = await storage.release_stale_claims(NOW - timedelta(minutes=5), NOW)

        assert released == 1
        reloaded = await storage.get_delivery("org_1", stale.id)
        assert reloaded is not None
        assert reloaded.status == DeliveryStatus.RETRYING
        assert reloaded.claim_token is None
        assert reloaded.next_retry_at == NOW

        still_claimed = await storage.get_delivery("org_1", fresh.id)
        assert still_claimed is not None
        assert still_claimed.status == DeliveryStatus.PENDING
        assert still_claimed.claim_token == "live-worker"

        assert [d.id for d in await storage.get_due_deliveries(NOW)] == [stale.id]

    async def test_release_with_nothing_stale(self, storage: CourierStorage):
        assert await storage.release_stale_claims(NOW, NOW) == 0


class TestAttempts:
    """Tests for attempt history."""

    async def test_log_and_list_in_attempt_order(self, storage: CourierStorage):
        for number in (2, 1, 3):
            await storage.log_attempt(
                DeliveryAttempt(
                    delivery_id="dlv_1",
                    subscription_id="sub_1",
                    tenant_id="org_1",
                    attempt_number=number,
                    ok=number == 3,
                    status_code=200 if number == 3 else 500,
                    created_at=NOW + timedelta(seconds=number),
                )
            )
        await storage.log_attempt(
            DeliveryAttempt(
                delivery_id="dlv_2",
                subscription_id="sub_1",
                tenant_id="org_1",
                attempt_number=1,
                ok=True,
            )
        )

        attempts = await storage.list_attempts("org_1", "dlv_1")
        assert [a.attempt_number for a in attempts] == [1, 2, 3]
        assert [a.ok for a in attempts] == [False, False, True]
        assert await storage.list_attempts("org_2", "dlv_1") == []
