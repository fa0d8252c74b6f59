"""Tenant storage operations."""

from __future__ import annotations

from typing import Any

from qdrant_client import models

from courier.models import Tenant
from courier.storage.retry import qdrant_retry

# Tenants are their own scope
_TENANT_SCOPE = "tenants"


class TenantMixin:
    """Mixin providing tenant operations for CourierStorage.

    This mixin expects the following attributes/methods from the base class:
    - _collection_name(kind) -> str
    - _point_id(record_id, tenant_id) -> str
    - _to_point(model, record_id, tenant_id) -> PointStruct
    - _payload_to_model(payload, model_class) -> ModelT
    - client: AsyncQdrantClient
    """

    _collection_name: Any
    _point_id: Any
    _to_point: Any
    _payload_to_model: Any
    client: Any

    @qdrant_retry
    async def store_tenant(self, tenant: Tenant) -> str:
        """Store or replace a tenant.

        Returns:
            The tenant ID.
        """
        await self.client.upsert(
            collection_name=self._collection_name("tenants"),
            points=[self._to_point(tenant, tenant.id, _TENANT_SCOPE)],
        )
        return tenant.id

    @qdrant_retry
    async def get_tenant(self, tenant_id: str) -> Tenant | None:
        results = await self.client.retrieve(
            collection_name=self._collection_name("tenants"),
            ids=[self._point_id(tenant_id, _TENANT_SCOPE)],
            with_payload=True,
        )
        if not results or results[0].payload is None:
            return None
        tenant: Tenant = self._payload_to_model(results[0].payload, Tenant)
        return tenant

    @qdrant_retry
    async def get_tenant_by_slug(self, slug: str) -> Tenant | None:
        records, _ = await self.client.scroll(
            collection_name=self._collection_name("tenants"),
            scroll_filter=models.Filter(
                must=[models.FieldCondition(key="slug", match=models.MatchValue(value=slug))]
            ),
            limit=1,
            with_payload=True,
        )
        if not records or records[0].payload is None:
            return None
        tenant: Tenant = self._payload_to_model(records[0].payload, Tenant)
        return tenant

    async def resolve_tenant(self, id_or_slug: str) -> Tenant | None:
        """Find a tenant by its stable id, falling back to its slug."""
        if not id_or_slug:
            return None
        tenant = await self.get_tenant(id_or_slug)
        if tenant is None:
            tenant = await self.get_tenant_by_slug(id_or_slug.strip().lower())
        return tenant
