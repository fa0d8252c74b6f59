"""Base storage class and helpers.

Contains client lifecycle, collection management and the conversion
between Courier models and Qdrant points.
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Any, TypeVar

from pydantic import BaseModel
from qdrant_client import AsyncQdrantClient, models

from courier.config import settings
from courier.exceptions import StorageError
from courier.storage.retry import TRANSIENT_ERRORS, qdrant_retry

ModelT = TypeVar("ModelT", bound=BaseModel)

# Collection suffix -> payload indexes created with it
COLLECTION_INDEXES: dict[str, dict[str, models.PayloadSchemaType]] = {
    "tenants": {
        "slug": models.PayloadSchemaType.KEYWORD,
    },
    "subscriptions": {
        "tenant_id": models.PayloadSchemaType.KEYWORD,
        "enabled": models.PayloadSchemaType.BOOL,
        "resources": models.PayloadSchemaType.KEYWORD,
        "events": models.PayloadSchemaType.KEYWORD,
        "created_ts": models.PayloadSchemaType.FLOAT,
    },
    "deliveries": {
        "tenant_id": models.PayloadSchemaType.KEYWORD,
        "subscription_id": models.PayloadSchemaType.KEYWORD,
        "status": models.PayloadSchemaType.KEYWORD,
        "event": models.PayloadSchemaType.KEYWORD,
        "attempt": models.PayloadSchemaType.INTEGER,
        "next_retry_ts": models.PayloadSchemaType.FLOAT,
        "claimed_ts": models.PayloadSchemaType.FLOAT,
        "created_ts": models.PayloadSchemaType.FLOAT,
    },
    "delivery_attempts": {
        "tenant_id": models.PayloadSchemaType.KEYWORD,
        "delivery_id": models.PayloadSchemaType.KEYWORD,
        "created_ts": models.PayloadSchemaType.FLOAT,
    },
}

COLLECTION_NAMES = tuple(COLLECTION_INDEXES)

# Epoch-second copies of datetime fields, used for range filters and ordering
TIMESTAMP_FIELDS = {
    "created_at": "created_ts",
    "next_retry_at": "next_retry_ts",
    "claimed_at": "claimed_ts",
}

# Records carry no embedding; every point gets the same one-dimensional vector
PLACEHOLDER_VECTOR = [0.0]


def to_timestamp(value: datetime | None) -> float | None:
    return value.timestamp() if value is not None else None


class StorageBase:
    """Base class for Courier storage with initialization and helpers.

    Provides:
    - Client initialization and lifecycle management
    - Collection creation and indexing
    - Tenant-scoped keys and point ID conversion
    - Payload serialization/deserialization
    """

    def __init__(
        self,
        url: str | None = None,
        api_key: str | None = None,
        prefix: str | None = None,
        max_scroll_limit: int | None = None,
    ) -> None:
        """Initialize storage client.

        Args:
            url: Qdrant server URL. Defaults to settings.qdrant_url.
            api_key: Qdrant API key. Defaults to settings.qdrant_api_key.
            prefix: Collection name prefix. Defaults to settings.collection_prefix.
            max_scroll_limit: Upper bound on records read by one listing.
        """
        self._url = url or settings.qdrant_url
        self._api_key = api_key or settings.qdrant_api_key
        self._prefix = prefix or settings.collection_prefix
        self._max_scroll_limit = max_scroll_limit or settings.storage_max_scroll_limit
        self._client: AsyncQdrantClient | None = None
        self._collections_initialized = False

    @property
    def client(self) -> AsyncQdrantClient:
        """Get the Qdrant client, raising if not initialized."""
        if self._client is None:
            raise RuntimeError("Storage not initialized. Call initialize() first.")
        return self._client

    async def initialize(self) -> None:
        """Connect to Qdrant and ensure collections exist.

        Raises:
            StorageError: If Qdrant stays unreachable after retries.
        """
        if self._url == ":memory:":
            self._client = AsyncQdrantClient(location=":memory:")
        else:
            self._client = AsyncQdrantClient(url=self._url, api_key=self._api_key)
        try:
            await self._ensure_collections()
        except TRANSIENT_ERRORS as e:
            raise StorageError(f"Cannot prepare collections at {self._url}: {e}") from e
        self._collections_initialized = True

    async def close(self) -> None:
        """Close the storage client connection."""
        if self._client is not None:
            await self._client.close()
            self._client = None
            self._collections_initialized = False

    def _collection_name(self, kind: str) -> str:
        """Get full collection name with prefix."""
        return f"{self._prefix}_{kind}"

    @staticmethod
    def _build_key(record_id: str, tenant_id: str) -> str:
        """Build a tenant-scoped storage key: ``{tenant_id}/{record_id}``.

        A record looked up under the wrong tenant hashes to a different
        point and is simply not found.
        """
        return f"{tenant_id}/{record_id}"

    @staticmethod
    def _key_to_point_id(key: str) -> str:
        """Convert a storage key to a deterministic UUID-format point ID."""
        h = hashlib.sha256(key.encode()).hexdigest()[:32]
        return f"{h[:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"

    def _point_id(self, record_id: str, tenant_id: str) -> str:
        return self._key_to_point_id(self._build_key(record_id, tenant_id))

    @qdrant_retry
    async def _ensure_collections(self) -> None:
        """Ensure all required collections exist with their indexes."""
        collections = await self.client.get_collections()
        existing = {c.name for c in collections.collections}

        for kind in COLLECTION_NAMES:
            collection_name = self._collection_name(kind)
            if collection_name in existing:
                continue
            await self.client.create_collection(
                collection_name=collection_name,
                vectors_config=models.VectorParams(
                    size=len(PLACEHOLDER_VECTOR),
                    distance=models.Distance.DOT,
                ),
            )
            await self._create_indexes(kind)

    async def _create_indexes(self, kind: str) -> None:
        """Create payload indexes for efficient filtering."""
        collection_name = self._collection_name(kind)
        for field_name, schema in COLLECTION_INDEXES[kind].items():
            await self.client.create_payload_index(
                collection_name=collection_name,
                field_name=field_name,
                field_schema=schema,
            )

    def _to_point(self, model: BaseModel, record_id: str, tenant_id: str) -> models.PointStruct:
        return models.PointStruct(
            id=self._point_id(record_id, tenant_id),
            vector=PLACEHOLDER_VECTOR,
            payload=self._model_to_payload(model),
        )

    @staticmethod
    def _model_to_payload(model: BaseModel) -> dict[str, Any]:
        """Convert a model to a Qdrant payload, adding epoch-second fields."""
        data = model.model_dump(mode="json")
        for field_name, ts_field in TIMESTAMP_FIELDS.items():
            if field_name in data:
                data[ts_field] = to_timestamp(getattr(model, field_name))
        return data

    @staticmethod
    def _payload_to_model(payload: dict[str, Any], model_class: type[ModelT]) -> ModelT:
        """Convert a Qdrant payload back to a model."""
        data = dict(payload)
        for ts_field in TIMESTAMP_FIELDS.values():
            data.pop(ts_field, None)
        return model_class.model_validate(data)

    @staticmethod
    def _tenant_condition(tenant_id: str) -> models.FieldCondition:
        return models.FieldCondition(key="tenant_id", match=models.MatchValue(value=tenant_id))

    async def _scroll_all(
        self,
        kind: str,
        scroll_filter: models.Filter,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Read matching payloads page by page, up to the scroll limit."""
        cap = min(limit or self._max_scroll_limit, self._max_scroll_limit)
        payloads: list[dict[str, Any]] = []
        offset: Any = None

        while len(payloads) < cap:
            records, offset = await self.client.scroll(
                collection_name=self._collection_name(kind),
                scroll_filter=scroll_filter,
                limit=min(256, cap - len(payloads)),
                offset=offset,
                with_payload=True,
                with_vectors=False,
            )
            payloads.extend(r.payload for r in records if r.payload is not None)
            if offset is None:
                break

        return payloads

    async def _scroll_ordered(
        self,
        kind: str,
        scroll_filter: models.Filter,
        order_key: str,
        offset: int = 0,
        limit: int = 50,
        descending: bool = True,
    ) -> list[dict[str, Any]]:
        """Read one page of matching payloads ordered by an indexed float field.

        Qdrant sorts with the payload index. Ordered scrolls take no point
        offset, so the page is cut from the first ``offset + limit`` rows.
        """
        direction = models.Direction.DESC if descending else models.Direction.ASC
        records, _ = await self.client.scroll(
            collection_name=self._collection_name(kind),
            scroll_filter=scroll_filter,
            limit=offset + limit,
            order_by=models.OrderBy(key=order_key, direction=direction),
            with_payload=True,
            with_vectors=False,
        )
        payloads = [r.payload for r in records if r.payload is not None]
        return payloads[offset : offset + limit]

    async def _count(self, kind: str, count_filter: models.Filter) -> int:
        result = await self.client.count(
            collection_name=self._collection_name(kind),
            count_filter=count_filter,
            exact=True,
        )
        return result.count
