"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import sys
from collections.abc import AsyncIterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import httpx
import pytest
from qdrant_client import AsyncQdrantClient

from courier.config import Settings
from courier.models import Tenant
from courier.service import CourierService
from courier.storage import CourierStorage

# Add tests directory to path so helpers can be imported
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))


class FakeClock:
    """Manually advanced clock for deterministic retry schedules."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 5, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


class RecordingEndpoint:
    """Subscriber endpoint double that records every request it receives.

    Use ``transport`` as the executor's httpx transport. Change
    ``status_code`` or ``body`` between calls to simulate an endpoint
    that recovers or breaks.
    """

    def __init__(self, status_code: int = 200, body: str = "ok") -> None:
        self.status_code = status_code
        self.body = body
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, text=self.body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def make_settings(**overrides: object) -> Settings:
    """Test settings on in-memory storage."""
    values: dict[str, object] = {
        "env": "test",
        "qdrant_url": ":memory:",
        "collection_prefix": "test",
        "log_format": "text",
    }
    values.update(overrides)
    return Settings(**values)  # type: ignore[arg-type]


async def make_service(
    settings: Settings,
    endpoint: RecordingEndpoint,
    clock: FakeClock,
) -> CourierService:
    """Initialized service with tenant ``org_1`` (slug ``acme``) registered."""
    service = CourierService.create(settings, transport=endpoint.transport, clock=clock)
    await service.initialize()
    await service.register_tenant("org_1", slug="acme", name="Acme School")
    await service.register_tenant("org_2", slug="globex", name="Globex Academy")
    return service


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def endpoint() -> RecordingEndpoint:
    return RecordingEndpoint()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
async def storage() -> AsyncIterator[CourierStorage]:
    """Create an in-memory storage instance for testing.

    Uses qdrant-client's local mode with in-memory storage.
    """
    store = CourierStorage(prefix="test")
    # Override with in-memory client
    store._client = AsyncQdrantClient(location=":memory:")
    await store._ensure_collections()
    store._collections_initialized = True

    await store.store_tenant(Tenant(id="org_1", slug="acme", name="Acme School"))
    await store.store_tenant(Tenant(id="org_2", slug="globex", name="Globex Academy"))

    yield store

    await store.close()


@pytest.fixture
async def service(
    settings: Settings,
    endpoint: RecordingEndpoint,
    clock: FakeClock,
) -> AsyncIterator[CourierService]:
    svc = await make_service(settings, endpoint, clock)
    yield svc
    await svc.close()
