"""Webhook delivery engine for Courier.

Provides HMAC-signed delivery of domain events to tenant subscriptions,
with an activity log and exponential backoff retries.

Example:
    ```python
    from courier.webhooks import (
        DeliveryExecutor,
        DispatchCoordinator,
        SubscriptionRegistry,
        ingest_event,
    )

    registry = SubscriptionRegistry(storage)
    coordinator = DispatchCoordinator(storage, registry, DeliveryExecutor())

    await ingest_event(
        coordinator,
        tenant_id="org_1",
        resource="students",
        operation="insert",
        record={"id": "stu_1", "name": "Ada"},
    )
    await coordinator.run_due_retries()
    ```
"""

from .coordinator import DispatchCoordinator, compute_backoff_delay, ingest_event
from .executor import AttemptResult, DeliveryExecutor
from .registry import SubscriptionPage, SubscriptionRegistry
from .signature import sign, signature_headers, verify
from .sweep import SweepRunner

__all__ = [
    "AttemptResult",
    "DeliveryExecutor",
    "DispatchCoordinator",
    "SubscriptionPage",
    "SubscriptionRegistry",
    "SweepRunner",
    "compute_backoff_delay",
    "ingest_event",
    "sign",
    "signature_headers",
    "verify",
]
