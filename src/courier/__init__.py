"""Courier: multitenant outbound webhook delivery.

Delivers domain events from a host application (row inserts, updates and
deletes) to the HTTP endpoints each tenant subscribed, signed with HMAC,
logged per attempt and retried with exponential backoff.

Quick Start:
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
        await courier.ingest("acme", "students", "insert", record={"id": "stu_1"})

Delivery states:
    - pending: created, or claimed by a worker and in flight
    - retrying: failed, waiting for its next attempt
    - success, exhausted, failed: terminal
"""

__version__ = "0.1.0"

# Configuration
from .config import Settings, settings

# Exceptions
from .exceptions import (
    AuthenticationError,
    AuthorizationError,
    ConfigurationError,
    CourierError,
    NotFoundError,
    StorageError,
    TransportError,
    ValidationError,
)

# Logging
from .logging import (
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)

# Models
from .models import (
    DeliveryAttempt,
    DeliveryStatus,
    DomainEvent,
    Operation,
    RetryPolicy,
    Subscription,
    Tenant,
    WebhookDelivery,
    WebhookPayload,
)

__all__ = [
    "__version__",
    # Configuration
    "Settings",
    "settings",
    # Exceptions
    "AuthenticationError",
    "AuthorizationError",
    "ConfigurationError",
    "CourierError",
    "NotFoundError",
    "StorageError",
    "TransportError",
    "ValidationError",
    # Logging
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
    "unbind_context",
    # Models
    "DeliveryAttempt",
    "DeliveryStatus",
    "DomainEvent",
    "Operation",
    "RetryPolicy",
    "Subscription",
    "Tenant",
    "WebhookDelivery",
    "WebhookPayload",
]
