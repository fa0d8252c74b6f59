"""Courier data models."""

from .base import generate_id, utc_now
from .delivery import DeliveryAttempt, DeliveryStatus, WebhookDelivery
from .event import DomainEvent, Operation, WebhookPayload, composite_event_name, singularize
from .subscription import RetryPolicy, Subscription, generate_secret
from .tenant import Tenant

__all__ = [
    "DeliveryAttempt",
    "DeliveryStatus",
    "DomainEvent",
    "Operation",
    "RetryPolicy",
    "Subscription",
    "Tenant",
    "WebhookDelivery",
    "WebhookPayload",
    "composite_event_name",
    "generate_id",
    "generate_secret",
    "singularize",
]
