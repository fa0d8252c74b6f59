"""Storage backend for Courier.

Persists tenants, subscriptions and the delivery activity log to Qdrant,
isolated per tenant.
"""

from .base import COLLECTION_NAMES
from .client import CourierStorage

__all__ = [
    "COLLECTION_NAMES",
    "CourierStorage",
]
