"""Tenant model.

A tenant is one organization of the host application. The engine only
needs to know that it exists and how callers may refer to it (stable id
or URL slug).
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from .base import utc_now


class Tenant(BaseModel):
    """A known organization that may own subscriptions.

    Attributes:
        id: Stable identifier, unchanged by renames.
        slug: URL-friendly alias, also accepted when resolving.
        name: Display name.
        created_at: When the tenant was registered with the engine.
    """

    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1, description="Stable tenant identifier")
    slug: str = Field(
        min_length=1,
        pattern=r"^[a-z0-9][a-z0-9_-]*$",
        description="URL-friendly alias",
    )
    name: str = Field(default="", description="Display name")
    created_at: datetime = Field(default_factory=utc_now)


__all__ = ["Tenant"]
