"""Domain events emitted by the host application, and the outbound wire payload."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .base import utc_now


class Operation(str, Enum):
    """Kind of mutation that committed in the host application."""

    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


# Past-tense verbs used by composite event names ("student.created")
_COMPOSITE_VERBS = {
    Operation.INSERT: "created",
    Operation.UPDATE: "updated",
    Operation.DELETE: "deleted",
}


def singularize(resource: str) -> str:
    """Best-effort singular form of a table name.

    Examples:
        singularize("students") -> "student"
        singularize("agencies") -> "agency"
        singularize("addresses") -> "address"
    """
    name = resource.strip().lower()
    if name.endswith("ies") and len(name) > 3:
        return name[:-3] + "y"
    if name.endswith("sses"):
        return name[:-2]
    if name.endswith("s") and not name.endswith("ss"):
        return name[:-1]
    return name


def composite_event_name(resource: str, operation: Operation) -> str:
    """Composite event name for a resource mutation, e.g. ``student.created``."""
    return f"{singularize(resource)}.{_COMPOSITE_VERBS[operation]}"


class DomainEvent(BaseModel):
    """A committed mutation reported by the host application.

    Not persisted on its own: once accepted, its content travels inside
    each delivery entry's payload.

    Attributes:
        tenant_id: Tenant id or slug the mutation belongs to.
        resource: Table/resource name, e.g. "students".
        operation: insert, update or delete.
        record: Snapshot of the row after the mutation (the deleted row
            for deletes).
        previous_record: Snapshot before an update, if known.
        occurred_at: When the mutation committed.
        event: Explicit event name supplied by the caller, if any.
    """

    model_config = ConfigDict(extra="forbid")

    tenant_id: str = Field(min_length=1)
    resource: str = Field(min_length=1)
    operation: Operation
    record: dict[str, Any] = Field(default_factory=dict)
    previous_record: dict[str, Any] | None = None
    occurred_at: datetime = Field(default_factory=utc_now)
    event: str | None = None

    @field_validator("operation", mode="before")
    @classmethod
    def _lowercase_operation(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("resource")
    @classmethod
    def _normalize_resource(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def record_id(self) -> str | None:
        """Primary key of the affected row, if the snapshots carry one."""
        for snapshot in (self.record, self.previous_record or {}):
            value = snapshot.get("id")
            if value is not None:
                return str(value)
        return None

    def candidate_event_names(self) -> list[str]:
        """Event names a subscription may use to express interest in this event.

        Two naming generations coexist: composite names such as
        ``student.created`` and generic operation names such as ``insert``.
        An explicit name from the caller is checked first.
        """
        names: list[str] = []
        for name in (
            self.event,
            composite_event_name(self.resource, self.operation),
            self.operation.value,
        ):
            if not name:
                continue
            normalized = name.strip().lower()
            if normalized and normalized not in names:
                names.append(normalized)
        return names


class WebhookPayload(BaseModel):
    """JSON body POSTed to subscriber endpoints.

    ``old_record`` is left out of the serialized body when absent.
    """

    model_config = ConfigDict(extra="forbid")

    event: str
    table: str
    operation: Operation
    record: dict[str, Any] = Field(default_factory=dict)
    old_record: dict[str, Any] | None = None
    organization_id: str
    timestamp: datetime

    @classmethod
    def from_event(cls, event: DomainEvent, event_name: str, tenant_id: str) -> "WebhookPayload":
        """Build the wire payload for ``event`` as matched under ``event_name``."""
        return cls(
            event=event_name,
            table=event.resource,
            operation=event.operation,
            record=event.record,
            old_record=event.previous_record,
            organization_id=tenant_id,
            timestamp=event.occurred_at,
        )

    def to_wire(self) -> dict[str, Any]:
        """JSON-compatible dict exactly as sent, without an absent old_record."""
        data = self.model_dump(mode="json")
        if data.get("old_record") is None:
            data.pop("old_record", None)
        return data


__all__ = [
    "DomainEvent",
    "Operation",
    "WebhookPayload",
    "composite_event_name",
    "singularize",
]
