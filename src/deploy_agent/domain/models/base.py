"""Base domain model classes."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel


def generate_id() -> str:
    """Generate a unique identifier."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


class ValueObject(BaseModel):
    """Base class for value objects (immutable)."""

    model_config = {"frozen": True}


class WireModel(ValueObject):
    """Immutable model exchanged with the control plane in camelCase."""

    def to_wire(self) -> dict[str, Any]:
        """Serialize with camelCase keys, dropping unset optionals."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    model_config = {
        "frozen": True,
        "alias_generator": to_camel,
        "populate_by_name": True,
    }


class AggregateRoot(BaseModel):
    """Base class for aggregate roots that emit domain events."""

    id: str = Field(default_factory=generate_id)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    _domain_events: list[DomainEvent] = []

    def __init__(self, **data: Any) -> None:
        super().__init__(**data)
        object.__setattr__(self, "_domain_events", [])

    def touch(self) -> None:
        self.updated_at = utc_now()

    def add_event(self, event: DomainEvent) -> None:
        """Register a domain event."""
        self._domain_events.append(event)

    def collect_events(self) -> list[DomainEvent]:
        """Collect and clear all pending domain events."""
        events = list(self._domain_events)
        self._domain_events.clear()
        return events

    @property
    def pending_events(self) -> list[DomainEvent]:
        """Get pending domain events without clearing."""
        return list(self._domain_events)

    model_config = {"frozen": False, "validate_assignment": True}


class DomainEvent(BaseModel):
    """Base class for domain events."""

    event_id: str = Field(default_factory=generate_id)
    event_type: str = ""
    occurred_at: datetime = Field(default_factory=utc_now)
    correlation_id: str = Field(default_factory=generate_id)
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}
