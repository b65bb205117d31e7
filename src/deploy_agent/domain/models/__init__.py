"""Domain models package."""

from deploy_agent.domain.models.base import (
    AggregateRoot,
    DomainEvent,
    generate_id,
    utc_now,
    ValueObject,
    WireModel,
)
from deploy_agent.domain.models.container import (
    BackupMetadata,
    Color,
    color_from_name,
    Container,
    container_name,
    ContainerStatus,
    HealthCheckResult,
    PortAllocation,
    select_next_color,
)


__all__ = [
    "AggregateRoot",
    "BackupMetadata",
    "Color",
    "Container",
    "ContainerStatus",
    "DomainEvent",
    "HealthCheckResult",
    "PortAllocation",
    "ValueObject",
    "WireModel",
    "color_from_name",
    "container_name",
    "generate_id",
    "select_next_color",
    "utc_now",
]
