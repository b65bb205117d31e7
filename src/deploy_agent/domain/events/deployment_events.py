"""Deployment domain events."""

from __future__ import annotations

from deploy_agent.domain.models.base import DomainEvent


class DeploymentStarted(DomainEvent):
    """Emitted when a rollout acquires its lock."""

    deployment_id: str
    service_name: str
    environment: str
    event_type: str = "deployment.started"


class DeploymentStageChanged(DomainEvent):
    """Emitted on every state machine transition."""

    deployment_id: str
    from_stage: str
    to_stage: str
    event_type: str = "deployment.stage_changed"


class DeploymentSucceeded(DomainEvent):
    """Emitted when traffic has moved to the new container."""

    deployment_id: str
    container_name: str
    host_port: int | None = None
    degraded: bool = False
    event_type: str = "deployment.succeeded"


class DeploymentFailed(DomainEvent):
    """Emitted when a rollout fails."""

    deployment_id: str
    error_message: str
    event_type: str = "deployment.failed"


class DeploymentRollbackStarted(DomainEvent):
    """Emitted when rollback starts."""

    deployment_id: str
    event_type: str = "deployment.rollback_started"
