"""Domain events package."""

from deploy_agent.domain.events.deployment_events import (
    DeploymentFailed,
    DeploymentRollbackStarted,
    DeploymentStageChanged,
    DeploymentStarted,
    DeploymentSucceeded,
)


__all__ = [
    "DeploymentFailed",
    "DeploymentRollbackStarted",
    "DeploymentStageChanged",
    "DeploymentStarted",
    "DeploymentSucceeded",
]
