"""Deployment request, status events and the rollout aggregate with its state machine."""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import datetime
from enum import Enum
from typing import Any

import pydantic
from pydantic import AliasChoices, Field, field_validator, model_validator

from deploy_agent.domain.errors import ValidationError
from deploy_agent.domain.events.deployment_events import (
    DeploymentFailed,
    DeploymentRollbackStarted,
    DeploymentStageChanged,
    DeploymentStarted,
    DeploymentSucceeded,
)
from deploy_agent.domain.models.base import AggregateRoot, utc_now, ValueObject, WireModel
from deploy_agent.domain.models.container import (
    BackupMetadata,
    Color,
    Container,
    PortAllocation,
)


SERVICE_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_.-]*$")

# Datastores are installed by a separate collaborator, never rolled out here.
DATASTORE_APP_TYPES = frozenset(
    {"mongodb", "mongo", "postgres", "postgresql", "mysql", "mariadb", "redis"}
)


class DeploymentRequest(WireModel):
    """Immutable deployment request received from the control channel."""

    deployment_id: str = Field(min_length=1)
    service_name: str = Field(min_length=1)
    environment: str = Field(min_length=1)
    repository_url: str = Field(
        min_length=1,
        validation_alias=AliasChoices("repositoryUrl", "repo", "repository_url"),
    )
    branch: str = "main"
    app_type: str | None = None
    github_token: str | None = None
    env_vars_token: str | None = None
    # Informational; the routed domain is always service_name.base_domain
    domain: str | None = None
    additional_ports: list[int] = Field(default_factory=list)
    job_id: str | None = None
    project_id: str | None = None

    @field_validator("service_name")
    @classmethod
    def _normalize_service_name(cls, value: str) -> str:
        value = value.strip().lower()
        if not SERVICE_NAME_PATTERN.match(value):
            raise ValueError(
                "service name may only contain lowercase letters, digits, '.', '_' and '-'"
            )
        return value

    @field_validator("app_type")
    @classmethod
    def _normalize_app_type(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip().lower()
        return value or None

    @field_validator("additional_ports")
    @classmethod
    def _valid_ports(cls, value: list[int]) -> list[int]:
        for port in value:
            if not 1 <= port <= 65535:
                raise ValueError(f"invalid additional port {port}")
        if len(set(value)) != len(value):
            raise ValueError("additional ports must be unique")
        return value

    @model_validator(mode="after")
    def _reject_datastores(self) -> DeploymentRequest:
        if self.app_type in DATASTORE_APP_TYPES:
            raise ValueError(
                f"app type '{self.app_type}' is a datastore and is not deployed by the orchestrator"
            )
        return self

    @property
    def lock_key(self) -> str:
        return f"{self.service_name}:{self.environment}"

    @classmethod
    def parse(cls, payload: DeploymentRequest | Mapping[str, Any]) -> DeploymentRequest:
        """Validate a raw payload, raising the domain ValidationError on failure."""
        if isinstance(payload, DeploymentRequest):
            return payload
        try:
            return cls.model_validate(dict(payload))
        except pydantic.ValidationError as exc:
            missing = [
                ".".join(str(part) for part in error["loc"])
                for error in exc.errors()
                if error["type"] == "missing"
            ]
            if missing:
                message = f"Missing required deployment fields: {', '.join(missing)}"
            else:
                message = "; ".join(
                    f"{'.'.join(str(p) for p in error['loc']) or 'request'}: {error['msg']}"
                    for error in exc.errors()
                )
            raise ValidationError(message, missing_fields=missing) from exc


class DeploymentStatus(str, Enum):
    """Status values reported to the control channel."""

    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


class StatusPayload(WireModel):
    deployment_id: str
    status: DeploymentStatus
    message: str
    domain: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class StatusEvent(WireModel):
    """Status message sent over the control channel."""

    type: str = "status"
    payload: StatusPayload


class JobNotification(WireModel):
    """Out-of-band completion notice correlated by job and project ids."""

    job_id: str | None = None
    project_id: str | None = None
    deployment_id: str
    status: DeploymentStatus
    message: str
    domain: str | None = None
    timestamp: datetime = Field(default_factory=utc_now)


class DeploymentStage(str, Enum):
    """Rollout state machine stages."""

    VALIDATED = "validated"
    LOCKED = "locked"
    DIRECTORIES_READY = "directories_ready"
    ENV_FETCHED = "env_fetched"
    SOURCE_FETCHED = "source_fetched"
    TYPE_RESOLVED = "type_resolved"
    OLD_CONTAINER_SNAPSHOTTED = "old_container_snapshotted"
    NEW_CONTAINER_BUILT = "new_container_built"
    NEW_CONTAINER_STARTED = "new_container_started"
    HEALTH_VERIFIED = "health_verified"
    TRAFFIC_REGISTERED = "traffic_registered"
    TRAFFIC_SWITCH_VERIFIED = "traffic_switch_verified"
    OLD_CONTAINER_RETIRED = "old_container_retired"
    SUCCEEDED = "succeeded"
    ROLLING_BACK = "rolling_back"
    FAILED = "failed"


_HAPPY_PATH = [
    DeploymentStage.VALIDATED,
    DeploymentStage.LOCKED,
    DeploymentStage.DIRECTORIES_READY,
    DeploymentStage.ENV_FETCHED,
    DeploymentStage.SOURCE_FETCHED,
    DeploymentStage.TYPE_RESOLVED,
    DeploymentStage.OLD_CONTAINER_SNAPSHOTTED,
    DeploymentStage.NEW_CONTAINER_BUILT,
    DeploymentStage.NEW_CONTAINER_STARTED,
    DeploymentStage.HEALTH_VERIFIED,
    DeploymentStage.TRAFFIC_REGISTERED,
    DeploymentStage.TRAFFIC_SWITCH_VERIFIED,
    DeploymentStage.OLD_CONTAINER_RETIRED,
    DeploymentStage.SUCCEEDED,
]


def _build_transitions() -> dict[DeploymentStage, set[DeploymentStage]]:
    transitions: dict[DeploymentStage, set[DeploymentStage]] = {}
    for current, following in zip(_HAPPY_PATH, _HAPPY_PATH[1:]):
        transitions[current] = {following}
        # Failures once the lock is held always pass through rollback.
        if current != DeploymentStage.VALIDATED:
            transitions[current] |= {DeploymentStage.ROLLING_BACK, DeploymentStage.FAILED}
    transitions[DeploymentStage.SUCCEEDED] = set()
    transitions[DeploymentStage.ROLLING_BACK] = {DeploymentStage.FAILED}
    transitions[DeploymentStage.FAILED] = set()
    return transitions


VALID_TRANSITIONS: dict[DeploymentStage, set[DeploymentStage]] = _build_transitions()


class Deployment(AggregateRoot):
    """One rollout of a service: the aggregate the orchestrator drives."""

    request: DeploymentRequest
    stage: DeploymentStage = DeploymentStage.VALIDATED
    stage_history: list[DeploymentStage] = Field(
        default_factory=lambda: [DeploymentStage.VALIDATED]
    )
    app_type: str | None = None
    target_color: Color | None = None
    old_container: Container | None = None
    new_container: Container | None = None
    port_allocation: PortAllocation | None = None
    backup: BackupMetadata | None = None
    image_ref: str | None = None
    error_message: str = ""
    degraded_reasons: list[str] = Field(default_factory=list)

    @property
    def deployment_id(self) -> str:
        return self.request.deployment_id

    def _transition_to(self, new_stage: DeploymentStage) -> None:
        """Validate and execute a stage transition."""
        valid = VALID_TRANSITIONS.get(self.stage, set())
        if new_stage not in valid:
            raise InvalidStateTransitionError(
                f"Cannot transition from {self.stage.value} to {new_stage.value}. "
                f"Valid transitions: {sorted(s.value for s in valid)}"
            )
        previous = self.stage
        self.stage = new_stage
        self.stage_history.append(new_stage)
        self.touch()
        self.add_event(DeploymentStageChanged(
            deployment_id=self.deployment_id,
            from_stage=previous.value,
            to_stage=new_stage.value,
            correlation_id=self.deployment_id,
        ))

    def advance(self, stage: DeploymentStage) -> None:
        """Move forward along the rollout path."""
        self._transition_to(stage)
        if stage == DeploymentStage.LOCKED:
            self.add_event(DeploymentStarted(
                deployment_id=self.deployment_id,
                service_name=self.request.service_name,
                environment=self.request.environment,
                correlation_id=self.deployment_id,
            ))

    def mark_degraded(self, reason: str) -> None:
        self.degraded_reasons.append(reason)
        self.touch()

    def succeed(self) -> None:
        self._transition_to(DeploymentStage.SUCCEEDED)
        self.add_event(DeploymentSucceeded(
            deployment_id=self.deployment_id,
            container_name=self.new_container.name if self.new_container else "",
            host_port=self.port_allocation.host_port if self.port_allocation else None,
            degraded=self.degraded,
            correlation_id=self.deployment_id,
        ))

    def start_rollback(self) -> None:
        self._transition_to(DeploymentStage.ROLLING_BACK)
        self.add_event(DeploymentRollbackStarted(
            deployment_id=self.deployment_id,
            correlation_id=self.deployment_id,
        ))

    def fail(self, error_message: str) -> None:
        self.error_message = error_message
        self._transition_to(DeploymentStage.FAILED)
        self.add_event(DeploymentFailed(
            deployment_id=self.deployment_id,
            error_message=error_message,
            correlation_id=self.deployment_id,
        ))

    def has_reached(self, stage: DeploymentStage) -> bool:
        return stage in self.stage_history

    @property
    def degraded(self) -> bool:
        return bool(self.degraded_reasons)

    @property
    def is_terminal(self) -> bool:
        return self.stage in {DeploymentStage.SUCCEEDED, DeploymentStage.FAILED}


class DeploymentOutcome(ValueObject):
    """Terminal result of a rollout returned to the caller."""

    deployment_id: str
    success: bool
    status: DeploymentStatus
    message: str
    final_stage: DeploymentStage
    container_name: str | None = None
    host_port: int | None = None
    domain: str | None = None
    color: Color | None = None
    degraded: bool = False
    rolled_back: bool = False


class InvalidStateTransitionError(Exception):
    """Raised when an invalid stage transition is attempted."""
