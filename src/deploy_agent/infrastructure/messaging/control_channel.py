"""Control channel message dispatch."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

import structlog

from deploy_agent.domain.errors import ConflictError, ReportingError, ValidationError
from deploy_agent.domain.models.deployment import (
    DeploymentOutcome,
    DeploymentStatus,
    StatusEvent,
    StatusPayload,
)
from deploy_agent.domain.ports.services import StatusReporter
from deploy_agent.domain.services.deployment_service import DeploymentOrchestrator


logger = structlog.get_logger(__name__)

DEPLOY_MESSAGE = "deploy_app"


class ControlChannelHandler:
    """Turns control channel messages into rollouts.

    Requests rejected before a rollout starts (malformed, or conflicting with
    one in flight) are answered here with a single failed status, since the
    orchestrator reports nothing for them.
    """

    def __init__(self, orchestrator: DeploymentOrchestrator, reporter: StatusReporter) -> None:
        self._orchestrator = orchestrator
        self._reporter = reporter

    async def handle(self, raw: str | bytes | Mapping[str, Any]) -> DeploymentOutcome | None:
        if isinstance(raw, (str, bytes)):
            try:
                message = json.loads(raw)
            except ValueError:
                logger.warning("control_message_unparseable")
                return None
        else:
            message = raw
        if not isinstance(message, Mapping):
            logger.warning("control_message_not_an_object", kind=type(message).__name__)
            return None

        message_type = message.get("type")
        if message_type != DEPLOY_MESSAGE:
            logger.info("control_message_ignored", message_type=message_type)
            return None

        payload = message.get("payload") or {}
        if not isinstance(payload, Mapping):
            logger.warning("deploy_payload_not_an_object", kind=type(payload).__name__)
            await self._reject("unknown", "Deployment payload must be a JSON object")
            return None
        try:
            return await self._orchestrator.deploy(payload)
        except (ValidationError, ConflictError) as e:
            logger.warning(
                "deployment_rejected",
                deployment_id=payload.get("deploymentId"),
                error=str(e),
            )
            await self._reject(payload.get("deploymentId") or "unknown", str(e))
            return None

    async def _reject(self, deployment_id: str, message: str) -> None:
        event = StatusEvent(payload=StatusPayload(
            deployment_id=deployment_id,
            status=DeploymentStatus.FAILED,
            message=message,
        ))
        try:
            await self._reporter.send_status(event)
        except ReportingError as e:
            logger.error("status_delivery_failed", deployment_id=deployment_id, error=str(e))
