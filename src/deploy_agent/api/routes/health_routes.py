"""Health check and metrics routes."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from deploy_agent.api.dependencies.services import get_service_container, ServiceContainer
from deploy_agent.domain.errors import DeployAgentError


router = APIRouter(tags=["health"])

VERSION = "1.0.0"


@router.get("/health")
async def health_check(
    container: Annotated[ServiceContainer, Depends(get_service_container)],
) -> dict[str, Any]:
    """Basic health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
        "active_deployments": len(container.lock_registry.active()),
        "routing": "frontdoor" if container.routing_enabled else "in_memory",
    }


@router.get("/health/ready")
async def readiness_check(
    response: Response,
    container: Annotated[ServiceContainer, Depends(get_service_container)],
) -> dict[str, Any]:
    """Readiness check - the container runtime must be reachable."""
    checks: dict[str, str] = {}
    try:
        await container.runtime.check_available()
        checks["container_runtime"] = "ok"
    except DeployAgentError as e:
        checks["container_runtime"] = str(e)

    all_ok = all(v == "ok" for v in checks.values())
    if not all_ok:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return {
        "status": "ready" if all_ok else "not_ready",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/live")
async def liveness_check() -> dict[str, str]:
    """Liveness check - verifies the agent is running."""
    return {"status": "alive"}


@router.get("/metrics")
async def metrics() -> Response:
    """Prometheus exposition."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
