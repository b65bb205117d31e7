"""Control channel endpoint and operator insight into locks and ports."""

from __future__ import annotations

from typing import Annotated, Any

import structlog
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from deploy_agent.api.dependencies.services import get_service_container, ServiceContainer
from deploy_agent.infrastructure.messaging.status_reporter import CallbackStatusReporter


logger = structlog.get_logger(__name__)

router = APIRouter(tags=["agent"])


@router.websocket("/control")
async def control_channel(
    websocket: WebSocket,
    container: Annotated[ServiceContainer, Depends(get_service_container)],
) -> None:
    """Accept ``deploy_app`` messages and stream status events back.

    Messages on one connection are handled in order; each rollout runs to
    completion before the next message is read.
    """
    await websocket.accept()
    channel = CallbackStatusReporter(websocket.send_text)
    container.status_reporter.attach(channel)
    logger.info("control_channel_opened")
    try:
        while True:
            await container.control_channel.handle(await websocket.receive_text())
    except WebSocketDisconnect as e:
        logger.info("control_channel_closed", code=e.code)
    finally:
        container.status_reporter.detach(channel)


@router.get("/deployments/locks")
async def list_locks(
    container: Annotated[ServiceContainer, Depends(get_service_container)],
) -> dict[str, Any]:
    """Rollouts currently holding a service lock."""
    locks = sorted(container.lock_registry.active())
    return {"locks": locks, "count": len(locks)}


@router.get("/ports")
async def list_ports(
    container: Annotated[ServiceContainer, Depends(get_service_container)],
) -> dict[str, Any]:
    """Recorded host port for every service."""
    ports = container.settings.ports
    return {
        "allocations": await container.port_allocator.allocations(),
        "range": {"start": ports.range_start, "end": ports.range_end},
        "container_port": container.port_allocator.container_port,
    }
