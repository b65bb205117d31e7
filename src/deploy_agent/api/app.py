"""FastAPI application factory."""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI

from deploy_agent.api.routes import agent_routes, health_routes
from deploy_agent.config import get_settings, Settings


logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler for startup/shutdown."""
    settings = get_settings()
    logger.info(
        "agent_starting",
        environment=settings.environment.value,
        health_port=settings.health_port,
        base_dir=settings.deployment.base_dir,
        port_range=f"{settings.ports.range_start}-{settings.ports.range_end}",
        base_domain=settings.routing.base_domain,
    )

    yield

    logger.info("agent_shutdown_complete")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the agent's health API."""
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title="Deployment Agent",
        description="Zero-downtime blue-green deployment agent",
        version="1.0.0",
        docs_url=f"{settings.api_prefix}/docs" if settings.debug else None,
        redoc_url=None,
        openapi_url=f"{settings.api_prefix}/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    app.include_router(health_routes.router)
    app.include_router(agent_routes.router, prefix=settings.api_prefix)

    return app
