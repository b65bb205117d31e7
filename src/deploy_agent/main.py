"""Agent entrypoint: serves the control channel and health API."""

from __future__ import annotations

import uvicorn

from deploy_agent.api.app import create_app
from deploy_agent.config import get_settings
from deploy_agent.infrastructure.observability.logging import setup_logging


app = create_app()


def main() -> None:
    settings = get_settings()
    observability = settings.observability
    setup_logging(observability.log_level, json_output=observability.json_logs)

    # One process: port map and lock registry live in memory
    uvicorn.run(
        "deploy_agent.main:app",
        host=settings.host,
        port=settings.health_port,
        workers=1,
        reload=settings.debug,
        log_level=observability.log_level.lower(),
    )


if __name__ == "__main__":
    main()
