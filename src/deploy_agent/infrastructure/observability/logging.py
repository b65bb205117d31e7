"""Structured logging configuration."""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog


REDACTED = "***"

# Deployment payloads carry short-lived credentials under these keys
SENSITIVE_KEYS = frozenset({
    "token",
    "github_token",
    "env_token",
    "agent_token",
    "authorization",
    "password",
    "secret",
})


def redact_sensitive(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Mask credential values anywhere in the top level of a log event."""
    for key in event_dict:
        if key.lower() in SENSITIVE_KEYS and event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def setup_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog for the agent.

    JSON lines go to stdout for the host's log collector; ``json_output=False``
    switches to the console renderer for local runs.
    """
    level = getattr(logging, log_level.upper(), logging.INFO)
    renderer: Any = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            redact_sensitive,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.CallsiteParameterAdder(
                [
                    structlog.processors.CallsiteParameter.MODULE,
                    structlog.processors.CallsiteParameter.FUNC_NAME,
                ],
            ),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # uvicorn and httpx log through the standard library
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
