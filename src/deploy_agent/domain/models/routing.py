"""Routing front-end value objects."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from deploy_agent.domain.models.base import ValueObject


class RouteRegistration(ValueObject):
    """Response of a route registration call."""

    success: bool
    domain: str | None = None


class RouteRecord(ValueObject):
    """One entry in the routing front end's route table."""

    subdomain: str
    target_address: str | None = None


class ProbeOutcome(ValueObject):
    """Result of one bounded probe loop during routed verification."""

    name: str
    healthy: bool
    attempts: int
    message: str = ""


class RoutedHealthReport(ValueObject):
    """Result of verifying a container through the routing front end."""

    healthy: bool
    probes: list[ProbeOutcome] = Field(default_factory=list)
    diagnostics: dict[str, Any] = Field(default_factory=dict)

    @property
    def failed_probes(self) -> list[str]:
        return [probe.name for probe in self.probes if not probe.healthy]
