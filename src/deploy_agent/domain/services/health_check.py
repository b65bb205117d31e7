"""Health check engine for newly started containers."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from deploy_agent.config import HealthCheckSettings
from deploy_agent.domain.errors import DeployAgentError, HealthCheckError
from deploy_agent.domain.models.container import (
    Container,
    HealthCheckResult,
    TERMINAL_CONTAINER_STATUSES,
)
from deploy_agent.domain.models.routing import ProbeOutcome, RoutedHealthReport
from deploy_agent.domain.ports.services import ContainerRuntime, EndpointProbe, RoutingClient
from deploy_agent.infrastructure.observability.metrics import HEALTH_CHECK_POLLS


logger = structlog.get_logger(__name__)

HEALTHY = "healthy"


class HealthCheckEngine:
    """Polls containers until healthy, bounded by a retry budget.

    A container that is merely running is not ready: only a ``healthy``
    status from the runtime's own probe counts.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        settings: HealthCheckSettings,
        endpoint_probe: EndpointProbe | None = None,
        routing_client: RoutingClient | None = None,
        health_path: str = "/health",
        proxy_network: str | None = None,
        proxy_container: str | None = None,
    ) -> None:
        self._runtime = runtime
        self._settings = settings
        self._endpoint_probe = endpoint_probe
        self._routing_client = routing_client
        self._health_path = health_path
        self._proxy_network = proxy_network
        self._proxy_container = proxy_container

    async def check_once(self, container: Container) -> HealthCheckResult:
        """Poll the runtime once for the container's health."""
        result, _ = await self._poll(container)
        return result

    async def _poll(self, container: Container) -> tuple[HealthCheckResult, bool]:
        """Return the poll result and whether the container can never become healthy."""
        current = await self._runtime.inspect(container.id)
        if current is None:
            return HealthCheckResult(healthy=False, message="container no longer exists"), True
        if current.status in TERMINAL_CONTAINER_STATUSES:
            return (
                HealthCheckResult(
                    healthy=False, message=f"container is {current.status.value}"
                ),
                True,
            )

        status = await self._runtime.health_status(container.id)
        if status == HEALTHY:
            return HealthCheckResult(healthy=True, message="container reported healthy"), False
        return HealthCheckResult(healthy=False, message=f"health status is {status}"), False

    async def perform_health_check(self, container: Container) -> None:
        """Wait for the container to report healthy or raise HealthCheckError."""
        last = HealthCheckResult(healthy=False, message="no health poll performed")
        for attempt in range(1, self._settings.retries + 1):
            await asyncio.sleep(self._settings.interval)
            last, fatal = await self._poll(container)
            HEALTH_CHECK_POLLS.labels(result=HEALTHY if last.healthy else "unhealthy").inc()

            if last.healthy:
                logger.info(
                    "health_check_passed",
                    container=container.name,
                    attempt=attempt,
                )
                return

            logger.warning(
                "health_check_attempt_failed",
                container=container.name,
                attempt=attempt,
                retries=self._settings.retries,
                reason=last.message,
            )
            if fatal:
                break

        diagnostics = await self.container_diagnostics(container)
        raise HealthCheckError(
            f"Container {container.name} failed health checks: {last.message}",
            diagnostics=diagnostics,
        )

    async def verify_routed_health(self, container: Container, domain: str) -> RoutedHealthReport:
        """Verify the front end, the container endpoint and the external route."""
        probes: list[ProbeOutcome] = []

        if self._routing_client is not None:
            probes.append(await self._probe_loop("routing_front_end", self._ping_front_end))

        if self._endpoint_probe is not None:
            probe = self._endpoint_probe
            direct_url = f"http://127.0.0.1:{container.host_port}{self._health_path}"
            routed_url = f"https://{domain}{self._health_path}"
            probes.append(
                await self._probe_loop("container_endpoint", lambda: probe.probe(direct_url))
            )
            probes.append(
                await self._probe_loop("external_route", lambda: probe.probe(routed_url))
            )

        healthy = all(p.healthy for p in probes)
        diagnostics: dict[str, Any] = {}
        if not healthy:
            diagnostics = await self.routed_diagnostics(container)
            logger.warning(
                "routed_health_verification_failed",
                container=container.name,
                domain=domain,
                failed=[p.name for p in probes if not p.healthy],
            )
        else:
            logger.info("routed_health_verified", container=container.name, domain=domain)

        return RoutedHealthReport(healthy=healthy, probes=probes, diagnostics=diagnostics)

    async def _ping_front_end(self) -> HealthCheckResult:
        assert self._routing_client is not None
        reachable = await self._routing_client.ping()
        return HealthCheckResult(
            healthy=reachable,
            message="routing front end reachable" if reachable else "routing front end unreachable",
        )

    async def _probe_loop(
        self, name: str, check: Callable[[], Awaitable[HealthCheckResult]]
    ) -> ProbeOutcome:
        last = HealthCheckResult(healthy=False, message="not probed")
        retries = self._settings.retries
        for attempt in range(retries):
            try:
                last = await check()
            except DeployAgentError as e:
                last = HealthCheckResult(healthy=False, message=str(e))
            if last.healthy:
                return ProbeOutcome(name=name, healthy=True, attempts=attempt + 1, message=last.message)
            if attempt < retries - 1:
                await asyncio.sleep(self._backoff(attempt))
        return ProbeOutcome(name=name, healthy=False, attempts=retries, message=last.message)

    def _backoff(self, attempt: int) -> float:
        delay = self._settings.interval * (self._settings.backoff_factor ** attempt)
        return min(delay, self._settings.max_backoff)

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def container_diagnostics(self, container: Container) -> dict[str, Any]:
        """Gather container state, logs tail and port bindings for triage."""
        return {
            "container_state": await self._capture(self._container_state(container)),
            "logs_tail": await self._capture(
                self._runtime.logs(container.id, tail=self._settings.log_tail_lines)
            ),
            "port_bindings": await self._capture(self._runtime.port_bindings(container.id)),
        }

    async def routed_diagnostics(self, container: Container) -> dict[str, Any]:
        """Container diagnostics plus the routing layer's view of the world."""
        diagnostics = await self.container_diagnostics(container)
        if self._proxy_container:
            diagnostics["routing_front_end_state"] = await self._capture(
                self._proxy_state(self._proxy_container)
            )
        if self._proxy_network:
            diagnostics["network_topology"] = await self._capture(
                self._runtime.network_topology(self._proxy_network)
            )
        if self._routing_client is not None:
            diagnostics["registered_routes"] = await self._capture(self._route_names())
        return diagnostics

    async def _container_state(self, container: Container) -> str:
        current = await self._runtime.inspect(container.id)
        return current.status.value if current else "missing"

    async def _proxy_state(self, proxy_container: str) -> str:
        proxy = await self._runtime.inspect(proxy_container)
        return proxy.status.value if proxy else "missing"

    async def _route_names(self) -> list[str]:
        assert self._routing_client is not None
        return [route.subdomain for route in await self._routing_client.list_routes()]

    @staticmethod
    async def _capture(operation: Awaitable[Any]) -> Any:
        try:
            return await operation
        except DeployAgentError as e:
            return f"unavailable: {e}"
