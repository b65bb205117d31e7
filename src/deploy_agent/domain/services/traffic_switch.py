"""Traffic switch: point a service's route at a newly healthy container."""

from __future__ import annotations

import asyncio

import structlog

from deploy_agent.config import TrafficSwitchSettings
from deploy_agent.domain.errors import RegistrationError
from deploy_agent.domain.models.container import Container
from deploy_agent.domain.ports.services import ContainerRuntime, EndpointProbe, RoutingClient
from deploy_agent.infrastructure.observability.metrics import ROUTE_REGISTRATIONS


logger = structlog.get_logger(__name__)


class TrafficSwitcher:
    """Registers the new container with the routing front end and confirms it.

    Registration is an upsert, so switching the same service twice is safe.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        routing_client: RoutingClient,
        settings: TrafficSwitchSettings,
        base_domain: str,
        proxy_network: str | None = None,
        public_host: str = "127.0.0.1",
        endpoint_probe: EndpointProbe | None = None,
        health_path: str = "/health",
    ) -> None:
        self._runtime = runtime
        self._routing_client = routing_client
        self._settings = settings
        self._base_domain = base_domain
        self._proxy_network = proxy_network
        self._public_host = public_host
        self._endpoint_probe = endpoint_probe
        self._health_path = health_path

    def expected_domain(self, service_name: str) -> str:
        """The domain the service is reachable at once routed."""
        return f"{service_name}.{self._base_domain}"

    def target_address(self, container: Container) -> str:
        return f"http://{self._public_host}:{container.host_port}"

    async def switch_traffic(
        self, old: Container | None, new: Container, service_name: str
    ) -> bool:
        """Move the service's route to ``new``.

        Returns True when the route listing confirms the registration and
        False when it was accepted but never showed up. Raises
        RegistrationError when the front end refuses every attempt.
        """
        log = logger.bind(
            service=service_name,
            new_container=new.name,
            old_container=old.name if old else None,
        )

        if self._settings.pre_switch_probe:
            await self._pre_switch_probe(new)

        if self._proxy_network:
            await self._runtime.connect_network(self._proxy_network, new.id)
            log.info("container_connected_to_proxy_network", network=self._proxy_network)

        target = self.target_address(new)
        await self._register(service_name, target)
        log.info("route_registered", target=target)

        await asyncio.sleep(self._settings.settle_delay)

        if await self._confirm(service_name):
            ROUTE_REGISTRATIONS.labels(result="confirmed").inc()
            log.info("traffic_switch_confirmed", domain=self.expected_domain(service_name))
            return True

        ROUTE_REGISTRATIONS.labels(result="unconfirmed").inc()
        log.warning(
            "traffic_switch_unconfirmed",
            domain=self.expected_domain(service_name),
            verify_retries=self._settings.verify_retries,
        )
        return False

    async def _pre_switch_probe(self, container: Container) -> None:
        if self._endpoint_probe is None:
            return
        url = f"http://127.0.0.1:{container.host_port}{self._health_path}"
        result = await self._endpoint_probe.probe(url)
        if not result.healthy:
            # Informational only; the runtime health check already passed.
            logger.warning("pre_switch_probe_failed", url=url, reason=result.message)

    async def _register(self, service_name: str, target: str) -> None:
        attempts = self._settings.registration_retries + 1
        last_error = "no registration attempted"
        for attempt in range(1, attempts + 1):
            try:
                registration = await self._routing_client.register_route(service_name, target)
            except RegistrationError as e:
                last_error = str(e)
            else:
                if registration.success:
                    return
                last_error = "routing front end reported failure"

            logger.warning(
                "route_registration_attempt_failed",
                service=service_name,
                attempt=attempt,
                attempts=attempts,
                error=last_error,
            )
            if attempt < attempts:
                await asyncio.sleep(self._settings.verify_interval)

        ROUTE_REGISTRATIONS.labels(result="error").inc()
        raise RegistrationError(
            f"Failed to register route for {service_name} after {attempts} attempts: {last_error}"
        )

    async def _confirm(self, service_name: str) -> bool:
        accepted = {service_name, self.expected_domain(service_name)}
        for attempt in range(1, self._settings.verify_retries + 1):
            try:
                routes = await self._routing_client.list_routes()
            except RegistrationError as e:
                logger.warning("route_listing_failed", attempt=attempt, error=str(e))
            else:
                if any(route.subdomain in accepted for route in routes):
                    return True
            if attempt < self._settings.verify_retries:
                await asyncio.sleep(self._settings.verify_interval)
        return False
