"""Stable, conflict-free host port allocation."""

from __future__ import annotations

import asyncio
from collections.abc import Iterable

import structlog

from deploy_agent.domain.errors import ExhaustedError
from deploy_agent.domain.models.container import PortAllocation
from deploy_agent.domain.ports.repositories import PortAllocationRepository
from deploy_agent.domain.ports.services import PortProbe
from deploy_agent.infrastructure.observability.metrics import PORT_ALLOCATIONS


logger = structlog.get_logger(__name__)

WELL_KNOWN_PORT_LIMIT = 1024


class PortAllocator:
    """Maps service names to persisted host ports.

    Allocation is reuse-first: a service keeps its recorded port for as long as
    that port is free on the host. Otherwise the range is scanned upward,
    skipping reserved ports, ports recorded for other services, and anything
    currently bound. Each candidate is checked against the live OS state right
    before it is recorded, since the persisted map can go stale.
    """

    def __init__(
        self,
        repository: PortAllocationRepository,
        port_probe: PortProbe,
        range_start: int,
        range_end: int,
        container_port: int = 8080,
        reserved_ports: Iterable[int] = (),
    ) -> None:
        if range_start > range_end:
            raise ValueError("range_start must not exceed range_end")
        self._repository = repository
        self._port_probe = port_probe
        self._range_start = range_start
        self._range_end = range_end
        self._container_port = container_port
        self._reserved = frozenset(reserved_ports)
        self._lock = asyncio.Lock()

    @property
    def container_port(self) -> int:
        return self._container_port

    def is_reserved(self, port: int) -> bool:
        return port < WELL_KNOWN_PORT_LIMIT or port in self._reserved

    async def allocate_port(self, service_name: str) -> PortAllocation:
        """Return the service's host port, reusing its previous one when free."""
        async with self._lock:
            recorded = await self._repository.get(service_name)
            if recorded is not None:
                if not self.is_reserved(recorded) and not await self._port_probe.is_port_in_use(
                    recorded
                ):
                    logger.info("port_reused", service=service_name, host_port=recorded)
                    PORT_ALLOCATIONS.labels(result="reused").inc()
                    return PortAllocation(
                        service_name=service_name,
                        host_port=recorded,
                        container_port=self._container_port,
                        reused=True,
                    )
                logger.warning(
                    "recorded_port_unavailable",
                    service=service_name,
                    host_port=recorded,
                )

            taken = {
                port
                for name, port in (await self._repository.all()).items()
                if name != service_name
            }
            port = await self._scan(taken)
            await self._repository.set(service_name, port)

        logger.info("port_allocated", service=service_name, host_port=port)
        PORT_ALLOCATIONS.labels(result="allocated").inc()
        return PortAllocation(
            service_name=service_name,
            host_port=port,
            container_port=self._container_port,
            reused=False,
        )

    async def _scan(self, taken: set[int]) -> int:
        for port in range(self._range_start, self._range_end + 1):
            if self.is_reserved(port) or port in taken:
                continue
            if await self._port_probe.is_port_in_use(port):
                continue
            return port
        PORT_ALLOCATIONS.labels(result="exhausted").inc()
        raise ExhaustedError(
            f"No available ports in range {self._range_start}-{self._range_end}"
        )

    async def release_port(self, service_name: str) -> None:
        """Forget a service's allocation. The OS binding is left to container teardown."""
        async with self._lock:
            port = await self._repository.get(service_name)
            if port is None:
                return
            await self._repository.delete(service_name)
        logger.info("port_released", service=service_name, host_port=port)

    async def verify_port_mapping(self, service_name: str, observed_host_port: int) -> bool:
        """Align the record with the port a container actually bound.

        Returns True if the record had to be corrected.
        """
        async with self._lock:
            recorded = await self._repository.get(service_name)
            if recorded == observed_host_port:
                return False
            await self._repository.set(service_name, observed_host_port)
        logger.warning(
            "port_mapping_corrected",
            service=service_name,
            recorded=recorded,
            observed=observed_host_port,
        )
        return True

    async def get_port(self, service_name: str) -> int | None:
        return await self._repository.get(service_name)

    async def allocations(self) -> dict[str, int]:
        return await self._repository.all()
