"""Unit tests for the health check engine."""

from __future__ import annotations

from typing import Any, TYPE_CHECKING

import pytest

from deploy_agent.config import HealthCheckSettings
from deploy_agent.domain.errors import HealthCheckError
from deploy_agent.domain.models.container import ContainerStatus
from deploy_agent.domain.services.health_check import HealthCheckEngine
from deploy_agent.infrastructure.http.routing_client import InMemoryRoutingClient


if TYPE_CHECKING:
    from tests.conftest import FakeContainerRuntime, FakeEndpointProbe


class TestContainerHealth:
    @pytest.mark.asyncio
    async def test_healthy_container_passes(
        self, runtime: FakeContainerRuntime, health_engine: HealthCheckEngine
    ) -> None:
        container = runtime.add_container("web-blue", host_port=3001)
        await health_engine.perform_health_check(container)

    @pytest.mark.asyncio
    async def test_becomes_healthy_after_starting(
        self, runtime: FakeContainerRuntime, health_engine: HealthCheckEngine, monkeypatch: Any
    ) -> None:
        container = runtime.add_container("web-blue", host_port=3001, health="starting")
        polls: list[str] = []
        original = runtime.health_status

        async def flip(ref: str) -> str:
            status = await original(ref)
            polls.append(status)
            runtime.health[container.id] = "healthy"
            return status

        monkeypatch.setattr(runtime, "health_status", flip)
        await health_engine.perform_health_check(container)

        assert polls == ["starting", "healthy"]

    @pytest.mark.asyncio
    async def test_running_is_not_healthy(
        self, runtime: FakeContainerRuntime, health_engine: HealthCheckEngine
    ) -> None:
        container = runtime.add_container("web-blue", host_port=3001, health="none")

        with pytest.raises(HealthCheckError) as exc_info:
            await health_engine.perform_health_check(container)

        assert "health status is none" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_exhausted_retries_collect_diagnostics(
        self, runtime: FakeContainerRuntime, health_engine: HealthCheckEngine
    ) -> None:
        container = runtime.add_container("web-blue", host_port=3001, health="unhealthy")

        with pytest.raises(HealthCheckError) as exc_info:
            await health_engine.perform_health_check(container)

        diagnostics = exc_info.value.diagnostics
        assert diagnostics["container_state"] == "running"
        assert diagnostics["logs_tail"] == "listening on 8080"
        assert diagnostics["port_bindings"] == {8080: 3001}

    @pytest.mark.asyncio
    async def test_exited_container_fails_fast(
        self, runtime: FakeContainerRuntime, health_settings: HealthCheckSettings
    ) -> None:
        container = runtime.add_container(
            "web-blue", host_port=3001, status=ContainerStatus.EXITED
        )
        calls: list[str] = []
        original = runtime.inspect

        async def counting_inspect(ref: str) -> Any:
            calls.append(ref)
            return await original(ref)

        runtime.inspect = counting_inspect  # type: ignore[method-assign]
        engine = HealthCheckEngine(
            runtime, health_settings.model_copy(update={"retries": 10})
        )

        with pytest.raises(HealthCheckError, match="exited"):
            await engine.perform_health_check(container)

        # one poll plus one state lookup for diagnostics
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_removed_container_fails(
        self, runtime: FakeContainerRuntime, health_engine: HealthCheckEngine
    ) -> None:
        container = runtime.add_container("web-blue", host_port=3001)
        await runtime.remove(container.id)

        with pytest.raises(HealthCheckError) as exc_info:
            await health_engine.perform_health_check(container)

        assert exc_info.value.diagnostics["container_state"] == "missing"
        assert exc_info.value.diagnostics["logs_tail"].startswith("unavailable:")

    @pytest.mark.asyncio
    async def test_check_once(
        self, runtime: FakeContainerRuntime, health_engine: HealthCheckEngine
    ) -> None:
        container = runtime.add_container("web-blue", host_port=3001)
        result = await health_engine.check_once(container)
        assert result.healthy


class TestRoutedHealth:
    @pytest.mark.asyncio
    async def test_all_probes_pass(
        self,
        runtime: FakeContainerRuntime,
        health_engine: HealthCheckEngine,
        endpoint_probe: FakeEndpointProbe,
    ) -> None:
        container = runtime.add_container("web-blue", host_port=3001)

        report = await health_engine.verify_routed_health(container, "web.apps.localhost")

        assert report.healthy
        assert [p.name for p in report.probes] == [
            "routing_front_end",
            "container_endpoint",
            "external_route",
        ]
        assert "http://127.0.0.1:3001/health" in endpoint_probe.urls
        assert "https://web.apps.localhost/health" in endpoint_probe.urls
        assert report.diagnostics == {}

    @pytest.mark.asyncio
    async def test_failed_route_reports_diagnostics(
        self,
        runtime: FakeContainerRuntime,
        health_engine: HealthCheckEngine,
        endpoint_probe: FakeEndpointProbe,
        routing: InMemoryRoutingClient,
    ) -> None:
        container = runtime.add_container("web-blue", host_port=3001)
        runtime.add_container("traefik-proxy", host_port=8088)
        await runtime.connect_network("traefik-network", container.id)
        await routing.register_route("web", "http://127.0.0.1:3001")
        endpoint_probe.unhealthy_urls.add("https://")

        report = await health_engine.verify_routed_health(container, "web.apps.localhost")

        assert not report.healthy
        assert report.failed_probes == ["external_route"]
        external = report.probes[-1]
        assert external.attempts == 3
        assert report.diagnostics["routing_front_end_state"] == "running"
        assert report.diagnostics["network_topology"]["containers"] == ["web-blue"]
        assert report.diagnostics["registered_routes"] == ["web.apps.localhost"]

    @pytest.mark.asyncio
    async def test_unreachable_front_end(
        self,
        runtime: FakeContainerRuntime,
        health_engine: HealthCheckEngine,
        routing: InMemoryRoutingClient,
    ) -> None:
        container = runtime.add_container("web-blue", host_port=3001)
        routing.reachable = False

        report = await health_engine.verify_routed_health(container, "web.apps.localhost")

        assert report.failed_probes == ["routing_front_end"]
        assert report.diagnostics["routing_front_end_state"] == "missing"

    def test_backoff_is_capped(self, runtime: FakeContainerRuntime) -> None:
        engine = HealthCheckEngine(
            runtime,
            HealthCheckSettings(interval=2, backoff_factor=2.0, max_backoff=5),
        )
        assert engine._backoff(0) == 2
        assert engine._backoff(1) == 4
        assert engine._backoff(5) == 5
