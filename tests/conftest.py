"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

from deploy_agent.config import (
    DeploymentSettings,
    Environment,
    HealthCheckSettings,
    Settings,
    TrafficSwitchSettings,
)
from deploy_agent.domain.errors import BuildError, CommandError, PrerequisiteError, SourceFetchError
from deploy_agent.domain.models.container import (
    Container,
    ContainerSpec,
    ContainerStatus,
    HealthCheckResult,
)
from deploy_agent.domain.ports.services import (
    ContainerRuntime,
    EndpointProbe,
    ImageBuilder,
    PortProbe,
    SourceFetcher,
)
from deploy_agent.domain.services.backup_manager import BackupManager
from deploy_agent.domain.services.deployment_service import DeploymentOrchestrator
from deploy_agent.domain.services.health_check import HealthCheckEngine
from deploy_agent.domain.services.lock_registry import InMemoryDeploymentLockRegistry
from deploy_agent.domain.services.port_allocator import PortAllocator
from deploy_agent.domain.services.traffic_switch import TrafficSwitcher
from deploy_agent.infrastructure.environment.env_file import EnvFileWriter
from deploy_agent.infrastructure.http.routing_client import InMemoryRoutingClient
from deploy_agent.infrastructure.http.secrets_client import StaticSecretProvider
from deploy_agent.infrastructure.messaging.event_publisher import InMemoryEventPublisher
from deploy_agent.infrastructure.messaging.status_reporter import InMemoryStatusReporter
from deploy_agent.infrastructure.persistence.port_store import InMemoryPortAllocationRepository


PROXY_NETWORK = "traefik-network"
BASE_DOMAIN = "apps.localhost"


class FakeContainerRuntime(ContainerRuntime):
    """In-memory stand-in for the docker daemon."""

    def __init__(self) -> None:
        self.containers: dict[str, Container] = {}
        self.health: dict[str, str] = {}
        self.image_health: dict[str, str] = {}
        self.networks: dict[str, set[str]] = {}
        self.commits: list[tuple[str, str]] = []
        self.runs: list[ContainerSpec] = []
        self.available = True
        self.fail_remove: set[str] = set()
        self.fail_start: set[str] = set()
        self.image_healthchecks: set[str] = set()
        self._counter = 0
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def _next_id(self) -> str:
        self._counter += 1
        return f"cid-{self._counter}"

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def add_container(
        self,
        name: str,
        host_port: int,
        status: ContainerStatus = ContainerStatus.RUNNING,
        health: str = "healthy",
        container_port: int = 8080,
        created_at: datetime | None = None,
    ) -> Container:
        container = Container(
            id=self._next_id(),
            name=name,
            host_port=host_port,
            container_port=container_port,
            status=status,
            image=f"{name}:seed",
            created_at=created_at or self._tick(),
        )
        self.containers[container.id] = container
        self.health[container.id] = health
        return container

    def find(self, ref: str) -> Container | None:
        if ref in self.containers:
            return self.containers[ref]
        for container in self.containers.values():
            if container.name == ref:
                return container
        return None

    def by_name(self, name: str) -> Container | None:
        return self.find(name)

    def _require(self, ref: str, action: str) -> Container:
        container = self.find(ref)
        if container is None:
            raise CommandError(
                "docker", [action, ref], 1, stderr=f"Error: No such container: {ref}"
            )
        return container

    def _set_status(self, container: Container, status: ContainerStatus) -> None:
        self.containers[container.id] = container.model_copy(update={"status": status})

    async def check_available(self) -> None:
        if not self.available:
            raise PrerequisiteError("Docker is not available")

    async def ensure_network(self, network: str) -> None:
        self.networks.setdefault(network, set())

    async def list_containers(self, names: list[str]) -> list[Container]:
        return [c for c in self.containers.values() if c.name in names]

    async def inspect(self, container_ref: str) -> Container | None:
        return self.find(container_ref)

    async def health_status(self, container_ref: str) -> str:
        container = self.find(container_ref)
        if container is None:
            return "missing"
        return self.health.get(container.id, "none")

    async def image_declares_healthcheck(self, image_ref: str) -> bool:
        return image_ref in self.image_healthchecks

    async def run_container(self, spec: ContainerSpec) -> Container:
        if self.find(spec.name) is not None:
            raise CommandError("docker", ["run", spec.name], 125, stderr="Conflict. name in use")
        self.runs.append(spec)
        if spec.name in self.fail_start:
            # docker leaves the created container behind when start fails
            self.add_container(spec.name, spec.host_port, status=ContainerStatus.CREATED)
            raise CommandError(
                "docker", ["run", spec.name], 125, stderr="port is already allocated"
            )
        container = Container(
            id=self._next_id(),
            name=spec.name,
            host_port=spec.host_port,
            container_port=spec.container_port,
            status=ContainerStatus.RUNNING,
            image=spec.image,
            created_at=self._tick(),
        )
        self.containers[container.id] = container
        self.health[container.id] = self.image_health.get(spec.image, "healthy")
        if spec.network:
            self.networks.setdefault(spec.network, set()).add(container.id)
        return container

    async def start(self, container_ref: str) -> None:
        self._set_status(self._require(container_ref, "start"), ContainerStatus.RUNNING)

    async def stop(self, container_ref: str, timeout: int = 30) -> None:
        self._set_status(self._require(container_ref, "stop"), ContainerStatus.EXITED)

    async def remove(self, container_ref: str, force: bool = False) -> None:
        container = self._require(container_ref, "rm")
        if container.name in self.fail_remove:
            raise CommandError("docker", ["rm", container_ref], 1, stderr="device or resource busy")
        del self.containers[container.id]
        for members in self.networks.values():
            members.discard(container.id)

    async def commit(self, container_ref: str, image_ref: str) -> None:
        self._require(container_ref, "commit")
        self.commits.append((container_ref, image_ref))

    async def logs(self, container_ref: str, tail: int = 50) -> str:
        self._require(container_ref, "logs")
        return "listening on 8080"

    async def port_bindings(self, container_ref: str) -> dict[int, int]:
        container = self._require(container_ref, "port")
        if container.container_port is None or container.host_port is None:
            return {}
        return {container.container_port: container.host_port}

    async def connect_network(self, network: str, container_ref: str) -> None:
        container = self._require(container_ref, "network")
        self.networks.setdefault(network, set()).add(container.id)

    async def disconnect_network(self, network: str, container_ref: str) -> None:
        container = self._require(container_ref, "network")
        self.networks.setdefault(network, set()).discard(container.id)

    async def network_topology(self, network: str) -> dict[str, Any]:
        members = self.networks.get(network, set())
        return {
            "network": network,
            "containers": sorted(self.containers[m].name for m in members if m in self.containers),
        }

    def running_ports(self) -> set[int]:
        return {
            c.host_port
            for c in self.containers.values()
            if c.is_running and c.host_port is not None
        }


class RuntimePortProbe(PortProbe):
    """Ports bound by running fake containers, plus any extra ones."""

    def __init__(self, runtime: FakeContainerRuntime) -> None:
        self._runtime = runtime
        self.extra: set[int] = set()

    async def is_port_in_use(self, port: int) -> bool:
        return port in self._runtime.running_ports() or port in self.extra


class FakeImageBuilder(ImageBuilder):
    def __init__(self) -> None:
        self.app_type = "nodejs"
        self.fail = False
        self.builds: list[tuple[str, str]] = []
        self.started = asyncio.Event()
        self.gate: asyncio.Event | None = None

    async def detect_app_type(self, source_dir: str) -> str:
        return self.app_type

    async def build(
        self,
        source_dir: str,
        image_ref: str,
        app_type: str,
        env_file: str | None = None,
        container_port: int = 8080,
    ) -> str:
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise BuildError(f"Image build failed for {image_ref}")
        self.builds.append((image_ref, app_type))
        return image_ref


class FakeSourceFetcher(SourceFetcher):
    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str | None]] = []
        self.failures_remaining = 0

    async def fetch(
        self, repository_url: str, branch: str, token: str | None, target_dir: str
    ) -> None:
        self.calls.append((repository_url, branch, token))
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise SourceFetchError("remote hung up unexpectedly")
        Path(target_dir).mkdir(parents=True, exist_ok=True)
        (Path(target_dir) / "package.json").write_text("{}")


class FakeEndpointProbe(EndpointProbe):
    def __init__(self) -> None:
        self.healthy = True
        self.unhealthy_urls: set[str] = set()
        self.urls: list[str] = []

    async def probe(self, url: str) -> HealthCheckResult:
        self.urls.append(url)
        if not self.healthy or any(url.startswith(u) for u in self.unhealthy_urls):
            return HealthCheckResult(healthy=False, message="HTTP 503")
        return HealthCheckResult(healthy=True, message="HTTP 200")


@dataclass
class AgentHarness:
    orchestrator: DeploymentOrchestrator
    runtime: FakeContainerRuntime
    builder: FakeImageBuilder
    fetcher: FakeSourceFetcher
    secrets: StaticSecretProvider
    routing: InMemoryRoutingClient
    endpoint_probe: FakeEndpointProbe
    port_probe: RuntimePortProbe
    port_repo: InMemoryPortAllocationRepository
    port_allocator: PortAllocator
    locks: InMemoryDeploymentLockRegistry
    health_engine: HealthCheckEngine
    traffic_switcher: TrafficSwitcher
    backup_manager: BackupManager
    reporter: InMemoryStatusReporter
    events: InMemoryEventPublisher
    base_dir: Path


@pytest.fixture
def settings() -> Settings:
    return Settings(environment=Environment.TESTING, debug=True)


@pytest.fixture
def health_settings() -> HealthCheckSettings:
    return HealthCheckSettings(
        retries=3,
        interval=0,
        backoff_factor=1.0,
        max_backoff=0,
        verify_external=True,
    )


@pytest.fixture
def traffic_settings() -> TrafficSwitchSettings:
    return TrafficSwitchSettings(
        settle_delay=0,
        verify_retries=2,
        verify_interval=0,
        registration_retries=1,
        pre_switch_probe=True,
    )


@pytest.fixture
def deployment_settings(tmp_path: Path) -> DeploymentSettings:
    return DeploymentSettings(
        base_dir=str(tmp_path / "deployments"),
        proxy_network=PROXY_NETWORK,
        source_fetch_retries=3,
        source_fetch_delay=0,
    )


@pytest.fixture
def runtime() -> FakeContainerRuntime:
    return FakeContainerRuntime()


@pytest.fixture
def routing() -> InMemoryRoutingClient:
    return InMemoryRoutingClient(base_domain=BASE_DOMAIN)


@pytest.fixture
def endpoint_probe() -> FakeEndpointProbe:
    return FakeEndpointProbe()


@pytest.fixture
def health_engine(
    runtime: FakeContainerRuntime,
    health_settings: HealthCheckSettings,
    endpoint_probe: FakeEndpointProbe,
    routing: InMemoryRoutingClient,
) -> HealthCheckEngine:
    return HealthCheckEngine(
        runtime,
        health_settings,
        endpoint_probe=endpoint_probe,
        routing_client=routing,
        proxy_network=PROXY_NETWORK,
        proxy_container="traefik-proxy",
    )


@pytest.fixture
def traffic_switcher(
    runtime: FakeContainerRuntime,
    routing: InMemoryRoutingClient,
    traffic_settings: TrafficSwitchSettings,
    endpoint_probe: FakeEndpointProbe,
) -> TrafficSwitcher:
    return TrafficSwitcher(
        runtime,
        routing,
        traffic_settings,
        base_domain=BASE_DOMAIN,
        proxy_network=PROXY_NETWORK,
        endpoint_probe=endpoint_probe,
    )


@pytest.fixture
def backup_manager(
    runtime: FakeContainerRuntime, health_engine: HealthCheckEngine
) -> BackupManager:
    return BackupManager(runtime, health_engine, proxy_network=PROXY_NETWORK)


@pytest.fixture
def harness(
    runtime: FakeContainerRuntime,
    routing: InMemoryRoutingClient,
    endpoint_probe: FakeEndpointProbe,
    health_engine: HealthCheckEngine,
    traffic_switcher: TrafficSwitcher,
    backup_manager: BackupManager,
    deployment_settings: DeploymentSettings,
) -> AgentHarness:
    builder = FakeImageBuilder()
    fetcher = FakeSourceFetcher()
    secrets = StaticSecretProvider({"DATABASE_URL": "postgres://db/app"})
    port_probe = RuntimePortProbe(runtime)
    port_repo = InMemoryPortAllocationRepository()
    port_allocator = PortAllocator(
        port_repo,
        port_probe,
        range_start=3000,
        range_end=3010,
        reserved_ports={3000},
    )
    locks = InMemoryDeploymentLockRegistry()
    reporter = InMemoryStatusReporter()
    events = InMemoryEventPublisher()

    orchestrator = DeploymentOrchestrator(
        runtime=runtime,
        image_builder=builder,
        source_fetcher=fetcher,
        secret_provider=secrets,
        env_writer=EnvFileWriter(),
        port_allocator=port_allocator,
        lock_registry=locks,
        health_engine=health_engine,
        traffic_switcher=traffic_switcher,
        backup_manager=backup_manager,
        status_reporter=reporter,
        event_publisher=events,
        settings=deployment_settings,
        verify_external=True,
    )
    return AgentHarness(
        orchestrator=orchestrator,
        runtime=runtime,
        builder=builder,
        fetcher=fetcher,
        secrets=secrets,
        routing=routing,
        endpoint_probe=endpoint_probe,
        port_probe=port_probe,
        port_repo=port_repo,
        port_allocator=port_allocator,
        locks=locks,
        health_engine=health_engine,
        traffic_switcher=traffic_switcher,
        backup_manager=backup_manager,
        reporter=reporter,
        events=events,
        base_dir=Path(deployment_settings.base_dir),
    )


def make_request(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "deploymentId": "dep-1",
        "serviceName": "web",
        "environment": "production",
        "repositoryUrl": "https://github.com/acme/web.git",
        "branch": "main",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def request_payload() -> dict[str, Any]:
    return make_request()


@pytest.fixture
def make_payload() -> Any:
    return make_request
