"""Service dependencies for FastAPI dependency injection."""

from __future__ import annotations

import structlog

from deploy_agent.config import get_settings, Settings
from deploy_agent.domain.ports.services import (
    ContainerRuntime,
    DeploymentLockRegistry,
    RoutingClient,
    SecretProvider,
    StatusReporter,
)
from deploy_agent.domain.services.backup_manager import BackupManager
from deploy_agent.domain.services.deployment_service import DeploymentOrchestrator
from deploy_agent.domain.services.health_check import HealthCheckEngine
from deploy_agent.domain.services.lock_registry import InMemoryDeploymentLockRegistry
from deploy_agent.domain.services.port_allocator import PortAllocator
from deploy_agent.domain.services.traffic_switch import TrafficSwitcher
from deploy_agent.infrastructure.docker.builder import DockerImageBuilder
from deploy_agent.infrastructure.docker.runtime import DockerCliRuntime
from deploy_agent.infrastructure.environment.env_file import EnvFileWriter
from deploy_agent.infrastructure.http.endpoint_probe import HttpEndpointProbe
from deploy_agent.infrastructure.http.routing_client import (
    HttpRoutingClient,
    InMemoryRoutingClient,
)
from deploy_agent.infrastructure.http.secrets_client import (
    HttpSecretProvider,
    StaticSecretProvider,
)
from deploy_agent.infrastructure.messaging.control_channel import ControlChannelHandler
from deploy_agent.infrastructure.messaging.event_publisher import InMemoryEventPublisher
from deploy_agent.infrastructure.messaging.status_reporter import (
    FanOutStatusReporter,
    HttpJobNotifier,
)
from deploy_agent.infrastructure.network.port_probe import SocketPortProbe
from deploy_agent.infrastructure.persistence.port_store import JsonFilePortAllocationRepository
from deploy_agent.infrastructure.process.runner import AsyncProcessRunner
from deploy_agent.infrastructure.source.git_fetcher import GitSourceFetcher


logger = structlog.get_logger(__name__)


class ServiceContainer:
    """Simple dependency injection container.

    Composition root for the agent: every collaborator of the orchestrator
    is built here from settings, once per process.
    """

    _instance: ServiceContainer | None = None

    def __init__(
        self,
        settings: Settings | None = None,
        status_reporter: StatusReporter | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        s = self._settings

        self._runner = AsyncProcessRunner(default_timeout=s.deployment.command_timeout)
        self._runtime = DockerCliRuntime(
            self._runner,
            command_timeout=s.deployment.command_timeout,
            container_port=s.deployment.container_port,
        )
        self._event_publisher = InMemoryEventPublisher()
        self._lock_registry = InMemoryDeploymentLockRegistry()
        self._status_reporter = FanOutStatusReporter(status_reporter or HttpJobNotifier(
            s.backend.url, s.backend.agent_token, timeout=s.backend.request_timeout
        ))
        self._routing_client = self._build_routing_client()
        self._endpoint_probe = HttpEndpointProbe(timeout=s.health_check.probe_timeout)

        self._port_allocator = PortAllocator(
            JsonFilePortAllocationRepository(s.ports.store_path),
            SocketPortProbe(),
            range_start=s.ports.range_start,
            range_end=s.ports.range_end,
            container_port=s.deployment.container_port,
            reserved_ports=s.reserved_ports,
        )
        self._health_engine = HealthCheckEngine(
            self._runtime,
            s.health_check,
            endpoint_probe=self._endpoint_probe,
            routing_client=self._routing_client,
            health_path=s.deployment.health_path,
            proxy_network=s.deployment.proxy_network,
            proxy_container=s.deployment.proxy_container,
        )
        self._traffic_switcher = TrafficSwitcher(
            self._runtime,
            self._routing_client,
            s.traffic,
            base_domain=s.routing.base_domain,
            proxy_network=s.deployment.proxy_network,
            public_host=s.deployment.public_host,
            endpoint_probe=self._endpoint_probe,
            health_path=s.deployment.health_path,
        )
        self._backup_manager = BackupManager(
            self._runtime,
            self._health_engine,
            proxy_network=s.deployment.proxy_network,
            stop_timeout=s.deployment.stop_timeout,
            container_port=s.deployment.container_port,
            health_path=s.deployment.health_path,
        )
        self._orchestrator: DeploymentOrchestrator | None = None

    @classmethod
    def get_instance(cls) -> ServiceContainer:
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None

    def _build_routing_client(self) -> RoutingClient:
        routing = self._settings.routing
        if not routing.enabled:
            logger.warning(
                "routing_frontdoor_disabled",
                reason="FRONTDOOR_API_URL is not set",
                effect="routes are recorded in memory only; no traffic is switched",
            )
            return InMemoryRoutingClient(base_domain=routing.base_domain)
        return HttpRoutingClient(
            routing.api_url,
            routing.api_token,
            routing.base_domain,
            timeout=routing.request_timeout,
        )

    def _build_secret_provider(self) -> SecretProvider:
        backend = self._settings.backend
        if not backend.agent_token:
            return StaticSecretProvider()
        return HttpSecretProvider(
            backend.url, backend.agent_token, timeout=backend.request_timeout
        )

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def routing_enabled(self) -> bool:
        return self._settings.routing.enabled

    @property
    def runtime(self) -> ContainerRuntime:
        return self._runtime

    @property
    def lock_registry(self) -> DeploymentLockRegistry:
        return self._lock_registry

    @property
    def port_allocator(self) -> PortAllocator:
        return self._port_allocator

    @property
    def status_reporter(self) -> FanOutStatusReporter:
        return self._status_reporter

    @property
    def orchestrator(self) -> DeploymentOrchestrator:
        if self._orchestrator is None:
            s = self._settings
            self._orchestrator = DeploymentOrchestrator(
                runtime=self._runtime,
                image_builder=DockerImageBuilder(
                    self._runner, build_timeout=s.deployment.build_timeout
                ),
                source_fetcher=GitSourceFetcher(
                    self._runner, timeout=s.deployment.build_timeout
                ),
                secret_provider=self._build_secret_provider(),
                env_writer=EnvFileWriter(),
                port_allocator=self._port_allocator,
                lock_registry=self._lock_registry,
                health_engine=self._health_engine,
                traffic_switcher=self._traffic_switcher,
                backup_manager=self._backup_manager,
                status_reporter=self._status_reporter,
                event_publisher=self._event_publisher,
                settings=s.deployment,
                verify_external=s.health_check.verify_external,
            )
        return self._orchestrator

    @property
    def control_channel(self) -> ControlChannelHandler:
        return ControlChannelHandler(self.orchestrator, self._status_reporter)


def get_service_container() -> ServiceContainer:
    return ServiceContainer.get_instance()
