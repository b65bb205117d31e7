"""Service port interfaces (hexagonal architecture)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

from deploy_agent.domain.models.container import Container, ContainerSpec, HealthCheckResult
from deploy_agent.domain.models.deployment import JobNotification, StatusEvent
from deploy_agent.domain.models.process import CommandResult
from deploy_agent.domain.models.routing import RouteRecord, RouteRegistration


class ProcessRunner(ABC):
    """Port for running external commands with an argument vector."""

    @abstractmethod
    async def run(
        self,
        command: str,
        args: list[str] | None = None,
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        check: bool = True,
    ) -> CommandResult:
        """Run a command. Raises CommandError on non-zero exit when check is set."""


class ContainerRuntime(ABC):
    """Port for the container runtime."""

    @abstractmethod
    async def check_available(self) -> None:
        """Raise PrerequisiteError if the runtime cannot be used."""

    @abstractmethod
    async def ensure_network(self, network: str) -> None:
        """Create the network if it does not exist."""

    @abstractmethod
    async def list_containers(self, names: list[str]) -> list[Container]:
        """List containers (any state) whose name matches one of the given names exactly."""

    @abstractmethod
    async def inspect(self, container_ref: str) -> Container | None:
        """Inspect a container by id or name. Returns None if it does not exist."""

    @abstractmethod
    async def health_status(self, container_ref: str) -> str:
        """Return the runtime health status: healthy, unhealthy, starting or none."""

    @abstractmethod
    async def image_declares_healthcheck(self, image_ref: str) -> bool:
        """Whether the image carries its own HEALTHCHECK instruction."""

    @abstractmethod
    async def run_container(self, spec: ContainerSpec) -> Container:
        """Create and start a container from a spec."""

    @abstractmethod
    async def start(self, container_ref: str) -> None:
        """Start a stopped container."""

    @abstractmethod
    async def stop(self, container_ref: str, timeout: int = 30) -> None:
        """Stop a running container."""

    @abstractmethod
    async def remove(self, container_ref: str, force: bool = False) -> None:
        """Remove a container."""

    @abstractmethod
    async def commit(self, container_ref: str, image_ref: str) -> None:
        """Capture a container's filesystem as an image."""

    @abstractmethod
    async def logs(self, container_ref: str, tail: int = 50) -> str:
        """Return the tail of a container's logs."""

    @abstractmethod
    async def port_bindings(self, container_ref: str) -> dict[int, int]:
        """Return a container_port -> host_port mapping."""

    @abstractmethod
    async def connect_network(self, network: str, container_ref: str) -> None:
        """Attach a container to a network."""

    @abstractmethod
    async def disconnect_network(self, network: str, container_ref: str) -> None:
        """Detach a container from a network."""

    @abstractmethod
    async def network_topology(self, network: str) -> dict[str, Any]:
        """Describe the containers attached to a network."""


class ImageBuilder(ABC):
    """Port for the image-build collaborator."""

    @abstractmethod
    async def detect_app_type(self, source_dir: str) -> str:
        """Infer the application type from the source tree."""

    @abstractmethod
    async def build(
        self,
        source_dir: str,
        image_ref: str,
        app_type: str,
        env_file: str | None = None,
        container_port: int = 8080,
    ) -> str:
        """Build a runnable image and return its reference."""


class SourceFetcher(ABC):
    """Port for retrieving application source."""

    @abstractmethod
    async def fetch(
        self, repository_url: str, branch: str, token: str | None, target_dir: str
    ) -> None:
        """Materialize a single revision of the source into target_dir."""


class SecretProvider(ABC):
    """Port for retrieving per-deployment environment variables."""

    @abstractmethod
    async def fetch(self, deployment_id: str, token: str | None) -> dict[str, str]:
        """Return a flat key/value mapping of environment variables."""


class EnvironmentFileWriter(ABC):
    """Port for materializing environment variables for the container."""

    @abstractmethod
    async def write(self, path: str, variables: Mapping[str, str]) -> None:
        """Write a KEY=value file readable only by the agent's user."""


class RoutingClient(ABC):
    """Port for the routing front end."""

    @abstractmethod
    async def register_route(self, service_name: str, target_address: str) -> RouteRegistration:
        """Register or update the target of a service's route."""

    @abstractmethod
    async def list_routes(self) -> list[RouteRecord]:
        """List the routes currently known to the front end."""

    @abstractmethod
    async def ping(self) -> bool:
        """Check the front end is reachable."""


class EndpointProbe(ABC):
    """Port for probing an HTTP health endpoint."""

    @abstractmethod
    async def probe(self, url: str) -> HealthCheckResult:
        """Probe a URL once."""


class PortProbe(ABC):
    """Port for checking live OS port bindings."""

    @abstractmethod
    async def is_port_in_use(self, port: int) -> bool:
        """Return True if something is bound to the port on this host."""


class StatusReporter(ABC):
    """Port for reporting deployment status to the control channel."""

    @abstractmethod
    async def send_status(self, event: StatusEvent) -> None:
        """Send a status event."""

    @abstractmethod
    async def notify_job(self, notification: JobNotification) -> None:
        """Send an out-of-band job completion notice."""


class EventPublisher(ABC):
    """Port for publishing domain events."""

    @abstractmethod
    async def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        """Publish an event."""

    @abstractmethod
    async def publish_batch(self, events: list[tuple[str, dict[str, Any]]]) -> None:
        """Publish a batch of events."""


class DeploymentLockRegistry(ABC):
    """Port for per-service rollout mutual exclusion."""

    @abstractmethod
    def acquire(self, key: str) -> bool:
        """Atomically take the lock. Returns False if it is already held."""

    @abstractmethod
    def release(self, key: str) -> None:
        """Release the lock. Releasing an absent key is a no-op."""

    @abstractmethod
    def is_locked(self, key: str) -> bool:
        """Check whether a lock is held."""

    @abstractmethod
    def active(self) -> set[str]:
        """Return a copy of the held keys."""
