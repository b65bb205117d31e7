"""Container, color, port and backup value objects."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import Field

from deploy_agent.domain.models.base import utc_now, ValueObject, WireModel


class Color(str, Enum):
    """Blue/green label distinguishing the two instances of a service."""

    BLUE = "blue"
    GREEN = "green"

    @property
    def complement(self) -> Color:
        return Color.GREEN if self is Color.BLUE else Color.BLUE


class ContainerStatus(str, Enum):
    """Container runtime states."""

    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    RESTARTING = "restarting"
    EXITED = "exited"
    DEAD = "dead"
    REMOVING = "removing"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str) -> ContainerStatus:
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.UNKNOWN


TERMINAL_CONTAINER_STATUSES = {ContainerStatus.EXITED, ContainerStatus.DEAD}


def container_name(service_name: str, color: Color) -> str:
    """Derive the color-tagged container name for a service."""
    return f"{service_name}-{color.value}"


def color_from_name(service_name: str, name: str) -> Color | None:
    """Return the color a container name carries, or None for the legacy bare name."""
    for color in Color:
        if name == container_name(service_name, color):
            return color
    return None


def select_next_color(current: Container | None) -> Color:
    """Pick the complement of the serving color, blue when nothing is serving."""
    if current is None:
        return Color.BLUE
    # Legacy undecorated containers are treated as blue.
    if current.color is None:
        return Color.GREEN
    return current.color.complement


class Container(ValueObject):
    """A running or stopped workload instance."""

    id: str
    name: str
    color: Color | None = None
    host_port: int | None = None
    container_port: int | None = None
    status: ContainerStatus = ContainerStatus.UNKNOWN
    image: str = ""
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def is_running(self) -> bool:
        return self.status == ContainerStatus.RUNNING


class ContainerSpec(ValueObject):
    """Everything the runtime needs to start a service container."""

    name: str
    image: str
    host_port: int
    container_port: int
    env_file: str | None = None
    network: str | None = None
    additional_ports: list[int] = Field(default_factory=list)
    labels: dict[str, str] = Field(default_factory=dict)
    environment: dict[str, str] = Field(default_factory=dict)
    health_cmd: str | None = None
    health_interval: str = "10s"
    health_timeout: str = "5s"
    health_retries: int = 3
    health_start_period: str = "20s"


class PortAllocation(ValueObject):
    """A persisted mapping from a service to its host port."""

    service_name: str
    host_port: int
    container_port: int
    reused: bool = False


class BackupMetadata(WireModel):
    """Snapshot of a container taken before it is replaced."""

    container_id: str
    container_name: str
    backup_image_ref: str
    timestamp: datetime = Field(default_factory=utc_now)
    host_port: int | None = None
    container_port: int | None = None


class HealthCheckResult(ValueObject):
    """Outcome of a single health poll."""

    healthy: bool
    message: str = ""


def health_probe_command(container_port: int, health_path: str) -> str:
    """In-container probe the runtime runs to derive a health status.

    Falls back to wget for images that ship busybox but not curl.
    """
    url = f"http://localhost:{container_port}{health_path}"
    return f"curl -fsS {url} || wget -q -O /dev/null {url} || exit 1"
