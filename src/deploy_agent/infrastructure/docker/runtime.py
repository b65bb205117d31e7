"""Container runtime adapter driving the docker CLI."""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any

import structlog

from deploy_agent.domain.errors import CommandError, PrerequisiteError, StartError
from deploy_agent.domain.models.container import Container, ContainerSpec, ContainerStatus
from deploy_agent.domain.ports.services import ContainerRuntime, ProcessRunner


logger = structlog.get_logger(__name__)

DOCKER = "docker"
HEALTH_FORMAT = "{{if .State.Health}}{{.State.Health.Status}}{{else}}none{{end}}"
IMAGE_HEALTHCHECK_FORMAT = "{{json .Config.Healthcheck}}"

_FRACTION = re.compile(r"\.(\d{6})\d+")


def parse_docker_timestamp(value: str) -> datetime:
    """Parse docker's RFC 3339 timestamps, which carry nanosecond precision."""
    value = _FRACTION.sub(r".\1", value.strip()).replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return datetime.now(timezone.utc)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_port_bindings(ports: dict[str, Any] | None) -> dict[int, int]:
    """Turn ``NetworkSettings.Ports`` into a container_port -> host_port mapping."""
    bindings: dict[int, int] = {}
    for key, hosts in (ports or {}).items():
        if not hosts:
            continue
        container_port = int(key.split("/")[0])
        for host in hosts:
            host_port = host.get("HostPort")
            if host_port:
                bindings[container_port] = int(host_port)
                break
    return bindings


def container_from_inspect(data: dict[str, Any], container_port: int | None = None) -> Container:
    state = data.get("State") or {}
    bindings = parse_port_bindings((data.get("NetworkSettings") or {}).get("Ports"))
    if container_port is None and bindings:
        container_port = next(iter(bindings))
    return Container(
        id=data["Id"],
        name=data.get("Name", "").lstrip("/"),
        status=ContainerStatus.parse(state.get("Status", "")),
        image=(data.get("Config") or {}).get("Image", ""),
        created_at=parse_docker_timestamp(data.get("Created", "")),
        container_port=container_port,
        host_port=bindings.get(container_port) if container_port is not None else None,
    )


def _is_missing(error: CommandError) -> bool:
    detail = f"{error.stderr} {error.stdout}".lower()
    return "no such container" in detail or "no such object" in detail


class DockerCliRuntime(ContainerRuntime):
    """ContainerRuntime over ``docker`` invoked through the process runner."""

    def __init__(
        self,
        runner: ProcessRunner,
        command_timeout: float = 120.0,
        container_port: int = 8080,
    ) -> None:
        self._runner = runner
        self._timeout = command_timeout
        self._container_port = container_port

    async def _docker(self, *args: str, check: bool = True, timeout: float | None = None) -> str:
        result = await self._runner.run(
            DOCKER, list(args), timeout=timeout or self._timeout, check=check
        )
        return result.stdout

    async def check_available(self) -> None:
        try:
            version = await self._docker("info", "--format", "{{.ServerVersion}}")
        except CommandError as e:
            raise PrerequisiteError(f"Docker is not available: {e}") from e
        logger.debug("docker_available", server_version=version)

    async def ensure_network(self, network: str) -> None:
        try:
            existing = (await self._docker("network", "ls", "--format", "{{.Name}}")).splitlines()
            if network in existing:
                return
            await self._docker("network", "create", network)
        except CommandError as e:
            raise PrerequisiteError(f"Network {network} is unavailable: {e}") from e
        logger.info("docker_network_created", network=network)

    async def list_containers(self, names: list[str]) -> list[Container]:
        output = await self._docker("ps", "-a", "--format", "{{.Names}}\t{{.ID}}")
        wanted = set(names)
        containers: list[Container] = []
        for line in output.splitlines():
            name, _, container_id = line.partition("\t")
            if name.strip() not in wanted:
                continue
            container = await self.inspect(container_id.strip())
            if container is not None:
                containers.append(container)
        return containers

    async def inspect(self, container_ref: str) -> Container | None:
        try:
            output = await self._docker("inspect", "--type", "container", container_ref)
        except CommandError as e:
            if _is_missing(e):
                return None
            raise
        entries = json.loads(output or "[]")
        if not entries:
            return None
        return container_from_inspect(entries[0], self._container_port)

    async def health_status(self, container_ref: str) -> str:
        try:
            status = await self._docker("inspect", "--format", HEALTH_FORMAT, container_ref)
        except CommandError as e:
            if _is_missing(e):
                return "missing"
            raise
        return status.strip() or "none"

    async def image_declares_healthcheck(self, image_ref: str) -> bool:
        output = await self._docker(
            "image", "inspect", "--format", IMAGE_HEALTHCHECK_FORMAT, image_ref
        )
        healthcheck = json.loads(output.strip() or "null")
        # ["NONE"] is an explicit HEALTHCHECK NONE
        return bool(healthcheck and healthcheck.get("Test") and healthcheck["Test"] != ["NONE"])

    async def run_container(self, spec: ContainerSpec) -> Container:
        args = [
            "run",
            "-d",
            "--name", spec.name,
            "--restart", "unless-stopped",
            "-p", f"{spec.host_port}:{spec.container_port}",
        ]
        for port in spec.additional_ports:
            args += ["--expose", str(port)]
        if spec.env_file:
            args += ["--env-file", spec.env_file]
        for key, value in spec.environment.items():
            args += ["-e", f"{key}={value}"]
        for key, value in spec.labels.items():
            args += ["--label", f"{key}={value}"]
        if spec.network:
            args += ["--network", spec.network]
        if spec.health_cmd:
            args += [
                "--health-cmd", spec.health_cmd,
                "--health-interval", spec.health_interval,
                "--health-timeout", spec.health_timeout,
                "--health-retries", str(spec.health_retries),
                "--health-start-period", spec.health_start_period,
            ]
        args.append(spec.image)

        try:
            container_id = (await self._docker(*args)).strip()
        except CommandError as e:
            raise StartError(f"Failed to start container {spec.name}: {e}") from e

        container = await self.inspect(container_id)
        if container is None:
            raise StartError(f"Container {spec.name} disappeared right after starting")
        logger.info(
            "container_started",
            container=spec.name,
            image=spec.image,
            host_port=spec.host_port,
        )
        return container

    async def start(self, container_ref: str) -> None:
        await self._docker("start", container_ref)

    async def stop(self, container_ref: str, timeout: int = 30) -> None:
        await self._docker(
            "stop", f"--time={timeout}", container_ref, timeout=self._timeout + timeout
        )

    async def remove(self, container_ref: str, force: bool = False) -> None:
        args = ["rm", "-f", container_ref] if force else ["rm", container_ref]
        await self._docker(*args)

    async def commit(self, container_ref: str, image_ref: str) -> None:
        await self._docker("commit", container_ref, image_ref)

    async def logs(self, container_ref: str, tail: int = 50) -> str:
        result = await self._runner.run(
            DOCKER,
            ["logs", "--tail", str(tail), container_ref],
            timeout=self._timeout,
            check=False,
        )
        # docker logs replays the container's stderr on our stderr
        return "\n".join(part for part in (result.stdout, result.stderr) if part)

    async def port_bindings(self, container_ref: str) -> dict[int, int]:
        output = await self._docker(
            "inspect", "--format", "{{json .NetworkSettings.Ports}}", container_ref
        )
        return parse_port_bindings(json.loads(output or "null"))

    async def connect_network(self, network: str, container_ref: str) -> None:
        try:
            await self._docker("network", "connect", network, container_ref)
        except CommandError as e:
            if "already exists" in e.stderr.lower():
                return
            raise

    async def disconnect_network(self, network: str, container_ref: str) -> None:
        try:
            await self._docker("network", "disconnect", network, container_ref)
        except CommandError as e:
            if "is not connected" in e.stderr.lower():
                return
            raise

    async def network_topology(self, network: str) -> dict[str, Any]:
        output = await self._docker(
            "network", "inspect", network, "--format", "{{json .Containers}}"
        )
        attached = json.loads(output or "null") or {}
        return {
            "network": network,
            "containers": sorted(
                (
                    {"name": entry.get("Name", ""), "ipv4": entry.get("IPv4Address", "")}
                    for entry in attached.values()
                ),
                key=lambda entry: entry["name"],
            ),
        }
