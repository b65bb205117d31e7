"""Snapshots of serving containers and rollback to them."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import structlog

from deploy_agent.domain.errors import CommandError, DeployAgentError, RollbackError
from deploy_agent.domain.models.container import (
    BackupMetadata,
    Container,
    ContainerSpec,
    ContainerStatus,
    health_probe_command,
)
from deploy_agent.domain.ports.services import ContainerRuntime
from deploy_agent.domain.services.health_check import HealthCheckEngine
from deploy_agent.infrastructure.observability.metrics import ROLLBACKS_TOTAL


logger = structlog.get_logger(__name__)

METADATA_FILE = "backup-metadata.json"
NO_SUCH_CONTAINER = "no such container"


class BackupManager:
    """Takes best-effort image snapshots and restores the previous container."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        health_engine: HealthCheckEngine,
        proxy_network: str | None = None,
        stop_timeout: int = 30,
        container_port: int = 8080,
        health_path: str = "/health",
    ) -> None:
        self._runtime = runtime
        self._health_engine = health_engine
        self._proxy_network = proxy_network
        self._stop_timeout = stop_timeout
        self._container_port = container_port
        self._health_path = health_path

    async def snapshot(self, container: Container, backup_dir: str | Path) -> BackupMetadata | None:
        """Commit the container to a backup image and record its metadata.

        A failed snapshot never blocks a rollout.
        """
        now = datetime.now(timezone.utc)
        stamp = now.strftime("%Y-%m-%dt%H-%M-%S-%fz")
        image_ref = f"backup-{container.name}-{stamp}".lower()

        try:
            await self._runtime.commit(container.id, image_ref)
            metadata = BackupMetadata(
                container_id=container.id,
                container_name=container.name,
                backup_image_ref=image_ref,
                timestamp=now,
                host_port=container.host_port,
                container_port=container.container_port,
            )
            path = Path(backup_dir) / METADATA_FILE
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(metadata.to_wire(), indent=2))
        except (DeployAgentError, OSError) as e:
            logger.warning("backup_snapshot_failed", container=container.name, error=str(e))
            return None

        logger.info("backup_snapshot_created", container=container.name, image=image_ref)
        return metadata

    @staticmethod
    def load_metadata(backup_dir: str | Path) -> BackupMetadata | None:
        path = Path(backup_dir) / METADATA_FILE
        if not path.exists():
            return None
        return BackupMetadata.model_validate(json.loads(path.read_text()))

    async def rollback(
        self,
        old: Container | None,
        new: Container | None,
        domain: str | None = None,
        backup: BackupMetadata | None = None,
    ) -> bool:
        """Tear down ``new`` and leave ``old`` serving.

        Returns True if a previous container is serving afterwards, False if
        there was none to restore. Raises RollbackError when restoring fails.
        """
        log = logger.bind(
            old_container=old.name if old else None,
            new_container=new.name if new else None,
            domain=domain,
        )
        log.info("rollback_started")

        if new is not None:
            await self._detach(new)
            try:
                await self.graceful_removal(new)
            except DeployAgentError as e:
                log.error("rollback_new_container_removal_failed", error=str(e))

        if old is None:
            ROLLBACKS_TOTAL.labels(result="not_needed").inc()
            log.info("rollback_nothing_to_restore")
            return False

        try:
            await self._restore(old, backup)
        except DeployAgentError as e:
            ROLLBACKS_TOTAL.labels(result="failed").inc()
            log.error("rollback_failed", error=str(e))
            raise RollbackError(f"Failed to restore {old.name}: {e}") from e

        ROLLBACKS_TOTAL.labels(result="restored").inc()
        log.info("rollback_completed")
        return True

    async def _restore(self, old: Container, backup: BackupMetadata | None) -> None:
        current = await self._runtime.inspect(old.name)

        if current is not None and current.status == ContainerStatus.RUNNING:
            logger.info("previous_container_still_running", container=old.name)
            if self._proxy_network:
                await self._runtime.connect_network(self._proxy_network, current.id)
            return

        if current is not None:
            logger.info("restarting_previous_container", container=old.name)
            await self._runtime.start(current.id)
            if self._proxy_network:
                await self._runtime.connect_network(self._proxy_network, current.id)
            await self._health_engine.perform_health_check(current)
            return

        if backup is None:
            raise RollbackError(f"Container {old.name} is gone and no backup image exists")

        host_port = backup.host_port or old.host_port
        if host_port is None:
            raise RollbackError(f"No host port recorded for {old.name}")
        container_port = backup.container_port or old.container_port or self._container_port

        logger.info(
            "recreating_previous_container",
            container=old.name,
            image=backup.backup_image_ref,
            host_port=host_port,
        )
        restored = await self._runtime.run_container(ContainerSpec(
            name=old.name,
            image=backup.backup_image_ref,
            host_port=host_port,
            container_port=container_port,
            network=self._proxy_network,
            health_cmd=health_probe_command(container_port, self._health_path),
        ))
        await self._health_engine.perform_health_check(restored)

    async def _detach(self, container: Container) -> None:
        if not self._proxy_network:
            return
        try:
            await self._runtime.disconnect_network(self._proxy_network, container.id)
        except CommandError as e:
            logger.debug("network_disconnect_skipped", container=container.name, error=str(e))

    async def graceful_removal(self, container: Container) -> None:
        """Stop and remove a container. A container that is already gone counts as removed."""
        try:
            current = await self._runtime.inspect(container.id)
            if current is None:
                logger.info("container_already_removed", container=container.name)
                return
            if current.is_running:
                await self._runtime.stop(current.id, timeout=self._stop_timeout)
            await self._runtime.remove(current.id, force=True)
        except CommandError as e:
            if NO_SUCH_CONTAINER in str(e).lower():
                logger.info("container_already_removed", container=container.name)
                return
            raise
        logger.info("container_removed", container=container.name)
