"""Blue-green deployment orchestration."""

from __future__ import annotations

import asyncio
import shutil
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import structlog

from deploy_agent.config import DeploymentSettings
from deploy_agent.domain.errors import (
    CommandError,
    ConflictError,
    DeployAgentError,
    PrerequisiteError,
    ReportingError,
    RollbackError,
    SourceFetchError,
    StartError,
    ValidationError,
)
from deploy_agent.domain.models.base import AggregateRoot
from deploy_agent.domain.models.container import (
    Color,
    color_from_name,
    Container,
    container_name,
    ContainerSpec,
    health_probe_command,
    select_next_color,
)
from deploy_agent.domain.models.deployment import (
    DATASTORE_APP_TYPES,
    Deployment,
    DeploymentOutcome,
    DeploymentRequest,
    DeploymentStage,
    DeploymentStatus,
    JobNotification,
    StatusEvent,
    StatusPayload,
)
from deploy_agent.domain.ports.services import (
    ContainerRuntime,
    DeploymentLockRegistry,
    EnvironmentFileWriter,
    EventPublisher,
    ImageBuilder,
    SecretProvider,
    SourceFetcher,
    StatusReporter,
)
from deploy_agent.domain.services.backup_manager import BackupManager
from deploy_agent.domain.services.health_check import HealthCheckEngine
from deploy_agent.domain.services.port_allocator import PortAllocator
from deploy_agent.domain.services.traffic_switch import TrafficSwitcher
from deploy_agent.infrastructure.observability.metrics import (
    ACTIVE_DEPLOYMENTS,
    DEPLOYMENT_CONFLICTS,
    DEPLOYMENT_DURATION,
    DEPLOYMENTS_TOTAL,
)


logger = structlog.get_logger(__name__)


class DeploymentOrchestrator:
    """Runs one rollout end to end: build, start, verify, switch, retire.

    At most one rollout per ``service:environment`` runs at a time. Once the
    lock is held every failure is rolled back and reported exactly once; the
    caller always gets a DeploymentOutcome back.
    """

    def __init__(
        self,
        runtime: ContainerRuntime,
        image_builder: ImageBuilder,
        source_fetcher: SourceFetcher,
        secret_provider: SecretProvider,
        env_writer: EnvironmentFileWriter,
        port_allocator: PortAllocator,
        lock_registry: DeploymentLockRegistry,
        health_engine: HealthCheckEngine,
        traffic_switcher: TrafficSwitcher,
        backup_manager: BackupManager,
        status_reporter: StatusReporter,
        event_publisher: EventPublisher,
        settings: DeploymentSettings,
        verify_external: bool = True,
    ) -> None:
        self._runtime = runtime
        self._image_builder = image_builder
        self._source_fetcher = source_fetcher
        self._secret_provider = secret_provider
        self._env_writer = env_writer
        self._port_allocator = port_allocator
        self._locks = lock_registry
        self._health_engine = health_engine
        self._traffic_switcher = traffic_switcher
        self._backup_manager = backup_manager
        self._status_reporter = status_reporter
        self._event_publisher = event_publisher
        self._settings = settings
        self._verify_external = verify_external

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _publish_events(self, aggregate: AggregateRoot) -> None:
        """Collect and publish all pending domain events from an aggregate."""
        for event in aggregate.collect_events():
            await self._event_publisher.publish(
                event.event_type, event.model_dump(mode="json")
            )

    async def _send_status(
        self,
        deployment_id: str,
        status: DeploymentStatus,
        message: str,
        domain: str | None = None,
    ) -> None:
        event = StatusEvent(payload=StatusPayload(
            deployment_id=deployment_id,
            status=status,
            message=message,
            domain=domain,
        ))
        logger.info("deployment_status", status=status.value, message=message, domain=domain)
        try:
            await self._status_reporter.send_status(event)
        except ReportingError as e:
            logger.error("status_delivery_failed", status=status.value, error=str(e))

    async def _notify_job(self, request: DeploymentRequest, outcome: DeploymentOutcome) -> None:
        if not (request.job_id or request.project_id):
            return
        notification = JobNotification(
            job_id=request.job_id,
            project_id=request.project_id,
            deployment_id=request.deployment_id,
            status=outcome.status,
            message=outcome.message,
            domain=outcome.domain,
        )
        try:
            await self._status_reporter.notify_job(notification)
        except ReportingError as e:
            logger.error("job_notification_failed", job_id=request.job_id, error=str(e))

    def working_dir(self, deployment_id: str) -> Path:
        return Path(self._settings.base_dir) / deployment_id

    @property
    def active_locks(self) -> set[str]:
        return self._locks.active()

    # ------------------------------------------------------------------
    # Rollout
    # ------------------------------------------------------------------

    async def deploy(
        self, payload: DeploymentRequest | Mapping[str, Any]
    ) -> DeploymentOutcome:
        """Roll out a service.

        Raises ValidationError for malformed requests and ConflictError when
        a rollout of the same service and environment is already running.
        Neither has side effects. Every other failure is returned as a failed
        outcome after rollback.
        """
        request = DeploymentRequest.parse(payload)
        key = request.lock_key

        if not self._locks.acquire(key):
            DEPLOYMENT_CONFLICTS.inc()
            logger.warning(
                "deployment_conflict",
                deployment_id=request.deployment_id,
                lock_key=key,
            )
            raise ConflictError(key)

        ACTIVE_DEPLOYMENTS.inc()
        started = time.monotonic()
        deployment = Deployment(request=request)
        with structlog.contextvars.bound_contextvars(
            deployment_id=request.deployment_id,
            service=request.service_name,
            environment=request.environment,
        ):
            try:
                outcome = await self._run(deployment)
            finally:
                self._locks.release(key)
                ACTIVE_DEPLOYMENTS.dec()
                if not deployment.has_reached(DeploymentStage.ROLLING_BACK):
                    self._remove_working_dir(request.deployment_id)

            DEPLOYMENTS_TOTAL.labels(
                status=outcome.status.value, environment=request.environment
            ).inc()
            DEPLOYMENT_DURATION.labels(status=outcome.status.value).observe(
                time.monotonic() - started
            )
            await self._notify_job(request, outcome)
            return outcome

    async def _run(self, deployment: Deployment) -> DeploymentOutcome:
        request = deployment.request
        domain = self._traffic_switcher.expected_domain(request.service_name)
        if request.domain and request.domain != domain:
            logger.warning("requested_domain_ignored", requested=request.domain, domain=domain)
        try:
            deployment.advance(DeploymentStage.LOCKED)
            await self._publish_events(deployment)
            await self._send_status(
                request.deployment_id, DeploymentStatus.IN_PROGRESS, "Deployment started"
            )
            await self._execute(deployment, domain)
        except Exception as e:
            logger.exception("deployment_failed", stage=deployment.stage.value, error=str(e))
            await self._recover(deployment, domain)
            deployment.fail(str(e))
            await self._publish_events(deployment)
            await self._send_status(request.deployment_id, DeploymentStatus.FAILED, str(e))
            return self._outcome(deployment, success=False, message=str(e), domain=None)

        message = "Deployment completed successfully"
        if deployment.degraded:
            message = f"{message} (degraded: {'; '.join(deployment.degraded_reasons)})"
        await self._send_status(
            request.deployment_id, DeploymentStatus.SUCCESS, message, domain=domain
        )
        logger.info(
            "deployment_succeeded",
            container=deployment.new_container.name if deployment.new_container else None,
            domain=domain,
            degraded=deployment.degraded,
        )
        return self._outcome(deployment, success=True, message=message, domain=domain)

    async def _execute(self, deployment: Deployment, domain: str) -> None:
        request = deployment.request
        service = request.service_name

        work_dir = await self._prepare(request.deployment_id)
        source_dir = work_dir / "source"
        backup_dir = work_dir / "backup"
        deployment.advance(DeploymentStage.DIRECTORIES_READY)

        env_file = work_dir / f".env.{request.environment}"
        variables: dict[str, str] = {}
        if request.env_vars_token:
            variables = await self._secret_provider.fetch(
                request.deployment_id, request.env_vars_token
            )
        await self._env_writer.write(str(env_file), variables)
        deployment.advance(DeploymentStage.ENV_FETCHED)
        logger.info("environment_prepared", variable_count=len(variables))

        await self._fetch_source(request, str(source_dir))
        deployment.advance(DeploymentStage.SOURCE_FETCHED)

        app_type = request.app_type or await self._image_builder.detect_app_type(str(source_dir))
        if app_type in DATASTORE_APP_TYPES:
            raise ValidationError(
                f"app type '{app_type}' is a datastore and is not deployed by the orchestrator"
            )
        deployment.app_type = app_type
        deployment.advance(DeploymentStage.TYPE_RESOLVED)
        logger.info("app_type_resolved", app_type=app_type, detected=request.app_type is None)

        old = await self.discover_current(service)
        deployment.old_container = old
        deployment.target_color = select_next_color(old)
        if old is not None:
            deployment.backup = await self._backup_manager.snapshot(old, backup_dir)
        deployment.advance(DeploymentStage.OLD_CONTAINER_SNAPSHOTTED)
        await self._publish_events(deployment)
        logger.info(
            "target_color_selected",
            old_container=old.name if old else None,
            target_color=deployment.target_color.value,
        )

        deployment.port_allocation = await self._port_allocator.allocate_port(service)

        await self._send_status(
            request.deployment_id, DeploymentStatus.IN_PROGRESS, "Building image"
        )
        deployment.image_ref = await self._image_builder.build(
            str(source_dir),
            f"{service}:{request.deployment_id}".lower(),
            app_type,
            env_file=str(env_file),
            container_port=self._port_allocator.container_port,
        )
        deployment.advance(DeploymentStage.NEW_CONTAINER_BUILT)

        deployment.new_container = await self._start_new_container(deployment, str(env_file))
        deployment.advance(DeploymentStage.NEW_CONTAINER_STARTED)
        await self._publish_events(deployment)

        await self._send_status(
            request.deployment_id, DeploymentStatus.IN_PROGRESS, "Running health checks"
        )
        await self._health_engine.perform_health_check(deployment.new_container)
        deployment.advance(DeploymentStage.HEALTH_VERIFIED)

        await self._send_status(
            request.deployment_id, DeploymentStatus.IN_PROGRESS, "Switching traffic"
        )
        confirmed = await self._traffic_switcher.switch_traffic(
            old, deployment.new_container, service
        )
        deployment.advance(DeploymentStage.TRAFFIC_REGISTERED)
        if not confirmed:
            deployment.mark_degraded("route registration was not confirmed by the routing front end")

        if self._verify_external:
            report = await self._health_engine.verify_routed_health(
                deployment.new_container, domain
            )
            if not report.healthy:
                deployment.mark_degraded(
                    f"routed verification failed: {', '.join(report.failed_probes)}"
                )
                logger.warning(
                    "routed_verification_diagnostics",
                    diagnostics=report.diagnostics,
                )
        deployment.advance(DeploymentStage.TRAFFIC_SWITCH_VERIFIED)
        await self._publish_events(deployment)

        if old is not None:
            try:
                await self._backup_manager.graceful_removal(old)
            except DeployAgentError as e:
                deployment.mark_degraded(f"old container {old.name} was not removed")
                logger.error("old_container_removal_failed", container=old.name, error=str(e))
        deployment.advance(DeploymentStage.OLD_CONTAINER_RETIRED)

        deployment.succeed()
        await self._publish_events(deployment)

    async def _prepare(self, deployment_id: str) -> Path:
        try:
            await self._runtime.check_available()
            await self._runtime.ensure_network(self._settings.proxy_network)
        except CommandError as e:
            raise PrerequisiteError(f"Container runtime prerequisites not met: {e}") from e

        work_dir = self.working_dir(deployment_id)
        if work_dir.exists():
            logger.info("stale_working_dir_replaced", path=str(work_dir))
            shutil.rmtree(work_dir)
        (work_dir / "source").mkdir(parents=True)
        (work_dir / "backup").mkdir()
        return work_dir

    async def _fetch_source(self, request: DeploymentRequest, target_dir: str) -> None:
        attempts = max(self._settings.source_fetch_retries, 1)
        for attempt in range(1, attempts + 1):
            try:
                await self._source_fetcher.fetch(
                    request.repository_url, request.branch, request.github_token, target_dir
                )
                return
            except SourceFetchError as e:
                if attempt == attempts:
                    raise
                logger.warning(
                    "source_fetch_retry",
                    attempt=attempt,
                    attempts=attempts,
                    error=str(e),
                )
                shutil.rmtree(target_dir, ignore_errors=True)
                await asyncio.sleep(self._settings.source_fetch_delay)

    async def discover_current(self, service_name: str) -> Container | None:
        """Return the service's serving container, the oldest running match."""
        names = [container_name(service_name, color) for color in Color]
        names.append(service_name)
        candidates = [
            c for c in await self._runtime.list_containers(names) if c.is_running
        ]
        if not candidates:
            return None

        current = min(candidates, key=lambda c: c.created_at)
        updates: dict[str, Any] = {"color": color_from_name(service_name, current.name)}
        if current.host_port is None:
            bindings = await self._runtime.port_bindings(current.id)
            port = current.container_port or self._port_allocator.container_port
            updates["host_port"] = bindings.get(port)
            updates["container_port"] = port
        return current.model_copy(update=updates)

    async def _start_new_container(self, deployment: Deployment, env_file: str) -> Container:
        request = deployment.request
        assert deployment.target_color is not None
        assert deployment.port_allocation is not None
        assert deployment.image_ref is not None

        name = container_name(request.service_name, deployment.target_color)
        for stale in await self._runtime.list_containers([name]):
            logger.info("stale_container_removed", container=stale.name)
            await self._backup_manager.graceful_removal(stale)

        allocation = deployment.port_allocation
        health_cmd: str | None = None
        if not await self._runtime.image_declares_healthcheck(deployment.image_ref):
            health_cmd = health_probe_command(
                allocation.container_port, self._settings.health_path
            )
        spec = ContainerSpec(
            name=name,
            image=deployment.image_ref,
            host_port=allocation.host_port,
            container_port=allocation.container_port,
            env_file=env_file,
            additional_ports=request.additional_ports,
            labels={
                "deploy-agent.service": request.service_name,
                "deploy-agent.environment": request.environment,
                "deploy-agent.deployment-id": request.deployment_id,
                "deploy-agent.color": deployment.target_color.value,
            },
            environment={
                "PORT": str(allocation.container_port),
                **{
                    f"PORT_{index}": str(port)
                    for index, port in enumerate(request.additional_ports, start=1)
                },
            },
            health_cmd=health_cmd,
        )
        try:
            container = await self._runtime.run_container(spec)
        except StartError:
            await self._remove_half_created(name)
            raise
        except CommandError as e:
            await self._remove_half_created(name)
            raise StartError(f"Failed to start container {name}: {e}") from e

        observed = (await self._runtime.port_bindings(container.id)).get(
            allocation.container_port
        )
        if observed is not None and observed != allocation.host_port:
            await self._port_allocator.verify_port_mapping(request.service_name, observed)
            deployment.port_allocation = allocation.model_copy(update={"host_port": observed})
        host_port = observed or allocation.host_port

        logger.info("new_container_started", container=name, host_port=host_port)
        return container.model_copy(update={
            "color": deployment.target_color,
            "host_port": host_port,
            "container_port": allocation.container_port,
        })

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _remove_half_created(self, name: str) -> None:
        """Remove whatever a failed ``run`` left under the target name."""
        try:
            leftovers = await self._runtime.list_containers([name])
            for container in leftovers:
                await self._backup_manager.graceful_removal(container)
                logger.info(
                    "half_created_container_removed",
                    container=container.name,
                    status=container.status.value,
                )
        except CommandError as e:
            logger.error("half_created_container_removal_failed", container=name, error=str(e))

    async def _recover(self, deployment: Deployment, domain: str) -> None:
        """Put the previous version back. Never raises.

        Each step is attempted independently; a failure in one is logged and
        the rest still run.
        """
        deployment.start_rollback()
        service = deployment.request.service_name
        old = deployment.old_container

        try:
            await self._publish_events(deployment)
        except Exception:
            logger.exception("rollback_event_publish_failed")

        if deployment.has_reached(DeploymentStage.TRAFFIC_REGISTERED) and old is not None:
            try:
                await self._traffic_switcher.switch_traffic(None, old, service)
            except Exception:
                logger.exception("route_restore_failed", container=old.name)

        try:
            await self._backup_manager.rollback(
                old, deployment.new_container, domain, deployment.backup
            )
        except RollbackError as e:
            logger.error("rollback_failed", error=str(e))
        except Exception:
            logger.exception("rollback_failed")

        if deployment.port_allocation is not None:
            try:
                if old is not None and old.host_port is not None:
                    await self._port_allocator.verify_port_mapping(service, old.host_port)
                else:
                    await self._port_allocator.release_port(service)
            except Exception:
                logger.exception("port_record_restore_failed", service=service)

    def _remove_working_dir(self, deployment_id: str) -> None:
        work_dir = self.working_dir(deployment_id)
        try:
            shutil.rmtree(work_dir)
        except FileNotFoundError:
            return
        except OSError as e:
            logger.warning("working_dir_cleanup_failed", path=str(work_dir), error=str(e))

    @staticmethod
    def _outcome(
        deployment: Deployment, success: bool, message: str, domain: str | None
    ) -> DeploymentOutcome:
        new = deployment.new_container
        return DeploymentOutcome(
            deployment_id=deployment.deployment_id,
            success=success,
            status=DeploymentStatus.SUCCESS if success else DeploymentStatus.FAILED,
            message=message,
            final_stage=deployment.stage,
            container_name=new.name if new and success else None,
            host_port=new.host_port if new and success else None,
            domain=domain,
            color=deployment.target_color if success else None,
            degraded=deployment.degraded,
            rolled_back=deployment.has_reached(DeploymentStage.ROLLING_BACK),
        )
