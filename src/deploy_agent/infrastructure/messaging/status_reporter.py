"""Status reporters for the control channel and job notifications."""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable

import httpx
import structlog

from deploy_agent.domain.errors import ReportingError
from deploy_agent.domain.models.deployment import JobNotification, StatusEvent
from deploy_agent.domain.ports.services import StatusReporter


logger = structlog.get_logger(__name__)


class InMemoryStatusReporter(StatusReporter):
    """Records everything it is asked to send."""

    def __init__(self) -> None:
        self.events: list[StatusEvent] = []
        self.notifications: list[JobNotification] = []

    async def send_status(self, event: StatusEvent) -> None:
        self.events.append(event)

    async def notify_job(self, notification: JobNotification) -> None:
        self.notifications.append(notification)

    def statuses(self, deployment_id: str | None = None) -> list[str]:
        return [
            e.payload.status.value
            for e in self.events
            if deployment_id is None or e.payload.deployment_id == deployment_id
        ]


class CallbackStatusReporter(StatusReporter):
    """Serializes events to JSON and hands them to a transport callback.

    ``send`` is typically a websocket's send method. Job notifications go to
    ``job_notifier`` when one is given and are only logged otherwise.
    """

    def __init__(
        self,
        send: Callable[[str], Awaitable[None]],
        job_notifier: StatusReporter | None = None,
    ) -> None:
        self._send = send
        self._job_notifier = job_notifier

    async def send_status(self, event: StatusEvent) -> None:
        message = json.dumps(event.to_wire())
        try:
            await self._send(message)
        except (ConnectionError, OSError, RuntimeError) as e:
            raise ReportingError(f"Control channel send failed: {e}") from e

    async def notify_job(self, notification: JobNotification) -> None:
        if self._job_notifier is None:
            logger.info(
                "job_notification_unrouted",
                job_id=notification.job_id,
                status=notification.status.value,
            )
            return
        await self._job_notifier.notify_job(notification)


class HttpJobNotifier(StatusReporter):
    """Posts job results to the backend. Status events only go to the log."""

    def __init__(self, base_url: str, agent_token: str, timeout: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self._agent_token = agent_token
        self._timeout = timeout

    async def send_status(self, event: StatusEvent) -> None:
        logger.info(
            "status_event",
            deployment_id=event.payload.deployment_id,
            status=event.payload.status.value,
            message=event.payload.message,
        )

    async def notify_job(self, notification: JobNotification) -> None:
        job_ref = notification.job_id or notification.project_id
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    f"{self.base_url}/api/jobs/{job_ref}/result",
                    headers={"Authorization": f"Bearer {self._agent_token}"},
                    json=notification.to_wire(),
                )
                resp.raise_for_status()
        except httpx.HTTPError as e:
            raise ReportingError(f"Job notification for {job_ref} failed: {e}") from e
        logger.info("job_notified", job_id=job_ref, status=notification.status.value)


class FanOutStatusReporter(StatusReporter):
    """Copies status events to every attached control channel.

    Job notifications only go to the primary reporter. A channel whose send
    fails is detached.
    """

    def __init__(self, primary: StatusReporter) -> None:
        self._primary = primary
        self._channels: list[StatusReporter] = []

    @property
    def channel_count(self) -> int:
        return len(self._channels)

    def attach(self, channel: StatusReporter) -> None:
        self._channels.append(channel)

    def detach(self, channel: StatusReporter) -> None:
        if channel in self._channels:
            self._channels.remove(channel)

    async def send_status(self, event: StatusEvent) -> None:
        await self._primary.send_status(event)
        for channel in list(self._channels):
            try:
                await channel.send_status(event)
            except ReportingError as e:
                logger.warning(
                    "control_channel_dropped",
                    deployment_id=event.payload.deployment_id,
                    error=str(e),
                )
                self.detach(channel)

    async def notify_job(self, notification: JobNotification) -> None:
        await self._primary.notify_job(notification)
