"""Unit tests for the control channel websocket."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import pytest
from fastapi.testclient import TestClient

from deploy_agent.api.app import create_app
from deploy_agent.api.dependencies.services import get_service_container
from deploy_agent.config import Settings
from deploy_agent.infrastructure.messaging.control_channel import ControlChannelHandler
from deploy_agent.infrastructure.messaging.status_reporter import (
    FanOutStatusReporter,
    InMemoryStatusReporter,
)


if TYPE_CHECKING:
    from tests.conftest import AgentHarness


@dataclass
class ControlServices:
    status_reporter: FanOutStatusReporter
    control_channel: ControlChannelHandler


@pytest.fixture
def services(harness: AgentHarness) -> ControlServices:
    reporter = FanOutStatusReporter(InMemoryStatusReporter())
    return ControlServices(
        status_reporter=reporter,
        control_channel=ControlChannelHandler(harness.orchestrator, reporter),
    )


@pytest.fixture
def client(settings: Settings, services: ControlServices) -> TestClient:
    app = create_app(settings)
    app.dependency_overrides[get_service_container] = lambda: services
    return TestClient(app)


class TestControlSocket:
    def test_rejection_streamed_back(
        self, client: TestClient, services: ControlServices
    ) -> None:
        with client.websocket_connect("/api/v1/control") as ws:
            ws.send_text('{"type": "heartbeat"}')
            ws.send_text('[1, 2]')
            ws.send_text('{"type": "deploy_app", "payload": {}}')
            message = ws.receive_json()

        assert message["type"] == "status"
        assert message["payload"]["deploymentId"] == "unknown"
        assert message["payload"]["status"] == "failed"

    def test_channel_detached_on_close(
        self, client: TestClient, services: ControlServices
    ) -> None:
        with client.websocket_connect("/api/v1/control"):
            pass
        assert services.status_reporter.channel_count == 0
