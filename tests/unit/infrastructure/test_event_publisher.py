"""Unit tests for the event publisher."""

from __future__ import annotations

from typing import Any

import pytest

from deploy_agent.infrastructure.messaging.event_publisher import InMemoryEventPublisher


class TestInMemoryEventPublisher:
    @pytest.mark.asyncio
    async def test_publish_records_rollout_events(self) -> None:
        publisher = InMemoryEventPublisher()
        await publisher.publish("deployment.started", {"deployment_id": "dep-1"})
        assert publisher.published_events == [("deployment.started", {"deployment_id": "dep-1"})]

    @pytest.mark.asyncio
    async def test_events_of_type(self) -> None:
        publisher = InMemoryEventPublisher()
        await publisher.publish_batch([
            ("deployment.stage_changed", {"to_stage": "locked"}),
            ("deployment.started", {"deployment_id": "dep-1"}),
            ("deployment.stage_changed", {"to_stage": "directories_ready"}),
        ])
        stages = [e["to_stage"] for e in publisher.events_of_type("deployment.stage_changed")]
        assert stages == ["locked", "directories_ready"]

    @pytest.mark.asyncio
    async def test_subscribers_receive_payload(self) -> None:
        publisher = InMemoryEventPublisher()
        received: list[dict[str, Any]] = []

        async def on_failed(payload: dict[str, Any]) -> None:
            received.append(payload)

        publisher.subscribe("deployment.failed", on_failed)
        await publisher.publish("deployment.failed", {"error_message": "boom"})
        await publisher.publish("deployment.succeeded", {})

        assert received == [{"error_message": "boom"}]

    @pytest.mark.asyncio
    async def test_clear(self) -> None:
        publisher = InMemoryEventPublisher()
        await publisher.publish("deployment.started", {})
        publisher.clear()
        assert publisher.published_events == []
