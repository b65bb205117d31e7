"""Unit tests for logging configuration."""

from __future__ import annotations

from deploy_agent.infrastructure.observability.logging import (
    REDACTED,
    redact_sensitive,
    setup_logging,
)


class TestLogging:
    def test_setup_logging_info(self) -> None:
        setup_logging("INFO")  # Should not raise

    def test_setup_logging_debug(self) -> None:
        setup_logging("DEBUG")  # Should not raise

    def test_setup_logging_console(self) -> None:
        setup_logging("WARNING", json_output=False)  # Should not raise


class TestRedaction:
    def test_masks_credentials(self) -> None:
        event = redact_sensitive(None, "info", {
            "event": "source_fetch_started",
            "github_token": "ghp_abc",
            "Authorization": "Bearer xyz",
            "deployment_id": "dep-1",
        })
        assert event["github_token"] == REDACTED
        assert event["Authorization"] == REDACTED
        assert event["deployment_id"] == "dep-1"

    def test_empty_values_untouched(self) -> None:
        event = redact_sensitive(None, "info", {"event": "x", "token": None})
        assert event["token"] is None
