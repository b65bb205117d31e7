"""Deployment agent error taxonomy."""

from __future__ import annotations

from typing import Any


class DeployAgentError(Exception):
    """Base class for all agent errors."""


class ValidationError(DeployAgentError):
    """Raised when a deployment request is malformed or incomplete."""

    def __init__(self, message: str, missing_fields: list[str] | None = None) -> None:
        super().__init__(message)
        self.missing_fields = missing_fields or []


class ConflictError(DeployAgentError):
    """Raised when a rollout for the same service and environment is in progress."""

    def __init__(self, lock_key: str) -> None:
        super().__init__(f"Deployment for {lock_key} is already in progress")
        self.lock_key = lock_key


class PrerequisiteError(DeployAgentError):
    """Raised when required tooling or networks are unavailable."""


class SourceFetchError(DeployAgentError):
    """Raised when application source cannot be retrieved."""


class SecretFetchError(DeployAgentError):
    """Raised when environment variables cannot be retrieved."""


class BuildError(DeployAgentError):
    """Raised when the image build fails."""


class StartError(DeployAgentError):
    """Raised when the new container cannot be started."""


class HealthCheckError(DeployAgentError):
    """Raised when a container never reports healthy within its retry budget."""

    def __init__(self, message: str, diagnostics: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.diagnostics = diagnostics or {}


class RegistrationError(DeployAgentError):
    """Raised when the routing front end rejects or cannot be reached."""


class RollbackError(DeployAgentError):
    """Raised when the previous container cannot be restored."""


class ExhaustedError(DeployAgentError):
    """Raised when no free host port remains in the configured range."""


class CommandError(DeployAgentError):
    """Raised when an external command exits with a non-zero status."""

    def __init__(
        self,
        command: str,
        args: list[str],
        exit_code: int | None,
        stdout: str = "",
        stderr: str = "",
        message: str | None = None,
    ) -> None:
        self.command = command
        self.args_list = list(args)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        detail = stderr or stdout
        super().__init__(
            message
            or f"Command '{command} {' '.join(args)}' failed with exit code {exit_code}"
            + (f": {detail}" if detail else "")
        )


class CommandNotFoundError(CommandError):
    """Raised when the executable does not exist on PATH."""


class CommandTimeoutError(CommandError):
    """Raised when an external command exceeds its execution timeout."""


class ReportingError(DeployAgentError):
    """Raised when a status event or job notification cannot be delivered."""
