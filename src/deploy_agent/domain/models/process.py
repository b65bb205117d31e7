"""External process results."""

from __future__ import annotations

from deploy_agent.domain.models.base import ValueObject


class CommandResult(ValueObject):
    """Structured result of an external command."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0
