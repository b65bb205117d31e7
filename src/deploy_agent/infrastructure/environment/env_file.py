"""Environment file writer."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping

import structlog

from deploy_agent.domain.ports.services import EnvironmentFileWriter


logger = structlog.get_logger(__name__)

ENV_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
FILE_MODE = 0o600


def render_env(variables: Mapping[str, str]) -> str:
    lines = []
    for key, value in variables.items():
        if not ENV_KEY.match(key):
            logger.warning("env_variable_skipped", key=key)
            continue
        # --env-file has no quoting; keep each variable on one line
        escaped = str(value).replace("\n", "\\n")
        lines.append(f"{key}={escaped}")
    return "\n".join(lines) + ("\n" if lines else "")


class EnvFileWriter(EnvironmentFileWriter):
    """Writes ``KEY=value`` files readable only by the owner."""

    async def write(self, path: str, variables: Mapping[str, str]) -> None:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(render_env(variables))
        # O_CREAT's mode is ignored for files that already existed
        os.chmod(path, FILE_MODE)
        logger.info("env_file_written", path=path, count=len(variables))
