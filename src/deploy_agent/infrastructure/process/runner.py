"""Subprocess runner built on asyncio."""

from __future__ import annotations

import asyncio
import os
from collections.abc import Mapping

import structlog

from deploy_agent.domain.errors import CommandError, CommandNotFoundError, CommandTimeoutError
from deploy_agent.domain.models.process import CommandResult
from deploy_agent.domain.ports.services import ProcessRunner


logger = structlog.get_logger(__name__)

SYSTEM_PATHS = [
    "/usr/local/sbin",
    "/usr/local/bin",
    "/usr/sbin",
    "/usr/bin",
    "/sbin",
    "/bin",
]


def augmented_path(current: str | None) -> str:
    """Append the standard system bin directories missing from PATH."""
    entries = [p for p in (current or "").split(os.pathsep) if p]
    entries.extend(p for p in SYSTEM_PATHS if p not in entries)
    return os.pathsep.join(entries)


class AsyncProcessRunner(ProcessRunner):
    """Runs commands with an argument vector, never through a shell."""

    def __init__(self, default_timeout: float | None = 120.0) -> None:
        self._default_timeout = default_timeout

    async def run(
        self,
        command: str,
        args: list[str] | None = None,
        *,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        check: bool = True,
    ) -> CommandResult:
        args = list(args or [])
        process_env = dict(os.environ)
        if env:
            process_env.update(env)
        process_env["PATH"] = augmented_path(process_env.get("PATH"))
        timeout = timeout if timeout is not None else self._default_timeout

        logger.debug("command_started", command=command, args=args, cwd=cwd)
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                cwd=cwd,
                env=process_env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise CommandNotFoundError(
                command, args, None, message=f"Command not found: {command}"
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            logger.error("command_timed_out", command=command, args=args, timeout=timeout)
            raise CommandTimeoutError(
                command,
                args,
                None,
                message=f"Command '{command}' timed out after {timeout}s",
            ) from e

        result = CommandResult(
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace").strip(),
            stderr=stderr.decode("utf-8", errors="replace").strip(),
        )
        logger.debug("command_finished", command=command, exit_code=result.exit_code)

        if check and not result.success:
            raise CommandError(command, args, result.exit_code, result.stdout, result.stderr)
        return result
