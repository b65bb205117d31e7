"""Source fetcher backed by git."""

from __future__ import annotations

import re
from urllib.parse import urlsplit, urlunsplit

import structlog

from deploy_agent.domain.errors import CommandError, SourceFetchError
from deploy_agent.domain.ports.services import ProcessRunner, SourceFetcher


logger = structlog.get_logger(__name__)

GITHUB_SHORTHAND = re.compile(r"^[\w.-]+/[\w.-]+$")
REDACTED = "***"


def normalize_repository_url(repository_url: str) -> str:
    """Expand ``owner/name`` shorthand to a GitHub https URL."""
    url = repository_url.strip()
    if GITHUB_SHORTHAND.match(url):
        name = url if url.endswith(".git") else f"{url}.git"
        return f"https://github.com/{name}"
    return url


def authenticated_url(repository_url: str, token: str | None) -> str:
    """Embed the token as x-access-token basic credentials on https URLs."""
    if not token:
        return repository_url
    parts = urlsplit(repository_url)
    if parts.scheme != "https":
        return repository_url
    host = parts.netloc.rsplit("@", 1)[-1]
    return urlunsplit(parts._replace(netloc=f"x-access-token:{token}@{host}"))


def redact(text: str, token: str | None) -> str:
    if not token:
        return text
    return text.replace(token, REDACTED)


class GitSourceFetcher(SourceFetcher):
    """Shallow, single-branch clones."""

    def __init__(self, runner: ProcessRunner, timeout: float = 300.0) -> None:
        self._runner = runner
        self._timeout = timeout

    async def fetch(
        self, repository_url: str, branch: str, token: str | None, target_dir: str
    ) -> None:
        url = normalize_repository_url(repository_url)
        args = [
            "clone",
            "--depth", "1",
            "--single-branch",
            "-b", branch,
            authenticated_url(url, token),
            target_dir,
        ]
        logger.info("source_fetch_started", repository=url, branch=branch)
        try:
            await self._runner.run(
                "git",
                args,
                env={"GIT_TERMINAL_PROMPT": "0"},
                timeout=self._timeout,
            )
        except CommandError as e:
            raise SourceFetchError(
                redact(f"Failed to clone {url} ({branch}): {e.stderr or e}", token)
            ) from None

        logger.info("source_fetched", repository=url, branch=branch)
