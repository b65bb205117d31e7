"""Secret providers for per-deployment environment variables."""

from __future__ import annotations

import httpx
import structlog

from deploy_agent.domain.errors import SecretFetchError
from deploy_agent.domain.ports.services import SecretProvider


logger = structlog.get_logger(__name__)


class HttpSecretProvider(SecretProvider):
    """Exchanges a short-lived token for a deployment's variables."""

    def __init__(self, base_url: str, agent_token: str, timeout: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self._agent_token = agent_token
        self._timeout = timeout

    async def fetch(self, deployment_id: str, token: str | None) -> dict[str, str]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    f"{self.base_url}/api/deploy/env-vars/{deployment_id}",
                    headers={"Authorization": f"Bearer {self._agent_token}"},
                    json={"token": token},
                )
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as e:
            raise SecretFetchError(
                f"Environment variables request failed: HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise SecretFetchError(f"Environment variables request failed: {e}") from e

        variables = data.get("variables") if isinstance(data, dict) else None
        if not isinstance(variables, dict):
            raise SecretFetchError("Invalid response format for environment variables")

        logger.info("environment_variables_fetched", count=len(variables))
        return {str(key): str(value) for key, value in variables.items()}


class StaticSecretProvider(SecretProvider):
    """Returns a fixed mapping. Useful for local runs and tests."""

    def __init__(self, variables: dict[str, str] | None = None) -> None:
        self._variables = dict(variables or {})
        self.requests: list[tuple[str, str | None]] = []

    async def fetch(self, deployment_id: str, token: str | None) -> dict[str, str]:
        self.requests.append((deployment_id, token))
        return dict(self._variables)
