"""HTTP health endpoint probe."""

from __future__ import annotations

import httpx
import structlog

from deploy_agent.domain.models.container import HealthCheckResult
from deploy_agent.domain.ports.services import EndpointProbe


logger = structlog.get_logger(__name__)


class HttpEndpointProbe(EndpointProbe):
    """A 2xx response within the timeout is healthy; anything else is not."""

    def __init__(self, timeout: float = 5.0, verify_tls: bool = True) -> None:
        self._timeout = timeout
        self._verify_tls = verify_tls

    async def probe(self, url: str) -> HealthCheckResult:
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, verify=self._verify_tls, follow_redirects=True
            ) as client:
                resp = await client.get(url)
        except httpx.HTTPError as e:
            logger.debug("endpoint_probe_error", url=url, error=str(e))
            return HealthCheckResult(healthy=False, message=f"{type(e).__name__}: {e}")

        if resp.is_success:
            return HealthCheckResult(healthy=True, message=f"HTTP {resp.status_code}")
        return HealthCheckResult(healthy=False, message=f"HTTP {resp.status_code}")
