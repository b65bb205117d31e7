"""Routing front-end (front door) clients."""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from deploy_agent.domain.errors import RegistrationError
from deploy_agent.domain.models.routing import RouteRecord, RouteRegistration
from deploy_agent.domain.ports.services import RoutingClient


logger = structlog.get_logger(__name__)


class HttpRoutingClient(RoutingClient):
    """Client for the front door API.

    Registration is an upsert on the subdomain: re-registering a service
    replaces its target.
    """

    def __init__(
        self,
        base_url: str,
        api_token: str,
        base_domain: str,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._api_token = api_token
        self._base_domain = base_domain
        self._timeout = timeout

        if not api_token:
            logger.warning("frontdoor_token_missing", base_url=self.base_url)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_token}",
            "Content-Type": "application/json",
        }

    def domain_for(self, service_name: str) -> str:
        return f"{service_name}.{self._base_domain}"

    async def register_route(self, service_name: str, target_address: str) -> RouteRegistration:
        domain = self.domain_for(service_name)
        target_ip = httpx.URL(target_address).host
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    f"{self.base_url}/api/frontdoor/add-subdomain",
                    headers=self._headers(),
                    json={
                        "subdomain": domain,
                        "targetIp": target_ip,
                        "targetAddress": target_address,
                    },
                )
                resp.raise_for_status()
                data: dict[str, Any] = resp.json() if resp.content else {}
        except httpx.HTTPStatusError as e:
            logger.error(
                "frontdoor_registration_rejected",
                domain=domain,
                status_code=e.response.status_code,
                body=e.response.text[:500],
            )
            raise RegistrationError(
                f"Front door rejected {domain}: HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise RegistrationError(f"Front door unreachable: {e}") from e

        logger.info("frontdoor_route_registered", domain=domain, target=target_address)
        return RouteRegistration(
            success=bool(data.get("success", True)),
            domain=data.get("domain") or domain,
        )

    async def list_routes(self) -> list[RouteRecord]:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.get(
                    f"{self.base_url}/api/frontdoor/subdomains", headers=self._headers()
                )
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as e:
            raise RegistrationError(f"Failed to list front door routes: {e}") from e

        entries = data.get("subdomains", []) if isinstance(data, dict) else data
        routes: list[RouteRecord] = []
        for entry in entries:
            if isinstance(entry, str):
                routes.append(RouteRecord(subdomain=entry))
            else:
                routes.append(RouteRecord(
                    subdomain=entry.get("subdomain", ""),
                    target_address=entry.get("targetAddress") or entry.get("targetIp"),
                ))
        return routes

    async def ping(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.get(
                    f"{self.base_url}/api/frontdoor/health", headers=self._headers()
                )
        except httpx.HTTPError as e:
            logger.warning("frontdoor_ping_failed", error=str(e))
            return False
        return resp.is_success


class InMemoryRoutingClient(RoutingClient):
    """Routing table kept in memory, for development and testing."""

    def __init__(self, base_domain: str = "apps.localhost") -> None:
        self._base_domain = base_domain
        self._routes: dict[str, str] = {}
        self.registrations: list[tuple[str, str]] = []
        self.reachable = True
        self.failures_remaining = 0
        self.confirm = True

    async def register_route(self, service_name: str, target_address: str) -> RouteRegistration:
        if self.failures_remaining > 0:
            self.failures_remaining -= 1
            raise RegistrationError("routing front end unavailable")
        domain = f"{service_name}.{self._base_domain}"
        self._routes[domain] = target_address
        self.registrations.append((service_name, target_address))
        return RouteRegistration(success=True, domain=domain)

    async def list_routes(self) -> list[RouteRecord]:
        if not self.confirm:
            return []
        return [
            RouteRecord(subdomain=domain, target_address=target)
            for domain, target in self._routes.items()
        ]

    async def ping(self) -> bool:
        return self.reachable

    def target_for(self, service_name: str) -> str | None:
        return self._routes.get(f"{service_name}.{self._base_domain}")
