"""Repository port interfaces (hexagonal architecture)."""

from __future__ import annotations

from abc import ABC, abstractmethod


class PortAllocationRepository(ABC):
    """Port for persisting service to host port mappings."""

    @abstractmethod
    async def get(self, service_name: str) -> int | None:
        """Return the recorded host port for a service."""

    @abstractmethod
    async def set(self, service_name: str, host_port: int) -> None:
        """Record the host port for a service."""

    @abstractmethod
    async def delete(self, service_name: str) -> None:
        """Remove the record for a service."""

    @abstractmethod
    async def all(self) -> dict[str, int]:
        """Return every recorded mapping."""
