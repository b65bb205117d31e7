"""Port allocation repositories."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path

import structlog

from deploy_agent.domain.ports.repositories import PortAllocationRepository


logger = structlog.get_logger(__name__)


class JsonFilePortAllocationRepository(PortAllocationRepository):
    """Service to host port map persisted as a flat JSON object.

    Every write replaces the file atomically, so a crash mid-write leaves the
    previous map intact. A missing or unreadable file reads as empty.
    """

    def __init__(self, path: str) -> None:
        self._path = Path(path)

    def _load(self) -> dict[str, int]:
        try:
            data = json.loads(self._path.read_text())
            if not isinstance(data, dict):
                raise ValueError(f"expected an object, got {type(data).__name__}")
            return {str(name): int(port) for name, port in data.items()}
        except FileNotFoundError:
            return {}
        except (OSError, ValueError, TypeError) as e:
            logger.warning("port_store_unreadable", path=str(self._path), error=str(e))
            return {}

    def _save(self, mapping: dict[str, int]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self._path.parent, prefix=".ports-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(mapping, handle, indent=2, sort_keys=True)
            os.replace(tmp, self._path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise

    async def get(self, service_name: str) -> int | None:
        return self._load().get(service_name)

    async def set(self, service_name: str, host_port: int) -> None:
        mapping = self._load()
        mapping[service_name] = host_port
        self._save(mapping)

    async def delete(self, service_name: str) -> None:
        mapping = self._load()
        if mapping.pop(service_name, None) is not None:
            self._save(mapping)

    async def all(self) -> dict[str, int]:
        return self._load()


class InMemoryPortAllocationRepository(PortAllocationRepository):
    """In-memory port map for development and testing."""

    def __init__(self, initial: dict[str, int] | None = None) -> None:
        self._store: dict[str, int] = dict(initial or {})

    async def get(self, service_name: str) -> int | None:
        return self._store.get(service_name)

    async def set(self, service_name: str, host_port: int) -> None:
        self._store[service_name] = host_port

    async def delete(self, service_name: str) -> None:
        self._store.pop(service_name, None)

    async def all(self) -> dict[str, int]:
        return dict(self._store)
