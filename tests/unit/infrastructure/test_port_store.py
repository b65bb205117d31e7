"""Unit tests for port allocation persistence and probing."""

from __future__ import annotations

import json
import socket
from pathlib import Path

import pytest

from deploy_agent.infrastructure.network.port_probe import SocketPortProbe, StaticPortProbe
from deploy_agent.infrastructure.persistence.port_store import (
    InMemoryPortAllocationRepository,
    JsonFilePortAllocationRepository,
)


class TestJsonFilePortAllocationRepository:
    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, tmp_path: Path) -> None:
        repo = JsonFilePortAllocationRepository(str(tmp_path / "ports.json"))
        assert await repo.all() == {}
        assert await repo.get("web") is None

    @pytest.mark.asyncio
    async def test_set_persists_flat_json(self, tmp_path: Path) -> None:
        path = tmp_path / "config" / "ports.json"
        repo = JsonFilePortAllocationRepository(str(path))

        await repo.set("web", 3001)
        await repo.set("api", 3002)

        assert json.loads(path.read_text()) == {"api": 3002, "web": 3001}
        reopened = JsonFilePortAllocationRepository(str(path))
        assert await reopened.get("web") == 3001

    @pytest.mark.asyncio
    async def test_no_temp_files_left_behind(self, tmp_path: Path) -> None:
        repo = JsonFilePortAllocationRepository(str(tmp_path / "ports.json"))
        await repo.set("web", 3001)
        assert [p.name for p in tmp_path.iterdir()] == ["ports.json"]

    @pytest.mark.asyncio
    async def test_delete(self, tmp_path: Path) -> None:
        repo = JsonFilePortAllocationRepository(str(tmp_path / "ports.json"))
        await repo.set("web", 3001)
        await repo.delete("web")
        await repo.delete("web")
        assert await repo.all() == {}

    @pytest.mark.asyncio
    async def test_corrupt_file_reads_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "ports.json"
        path.write_text("{not json")
        repo = JsonFilePortAllocationRepository(str(path))

        assert await repo.all() == {}
        await repo.set("web", 3001)
        assert json.loads(path.read_text()) == {"web": 3001}

    @pytest.mark.asyncio
    async def test_non_integer_port_reads_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "ports.json"
        path.write_text(json.dumps({"web": "not-a-port", "api": None}))
        repo = JsonFilePortAllocationRepository(str(path))

        assert await repo.get("web") is None
        await repo.set("api", 3002)
        assert json.loads(path.read_text()) == {"api": 3002}

    @pytest.mark.asyncio
    async def test_non_object_file_reads_empty(self, tmp_path: Path) -> None:
        path = tmp_path / "ports.json"
        path.write_text("[3001]")
        assert await JsonFilePortAllocationRepository(str(path)).all() == {}


class TestInMemoryPortAllocationRepository:
    @pytest.mark.asyncio
    async def test_initial_mapping_copied(self) -> None:
        initial = {"web": 3001}
        repo = InMemoryPortAllocationRepository(initial)
        await repo.set("api", 3002)
        assert initial == {"web": 3001}
        assert await repo.all() == {"web": 3001, "api": 3002}


class TestPortProbes:
    @pytest.mark.asyncio
    async def test_socket_probe_detects_bound_port(self) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            sock.listen()
            port = sock.getsockname()[1]
            assert await SocketPortProbe("127.0.0.1").is_port_in_use(port)

    @pytest.mark.asyncio
    async def test_socket_probe_free_port(self) -> None:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]
        assert not await SocketPortProbe("127.0.0.1").is_port_in_use(port)

    @pytest.mark.asyncio
    async def test_static_probe(self) -> None:
        probe = StaticPortProbe({3001})
        assert await probe.is_port_in_use(3001)
        assert not await probe.is_port_in_use(3002)
