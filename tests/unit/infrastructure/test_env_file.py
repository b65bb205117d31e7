"""Unit tests for the environment file writer."""

from __future__ import annotations

import os
import stat
from pathlib import Path

import pytest

from deploy_agent.infrastructure.environment.env_file import EnvFileWriter, render_env


class TestRenderEnv:
    def test_key_value_lines(self) -> None:
        assert render_env({"A": "1", "B_2": "two"}) == "A=1\nB_2=two\n"

    def test_empty(self) -> None:
        assert render_env({}) == ""

    def test_invalid_keys_skipped(self) -> None:
        assert render_env({"1BAD": "x", "GOOD": "y", "with-dash": "z"}) == "GOOD=y\n"

    def test_newlines_escaped(self) -> None:
        assert render_env({"CERT": "line1\nline2"}) == "CERT=line1\\nline2\n"


class TestEnvFileWriter:
    @pytest.mark.asyncio
    async def test_owner_only_permissions(self, tmp_path: Path) -> None:
        path = tmp_path / ".env.production"

        await EnvFileWriter().write(str(path), {"DATABASE_URL": "postgres://db/app"})

        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        assert path.read_text() == "DATABASE_URL=postgres://db/app\n"

    @pytest.mark.asyncio
    async def test_existing_file_tightened_and_truncated(self, tmp_path: Path) -> None:
        path = tmp_path / ".env.production"
        path.write_text("OLD=value-that-is-long\n")
        path.chmod(0o644)

        await EnvFileWriter().write(str(path), {"NEW": "1"})

        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        assert path.read_text() == "NEW=1\n"
