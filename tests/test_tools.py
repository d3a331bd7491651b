"""Tests for external client tool resolution and execution."""

import ast
import os
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from db_tools.adapters.tools import ToolLocator, parse_major_version
from db_tools.errors import ToolNotFoundError

TOOLS_PATH = Path(__file__).resolve().parent.parent / "src" / "db_tools" / "adapters" / "tools.py"


def _executable(directory: Path, name: str) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / name
    path.write_text("#!/bin/sh\n")
    path.chmod(0o755)
    return path


class TestParseMajorVersion:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("pg_dump (PostgreSQL) 16.2", 16),
            ("psql (PostgreSQL) 14.11 (Ubuntu 14.11-0ubuntu0.22.04.1)", 14),
            ("PostgreSQL 9.6.24 on x86_64-pc-linux-gnu", 9),
            ("mongodump version: 100.9.4", 100),
            ("no digits here", None),
        ],
    )
    def test_parse(self, text: str, expected: int | None) -> None:
        assert parse_major_version(text) == expected


class TestResolve:
    async def test_missing_tool(self, monkeypatch) -> None:
        monkeypatch.setattr("db_tools.adapters.tools.shutil.which", lambda name: None)
        with pytest.raises(ToolNotFoundError, match="mongodump"):
            await ToolLocator(platform="linux").resolve("mongodump")

    async def test_path_binary_new_enough(self, monkeypatch) -> None:
        monkeypatch.setattr("db_tools.adapters.tools.shutil.which", lambda name: "/usr/bin/pg_dump")
        locator = ToolLocator(platform="linux")
        monkeypatch.setattr(locator, "version_of", AsyncMock(return_value=16))

        resolution = await locator.resolve("pg_dump", server_major=15)
        assert resolution.path == "/usr/bin/pg_dump"
        assert resolution.warning is None

    async def test_versioned_directory_preferred_when_path_is_old(self, monkeypatch, tmp_path: Path) -> None:
        newer = _executable(tmp_path / "pg16" / "bin", "pg_dump")
        monkeypatch.setattr("db_tools.adapters.tools.shutil.which", lambda name: "/usr/bin/pg_dump")
        locator = ToolLocator(platform="linux", extra_dirs=[str(newer.parent)])

        async def version_of(path: str) -> int:
            return 16 if path == str(newer) else 14

        monkeypatch.setattr(locator, "version_of", version_of)
        resolution = await locator.resolve("pg_dump", server_major=16)
        assert resolution.path == str(newer)
        assert resolution.version == 16

    async def test_mismatch_is_a_warning(self, monkeypatch) -> None:
        monkeypatch.setattr("db_tools.adapters.tools.shutil.which", lambda name: "/usr/bin/pg_dump")
        locator = ToolLocator(platform="linux")
        monkeypatch.setattr(locator, "version_of", AsyncMock(return_value=12))
        monkeypatch.setattr(locator, "candidate_dirs", AsyncMock(return_value=[]))

        resolution = await locator.resolve("pg_dump", server_major=16)
        assert resolution.path == "/usr/bin/pg_dump"
        assert "older than server version 16" in resolution.warning

    async def test_resolution_is_cached(self, monkeypatch) -> None:
        calls = []

        def which(name):
            calls.append(name)
            return "/usr/bin/psql"

        monkeypatch.setattr("db_tools.adapters.tools.shutil.which", which)
        locator = ToolLocator(platform="linux")
        await locator.resolve("psql")
        await locator.resolve("psql")
        assert calls == ["psql"]


class TestRun:
    async def test_captures_output_and_exit_code(self) -> None:
        result = await ToolLocator().run(["sh", "-c", "echo out; echo err >&2; exit 3"])
        assert result.returncode == 3
        assert not result.ok
        assert result.stdout == b"out\n"
        assert result.error_text == "err"

    async def test_env_is_added_to_a_copy(self, monkeypatch) -> None:
        monkeypatch.delenv("DB_TOOLS_CHILD_VAR", raising=False)
        result = await ToolLocator().run(["sh", "-c", "echo $DB_TOOLS_CHILD_VAR"], env={"DB_TOOLS_CHILD_VAR": "x1"})
        assert result.stdout == b"x1\n"
        assert "DB_TOOLS_CHILD_VAR" not in os.environ

    async def test_stdin_input(self) -> None:
        result = await ToolLocator().run(["cat"], input=b"dump bytes")
        assert result.ok
        assert result.stdout == b"dump bytes"


class TestNoGlobalEnvironmentMutation:
    """The locator never writes to os.environ or PATH."""

    def test_no_environ_assignment(self) -> None:
        tree = ast.parse(TOOLS_PATH.read_text())
        for node in ast.walk(tree):
            targets = []
            if isinstance(node, ast.Assign):
                targets = node.targets
            elif isinstance(node, (ast.AugAssign, ast.AnnAssign)):
                targets = [node.target]
            for target in targets:
                source = ast.unparse(target)
                assert not source.startswith("os.environ"), f"os.environ assigned: {source}"

    def test_no_putenv_or_environ_update(self) -> None:
        source = TOOLS_PATH.read_text()
        assert "os.putenv" not in source
        assert "os.environ.update" not in source
        assert "os.environ.setdefault" not in source
