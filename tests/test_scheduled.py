"""Tests for crontab-driven scheduled backups and retention pruning."""

import os
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest

from db_tools.adapters.base import BackupResult
from db_tools.adapters.tools import ToolResolution, ToolRun
from db_tools.backup.scheduled import (
    backup_extension,
    cron_line,
    current_schedule,
    install_schedule,
    prune_old_backups,
    read_crontab,
    remove_schedule,
    run_scheduled_backup,
    schedule_tag,
    validate_schedule,
)
from db_tools.config.models import BackendKind
from db_tools.errors import FileSystemError, ValidationError


class FakeCrontab:
    """Tool locator whose ``crontab`` keeps its table in memory."""

    def __init__(self, content: str | None = None, fail_write: bool = False) -> None:
        self.content = content
        self.fail_write = fail_write
        self.calls: list[list[str]] = []

    async def resolve(self, name: str, server_major: int | None = None) -> ToolResolution:
        return ToolResolution(name=name, path=f"/usr/bin/{name}")

    async def run(self, argv: list[str], env: dict | None = None, input: bytes | None = None) -> ToolRun:
        self.calls.append(argv)
        if argv[1] == "-l":
            if self.content is None:
                return ToolRun(argv, 1, stderr=b"no crontab for app\n")
            return ToolRun(argv, 0, stdout=self.content.encode())
        if self.fail_write:
            return ToolRun(argv, 1, stderr=b"crontab: permission denied\n")
        self.content = input.decode()
        return ToolRun(argv, 0)


class BackupWriter:
    """Backend stub whose ``backup`` writes a small file."""

    kind = BackendKind.POSTGRES

    def __init__(self) -> None:
        self.paths: list[Path] = []

    async def backup(self, path: Path, encrypt: bool = False, fmt: str = "plain") -> BackupResult:
        path.write_bytes(b"-- dump\n")
        self.paths.append(path)
        return BackupResult(path=path, format=fmt, size_bytes=8)


def _age_days(path: Path, days: float) -> None:
    stamp = time.time() - days * 86400
    os.utime(path, (stamp, stamp))


class TestScheduleExpressions:
    @pytest.mark.parametrize("schedule", ["0 3 * * *", "*/15 * * * 1-5", "@daily", "  @hourly "])
    def test_valid(self, schedule: str) -> None:
        assert validate_schedule(schedule) == schedule.strip()

    @pytest.mark.parametrize("schedule", ["0 3 * *", "every day", "@sometimes", "0 3 * * MON"])
    def test_invalid(self, schedule: str) -> None:
        with pytest.raises(ValidationError, match="Invalid cron schedule"):
            validate_schedule(schedule)

    def test_cron_line_is_tagged_and_quoted(self) -> None:
        line = cron_line("My Shop", "0 3 * * *", ["db-tools", "auto-backup", "My Shop", "--run"])
        assert line == "0 3 * * * db-tools auto-backup 'My Shop' --run # db-tools:my_shop"
        assert schedule_tag("My Shop") == "# db-tools:my_shop"


class TestCrontab:
    async def test_read_without_crontab(self) -> None:
        assert await read_crontab(FakeCrontab()) == ""

    async def test_install_keeps_other_lines(self) -> None:
        tools = FakeCrontab("MAILTO=ops@example.com\n5 * * * * /bin/true\n")
        replaced = await install_schedule(tools, "Shop", cron_line("Shop", "@daily", ["db-tools", "auto-backup", "Shop", "--run"]))

        assert not replaced
        assert tools.content.splitlines() == [
            "MAILTO=ops@example.com",
            "5 * * * * /bin/true",
            "@daily db-tools auto-backup Shop --run # db-tools:shop",
        ]

    async def test_install_replaces_project_entry(self) -> None:
        tools = FakeCrontab("@daily db-tools auto-backup Shop --run # db-tools:shop\n")
        replaced = await install_schedule(tools, "Shop", "@hourly db-tools auto-backup Shop --run # db-tools:shop")
        assert replaced
        assert tools.content == "@hourly db-tools auto-backup Shop --run # db-tools:shop\n"
        assert await current_schedule(tools, "Shop") == "@hourly db-tools auto-backup Shop --run # db-tools:shop"

    async def test_remove(self) -> None:
        tools = FakeCrontab("@daily x # db-tools:shop\n@daily y # db-tools:blog\n")
        assert await remove_schedule(tools, "Shop")
        assert tools.content == "@daily y # db-tools:blog\n"
        assert await current_schedule(tools, "Shop") is None

    async def test_remove_missing_does_not_write(self) -> None:
        tools = FakeCrontab("@daily y # db-tools:blog\n")
        assert not await remove_schedule(tools, "Shop")
        assert all(argv[1] == "-l" for argv in tools.calls)

    async def test_write_failure(self) -> None:
        with pytest.raises(FileSystemError, match="Could not install crontab"):
            await install_schedule(FakeCrontab("", fail_write=True), "Shop", "@daily x # db-tools:shop")


class TestPruning:
    def test_extension(self) -> None:
        assert backup_extension(BackendKind.POSTGRES, "plain") == ".sql"
        assert backup_extension(BackendKind.POSTGRES, "custom") == ".dump"
        assert backup_extension(BackendKind.MONGODB, "plain") == ".archive"

    def test_prunes_old_backups_and_keys(self, tmp_path: Path) -> None:
        old = tmp_path / "shop_20240101_030000.sql.enc"
        old_key = tmp_path / "shop_20240101_030000.sql.key"
        recent = tmp_path / "shop_20240301_030000.sql"
        other = tmp_path / "blog_20240101_030000.sql"
        for path in (old, old_key, recent, other):
            path.write_bytes(b"x")
        for path in (old, old_key, other):
            _age_days(path, 40)

        pruned = prune_old_backups(tmp_path, "Shop", retention_days=30)

        assert pruned == [old]
        assert not old.exists()
        assert not old_key.exists()
        assert recent.exists()
        assert other.exists()

    def test_missing_directory(self, tmp_path: Path) -> None:
        assert prune_old_backups(tmp_path / "none", "Shop") == []

    async def test_run_scheduled_backup_names_and_prunes(self, tmp_path: Path) -> None:
        stale = tmp_path / "backups" / "shop_20200101_000000.sql"
        stale.parent.mkdir()
        stale.write_bytes(b"old")
        _age_days(stale, 60)

        backend = BackupWriter()
        result, pruned = await run_scheduled_backup(backend, "Shop", tmp_path / "backups")

        assert result.path.parent == tmp_path / "backups"
        assert result.path.name.startswith("shop_")
        assert result.path.suffix == ".sql"
        assert pruned == [stale]

    async def test_backup_file_name(self, tmp_path: Path) -> None:
        backend = BackupWriter()
        now = datetime(2024, 6, 1, 3, 0, 0, tzinfo=timezone.utc)
        result, pruned = await run_scheduled_backup(backend, "My Shop", tmp_path, fmt="custom", now=now)
        assert result.path == tmp_path / "my_shop_20240601_030000.dump"
        assert pruned == []
