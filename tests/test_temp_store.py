"""Tests for the encrypted temporary backup store."""

import asyncio
import os
import stat
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from db_tools.backup.temp_store import LockBusyError, TempBackupStore, backup_name
from db_tools.errors import DecryptionError, FileSystemError
from db_tools.prompt import ScriptedPrompter

from fakes import FakeBackend


def _age(path: Path, hours: float) -> None:
    stamp = time.time() - hours * 3600
    os.utime(path, (stamp, stamp))


class TestBackupName:
    def test_name_format(self) -> None:
        now = datetime(2024, 5, 1, 12, 0, 0, 123000, tzinfo=timezone.utc)
        assert backup_name("My Shop", "delete-table", now) == "temp_my_shop_delete_table_2024-05-01T12-00-00-123Z"


class TestCreate:
    async def test_files_are_private_and_encrypted(self, store: TempBackupStore, backend: FakeBackend) -> None:
        info = await store.create(backend, "Shop", "delete-table")

        assert info.path.exists()
        assert info.key_path.exists()
        assert stat.S_IMODE(info.path.stat().st_mode) == 0o600
        assert stat.S_IMODE(info.key_path.stat().st_mode) == 0o600
        assert stat.S_IMODE(store.directory.stat().st_mode) == 0o700
        assert backend.dump_bytes not in info.path.read_bytes()
        assert (store.directory / ".gitignore").read_text() == "*\n!.gitignore\n"
        assert info.expires_at - info.created_at == timedelta(hours=4)

    async def test_no_partial_file_left(self, store: TempBackupStore, backend: FakeBackend) -> None:
        await store.create(backend, "Shop", "remove-column")
        assert not list(store.directory.glob("*.partial"))

    async def test_dump_failure_writes_nothing(self, store: TempBackupStore, backend: FakeBackend) -> None:
        backend.dump_error = RuntimeError("pg_dump failed")
        with pytest.raises(RuntimeError):
            await store.create(backend, "Shop", "delete-table")
        assert not list(store.directory.glob("*.sql*"))

    async def test_read_round_trip(self, store: TempBackupStore, backend: FakeBackend) -> None:
        info = await store.create(backend, "Shop", "delete-table")
        assert store.read(info.name) == backend.dump_bytes


class TestEvictionAndListing:
    async def test_list_newest_first(self, store: TempBackupStore, backend: FakeBackend) -> None:
        older = await store.create(backend, "Shop", "delete-table", now=datetime(2024, 1, 1, tzinfo=timezone.utc))
        newer = await store.create(backend, "Shop", "remove-column", now=datetime(2024, 1, 1, 0, 1, tzinfo=timezone.utc))
        _age(older.path, 2)
        _age(newer.path, 1)

        entries = store.list()
        assert [e.name for e in entries] == [newer.name, older.name]
        assert all(e.restorable for e in entries)
        assert 2.9 < entries[0].expires_in_hours() <= 3.0

    async def test_expired_entries_are_evicted(self, store: TempBackupStore, backend: FakeBackend) -> None:
        info = await store.create(backend, "Shop", "delete-table")
        _age(info.path, 5)

        assert store.evict_expired() == [info.name]
        assert not info.path.exists()
        assert not info.key_path.exists()
        assert store.list() == []

    async def test_retention_boundary(self, store: TempBackupStore, backend: FakeBackend) -> None:
        info = await store.create(backend, "Shop", "delete-table")
        written = datetime.fromtimestamp(info.path.stat().st_mtime, tz=timezone.utc)

        assert store.evict_expired(now=written + timedelta(hours=3, minutes=59)) == []
        assert store.evict_expired(now=written + timedelta(hours=4)) == []
        assert info.path.exists()

        assert store.evict_expired(now=written + timedelta(hours=4, minutes=1)) == [info.name]
        assert not info.path.exists()
        assert not info.key_path.exists()

    async def test_orphan_key_evicted_only_when_old(self, store: TempBackupStore, backend: FakeBackend) -> None:
        info = await store.create(backend, "Shop", "delete-table")
        info.path.unlink()

        store.evict_expired()
        assert info.key_path.exists()

        _age(info.key_path, 5)
        store.evict_expired()
        assert not info.key_path.exists()

    async def test_missing_key_is_listed_unrestorable(self, store: TempBackupStore, backend: FakeBackend) -> None:
        info = await store.create(backend, "Shop", "delete-table")
        info.key_path.unlink()
        [entry] = store.list()
        assert not entry.restorable

    def test_list_without_directory(self, tmp_path: Path) -> None:
        assert TempBackupStore(tmp_path / "missing").list() == []

    def test_default_directory_from_environment(self, monkeypatch, tmp_path: Path) -> None:
        monkeypatch.setenv("DB_TOOLS_TEMP_DIR", str(tmp_path / "custom"))
        assert TempBackupStore().directory == tmp_path / "custom"

    async def test_eviction_timer(self, store: TempBackupStore, backend: FakeBackend) -> None:
        info = await store.create(backend, "Shop", "delete-table")
        _age(info.path, 5)

        async with store.eviction_timer(interval=0.01) as task:
            await asyncio.sleep(0.1)
            assert not info.path.exists()
        assert task.cancelled()


class TestRestore:
    async def test_restore_and_keep(self, store: TempBackupStore, backend: FakeBackend) -> None:
        info = await store.create(backend, "Shop", "delete-table")
        prompter = ScriptedPrompter([False])

        assert await store.restore(info.name, backend, prompter)
        assert backend.loaded == [backend.dump_bytes]
        assert info.path.exists()
        assert prompter.remaining == 0

    async def test_restore_and_delete(self, store: TempBackupStore, backend: FakeBackend) -> None:
        info = await store.create(backend, "Shop", "delete-table")
        await store.restore(info.name, backend, ScriptedPrompter([True]))
        assert not info.path.exists()
        assert not info.key_path.exists()

    async def test_unknown_name(self, store: TempBackupStore, backend: FakeBackend) -> None:
        store.ensure_directory()
        with pytest.raises(FileSystemError, match="not found"):
            await store.restore("temp_nope", backend, ScriptedPrompter())
        assert backend.loaded == []

    async def test_missing_key_fails_before_touching_target(self, store: TempBackupStore, backend: FakeBackend) -> None:
        info = await store.create(backend, "Shop", "delete-table")
        info.key_path.unlink()
        with pytest.raises(DecryptionError):
            await store.restore(info.name, backend, ScriptedPrompter())
        assert backend.loaded == []

    async def test_load_into_does_not_prompt(self, store: TempBackupStore, backend: FakeBackend) -> None:
        info = await store.create(backend, "Shop", "delete-table")
        await store.load_into(info.name, backend)
        assert backend.loaded == [backend.dump_bytes]


class TestAdvisoryLock:
    def test_second_holder_is_refused(self, store: TempBackupStore) -> None:
        with store.advisory_lock():
            with pytest.raises(LockBusyError, match="Another db-tools safety check is running"):
                with store.advisory_lock():
                    pass

    def test_lock_released(self, store: TempBackupStore) -> None:
        with store.advisory_lock():
            pass
        with store.advisory_lock() as lock_path:
            assert lock_path.name == ".lock"
