"""Encrypted temporary backups taken before dangerous operations.

Each entry is a pair of files in the store directory:

- ``<name>.sql``      AES-256-CBC ciphertext of the full dump (``0600``)
- ``<name>.sql.key``  the raw 32-byte key (``0600``)

Entries expire four hours after their file modification time.  Expired
entries (and orphaned keys) are removed on every pipeline run, every
``list-temp-backups`` and by an hourly timer while a command runs.

Usage:
    store = TempBackupStore()
    info = await store.create(backend, "Shop", "delete-table")
    for entry in store.list():
        print(entry.name, entry.size_human, entry.expires_in_hours)
"""

import asyncio
import fcntl
import logging
import os
import re
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, computed_field

from db_tools.crypto import decrypt, encrypt, generate_key, read_key, write_private
from db_tools.errors import DecryptionError, FileSystemError
from db_tools.prompt import Prompter
from db_tools.schema.project import project_slug

logger = logging.getLogger(__name__)

RETENTION = timedelta(hours=4)
EVICTION_INTERVAL = 3600.0
SUFFIX = ".sql"
KEY_SUFFIX = ".sql.key"
GITIGNORE = "*\n!.gitignore\n"


class LockBusyError(FileSystemError):
    """Another process holds the store's advisory lock."""


class TempBackupInfo(BaseModel):
    """One temporary backup entry."""

    name: str
    path: Path
    key_path: Path
    created_at: datetime
    expires_at: datetime
    size_bytes: int = 0
    restorable: bool = True

    @computed_field
    @property
    def size_human(self) -> str:
        return f"{self.size_bytes / (1024 * 1024):.2f} MB"

    def expires_in_hours(self, now: datetime | None = None) -> float:
        now = now or datetime.now(timezone.utc)
        return max(0.0, (self.expires_at - now).total_seconds() / 3600)


def backup_name(project: str, operation: str, now: datetime) -> str:
    """Entry name for a backup taken before *operation*.

    Examples:
        >>> from datetime import datetime, timezone
        >>> backup_name("Shop", "delete-table", datetime(2024, 5, 1, 12, 0, 0, 123000, tzinfo=timezone.utc))
        'temp_shop_delete_table_2024-05-01T12-00-00-123Z'
    """
    operation_slug = re.sub(r"[^a-z0-9]+", "_", operation.lower()).strip("_")
    stamp = now.strftime("%Y-%m-%dT%H-%M-%S-") + f"{now.microsecond // 1000:03d}Z"
    return f"temp_{project_slug(project)}_{operation_slug}_{stamp}"


class TempBackupStore:
    """Directory of encrypted, self-expiring dumps.

    Args:
        directory: Store location.  Defaults to ``$DB_TOOLS_TEMP_DIR`` or
            ``./temp``.
        retention: Age after which entries are evicted.
    """

    def __init__(self, directory: Path | None = None, retention: timedelta = RETENTION) -> None:
        if directory is None:
            env_dir = os.environ.get("DB_TOOLS_TEMP_DIR")
            directory = Path(env_dir) if env_dir else Path.cwd() / "temp"
        self.directory = Path(directory)
        self.retention = retention

    def ensure_directory(self) -> Path:
        """Create the store (mode ``0700``) and its ``.gitignore`` on first use."""
        if not self.directory.exists():
            self.directory.mkdir(parents=True, mode=0o700)
            os.chmod(self.directory, 0o700)
        gitignore = self.directory / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text(GITIGNORE)
        return self.directory

    def paths_for(self, name: str) -> tuple[Path, Path]:
        return self.directory / f"{name}{SUFFIX}", self.directory / f"{name}{KEY_SUFFIX}"

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(self, backend: Any, project: str, operation: str, now: datetime | None = None) -> TempBackupInfo:
        """Dump *backend* and store it encrypted.

        The key is written before the ciphertext, and the ciphertext lands
        under its final name only once complete.
        """
        now = now or datetime.now(timezone.utc)
        self.ensure_directory()
        self.evict_expired(now)

        name = backup_name(project, operation, now)
        path, key_path = self.paths_for(name)
        data = await backend.dump()

        key = generate_key()
        write_private(key_path, key)
        partial = path.with_name(path.name + ".partial")
        write_private(partial, encrypt(data, key))
        os.replace(partial, path)
        logger.info("Temporary backup %s written (%d bytes)", name, path.stat().st_size)

        return TempBackupInfo(
            name=name,
            path=path,
            key_path=key_path,
            created_at=now,
            expires_at=now + self.retention,
            size_bytes=path.stat().st_size,
        )

    # ------------------------------------------------------------------
    # Eviction and listing
    # ------------------------------------------------------------------

    def _age(self, path: Path, now: datetime) -> timedelta:
        modified = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        return now - modified

    def evict_expired(self, now: datetime | None = None) -> list[str]:
        """Delete entries (and orphan keys) older than the retention period.

        Returns:
            Names of the evicted entries.
        """
        if not self.directory.exists():
            return []
        now = now or datetime.now(timezone.utc)
        evicted: list[str] = []

        for path in self.directory.glob(f"*{SUFFIX}"):
            if self._age(path, now) <= self.retention:
                continue
            name = path.name[: -len(SUFFIX)]
            _, key_path = self.paths_for(name)
            path.unlink(missing_ok=True)
            key_path.unlink(missing_ok=True)
            evicted.append(name)

        for key_path in self.directory.glob(f"*{KEY_SUFFIX}"):
            backup = key_path.with_name(key_path.name[: -len(".key")])
            if not backup.exists() and self._age(key_path, now) > self.retention:
                key_path.unlink(missing_ok=True)
                logger.debug("Removed orphan key %s", key_path.name)

        if evicted:
            logger.info("Evicted %d expired temporary backup(s)", len(evicted))
        return evicted

    def list(self, now: datetime | None = None) -> list[TempBackupInfo]:
        """Live entries, newest first.  Runs eviction first."""
        now = now or datetime.now(timezone.utc)
        self.evict_expired(now)
        if not self.directory.exists():
            return []

        entries = []
        for path in self.directory.glob(f"*{SUFFIX}"):
            name = path.name[: -len(SUFFIX)]
            _, key_path = self.paths_for(name)
            stat = path.stat()
            created = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
            entries.append(
                TempBackupInfo(
                    name=name,
                    path=path,
                    key_path=key_path,
                    created_at=created,
                    expires_at=created + self.retention,
                    size_bytes=stat.st_size,
                    restorable=key_path.exists(),
                )
            )
        return sorted(entries, key=lambda e: e.created_at, reverse=True)

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def read(self, name: str) -> bytes:
        """Decrypted dump of entry *name*.

        Raises:
            FileSystemError: If the entry does not exist.
            DecryptionError: If the key is missing or does not fit.
        """
        path, key_path = self.paths_for(name)
        if not path.exists():
            raise FileSystemError(
                f"Temporary backup not found: {name}",
                code="ENOENT",
                suggestions=["Run list-temp-backups to see available backups"],
            )
        if not key_path.exists():
            raise DecryptionError(f"Key file missing for temporary backup {name}; it cannot be restored")
        return decrypt(path.read_bytes(), read_key(key_path))

    async def load_into(self, name: str, target: Any) -> None:
        """Replay entry *name* into *target* without prompting."""
        await target.load_dump(self.read(name))

    async def restore(self, name: str, backend: Any, prompter: Prompter) -> bool:
        """Restore entry *name* into *backend*, then offer to delete it.

        Decryption happens before the target is touched.
        """
        data = self.read(name)
        await backend.load_dump(data)
        logger.info("Restored temporary backup %s", name)

        if prompter.interactive and prompter.confirm("Delete this temporary backup now?", default=False):
            for path in self.paths_for(name):
                path.unlink(missing_ok=True)
        return True

    # ------------------------------------------------------------------
    # Background eviction and locking
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def eviction_timer(self, interval: float = EVICTION_INTERVAL) -> AsyncIterator[asyncio.Task]:
        """Evict expired entries every *interval* seconds while the block runs."""

        async def _loop() -> None:
            while True:
                await asyncio.sleep(interval)
                try:
                    self.evict_expired()
                except OSError as e:
                    logger.warning("Temporary backup eviction failed: %s", e)

        task = asyncio.create_task(_loop())
        try:
            yield task
        finally:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    @contextmanager
    def advisory_lock(self) -> Iterator[Path]:
        """Exclusive non-blocking lock on ``<store>/.lock``.

        Raises:
            LockBusyError: If another process holds the lock.
        """
        self.ensure_directory()
        lock_path = self.directory / ".lock"
        with open(lock_path, "a") as handle:
            try:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as e:
                raise LockBusyError(
                    "Another db-tools safety check is running",
                    suggestions=["Wait for the other command to finish and retry"],
                ) from e
            try:
                yield lock_path
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
