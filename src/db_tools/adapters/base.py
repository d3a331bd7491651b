"""Backend protocol definition.

Defines the ``Backend`` Protocol that both engine drivers implement, and
the small value types their methods return.  All I/O methods are
``async def`` -- the tool is async-first.

Usage:
    from db_tools.adapters.base import Backend

    async def show(backend: Backend) -> None:
        for table in await backend.list_tables():
            print(table, await backend.count_records(table))
        await backend.close()
"""

from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, Field

from db_tools.config.models import BackendKind, ConnectionProfile
from db_tools.schema.models import ColumnInfo, IndexInfo, StateSnapshot

if TYPE_CHECKING:
    from db_tools.safety.operations import PlannedOperation


def quote_ident(name: str) -> str:
    """Double-quote a SQL identifier.

    Examples:
        >>> quote_ident("users")
        '"users"'
        >>> quote_ident('we"ird')
        '"we""ird"'
    """
    return '"' + name.replace('"', '""') + '"'


# ============================================================================
# Result Types
# ============================================================================


@dataclass
class QueryResult:
    """Rows returned by a statement plus the affected row count."""

    rows: list[dict] = field(default_factory=list)
    affected: int = 0
    columns: list[str] = field(default_factory=list)


class BackupResult(BaseModel):
    """Outcome of a backup to a user-chosen path."""

    path: Path
    key_path: Path | None = None
    format: str = "plain"
    size_bytes: int = 0
    warnings: list[str] = Field(default_factory=list)


class MigrationRecord(BaseModel):
    """One row/document of the ``migrations`` ledger."""

    name: str
    applied_at: datetime | str | None = None
    content: str | None = None


@dataclass
class SearchOptions:
    """Search modifiers shared by both engines."""

    value: str
    table: str | None = None
    column: str | None = None
    limit: int = 1000
    case_sensitive: bool = False
    exact: bool = False
    regex: bool = False
    recursive: bool = False


@dataclass
class SearchHit:
    table: str
    matching_columns: list[str]
    row: dict


class Transaction(Protocol):
    """Statement runner handed out by ``Backend.transaction()``."""

    async def execute(self, statement: Any, params: dict | None = None) -> QueryResult: ...

    async def insert(self, table: str, row: dict) -> None: ...

    async def record_migration(self, name: str, body: str) -> None: ...


# ============================================================================
# Backend Protocol
# ============================================================================


class Backend(Protocol):
    """Engine driver interface implemented by ``PostgresBackend`` and ``MongoBackend``.

    A backend owns one open pool (PostgreSQL) or client (MongoDB) for a
    single database.  Handles are created by ``db_tools.factory`` and
    closed by whoever opened them.

    All methods are async -- callers must ``await`` every operation.
    """

    kind: BackendKind
    profile: ConnectionProfile
    database: str

    async def close(self) -> None:
        """Release the pool/client.  Safe to call more than once."""
        ...

    async def ping(self) -> bool:
        """Round-trip to the server.

        Raises:
            Exception: Driver error if the server cannot be reached.
        """
        ...

    async def query(self, statement: str, params: dict | None = None) -> QueryResult:
        """Run a raw statement (SQL text or a JSON command document).

        Multi-statement SQL is split and executed in order inside one
        transaction; the rows of the last statement are returned.
        """
        ...

    async def list_databases(self) -> list[str]: ...

    async def list_tables(self) -> list[str]:
        """Table (PostgreSQL ``public`` schema) or collection names, sorted."""
        ...

    async def table_exists(self, table: str) -> bool: ...

    async def column_exists(self, table: str, column: str) -> bool: ...

    async def get_columns(self, table: str) -> list[ColumnInfo]:
        """Columns of *table* in ordinal order.

        Raises:
            DatabaseError: If the table does not exist.
        """
        ...

    async def count_records(self, table: str, where: str | None = None) -> int: ...

    async def table_indexes(self, table: str) -> list[IndexInfo]: ...

    async def snapshot_state(self) -> StateSnapshot:
        """Columns, row counts, indexes and constraints of every table."""
        ...

    async def backup(self, path: Path, encrypt: bool = False, fmt: str = "plain") -> BackupResult:
        """Write a logical backup to *path* with the engine's dump tool."""
        ...

    async def restore(
        self,
        path: Path,
        dry_run: bool = False,
        drop_first: bool = False,
        key_path: Path | None = None,
    ) -> bool:
        """Restore a backup written by ``backup`` (``.enc`` files are decrypted)."""
        ...

    async def describe_backup(self, path: Path, key_path: Path | None = None) -> list[str]:
        """Entries a restore of *path* would replay, without touching the database."""
        ...

    async def dump(self) -> bytes:
        """Full logical dump held in memory (used by the temp-backup store)."""
        ...

    async def load_dump(self, data: bytes) -> None:
        """Replay a dump produced by ``dump``."""
        ...

    def transaction(self) -> AbstractAsyncContextManager[Transaction]:
        """Scope in which statements commit together (PostgreSQL) or in order (MongoDB)."""
        ...

    async def ensure_migration_ledger(self) -> None: ...

    async def track_migration(self, name: str, body: str) -> None: ...

    async def list_applied_migrations(self) -> list[MigrationRecord]: ...

    async def search(self, options: SearchOptions) -> list[SearchHit]: ...

    def plan(self, operation: str, **params: Any) -> "PlannedOperation":
        """Engine-specific statements and executor for a mutating command.

        Raises:
            ValidationError: If the command has no meaning on this engine.
        """
        ...
