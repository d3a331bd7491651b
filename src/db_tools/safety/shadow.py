"""Shadow databases: disposable PostgreSQL copies for rehearsing changes.

``ShadowReplicator`` creates ``test_<project>_<epoch-ms>`` on the target
server, copies extensions, enum types, table structure (columns and
primary keys, no foreign keys or secondary indexes) and every row, and
resynchronises serial sequences.  Leaving the context always closes the
shadow handle and drops the database.

Usage:
    async with ShadowReplicator(source, "Shop") as shadow:
        await operation.apply(shadow.backend)
        after = await shadow.backend.snapshot_state()
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from db_tools.adapters.base import quote_ident
from db_tools.adapters.postgres import PostgresBackend, column_definition, insert_sql, sql_literal
from db_tools.errors import ShadowUnavailableError
from db_tools.schema.project import project_slug

logger = logging.getLogger(__name__)

# PostgreSQL identifiers are truncated at 63 bytes
_MAX_SLUG = 40


@dataclass
class ShadowDatabase:
    """An open shadow database."""

    name: str
    backend: PostgresBackend


def shadow_name(project: str, now_ms: int) -> str:
    """Name of a shadow database.

    Examples:
        >>> shadow_name("My Shop", 1700000000000)
        'test_my_shop_1700000000000'
    """
    return f"test_{project_slug(project)[:_MAX_SLUG]}_{now_ms}"


class ShadowReplicator:
    """Async context manager that builds and tears down a shadow database.

    Args:
        source: Backend of the database being protected.
        project: Project name, used in the shadow's name.
        clock: Returns the current time in seconds.
    """

    def __init__(self, source: PostgresBackend, project: str, clock: Callable[[], float] = time.time) -> None:
        self.source = source
        self.project = project
        self.clock = clock
        self.name = shadow_name(project, int(clock() * 1000))
        self._admin: PostgresBackend | None = None
        self._shadow: ShadowDatabase | None = None

    async def __aenter__(self) -> ShadowDatabase:
        self._admin = self.source.admin()
        try:
            await self._admin.query(f"CREATE DATABASE {quote_ident(self.name)}")
        except Exception as e:
            await self._admin.close()
            raise ShadowUnavailableError(
                f"Could not create shadow database {self.name}: {e}",
                suggestions=["Grant CREATEDB to the connecting role, or use --force --skip-safety"],
            ) from e

        backend = self.source.with_database(self.name)
        self._shadow = ShadowDatabase(self.name, backend)
        logger.info("Created shadow database %s", self.name)
        try:
            await self.replicate(backend)
        except Exception as e:
            await self._cleanup()
            raise ShadowUnavailableError(f"Could not populate shadow database {self.name}: {e}") from e
        return self._shadow

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        try:
            await self._cleanup()
        except Exception:
            if exc_type is None:
                raise
            logger.exception("Failed to drop shadow database %s", self.name)

    async def _cleanup(self) -> None:
        if self._shadow is not None:
            await self._shadow.backend.close()
            self._shadow = None
        if self._admin is None:
            return
        admin, self._admin = self._admin, None
        try:
            drop = f"DROP DATABASE IF EXISTS {quote_ident(self.name)}"
            major = await admin.server_major()
            if major is not None and major >= 13:
                # terminates sessions left behind by a cancelled rehearsal
                drop += " WITH (FORCE)"
            await admin.query(drop)
            logger.info("Dropped shadow database %s", self.name)
        finally:
            await admin.close()

    # ------------------------------------------------------------------
    # Replication
    # ------------------------------------------------------------------

    async def replicate(self, shadow: PostgresBackend) -> None:
        """Copy structure and data from the source into *shadow*."""
        source = self.source
        async with shadow.transaction() as tx:
            for extension in await source.list_extensions():
                await tx.execute(f"CREATE EXTENSION IF NOT EXISTS {quote_ident(extension)}")
            for enum, labels in (await source.list_enum_types()).items():
                values = ", ".join(sql_literal(label) for label in labels)
                await tx.execute(f"CREATE TYPE {quote_ident(enum)} AS ENUM ({values})")

        constraints = await source.get_constraints()
        tables = await source.list_tables()
        for table in tables:
            columns = await source.get_columns(table)
            definitions = [column_definition(c) for c in columns]
            overriding = any((c.identity_generation or "").upper() == "ALWAYS" for c in columns)
            for constraint in constraints.get(table, []):
                if constraint.constraint_type == "PRIMARY KEY" and constraint.columns:
                    keys = ", ".join(quote_ident(c) for c in constraint.columns)
                    definitions.append(f"PRIMARY KEY ({keys})")
            await shadow.query(f"CREATE TABLE {quote_ident(table)} ({', '.join(definitions)})")

            rows = (await source.query(f"SELECT * FROM {quote_ident(table)}")).rows
            if rows:
                async with shadow.transaction() as tx:
                    for row in rows:
                        await tx.execute(insert_sql(table, row, overriding))
            logger.debug("Copied %d rows of %s into %s", len(rows), table, self.name)

        await self._resync_sequences(shadow, tables)

    @staticmethod
    async def _resync_sequences(shadow: PostgresBackend, tables: list[str]) -> None:
        """Advance serial and identity sequences past the copied rows."""
        for table in tables:
            for column in await shadow.get_columns(table):
                serial = column.default and column.default.startswith("nextval(")
                if not (serial or column.identity_generation):
                    continue
                await shadow.query(
                    f"SELECT setval(pg_get_serial_sequence({sql_literal(quote_ident(table))}, "
                    f"{sql_literal(column.name)}), "
                    f"COALESCE((SELECT MAX({quote_ident(column.name)}) FROM {quote_ident(table)}), 0) + 1, false)"
                )
