"""Async PostgreSQL backend.

Provides ``PostgresBackend``, the PostgreSQL implementation of the
``Backend`` protocol, using SQLAlchemy's async engine with the
``asyncpg`` driver.  Backup and restore shell out to ``pg_dump``,
``pg_restore`` and ``psql`` through a ``ToolLocator``; connection
credentials reach those tools only through the child environment.

Usage:
    from db_tools.adapters.postgres import PostgresBackend

    backend = PostgresBackend(profile)
    print(await backend.list_tables())
    await backend.backup(Path("backups/app.sql"), encrypt=True)
    await backend.close()
"""

import json
import logging
import math
import re
import tempfile
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from db_tools.adapters.base import (
    BackupResult,
    MigrationRecord,
    QueryResult,
    SearchHit,
    SearchOptions,
    quote_ident,
)
from db_tools.adapters.tools import ToolLocator, parse_major_version
from db_tools.config.models import BackendKind, ConnectionProfile
from db_tools.crypto import decrypt, encrypt_file, key_path_for, read_key
from db_tools.errors import DatabaseError, DecryptionError, ValidationError
from db_tools.safety.operations import PlannedOperation, run_statements
from db_tools.schema.migrations import LEDGER_NAME, MigrationLedger, split_sql_statements
from db_tools.schema.models import ColumnInfo, ConstraintInfo, IndexInfo, StateSnapshot, TableState
from db_tools.schema.project import generate_init_statements, seed_rows

logger = logging.getLogger(__name__)

FORMAT_FLAGS = {"plain": "p", "custom": "c"}
CUSTOM_FORMAT_MAGIC = b"PGDMP"

MIGRATIONS_DDL = f"""
CREATE TABLE IF NOT EXISTS {LEDGER_NAME} (
    id SERIAL PRIMARY KEY,
    name VARCHAR(255) UNIQUE NOT NULL,
    applied_at TIMESTAMPTZ DEFAULT CURRENT_TIMESTAMP,
    sql_content TEXT
)
"""


def create_async_engine_pooled(database_url: str, **kwargs: Any) -> AsyncEngine:
    """Create an async SQLAlchemy engine with a small connection pool.

    Default pool settings:

    - ``pool_size=2`` / ``max_overflow=2``: one command runs at a time.
    - ``pool_pre_ping=True``: Validate connections before checkout.
    - ``pool_recycle=60``: Short idle lifetime so the process exits promptly.
    - ``connect_args={"timeout": 5}``: asyncpg connect timeout in seconds.

    Args:
        database_url: PostgreSQL connection URL with ``postgresql+asyncpg://``
            scheme.
        **kwargs: Additional keyword arguments forwarded to
            ``create_async_engine``.

    Returns:
        Configured ``AsyncEngine``.
    """
    connect_args = {"timeout": 5, **kwargs.pop("connect_args", {})}
    defaults: dict[str, Any] = {
        "pool_size": 2,
        "max_overflow": 2,
        "pool_pre_ping": True,
        "pool_recycle": 60,
        "echo": False,
    }
    # Caller kwargs override defaults
    merged = {**defaults, **kwargs, "connect_args": connect_args}

    return create_async_engine(database_url, **merged)


def normalize_uri(uri: str) -> str:
    """``postgres://`` (Heroku, Railway alias) → ``postgresql://``."""
    if uri.startswith("postgres://"):
        return "postgresql://" + uri[len("postgres://"):]
    return uri


# ============================================================================
# Literals and statement helpers
# ============================================================================


def sql_literal(value: Any) -> str:
    """Render a Python value as a PostgreSQL literal.

    Examples:
        >>> sql_literal(None), sql_literal(True), sql_literal(3)
        ('NULL', 'TRUE', '3')
        >>> sql_literal("O'Brien")
        "'O''Brien'"
        >>> sql_literal(["a", None])
        "ARRAY['a', NULL]"
    """
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return f"'{value}'"
        return repr(value)
    if isinstance(value, Decimal):
        return f"'{value}'" if not value.is_finite() else str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return f"'\\x{bytes(value).hex()}'"
    if isinstance(value, (list, tuple)):
        if not value:
            return "'{}'"
        return "ARRAY[" + ", ".join(sql_literal(v) for v in value) + "]"
    if isinstance(value, dict):
        value = json.dumps(value)
    elif isinstance(value, (datetime, date, time)):
        value = value.isoformat()
    elif isinstance(value, timedelta):
        value = f"{value.total_seconds()} seconds"
    return "'" + str(value).replace("'", "''") + "'"


def insert_sql(table: str, row: dict, overriding: bool = False) -> str:
    """Literal INSERT for *row*; *overriding* writes into GENERATED ALWAYS columns."""
    columns = ", ".join(quote_ident(c) for c in row)
    values = ", ".join(sql_literal(v) for v in row.values())
    override = " OVERRIDING SYSTEM VALUE" if overriding else ""
    return f"INSERT INTO {quote_ident(table)} ({columns}){override} VALUES ({values})"


_DELETE = re.compile(r"^\s*DELETE\s+FROM\s+(\S+)(?:\s+WHERE\s+(.*?))?(?:\s+RETURNING\b.*)?\s*$", re.I | re.S)
_UPDATE = re.compile(r"^\s*UPDATE\s+(\S+)\s+SET\s+.*?(?:\s+WHERE\s+(.*?))?(?:\s+RETURNING\b.*)?\s*$", re.I | re.S)
_WHOLE_TABLE = re.compile(r"^\s*(?:TRUNCATE(?:\s+TABLE)?|DROP\s+TABLE(?:\s+IF\s+EXISTS)?)\s+([^\s,;]+)", re.I)


def count_query_for(statement: str) -> str | None:
    """``COUNT(*)`` query matching the rows a DML/DDL statement touches.

    Examples:
        >>> count_query_for("DELETE FROM orders WHERE total < 10")
        'SELECT COUNT(*) FROM orders WHERE total < 10'
        >>> count_query_for("TRUNCATE orders")
        'SELECT COUNT(*) FROM orders'
        >>> count_query_for("SELECT 1") is None
        True
    """
    for pattern in (_DELETE, _UPDATE):
        match = pattern.match(statement)
        if match:
            table, where = match.group(1), match.group(2)
            return f"SELECT COUNT(*) FROM {table}" + (f" WHERE {where}" if where else "")
    match = _WHOLE_TABLE.match(statement)
    if match:
        return f"SELECT COUNT(*) FROM {match.group(1)}"
    return None


def column_definition(column: ColumnInfo) -> str:
    """Column DDL reconstructed from information_schema metadata.

    ``nextval`` defaults become ``SERIAL`` / ``BIGSERIAL``, identity columns
    keep their ``GENERATED ... AS IDENTITY`` clause; arrays and
    user-defined types use ``udt_name``.
    """
    data_type = column.data_type.lower()
    default = column.default

    if default and default.startswith("nextval("):
        kind = {"bigint": "BIGSERIAL", "smallint": "SMALLSERIAL"}.get(data_type, "SERIAL")
        definition = f"{quote_ident(column.name)} {kind}"
        return definition if column.is_nullable else definition + " NOT NULL"

    if data_type == "array" and column.udt_name:
        type_sql = column.udt_name.lstrip("_") + "[]"
    elif data_type == "user-defined" and column.udt_name:
        type_sql = quote_ident(column.udt_name)
    elif data_type in ("character varying", "character") and column.max_length:
        type_sql = f"{data_type}({column.max_length})"
    elif data_type in ("numeric", "decimal") and column.numeric_precision is not None:
        scale = column.numeric_scale or 0
        type_sql = f"numeric({column.numeric_precision}, {scale})"
    else:
        type_sql = data_type

    definition = f"{quote_ident(column.name)} {type_sql}"
    if column.identity_generation:
        return f"{definition} GENERATED {column.identity_generation.upper()} AS IDENTITY"
    if not column.is_nullable:
        definition += " NOT NULL"
    if default is not None:
        definition += f" DEFAULT {default}"
    return definition


def _strip_copy_data(sql: str) -> str:
    """Remove ``COPY ... FROM stdin`` data blocks from a plain dump."""
    kept: list[str] = []
    in_copy = False
    for line in sql.splitlines():
        if in_copy:
            if line == "\\.":
                in_copy = False
            continue
        kept.append(line)
        if re.match(r"^COPY\s.+\sFROM\s+stdin;\s*$", line, re.I):
            in_copy = True
    return "\n".join(kept)


def _first_code_line(statement: str, width: int = 120) -> str:
    """First line of *statement* that is not a ``--`` comment."""
    for line in statement.splitlines():
        line = line.strip()
        if line and not line.startswith("--"):
            return line[:width]
    return ""


async def _run(conn: AsyncConnection, statement: str, params: dict | None = None) -> QueryResult:
    if params:
        result = await conn.execute(text(statement), params)
    else:
        result = await conn.exec_driver_sql(statement)
    if result.returns_rows:
        columns = list(result.keys())
        rows = [_serialize_row(dict(zip(columns, row))) for row in result.fetchall()]
        return QueryResult(rows=rows, affected=len(rows), columns=columns)
    return QueryResult(affected=max(result.rowcount or 0, 0))


def _serialize_value(value: Any) -> Any:
    """Serialize result values to JSON-compatible types.

    Converts UUID to string and datetime to ISO format.
    """
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _serialize_row(row: dict) -> dict:
    return {k: _serialize_value(v) for k, v in row.items()}


# ============================================================================
# Search conditions
# ============================================================================

_TRUE_WORDS = {"true", "t", "yes", "y", "1"}
_FALSE_WORDS = {"false", "f", "no", "n", "0"}


def base_type(data_type: str) -> str:
    """Search category of a PostgreSQL type."""
    t = data_type.lower()
    if "char" in t or "text" in t or t == "uuid":
        return "string"
    if any(k in t for k in ("int", "decimal", "numeric", "real", "double", "float")):
        return "number"
    if t == "boolean":
        return "boolean"
    if "date" in t or "time" in t:
        return "date"
    if t in ("json", "jsonb"):
        return "json"
    return "other"


def _is_number(value: str) -> bool:
    try:
        return math.isfinite(float(value))
    except ValueError:
        return False


def _like_pattern(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _json_path(parts: list[str]) -> str:
    path = "$"
    for part in parts:
        part = part.strip()
        path += f"[{part}]" if part.isdigit() else '."' + part.replace('"', '\\"') + '"'
    return path + " ? (@ == $target)"


def search_condition(column: ColumnInfo, options: SearchOptions, index: int) -> tuple[str, dict] | None:
    """SQL condition (with bind params) matching *options.value* in *column*.

    Returns ``None`` when the value cannot match the column's type.
    """
    value = options.value
    col = quote_ident(column.name)
    p = f"p{index}"
    kind = base_type(column.data_type)

    if value.lower() == "null":
        return f"{col} IS NULL", {}

    if kind == "string":
        if options.regex:
            return f"{col}::text {'~' if options.case_sensitive else '~*'} :{p}", {p: value}
        if options.exact:
            if options.case_sensitive:
                return f"{col}::text = :{p}", {p: value}
            return f"LOWER({col}::text) = LOWER(:{p})", {p: value}
        op = "LIKE" if options.case_sensitive else "ILIKE"
        return f"{col}::text {op} :{p}", {p: _like_pattern(value)}

    if kind == "number":
        if _is_number(value):
            return f"{col}::text = :{p}", {p: value}
        return None

    if kind == "boolean":
        lowered = value.lower()
        if lowered in _TRUE_WORDS | _FALSE_WORDS:
            return f"{col} = :{p}", {p: lowered in _TRUE_WORDS}
        return None

    if kind == "date":
        return f"{col}::text LIKE :{p}", {p: _like_pattern(value)}

    if kind == "json":
        if options.recursive and "->" in value:
            parts = value.split("->")
            target = parts.pop().strip()
            return (
                f"jsonb_path_exists(CAST({col} AS jsonb), CAST(:{p} AS jsonpath), "
                f"jsonb_build_object('target', CAST(:{p}v AS text)))",
                {p: _json_path(parts), f"{p}v": target},
            )
        if ":" in value:
            key, _, val = (s.strip() for s in value.partition(":"))
            if key and val:
                return f"CAST({col} AS jsonb) @> CAST(:{p} AS jsonb)", {p: json.dumps({key: val})}
        if options.regex:
            return f"{col}::text {'~' if options.case_sensitive else '~*'} :{p}", {p: value}
        return f"{col}::text ILIKE :{p}", {p: _like_pattern(value)}

    return f"CAST({col} AS TEXT) LIKE :{p}", {p: _like_pattern(value)}


def value_matches(value: Any, data_type: str, options: SearchOptions) -> bool:
    """Whether a returned cell is one of the matches of a search."""
    needle = options.value
    if needle.lower() == "null":
        return value is None
    if value is None:
        return False

    kind = base_type(data_type)
    haystack = json.dumps(value) if isinstance(value, (dict, list)) else str(value)
    if kind == "boolean":
        return haystack.lower() == str(needle.lower() in _TRUE_WORDS).lower()
    if kind == "number":
        if options.exact and _is_number(needle):
            return float(value) == float(needle)
        return needle in haystack
    if options.regex:
        try:
            return re.search(needle, haystack, 0 if options.case_sensitive else re.I) is not None
        except re.error:
            return False
    if kind == "json" and options.recursive and "->" in needle:
        needle = needle.split("->")[-1].strip()
    if not options.case_sensitive:
        haystack, needle = haystack.lower(), needle.lower()
    if options.exact and kind == "string":
        return haystack == needle
    return needle in haystack


# ============================================================================
# Transaction runner
# ============================================================================


class _PostgresTransaction:
    """Statement runner bound to one ``engine.begin()`` connection."""

    def __init__(self, conn: AsyncConnection) -> None:
        self._conn = conn

    async def execute(self, statement: str, params: dict | None = None) -> QueryResult:
        return await _run(self._conn, statement, params)

    async def insert(self, table: str, row: dict) -> None:
        placeholders: list[str] = []
        params: dict[str, Any] = {}
        for i, (column, value) in enumerate(row.items()):
            placeholders.append(f":p{i}")
            params[f"p{i}"] = json.dumps(value) if isinstance(value, dict) else value
        columns = ", ".join(quote_ident(c) for c in row)
        await self._conn.execute(
            text(f"INSERT INTO {quote_ident(table)} ({columns}) VALUES ({', '.join(placeholders)})"),
            params,
        )

    async def record_migration(self, name: str, body: str) -> None:
        await self._conn.execute(
            text(f"INSERT INTO {LEDGER_NAME} (name, sql_content) VALUES (:name, :content)"),
            {"name": name, "content": body},
        )


# ============================================================================
# Backend
# ============================================================================


class PostgresBackend:
    """PostgreSQL implementation of the ``Backend`` protocol.

    Uses SQLAlchemy's async engine with the ``asyncpg`` driver for
    connection pooling and stale connection detection
    (``pool_pre_ping``).

    Args:
        profile: Connection profile (``type == postgres``).
        database: Database to open instead of the one in the URI.
        tools: Locator for the client tools used by backup and restore.
        **engine_kwargs: Additional keyword arguments forwarded to
            ``create_async_engine_pooled``.
    """

    kind = BackendKind.POSTGRES

    def __init__(
        self,
        profile: ConnectionProfile,
        database: str | None = None,
        tools: ToolLocator | None = None,
        **engine_kwargs: Any,
    ) -> None:
        base = make_url(normalize_uri(profile.uri))
        self.profile = profile
        self.database: str = database or profile.database or base.database or "postgres"
        self.tools = tools or ToolLocator()
        self._url: URL = base.set(database=self.database)
        self._server_major: int | None = None
        self._closed = False

        # asyncpg takes ssl/timeout as connect arguments, not URL options
        query = dict(self._url.query)
        connect_args: dict[str, Any] = dict(engine_kwargs.pop("connect_args", {}))
        sslmode = query.pop("sslmode", None)
        if sslmode and sslmode != "disable":
            connect_args["ssl"] = sslmode
        timeout = query.pop("connect_timeout", None)
        if timeout:
            connect_args["timeout"] = float(timeout)
        async_url = self._url.set(drivername="postgresql+asyncpg", query=query)

        self._engine: AsyncEngine = create_async_engine_pooled(
            async_url.render_as_string(hide_password=False),
            connect_args=connect_args,
            **engine_kwargs,
        )

    def __repr__(self) -> str:
        return f"PostgresBackend(project={self.profile.name!r}, database={self.database!r})"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Dispose of the connection pool.  Idempotent."""
        if self._closed:
            return
        self._closed = True
        await self._engine.dispose()

    @property
    def closed(self) -> bool:
        return self._closed

    def admin(self) -> "PostgresBackend":
        """Autocommit handle on the ``postgres`` maintenance database."""
        return PostgresBackend(self.profile, database="postgres", tools=self.tools, isolation_level="AUTOCOMMIT")

    def with_database(self, name: str) -> "PostgresBackend":
        return PostgresBackend(self.profile, database=name, tools=self.tools)

    def sync_url(self) -> str:
        """Plain ``postgresql://`` URL for psycopg."""
        return self._url.set(drivername="postgresql").render_as_string(hide_password=False)

    async def ping(self) -> bool:
        async with self._engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            return result.scalar() == 1

    async def server_major(self) -> int | None:
        if self._server_major is None:
            rows = await self._fetch("SELECT version() AS version")
            self._server_major = parse_major_version(rows[0]["version"]) if rows else None
        return self._server_major

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _fetch(self, sql: str, params: dict | None = None) -> list[dict]:
        async with self._engine.connect() as conn:
            result = await conn.execute(text(sql), params or {})
            col_names = list(result.keys())
            return [_serialize_row(dict(zip(col_names, row))) for row in result.fetchall()]

    async def query(self, statement: str, params: dict | None = None) -> QueryResult:
        """Run raw SQL; multiple statements commit together."""
        statements = [statement] if params else split_sql_statements(statement)
        if not statements:
            raise ValidationError("Query is empty")
        result = QueryResult()
        async with self._engine.begin() as conn:
            for stmt in statements:
                result = await _run(conn, stmt, params)
        return result

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    async def list_databases(self) -> list[str]:
        rows = await self._fetch(
            "SELECT datname FROM pg_database WHERE datistemplate = false ORDER BY datname"
        )
        return [r["datname"] for r in rows]

    async def list_tables(self) -> list[str]:
        rows = await self._fetch(
            """
            SELECT table_name FROM information_schema.tables
            WHERE table_schema = 'public' AND table_type = 'BASE TABLE'
            ORDER BY table_name
            """
        )
        return [r["table_name"] for r in rows]

    async def table_exists(self, table: str) -> bool:
        rows = await self._fetch(
            """
            SELECT 1 FROM information_schema.tables
            WHERE table_schema = 'public' AND table_name = :table
            """,
            {"table": table},
        )
        return bool(rows)

    async def column_exists(self, table: str, column: str) -> bool:
        rows = await self._fetch(
            """
            SELECT 1 FROM information_schema.columns
            WHERE table_schema = 'public' AND table_name = :table AND column_name = :column
            """,
            {"table": table, "column": column},
        )
        return bool(rows)

    async def get_columns(self, table: str) -> list[ColumnInfo]:
        rows = await self._fetch(
            """
            SELECT column_name, data_type, is_nullable, column_default, ordinal_position,
                   character_maximum_length, numeric_precision, numeric_scale, udt_name,
                   identity_generation
            FROM information_schema.columns
            WHERE table_schema = 'public' AND table_name = :table
            ORDER BY ordinal_position
            """,
            {"table": table},
        )
        if not rows and not await self.table_exists(table):
            raise DatabaseError(f'Table "{table}" does not exist', code="42P01")
        return [self._column(r) for r in rows]

    @staticmethod
    def _column(row: dict) -> ColumnInfo:
        return ColumnInfo(
            name=row["column_name"],
            data_type=row["data_type"],
            is_nullable=row["is_nullable"] == "YES",
            default=row["column_default"],
            position=row["ordinal_position"],
            max_length=row["character_maximum_length"],
            numeric_precision=row["numeric_precision"],
            numeric_scale=row["numeric_scale"],
            udt_name=row["udt_name"],
            identity_generation=row.get("identity_generation"),
        )

    async def count_records(self, table: str, where: str | None = None) -> int:
        sql = f"SELECT COUNT(*) AS count FROM {quote_ident(table)}"
        if where:
            sql += f" WHERE {where}"
        rows = await self._fetch(sql)
        return int(rows[0]["count"])

    async def table_size(self, table: str) -> str:
        rows = await self._fetch(
            "SELECT pg_size_pretty(pg_total_relation_size(CAST(:table AS regclass))) AS size",
            {"table": quote_ident(table)},
        )
        return rows[0]["size"]

    async def list_sequences(self) -> list[str]:
        rows = await self._fetch(
            "SELECT sequence_name FROM information_schema.sequences WHERE sequence_schema = 'public'"
        )
        return [r["sequence_name"] for r in rows]

    async def list_extensions(self) -> list[str]:
        rows = await self._fetch("SELECT extname FROM pg_extension WHERE extname <> 'plpgsql' ORDER BY extname")
        return [r["extname"] for r in rows]

    async def list_enum_types(self) -> dict[str, list[str]]:
        rows = await self._fetch(
            """
            SELECT t.typname, e.enumlabel
            FROM pg_type t
            JOIN pg_enum e ON e.enumtypid = t.oid
            JOIN pg_namespace n ON n.oid = t.typnamespace
            WHERE n.nspname = 'public'
            ORDER BY t.typname, e.enumsortorder
            """
        )
        enums: dict[str, list[str]] = {}
        for r in rows:
            enums.setdefault(r["typname"], []).append(r["enumlabel"])
        return enums

    async def dependents(self, table: str, column: str | None = None) -> list[tuple[str, str]]:
        """Objects that depend on a table (views, foreign keys) or a column.

        Returns:
            List of (object name, kind) tuples.
        """
        params = {"table": quote_ident(table), "column": column}
        if column is None:
            sql = """
                SELECT DISTINCT v.relname AS name, 'view' AS kind
                FROM pg_depend d
                JOIN pg_rewrite r ON r.oid = d.objid
                JOIN pg_class v ON v.oid = r.ev_class
                WHERE d.refobjid = CAST(:table AS regclass) AND v.oid <> d.refobjid
                UNION
                SELECT con.conname || ' on ' || CAST(con.conrelid AS regclass)::text, 'foreign key'
                FROM pg_constraint con
                WHERE con.confrelid = CAST(:table AS regclass) AND con.contype = 'f'
                  AND con.conrelid <> con.confrelid
            """
        else:
            sql = """
                SELECT DISTINCT v.relname AS name, 'view' AS kind
                FROM pg_depend d
                JOIN pg_rewrite r ON r.oid = d.objid
                JOIN pg_class v ON v.oid = r.ev_class
                JOIN pg_attribute a ON a.attrelid = d.refobjid AND a.attnum = d.refobjsubid
                WHERE d.refobjid = CAST(:table AS regclass) AND a.attname = :column AND v.oid <> d.refobjid
                UNION
                SELECT i.relname, 'index'
                FROM pg_index x
                JOIN pg_class i ON i.oid = x.indexrelid
                JOIN pg_attribute a ON a.attrelid = x.indrelid AND a.attnum = ANY(x.indkey)
                WHERE x.indrelid = CAST(:table AS regclass) AND a.attname = :column
                UNION
                SELECT con.conname, 'constraint'
                FROM pg_constraint con
                JOIN pg_attribute a ON a.attrelid = con.conrelid AND a.attnum = ANY(con.conkey)
                WHERE con.conrelid = CAST(:table AS regclass) AND a.attname = :column
            """
        rows = await self._fetch(sql, params)
        return [(r["name"], r["kind"]) for r in rows]

    async def get_indexes(self) -> dict[str, list[IndexInfo]]:
        rows = await self._fetch(
            "SELECT tablename, indexname, indexdef FROM pg_indexes WHERE schemaname = 'public' ORDER BY indexname"
        )
        indexes: dict[str, list[IndexInfo]] = {}
        for r in rows:
            match = re.search(r"\((.*)\)", r["indexdef"])
            columns = [c.strip().strip('"') for c in match.group(1).split(",")] if match else []
            indexes.setdefault(r["tablename"], []).append(
                IndexInfo(
                    name=r["indexname"],
                    columns=columns,
                    is_unique="UNIQUE INDEX" in r["indexdef"].upper(),
                    definition=r["indexdef"],
                )
            )
        return indexes

    async def table_indexes(self, table: str) -> list[IndexInfo]:
        return (await self.get_indexes()).get(table, [])

    async def get_constraints(self) -> dict[str, list[ConstraintInfo]]:
        rows = await self._fetch(
            """
            SELECT tc.table_name, tc.constraint_name, tc.constraint_type, kcu.column_name
            FROM information_schema.table_constraints tc
            LEFT JOIN information_schema.key_column_usage kcu
              ON tc.constraint_name = kcu.constraint_name
             AND tc.table_schema = kcu.table_schema
             AND tc.table_name = kcu.table_name
            WHERE tc.table_schema = 'public'
              AND tc.constraint_type IN ('PRIMARY KEY', 'FOREIGN KEY', 'UNIQUE', 'CHECK')
            ORDER BY tc.table_name, tc.constraint_name, kcu.ordinal_position
            """
        )
        grouped: dict[tuple[str, str], ConstraintInfo] = {}
        for r in rows:
            key = (r["table_name"], r["constraint_name"])
            if key not in grouped:
                grouped[key] = ConstraintInfo(name=r["constraint_name"], constraint_type=r["constraint_type"])
            if r["column_name"]:
                grouped[key].columns.append(r["column_name"])
        constraints: dict[str, list[ConstraintInfo]] = {}
        for (table, _), info in grouped.items():
            constraints.setdefault(table, []).append(info)
        return constraints

    async def snapshot_state(self) -> StateSnapshot:
        rows = await self._fetch(
            """
            SELECT c.table_name, c.column_name, c.data_type, c.is_nullable, c.column_default,
                   c.ordinal_position, c.character_maximum_length, c.numeric_precision,
                   c.numeric_scale, c.udt_name, c.identity_generation
            FROM information_schema.columns c
            JOIN information_schema.tables t
              ON t.table_name = c.table_name AND t.table_schema = c.table_schema
            WHERE c.table_schema = 'public' AND t.table_type = 'BASE TABLE'
            ORDER BY c.table_name, c.ordinal_position
            """
        )
        tables: dict[str, TableState] = {}
        for table in await self.list_tables():
            tables[table] = TableState(name=table)
        for r in rows:
            tables.setdefault(r["table_name"], TableState(name=r["table_name"])).columns.append(self._column(r))

        indexes = await self.get_indexes()
        constraints = await self.get_constraints()
        for name, state in tables.items():
            state.row_count = await self.count_records(name)
            state.indexes = indexes.get(name, [])
            state.constraints = constraints.get(name, [])

        return StateSnapshot(database=self.database, tables=tables)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    async def role_exists(self, role: str) -> bool:
        rows = await self._fetch("SELECT 1 FROM pg_roles WHERE rolname = :role", {"role": role})
        return bool(rows)

    async def role_privileges(self, role: str) -> dict[str, str]:
        rows = await self._fetch(
            """
            SELECT table_name, string_agg(privilege_type, ', ' ORDER BY privilege_type) AS privileges
            FROM information_schema.role_table_grants
            WHERE grantee = :role AND table_schema = 'public'
            GROUP BY table_name
            ORDER BY table_name
            """,
            {"role": role},
        )
        return {r["table_name"]: r["privileges"] for r in rows}

    # ------------------------------------------------------------------
    # Backup / Restore
    # ------------------------------------------------------------------

    def tool_environment(self) -> dict[str, str]:
        """libpq variables for client tools.  Passed to the child process only."""
        env = {"PGDATABASE": self.database}
        if self._url.host:
            env["PGHOST"] = self._url.host
        if self._url.port:
            env["PGPORT"] = str(self._url.port)
        if self._url.username:
            env["PGUSER"] = self._url.username
        if self._url.password:
            env["PGPASSWORD"] = str(self._url.password)
        sslmode = self._url.query.get("sslmode")
        if isinstance(sslmode, str):
            env["PGSSLMODE"] = sslmode
        return env

    async def _tool(self, name: str):
        return await self.tools.resolve(name, await self.server_major())

    async def backup(self, path: Path, encrypt: bool = False, fmt: str = "plain") -> BackupResult:
        if fmt not in FORMAT_FLAGS:
            raise ValidationError(f"Unknown backup format: {fmt}", suggestions=["Use 'plain' or 'custom'"])
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        tool = await self._tool("pg_dump")
        run = await self.tools.run(
            [tool.path, "-F", FORMAT_FLAGS[fmt], "--no-owner", "-f", str(path)],
            env=self.tool_environment(),
        )
        if not run.ok:
            raise DatabaseError(f"pg_dump failed: {run.error_text}", context={"tool": tool.path})

        warnings = [tool.warning] if tool.warning else []
        key_path = None
        if encrypt:
            path, key_path = encrypt_file(path)
        logger.info("Backup of %s written to %s", self.database, path)
        return BackupResult(
            path=path,
            key_path=key_path,
            format=fmt,
            size_bytes=path.stat().st_size,
            warnings=warnings,
        )

    @contextmanager
    def _plaintext(self, path: Path, key_path: Path | None) -> Iterator[Path]:
        """Yield a readable dump path, decrypting ``.enc`` files into a private temp dir."""
        path = Path(path)
        if not path.exists():
            raise ValidationError(f"Backup file not found: {path}", code="ENOENT")
        if path.suffix != ".enc":
            yield path
            return

        key_path = Path(key_path) if key_path else key_path_for(path)
        if not key_path.exists():
            raise DecryptionError(
                f"Key file not found: {key_path}",
                suggestions=["Pass the key with --key <path>"],
            )
        data = decrypt(path.read_bytes(), read_key(key_path))
        with tempfile.TemporaryDirectory(prefix="db-tools-") as tmp:
            plain = Path(tmp) / path.stem
            plain.write_bytes(data)
            yield plain

    async def describe_backup(self, path: Path, key_path: Path | None = None) -> list[str]:
        with self._plaintext(path, key_path) as plain:
            with open(plain, "rb") as f:
                custom = f.read(len(CUSTOM_FORMAT_MAGIC)) == CUSTOM_FORMAT_MAGIC
            if custom:
                tool = await self._tool("pg_restore")
                run = await self.tools.run([tool.path, "-l", str(plain)])
                if not run.ok:
                    raise DatabaseError(f"pg_restore -l failed: {run.error_text}")
                listing = run.stdout.decode("utf-8", errors="replace").splitlines()
                return [line for line in listing if line.strip() and not line.startswith(";")]
            sql = _strip_copy_data(plain.read_text(encoding="utf-8", errors="replace"))
            entries = (_first_code_line(s) for s in split_sql_statements(sql))
            return [entry for entry in entries if entry]

    async def restore(
        self,
        path: Path,
        dry_run: bool = False,
        drop_first: bool = False,
        key_path: Path | None = None,
    ) -> bool:
        if dry_run:
            entries = await self.describe_backup(path, key_path)
            logger.info("Dry run: %d entries would be restored into %s", len(entries), self.database)
            return True

        with self._plaintext(path, key_path) as plain:
            with open(plain, "rb") as f:
                custom = f.read(len(CUSTOM_FORMAT_MAGIC)) == CUSTOM_FORMAT_MAGIC
            if custom:
                tool = await self._tool("pg_restore")
                argv = [tool.path, "--no-owner", "-d", self.database]
                if drop_first:
                    argv += ["-c", "--if-exists"]
                argv.append(str(plain))
            else:
                if drop_first:
                    await self.query("DROP SCHEMA public CASCADE; CREATE SCHEMA public")
                tool = await self._tool("psql")
                argv = [tool.path, "-v", "ON_ERROR_STOP=1", "-q", "-f", str(plain)]
            run = await self.tools.run(argv, env=self.tool_environment())

        if not run.ok:
            raise DatabaseError(f"{tool.name} failed: {run.error_text}", context={"tool": tool.path})
        logger.info("Restored %s into %s", path, self.database)
        return True

    async def dump(self) -> bytes:
        tool = await self._tool("pg_dump")
        run = await self.tools.run(
            [tool.path, "-F", "p", "--clean", "--if-exists", "--no-owner"],
            env=self.tool_environment(),
        )
        if not run.ok:
            raise DatabaseError(f"pg_dump failed: {run.error_text}", context={"tool": tool.path})
        return run.stdout

    async def load_dump(self, data: bytes) -> None:
        tool = await self._tool("psql")
        run = await self.tools.run(
            [tool.path, "-v", "ON_ERROR_STOP=1", "-q", "-f", "-"],
            env=self.tool_environment(),
            input=data,
        )
        if not run.ok:
            raise DatabaseError(f"psql failed: {run.error_text}", context={"tool": tool.path})

    # ------------------------------------------------------------------
    # Transactions and migrations
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_PostgresTransaction]:
        """``BEGIN`` ... ``COMMIT``; the first failure rolls everything back."""
        async with self._engine.begin() as conn:
            yield _PostgresTransaction(conn)

    async def ensure_migration_ledger(self) -> None:
        async with self._engine.begin() as conn:
            await conn.exec_driver_sql(MIGRATIONS_DDL)

    async def track_migration(self, name: str, body: str) -> None:
        async with self._engine.begin() as conn:
            await conn.execute(
                text(
                    f"INSERT INTO {LEDGER_NAME} (name, sql_content) VALUES (:name, :content) "
                    "ON CONFLICT (name) DO NOTHING"
                ),
                {"name": name, "content": body},
            )

    async def list_applied_migrations(self) -> list[MigrationRecord]:
        if not await self.table_exists(LEDGER_NAME):
            return []
        rows = await self._fetch(f"SELECT name, applied_at, sql_content FROM {LEDGER_NAME} ORDER BY applied_at, id")
        return [MigrationRecord(name=r["name"], applied_at=r["applied_at"], content=r["sql_content"]) for r in rows]

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(self, options: SearchOptions) -> list[SearchHit]:
        if options.table and not await self.table_exists(options.table):
            raise DatabaseError(f'Table "{options.table}" does not exist', code="42P01")
        if options.table and options.column and not await self.column_exists(options.table, options.column):
            raise DatabaseError(
                f'Column "{options.column}" does not exist in table "{options.table}"', code="42703"
            )

        hits: list[SearchHit] = []
        tables = [options.table] if options.table else await self.list_tables()
        for table in tables:
            columns = await self.get_columns(table)
            if options.column:
                columns = [c for c in columns if c.name == options.column]
            else:
                columns = [c for c in columns if base_type(c.data_type) != "other"]

            conditions: list[str] = []
            params: dict[str, Any] = {}
            for i, column in enumerate(columns):
                condition = search_condition(column, options, i)
                if condition:
                    conditions.append(condition[0])
                    params.update(condition[1])
            if not conditions:
                logger.debug("Skipping %s: no searchable columns", table)
                continue

            params["limit"] = options.limit - len(hits)
            sql = f"SELECT * FROM {quote_ident(table)} WHERE {' OR '.join(conditions)} LIMIT :limit"
            for row in await self._fetch(sql, params):
                matching = [c.name for c in columns if value_matches(row.get(c.name), c.data_type, options)]
                hits.append(SearchHit(table=table, matching_columns=matching, row=row))
            if len(hits) >= options.limit:
                break
        return hits

    # ------------------------------------------------------------------
    # Planned operations
    # ------------------------------------------------------------------

    def plan(self, operation: str, **params: Any) -> PlannedOperation:
        builder = getattr(self, "_plan_" + operation.replace("-", "_"), None)
        if builder is None:
            raise ValidationError(
                f"'{operation}' is not available for PostgreSQL projects",
                suggestions=["Use the PostgreSQL command (delete-table, remove-column, rename-table)"],
            )
        return builder(**params)

    @staticmethod
    def _count(sql: str):
        async def estimate(target: "PostgresBackend") -> int:
            rows = await target._fetch(sql)
            return int(next(iter(rows[0].values()))) if rows else 0

        return estimate

    def _plan_create_table(self, table: str, columns: dict[str, str] | None = None, **params: Any) -> PlannedOperation:
        columns = columns or {"id": "SERIAL PRIMARY KEY"}
        body = ",\n".join(f"  {quote_ident(name)} {definition}" for name, definition in columns.items())
        statements = [f"CREATE TABLE {quote_ident(table)} (\n{body}\n)"]
        return PlannedOperation(
            "create-table",
            {"table": table, "columns": columns, **params},
            statements,
            run_statements(statements),
            creates=[f"table {table}"],
        )

    def _plan_add_column(
        self,
        table: str,
        column: str,
        type: str = "TEXT",
        default: str | None = None,
        not_null: bool = False,
        **params: Any,
    ) -> PlannedOperation:
        sql = f"ALTER TABLE {quote_ident(table)} ADD COLUMN {quote_ident(column)} {type}"
        if default is not None:
            sql += f" DEFAULT {default}"
        if not_null:
            sql += " NOT NULL"
        warnings = []
        if not_null and default is None:
            warnings.append("NOT NULL without a default fails on a table that already has rows")
        return PlannedOperation(
            "add-column",
            {"table": table, "column": column, "type": type, "default": default, "not_null": not_null, **params},
            [sql],
            run_statements([sql]),
            estimate=self._count(f"SELECT COUNT(*) FROM {quote_ident(table)}"),
            modifies=[f"table {table} (+ column {column})"],
            warnings=warnings,
        )

    def _plan_remove_column(self, table: str, column: str, **params: Any) -> PlannedOperation:
        sql = f"ALTER TABLE {quote_ident(table)} DROP COLUMN {quote_ident(column)} CASCADE"
        return PlannedOperation(
            "remove-column",
            {"table": table, "column": column, **params},
            [sql],
            run_statements([sql]),
            estimate=self._count(
                f"SELECT COUNT(*) FROM {quote_ident(table)} WHERE {quote_ident(column)} IS NOT NULL"
            ),
            deletes=[f"column {table}.{column}"],
        )

    def _plan_rename_table(self, table: str, new_name: str, **params: Any) -> PlannedOperation:
        sql = f"ALTER TABLE {quote_ident(table)} RENAME TO {quote_ident(new_name)}"
        return PlannedOperation(
            "rename-table",
            {"table": table, "new_name": new_name, **params},
            [sql],
            run_statements([sql]),
            estimate=self._count(f"SELECT COUNT(*) FROM {quote_ident(table)}"),
            modifies=[f"table {table} → {new_name}"],
            warnings=["Views and application code referring to the old name will break"],
        )

    def _plan_rename_column(self, table: str, column: str, new_name: str, **params: Any) -> PlannedOperation:
        sql = f"ALTER TABLE {quote_ident(table)} RENAME COLUMN {quote_ident(column)} TO {quote_ident(new_name)}"
        return PlannedOperation(
            "rename-column",
            {"table": table, "column": column, "new_name": new_name, **params},
            [sql],
            run_statements([sql]),
            estimate=self._count(f"SELECT COUNT(*) FROM {quote_ident(table)}"),
            modifies=[f"column {table}.{column} → {new_name}"],
        )

    def _plan_create_index(
        self,
        table: str,
        column: str,
        unique: bool = False,
        index_name: str | None = None,
        **params: Any,
    ) -> PlannedOperation:
        index_name = index_name or f"idx_{table}_{column}"
        sql = (
            f"CREATE {'UNIQUE ' if unique else ''}INDEX {quote_ident(index_name)} "
            f"ON {quote_ident(table)} ({quote_ident(column)})"
        )
        return PlannedOperation(
            "create-index",
            {"table": table, "column": column, "unique": unique, "index_name": index_name, **params},
            [sql],
            run_statements([sql]),
            estimate=self._count(f"SELECT COUNT(*) FROM {quote_ident(table)}"),
            creates=[f"index {index_name} on {table}({column})"],
        )

    def _plan_delete_table(self, table: str, **params: Any) -> PlannedOperation:
        sql = f"DROP TABLE {quote_ident(table)} CASCADE"
        return PlannedOperation(
            "delete-table",
            {"table": table, **params},
            [sql],
            run_statements([sql]),
            estimate=self._count(f"SELECT COUNT(*) FROM {quote_ident(table)}"),
            deletes=[f"table {table}"],
        )

    def _plan_query(self, statement: str, **params: Any) -> PlannedOperation:
        statements = split_sql_statements(statement)
        counts = [q for q in (count_query_for(s) for s in statements) if q]

        async def estimate(target: "PostgresBackend") -> int | None:
            if not counts:
                return None
            total = 0
            for sql in counts:
                rows = await target._fetch(sql)
                total += int(next(iter(rows[0].values())))
            return total

        async def apply(target: "PostgresBackend") -> None:
            await target.query(statement)

        return PlannedOperation(
            "query",
            {"statement": statement, **params},
            statements,
            apply,
            estimate=estimate,
            modifies=[s.splitlines()[0][:80] for s in statements if count_query_for(s)],
        )

    def _plan_seed(self, rows: list[tuple[str, list[dict]]], **params: Any) -> PlannedOperation:
        statements = [insert_sql(table, row) for table, table_rows in rows for row in table_rows]
        total = sum(len(table_rows) for _, table_rows in rows)

        async def apply(target: "PostgresBackend") -> None:
            async with target.transaction() as tx:
                for table, table_rows in rows:
                    for row in table_rows:
                        await tx.insert(table, row)

        async def estimate(target: "PostgresBackend") -> int:
            return total

        return PlannedOperation(
            "seed",
            {"tables": [t for t, _ in rows], **params},
            statements,
            apply,
            estimate=estimate,
            creates=[f"{len(table_rows)} rows in {table}" for table, table_rows in rows],
        )

    def _plan_init(self, schema: Any, **params: Any) -> PlannedOperation:
        ddl = generate_init_statements(schema)
        seeds = seed_rows(schema)

        async def apply(target: "PostgresBackend") -> None:
            async with target.transaction() as tx:
                for statement in ddl:
                    await tx.execute(statement)
                for table, table_rows in seeds:
                    for row in table_rows:
                        await tx.insert(table, row)

        return PlannedOperation(
            "init",
            {"schema": schema.name, **params},
            ddl + [insert_sql(t, r) for t, table_rows in seeds for r in table_rows],
            apply,
            creates=[f"table {t.name}" for t in schema.tables],
        )

    def _plan_migrate(self, name: str, body: str, **params: Any) -> PlannedOperation:
        statements = split_sql_statements(body)

        async def apply(target: "PostgresBackend") -> None:
            outcome = await MigrationLedger(target).apply(name, body)
            if outcome.status == "failed":
                raise DatabaseError(f"Migration {name} failed: {outcome.error}")

        return PlannedOperation(
            "migrate",
            {"name": name, **params},
            statements + [f"INSERT INTO {LEDGER_NAME} (name, sql_content) VALUES ({sql_literal(name)}, ...)"],
            apply,
            modifies=[f"migration {name}"],
        )

    def _plan_restore(
        self,
        input: Path,
        drop_first: bool = False,
        key: Path | None = None,
        **params: Any,
    ) -> PlannedOperation:
        async def apply(target: "PostgresBackend") -> None:
            await target.restore(input, drop_first=drop_first, key_path=key)

        return PlannedOperation(
            "restore",
            {"input": str(input), "drop_first": drop_first, **params},
            [f"restore {input}" + (" (drop existing objects first)" if drop_first else "")],
            apply,
            modifies=[f"database {self.database}"],
        )
