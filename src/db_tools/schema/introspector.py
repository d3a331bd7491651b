"""PostgreSQL schema introspection via information_schema.

Reads the live structure that ``check`` compares against a project
schema:
- Tables and columns (type, nullability, default, udt name)
- Constraints (primary key, foreign key, unique, check)
- Indexes (excluding primary keys)
- Triggers and user-defined functions
- Installed extensions

Uses a short-lived synchronous psycopg (v3) connection; async callers go
through ``introspect_database``, which runs it in a worker thread.
"""

import asyncio

import psycopg
from psycopg import Connection

from db_tools.schema.models import (
    ColumnInfo,
    ConstraintInfo,
    DatabaseSchema,
    IndexInfo,
    TableSchema,
    TriggerInfo,
)


class SchemaIntrospector:
    """Introspects a PostgreSQL database schema.

    Usage:
        with SchemaIntrospector(database_url) as introspector:
            schema = introspector.introspect()
    """

    # Bookkeeping and extension-owned tables
    EXCLUDED_TABLES = {
        "migrations",
        "pg_stat_statements",
        "spatial_ref_sys",
    }

    def __init__(self, database_url: str, connect_timeout: int = 10):
        self._database_url = database_url
        self._connect_timeout = connect_timeout
        self._conn: Connection | None = None

    def __enter__(self) -> "SchemaIntrospector":
        self._conn = psycopg.connect(self._database_url, connect_timeout=self._connect_timeout)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def _rows(self, query: str, params: tuple = ()) -> list[tuple]:
        if not self._conn:
            raise RuntimeError("Introspector not connected. Use with statement.")
        with self._conn.cursor() as cur:
            cur.execute(query, params)
            return cur.fetchall()

    def introspect(self, schema_name: str = "public") -> DatabaseSchema:
        """Introspect tables, functions and extensions of *schema_name*."""
        db_schema = DatabaseSchema()

        for table_name in self._get_tables(schema_name):
            if table_name in self.EXCLUDED_TABLES:
                continue
            db_schema.tables[table_name] = TableSchema(
                name=table_name,
                columns=self._get_columns(schema_name, table_name),
                constraints=self._get_constraints(schema_name, table_name),
                indexes=self._get_indexes(schema_name, table_name),
                triggers=self._get_triggers(schema_name, table_name),
            )

        db_schema.functions = self._get_functions(schema_name)
        db_schema.extensions = self._get_extensions()
        return db_schema

    def _get_tables(self, schema_name: str) -> list[str]:
        rows = self._rows(
            """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = %s
              AND table_type = 'BASE TABLE'
            ORDER BY table_name
            """,
            (schema_name,),
        )
        return [row[0] for row in rows]

    def _get_columns(self, schema_name: str, table_name: str) -> dict[str, ColumnInfo]:
        rows = self._rows(
            """
            SELECT column_name, data_type, is_nullable, column_default,
                   ordinal_position, character_maximum_length,
                   numeric_precision, numeric_scale, udt_name, identity_generation
            FROM information_schema.columns
            WHERE table_schema = %s
              AND table_name = %s
            ORDER BY ordinal_position
            """,
            (schema_name, table_name),
        )
        columns = {}
        for name, data_type, is_nullable, default, position, max_length, precision, scale, udt, identity in rows:
            columns[name] = ColumnInfo(
                name=name,
                data_type=data_type,
                is_nullable=(is_nullable == "YES"),
                default=default,
                position=position,
                max_length=max_length,
                numeric_precision=precision,
                numeric_scale=scale,
                udt_name=udt,
                identity_generation=identity,
            )
        return columns

    def _get_constraints(self, schema_name: str, table_name: str) -> dict[str, ConstraintInfo]:
        rows = self._rows(
            """
            SELECT
                tc.constraint_name,
                tc.constraint_type,
                kcu.column_name,
                ccu.table_name AS references_table,
                ccu.column_name AS references_column,
                rc.delete_rule
            FROM information_schema.table_constraints tc
            JOIN information_schema.key_column_usage kcu
                ON tc.constraint_name = kcu.constraint_name
                AND tc.table_schema = kcu.table_schema
            LEFT JOIN information_schema.constraint_column_usage ccu
                ON tc.constraint_name = ccu.constraint_name
                AND tc.constraint_type = 'FOREIGN KEY'
            LEFT JOIN information_schema.referential_constraints rc
                ON tc.constraint_name = rc.constraint_name
            WHERE tc.table_schema = %s
              AND tc.table_name = %s
            ORDER BY tc.constraint_name, kcu.ordinal_position
            """,
            (schema_name, table_name),
        )
        constraints: dict[str, ConstraintInfo] = {}
        for name, ctype, column, ref_table, ref_column, delete_rule in rows:
            constraint = constraints.get(name)
            if constraint is None:
                constraint = constraints[name] = ConstraintInfo(
                    name=name,
                    constraint_type=ctype,
                    references_table=ref_table if ctype == "FOREIGN KEY" else None,
                    references_columns=[ref_column] if ref_column else None,
                    on_delete=delete_rule,
                )
            if column not in constraint.columns:
                constraint.columns.append(column)
        return constraints

    def _get_indexes(self, schema_name: str, table_name: str) -> dict[str, IndexInfo]:
        rows = self._rows(
            """
            SELECT
                i.relname AS index_name,
                array_agg(a.attname ORDER BY x.ordinality) AS columns,
                ix.indisunique AS is_unique,
                pg_get_indexdef(ix.indexrelid) AS definition
            FROM pg_index ix
            JOIN pg_class t ON t.oid = ix.indrelid
            JOIN pg_class i ON i.oid = ix.indexrelid
            JOIN pg_namespace n ON n.oid = t.relnamespace
            JOIN LATERAL unnest(ix.indkey) WITH ORDINALITY AS x(attnum, ordinality) ON TRUE
            JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = x.attnum
            WHERE n.nspname = %s
              AND t.relname = %s
              AND NOT ix.indisprimary
            GROUP BY i.relname, ix.indisunique, ix.indexrelid
            ORDER BY i.relname
            """,
            (schema_name, table_name),
        )
        return {
            name: IndexInfo(name=name, columns=list(columns), is_unique=is_unique, definition=definition)
            for name, columns, is_unique, definition in rows
        }

    def _get_triggers(self, schema_name: str, table_name: str) -> dict[str, TriggerInfo]:
        rows = self._rows(
            """
            SELECT trigger_name, event_manipulation, action_timing, action_statement
            FROM information_schema.triggers
            WHERE trigger_schema = %s
              AND event_object_table = %s
            """,
            (schema_name, table_name),
        )
        triggers = {}
        for name, event, timing, statement in rows:
            # "EXECUTE FUNCTION fn()" or the pre-11 "EXECUTE PROCEDURE fn()"
            function_name = ""
            for marker in ("EXECUTE FUNCTION", "EXECUTE PROCEDURE"):
                if marker in statement:
                    function_name = statement.split(marker)[1].strip().rstrip("()")
                    break
            triggers[name] = TriggerInfo(name=name, event=event, timing=timing, function_name=function_name)
        return triggers

    def _get_functions(self, schema_name: str) -> list[str]:
        """Regular (prokind 'f') functions not owned by an extension."""
        rows = self._rows(
            """
            SELECT p.proname
            FROM pg_proc p
            JOIN pg_namespace n ON n.oid = p.pronamespace
            WHERE n.nspname = %s
              AND p.prokind = 'f'
              AND NOT EXISTS (
                  SELECT 1 FROM pg_depend d
                  WHERE d.objid = p.oid AND d.deptype = 'e'
              )
            ORDER BY p.proname
            """,
            (schema_name,),
        )
        return [row[0] for row in rows]

    def _get_extensions(self) -> list[str]:
        return [row[0] for row in self._rows("SELECT extname FROM pg_extension ORDER BY extname")]


async def introspect_database(database_url: str, schema_name: str = "public") -> DatabaseSchema:
    """Run ``SchemaIntrospector`` off the event loop."""

    def _introspect() -> DatabaseSchema:
        with SchemaIntrospector(database_url) as introspector:
            return introspector.introspect(schema_name)

    return await asyncio.to_thread(_introspect)
