"""Schema-changing commands.

init, create-table, add-column, remove-column, remove-field,
rename-table/column/collection, create-index, delete-table/collection,
migrate, seed and check.  Each handler validates its target objects,
asks the backend for a plan and hands it to ``execute_planned``.
"""

import json
import logging
from pathlib import Path

from db_tools.command import CommandContext, execute_planned
from db_tools.config.models import BackendKind
from db_tools.result import Err, ErrKind, Ok, Result
from db_tools.schema.comparator import check_schema
from db_tools.schema.introspector import introspect_database
from db_tools.schema.migrations import LEDGER_NAME, MigrationLedger
from db_tools.schema.project import load_project_schema, seed_rows, table_dependencies

logger = logging.getLogger(__name__)

PROTECTED_TABLES = frozenset({LEDGER_NAME})


def _missing_table(name: str) -> Err:
    return Err(ErrKind.NOT_FOUND, f'Table "{name}" does not exist', ["Run list-tables to see available tables"])


async def _require_table(ctx: CommandContext, name: str) -> Err | None:
    if not await ctx.backend.table_exists(name):
        return _missing_table(name)
    return None


async def _show_dependents(ctx: CommandContext, table: str, column: str | None = None) -> None:
    if ctx.backend.kind is not BackendKind.POSTGRES:
        return
    dependents = await ctx.backend.dependents(table, column)
    if dependents:
        ctx.console.print("[yellow]Dependent objects (dropped by CASCADE):[/yellow]")
        for name, kind in dependents:
            ctx.console.print(f"  [yellow]- {kind}: {name}[/yellow]", highlight=False)


def parse_column_specs(specs: list[str] | None) -> dict[str, str]:
    """``["id:SERIAL PRIMARY KEY", "email:TEXT"]`` → ``{"id": ..., "email": ...}``."""
    columns: dict[str, str] = {}
    for spec in specs or []:
        name, sep, definition = spec.partition(":")
        if not sep or not name.strip() or not definition.strip():
            raise ValueError(f"Invalid column spec {spec!r}; expected NAME:TYPE")
        columns[name.strip()] = definition.strip()
    return columns


# ============================================================================
# Project schema
# ============================================================================


async def handle_init(ctx: CommandContext) -> Result:
    schema = load_project_schema(ctx.project, ctx.option("schema"))
    existing = [t.name for t in schema.tables if await ctx.backend.table_exists(t.name)]
    if existing:
        return Err(
            ErrKind.VALIDATION,
            f"Tables already exist: {', '.join(existing)}",
            ["Run check to compare the database with the project schema"],
        )

    ctx.console.print(f"Schema [bold]{schema.name}[/bold]: {len(schema.tables)} tables", highlight=False)
    if not ctx.option("force") and not ctx.option("dry_run"):
        if not ctx.prompter.interactive:
            return Err(ErrKind.CANCELLED, "Confirmation required", ["Re-run with --force in non-interactive mode"])
        if not ctx.prompter.confirm(f"Initialize {ctx.backend.database}?", default=True):
            return Err(ErrKind.CANCELLED, "Initialization cancelled")

    result = await execute_planned(ctx, ctx.backend.plan("init", schema=schema))
    if not isinstance(result, Ok) or ctx.option("dry_run"):
        return result

    missing = [t.name for t in schema.tables if not await ctx.backend.table_exists(t.name)]
    if missing:
        return Err(ErrKind.FAILED, f"Tables missing after init: {', '.join(missing)}")
    return Ok(schema, f"Initialized {len(schema.tables)} tables in {ctx.backend.database}")


async def handle_check(ctx: CommandContext) -> Result:
    schema = load_project_schema(ctx.project, ctx.option("schema"))
    backend = ctx.backend

    if backend.kind is BackendKind.MONGODB:
        collections = set(await backend.list_tables())
        missing = [t.name for t in schema.tables if t.name not in collections]
        for name in missing:
            ctx.console.print(f"  [red]- missing collection {name}[/red]", highlight=False)
        if missing:
            return Err(ErrKind.VALIDATION, f"{len(missing)} collections missing")
        return Ok(schema, "All collections present")

    live = await introspect_database(backend.sync_url())
    result = check_schema(live, schema)
    ctx.console.print(result.format_report(), highlight=False)

    # Declared REFERENCES without a live foreign key
    for table, parents in table_dependencies(schema).items():
        live_table = live.tables.get(table)
        if live_table is None:
            continue
        live_parents = {
            c.references_table for c in live_table.constraints.values() if c.constraint_type == "FOREIGN KEY"
        }
        for parent in sorted(parents - live_parents):
            ctx.console.print(f"  [yellow]! {table}: no foreign key to {parent}[/yellow]", highlight=False)

    for table, rows in seed_rows(schema):
        if table in live.tables:
            count = await backend.count_records(table)
            if count < len(rows):
                ctx.console.print(
                    f"  [yellow]! {table}: {count} rows, {len(rows)} seed rows declared[/yellow]", highlight=False
                )

    if not result.valid:
        return Err(ErrKind.VALIDATION, f"Schema check failed ({result.error_count} errors)", ["Run init or migrate"])
    return Ok(result, "Schema matches the project schema")


# ============================================================================
# Tables
# ============================================================================


async def handle_create_table(ctx: CommandContext) -> Result:
    table = ctx.option("table")
    if await ctx.backend.table_exists(table):
        return Err(ErrKind.VALIDATION, f'Table "{table}" already exists')
    try:
        columns = parse_column_specs(ctx.option("columns"))
    except ValueError as e:
        return Err(ErrKind.VALIDATION, str(e))
    operation = ctx.backend.plan("create-table", table=table, columns=columns or None)
    return await execute_planned(ctx, operation, f'Created "{table}"')


async def handle_rename_table(ctx: CommandContext) -> Result:
    table, new_name = ctx.option("table"), ctx.option("new_name")
    missing = await _require_table(ctx, table)
    if missing is not None:
        return missing
    if await ctx.backend.table_exists(new_name):
        return Err(ErrKind.VALIDATION, f'Table "{new_name}" already exists')
    if table in PROTECTED_TABLES:
        return Err(ErrKind.VALIDATION, f'"{table}" is the migration ledger and cannot be renamed')
    command = ctx.option("operation") or "rename-table"
    operation = ctx.backend.plan(command, table=table, new_name=new_name)
    return await execute_planned(ctx, operation, f'Renamed "{table}" to "{new_name}"')


async def handle_delete_table(ctx: CommandContext) -> Result:
    table = ctx.option("table")
    if table in PROTECTED_TABLES:
        return Err(
            ErrKind.VALIDATION,
            f'"{table}" is the migration ledger and cannot be deleted',
            ["Use a raw query with --force if you really mean it"],
        )
    missing = await _require_table(ctx, table)
    if missing is not None:
        return missing
    await _show_dependents(ctx, table)
    command = ctx.option("operation") or "delete-table"
    operation = ctx.backend.plan(command, table=table)
    return await execute_planned(ctx, operation, f'Deleted "{table}"')


# ============================================================================
# Columns and indexes
# ============================================================================


async def handle_add_column(ctx: CommandContext) -> Result:
    table, column = ctx.option("table"), ctx.option("column")
    missing = await _require_table(ctx, table)
    if missing is not None:
        return missing
    if await ctx.backend.column_exists(table, column):
        return Err(ErrKind.VALIDATION, f'Column "{column}" already exists in "{table}"')
    operation = ctx.backend.plan(
        "add-column",
        table=table,
        column=column,
        type=ctx.option("column_type") or "TEXT",
        default=ctx.option("default"),
        not_null=bool(ctx.option("not_null")),
    )
    return await execute_planned(ctx, operation, f'Added "{column}" to "{table}"')


async def handle_remove_column(ctx: CommandContext) -> Result:
    table, column = ctx.option("table"), ctx.option("column")
    missing = await _require_table(ctx, table)
    if missing is not None:
        return missing
    if not await ctx.backend.column_exists(table, column):
        return Err(ErrKind.NOT_FOUND, f'Column "{column}" does not exist in "{table}"')
    await _show_dependents(ctx, table, column)
    command = ctx.option("operation") or "remove-column"
    operation = ctx.backend.plan(command, table=table, column=column)
    return await execute_planned(ctx, operation, f'Removed "{column}" from "{table}"')


async def handle_rename_column(ctx: CommandContext) -> Result:
    table, column, new_name = ctx.option("table"), ctx.option("column"), ctx.option("new_name")
    missing = await _require_table(ctx, table)
    if missing is not None:
        return missing
    if not await ctx.backend.column_exists(table, column):
        return Err(ErrKind.NOT_FOUND, f'Column "{column}" does not exist in "{table}"')
    if await ctx.backend.column_exists(table, new_name):
        return Err(ErrKind.VALIDATION, f'Column "{new_name}" already exists in "{table}"')
    operation = ctx.backend.plan("rename-column", table=table, column=column, new_name=new_name)
    return await execute_planned(ctx, operation, f'Renamed "{table}.{column}" to "{new_name}"')


async def handle_create_index(ctx: CommandContext) -> Result:
    table, column = ctx.option("table"), ctx.option("column")
    missing = await _require_table(ctx, table)
    if missing is not None:
        return missing
    if not await ctx.backend.column_exists(table, column):
        return Err(ErrKind.NOT_FOUND, f'Column "{column}" does not exist in "{table}"')
    for index in await ctx.backend.table_indexes(table):
        if index.columns == [column]:
            return Err(ErrKind.VALIDATION, f'Index "{index.name}" already covers "{table}.{column}"')
    operation = ctx.backend.plan(
        "create-index",
        table=table,
        column=column,
        unique=bool(ctx.option("unique")),
        index_name=ctx.option("name"),
    )
    return await execute_planned(ctx, operation, f'Created index on "{table}.{column}"')


# ============================================================================
# Migrations and seed data
# ============================================================================


async def handle_migrate(ctx: CommandContext) -> Result:
    path = Path(ctx.option("file"))
    if not path.is_file():
        return Err(ErrKind.NOT_FOUND, f"Migration file not found: {path}")
    name = path.stem
    body = path.read_text(encoding="utf-8")

    ledger = MigrationLedger(ctx.backend)
    ledger.parse(body)
    if await ledger.is_applied(name):
        return Ok(name, f"Migration {name} already applied, skipping")

    operation = ctx.backend.plan("migrate", name=name, body=body)
    return await execute_planned(ctx, operation, f"Applied migration {name}")


def load_seed_file(path: Path) -> list[tuple[str, list[dict]]]:
    """Seed rows from ``{"table": [rows]}`` or ``[{"table": ..., "rows": [...]}]``."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if isinstance(data, dict):
        return [(table, list(rows)) for table, rows in data.items()]
    if isinstance(data, list):
        return [(entry["table"], list(entry.get("rows", []))) for entry in data]
    raise ValueError("Seed file must be a JSON object or array")


async def handle_seed(ctx: CommandContext) -> Result:
    if ctx.option("file"):
        try:
            rows = load_seed_file(ctx.option("file"))
        except (OSError, ValueError, KeyError, TypeError) as e:
            return Err(ErrKind.VALIDATION, f"Cannot read seed file: {e}")
    else:
        rows = seed_rows(load_project_schema(ctx.project, ctx.option("schema")))
    rows = [(table, table_rows) for table, table_rows in rows if table_rows]
    if not rows:
        return Ok(None, "No seed data")

    for table, _ in rows:
        missing = await _require_table(ctx, table)
        if missing is not None:
            return missing
    operation = ctx.backend.plan("seed", rows=rows)
    total = sum(len(r) for _, r in rows)
    return await execute_planned(ctx, operation, f"Inserted {total} rows into {len(rows)} tables")
