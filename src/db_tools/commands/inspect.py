"""Read-only inspection commands.

list-databases, list-tables, list-columns, count-records, query and
search.  ``query`` only runs directly when the statement classifies as
SAFE; anything else goes through the safety pipeline.
"""

import csv
import io
import json
import re

from rich.console import Console
from rich.table import Table

from db_tools.adapters.base import SearchHit, SearchOptions
from db_tools.command import CommandContext, execute_planned
from db_tools.config.models import BackendKind
from db_tools.result import Err, ErrKind, Ok, Result
from db_tools.safety.operations import RiskLevel, classify_query


def render_rows(console: Console, rows: list[dict], as_json: bool = False, raw: bool = False) -> None:
    """Print rows as a rich table, JSON, or tab-separated text."""
    if as_json:
        console.print_json(json.dumps(rows, default=str))
        return
    if not rows:
        console.print("[dim](no rows)[/dim]")
        return
    columns = list(rows[0])
    if raw:
        console.print("\t".join(columns), highlight=False, markup=False)
        for row in rows:
            console.print("\t".join("" if row.get(c) is None else str(row.get(c)) for c in columns), highlight=False, markup=False)
        return
    table = Table(show_header=True, header_style="bold")
    for column in columns:
        table.add_column(column)
    for row in rows:
        table.add_row(*("NULL" if row.get(c) is None else str(row.get(c)) for c in columns))
    console.print(table)


async def handle_list_databases(ctx: CommandContext) -> Result:
    names = await ctx.backend.list_databases()
    for name in names:
        marker = " [green](current)[/green]" if name == ctx.backend.database else ""
        ctx.console.print(f"  {name}{marker}", highlight=False)
    return Ok(names, f"{len(names)} databases")


async def handle_list_tables(ctx: CommandContext) -> Result:
    backend = ctx.backend
    tables = await backend.list_tables()
    label = "collections" if backend.kind is BackendKind.MONGODB else "tables"
    if not tables:
        return Ok([], f"No {label} in {backend.database}")

    if not ctx.option("detailed"):
        for name in tables:
            ctx.console.print(f"  {name}", highlight=False)
        return Ok(tables, f"{len(tables)} {label}")

    table = Table(title=f"{label.capitalize()} in {backend.database}")
    table.add_column("Name", style="cyan")
    table.add_column("Columns", justify="right")
    table.add_column("Rows", justify="right")
    for name in tables:
        columns = await backend.get_columns(name)
        table.add_row(name, str(len(columns)), str(await backend.count_records(name)))
    ctx.console.print(table)
    return Ok(tables, f"{len(tables)} {label}")


async def handle_list_columns(ctx: CommandContext) -> Result:
    name = ctx.option("table")
    if not await ctx.backend.table_exists(name):
        return Err(ErrKind.NOT_FOUND, f'Table "{name}" does not exist', ["Run list-tables to see available tables"])

    columns = await ctx.backend.get_columns(name)
    table = Table(title=name)
    table.add_column("#", justify="right", style="dim")
    table.add_column("Column", style="cyan")
    table.add_column("Type")
    table.add_column("Nullable")
    table.add_column("Default", style="dim")
    for column in columns:
        table.add_row(
            str(column.position),
            column.name,
            column.data_type,
            "yes" if column.is_nullable else "no",
            column.default or "",
        )
    ctx.console.print(table)
    return Ok(columns)


async def handle_count_records(ctx: CommandContext) -> Result:
    backend = ctx.backend
    where = ctx.option("where")
    detailed = ctx.option("detailed") and backend.kind is BackendKind.POSTGRES

    if ctx.option("all"):
        names = await backend.list_tables()
    else:
        name = ctx.option("table")
        if not name:
            return Err(ErrKind.VALIDATION, "Table name is required", ["Pass a table name or --all"])
        if not await backend.table_exists(name):
            return Err(ErrKind.NOT_FOUND, f'Table "{name}" does not exist')
        names = [name]

    table = Table()
    table.add_column("Table", style="cyan")
    table.add_column("Rows", justify="right")
    if detailed:
        table.add_column("Size", justify="right")
    counts: dict[str, int] = {}
    for name in names:
        counts[name] = await backend.count_records(name, where)
        cells = [name, f"{counts[name]:,}"]
        if detailed:
            cells.append(await backend.table_size(name))
        table.add_row(*cells)
    ctx.console.print(table)
    if len(names) > 1:
        return Ok(counts, f"{sum(counts.values()):,} rows in {len(names)} tables")
    return Ok(counts)


async def handle_query(ctx: CommandContext) -> Result:
    statement = ctx.option("statement")
    if not statement or not statement.strip():
        return Err(ErrKind.VALIDATION, "Query is empty")

    if classify_query(statement) is RiskLevel.SAFE and not ctx.option("force"):
        result = await ctx.backend.query(statement)
        render_rows(ctx.console, result.rows, as_json=ctx.option("json"), raw=ctx.option("raw"))
        if ctx.option("verbose"):
            ctx.console.print(f"[dim]{len(result.rows)} rows[/dim]")
        return Ok(result)

    operation = ctx.backend.plan("query", statement=statement, force=bool(ctx.option("force")))
    return await execute_planned(ctx, operation)


# ============================================================================
# Search
# ============================================================================


def _highlight(text: str, options: SearchOptions) -> str:
    flags = 0 if options.case_sensitive else re.IGNORECASE
    pattern = options.value if options.regex else re.escape(options.value)
    try:
        return re.sub(f"({pattern})", r"[reverse]\1[/reverse]", text, flags=flags)
    except re.error:
        return text


def _render_hits(ctx: CommandContext, hits: list[SearchHit], options: SearchOptions) -> None:
    if ctx.option("json"):
        ctx.console.print_json(
            json.dumps([{"table": h.table, "columns": h.matching_columns, "row": h.row} for h in hits], default=str)
        )
        return
    if ctx.option("csv"):
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(["table", "columns", "row"])
        for hit in hits:
            writer.writerow([hit.table, ";".join(hit.matching_columns), json.dumps(hit.row, default=str)])
        ctx.console.print(buffer.getvalue().rstrip("\n"), highlight=False, markup=False)
        return

    for hit in hits:
        if ctx.option("compact"):
            values = ", ".join(f"{c}={hit.row.get(c)}" for c in hit.matching_columns)
            ctx.console.print(f"[cyan]{hit.table}[/cyan]: {values}", highlight=False)
            continue
        ctx.console.print(f"\n[bold cyan]{hit.table}[/bold cyan] [dim]({', '.join(hit.matching_columns)})[/dim]")
        for key, value in hit.row.items():
            if not ctx.option("verbose") and key not in hit.matching_columns and len(hit.row) > 8:
                continue
            text = "NULL" if value is None else str(value)
            if ctx.option("highlight") and key in hit.matching_columns:
                text = _highlight(text, options)
            ctx.console.print(f"  {key}: {text}", highlight=False)


async def handle_search(ctx: CommandContext) -> Result:
    value = ctx.option("value")
    if value is None or value == "":
        return Err(ErrKind.VALIDATION, "Search value is required", ["Pass -v/--value"])
    if ctx.option("regex"):
        try:
            re.compile(value)
        except re.error as e:
            return Err(ErrKind.VALIDATION, f"Invalid regular expression: {e}")

    options = SearchOptions(
        value=value,
        table=ctx.option("table"),
        column=ctx.option("column"),
        limit=ctx.option("limit") or 1000,
        case_sensitive=bool(ctx.option("case_sensitive")),
        exact=bool(ctx.option("exact")),
        regex=bool(ctx.option("regex")),
        recursive=bool(ctx.option("recursive")),
    )
    hits = await ctx.backend.search(options)
    _render_hits(ctx, hits, options)
    if ctx.option("json") or ctx.option("csv"):
        return Ok(hits)
    if not hits:
        return Ok(hits, f'No matches for "{value}"')
    tables = len({h.table for h in hits})
    suffix = " (limit reached)" if len(hits) >= options.limit else ""
    return Ok(hits, f"{len(hits)} matches in {tables} tables{suffix}")
