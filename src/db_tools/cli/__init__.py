"""CLI for managing PostgreSQL and MongoDB project databases.

Every project command takes the project name from connect.json as its
first argument.  Mutating commands are classified by risk and, when
WARNING or DANGER, rehearsed in a shadow database (with an encrypted
temporary backup for DANGER) before they touch the real database.

Usage:
    db-tools validate-config --test-connections
    db-tools tables "My Shop" -D
    db-tools query "My Shop" "SELECT * FROM users LIMIT 5"
    db-tools add-column "My Shop" users nickname "VARCHAR(50)"
    db-tools delete-table "My Shop" legacy_orders --dry-run
    db-tools restore-temp "My Shop"

Commands:
    init, check, migrate, seed                 - project schema
    create-table, add-column, create-index     - additive changes
    rename-table, rename-column                - renames
    delete-table, remove-column                - destructive changes
    rename-collection, delete-collection,
    remove-field                               - MongoDB changes
    list-databases, list-tables, list-columns,
    count-records, query, search               - inspection
    backup, restore, auto-backup               - backups
    list-temp-backups, restore-temp            - safety backups
    manage-permissions                         - application role
    validate-config                            - connect.json
"""

import argparse
import asyncio
import logging
import sys

from rich.console import Console
from rich.logging import RichHandler

from db_tools.backup.scheduled import DEFAULT_RETENTION_DAYS
from db_tools.command import CommandAdapter
from db_tools.commands import backup, config, inspect, permissions, schema_ops
from db_tools.errors import ErrorReporter
from db_tools.prompt import ConsolePrompter

console = Console()
logger = logging.getLogger(__name__)


# ============================================================================
# Logging
# ============================================================================


def configure_logging(debug: bool = False) -> None:
    """Route library logging through rich on stderr."""
    handler = RichHandler(console=Console(stderr=True), show_path=False, show_time=debug)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(message)s",
        handlers=[handler],
        force=True,
    )
    # Driver chatter stays at WARNING even with --verbose
    for noisy in ("asyncio", "sqlalchemy.engine", "pymongo"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ============================================================================
# Parser construction
# ============================================================================


def _command(
    subparsers: argparse._SubParsersAction,
    name: str,
    handler,
    help: str,
    aliases: tuple[str, ...] = (),
    mutating: bool = False,
    project: str = "required",
    standalone: bool = False,
    **defaults,
) -> argparse.ArgumentParser:
    parser = subparsers.add_parser(name, help=help, aliases=list(aliases))
    if project == "required":
        parser.add_argument("project", nargs="?", help="Project name from connect.json")
    elif project == "optional":
        parser.add_argument("project", nargs="?", help="Limit to one project")
    if not standalone:
        parser.add_argument("-d", "--database", help="Database to use instead of the one in the URI")
    if mutating:
        parser.add_argument("--force", action="store_true", help="Skip confirmation and override failed checks")
        parser.add_argument("--dry-run", action="store_true", help="Show what would happen without changing anything")
        parser.add_argument("--skip-safety", action="store_true", help="Skip temp backup and shadow validation")
    parser.set_defaults(handler=handler, standalone=standalone, **defaults)
    return parser


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="db-tools",
        description="Safe schema and data management for PostgreSQL and MongoDB projects",
    )
    parser.add_argument("--connect", help="Path to connect.json (default: $DB_TOOLS_CONNECT or ./connect.json)")
    parser.add_argument("--type", choices=["postgres", "mongodb"], help="Only match connections of this type")
    parser.add_argument("--verbose", dest="debug", action="store_true", help="Debug logging and stack traces")

    sub = parser.add_subparsers(dest="command", required=True)

    # --- Project schema ---------------------------------------------------
    p = _command(sub, "init", schema_ops.handle_init, "Create the project schema", mutating=True)
    p.add_argument("--schema", help="Project schema JSON (default: schemas/<project>.json)")

    p = _command(sub, "check", schema_ops.handle_check, "Compare the database with the project schema")
    p.add_argument("--schema", help="Project schema JSON (default: schemas/<project>.json)")

    p = _command(sub, "migrate", schema_ops.handle_migrate, "Apply a migration file once", mutating=True)
    p.add_argument("file", help="Migration file (.sql, or .json for MongoDB)")

    p = _command(sub, "seed", schema_ops.handle_seed, "Insert seed rows", mutating=True)
    p.add_argument("--file", help="Seed JSON (default: seed_data of the project schema)")
    p.add_argument("--schema", help="Project schema JSON")

    # --- Tables and columns -----------------------------------------------
    p = _command(sub, "create-table", schema_ops.handle_create_table, "Create a table or collection", mutating=True)
    p.add_argument("table")
    p.add_argument("-c", "--column", dest="columns", action="append", metavar="NAME:TYPE", help="Column (repeatable)")

    p = _command(sub, "add-column", schema_ops.handle_add_column, "Add a column", mutating=True)
    p.add_argument("table")
    p.add_argument("column")
    p.add_argument("column_type", nargs="?", default="TEXT", metavar="type", help="Column type (default: TEXT)")
    p.add_argument("--default", help="Default value expression")
    nullability = p.add_mutually_exclusive_group()
    nullability.add_argument("--not-null", dest="not_null", action="store_true", help="Add NOT NULL")
    nullability.add_argument("--null", dest="not_null", action="store_false", help="Allow NULL (default)")

    p = _command(sub, "remove-column", schema_ops.handle_remove_column, "Drop a column", mutating=True)
    p.add_argument("table")
    p.add_argument("column")

    p = _command(sub, "rename-table", schema_ops.handle_rename_table, "Rename a table", mutating=True)
    p.add_argument("table")
    p.add_argument("new_name")

    p = _command(sub, "rename-column", schema_ops.handle_rename_column, "Rename a column or field", mutating=True)
    p.add_argument("table")
    p.add_argument("column")
    p.add_argument("new_name")

    p = _command(sub, "create-index", schema_ops.handle_create_index, "Create an index", mutating=True)
    p.add_argument("table")
    p.add_argument("column")
    p.add_argument("--unique", action="store_true")
    p.add_argument("--name", help="Index name (default: idx_<table>_<column>)")

    p = _command(sub, "delete-table", schema_ops.handle_delete_table, "Drop a table", mutating=True)
    p.add_argument("table")

    # --- MongoDB ----------------------------------------------------------
    p = _command(
        sub,
        "rename-collection",
        schema_ops.handle_rename_table,
        "Rename a collection",
        mutating=True,
        operation="rename-collection",
    )
    p.add_argument("table", metavar="collection")
    p.add_argument("new_name")

    p = _command(
        sub,
        "delete-collection",
        schema_ops.handle_delete_table,
        "Drop a collection",
        mutating=True,
        operation="delete-collection",
    )
    p.add_argument("table", metavar="collection")

    p = _command(
        sub,
        "remove-field",
        schema_ops.handle_remove_column,
        "Unset a field in every document",
        mutating=True,
        operation="remove-field",
    )
    p.add_argument("table", metavar="collection")
    p.add_argument("column", metavar="field")

    # --- Inspection -------------------------------------------------------
    _command(sub, "list-databases", inspect.handle_list_databases, "List databases", aliases=("dbs",))

    p = _command(sub, "list-tables", inspect.handle_list_tables, "List tables or collections", aliases=("tables",))
    p.add_argument("-D", "--detailed", action="store_true", help="Include column and row counts")

    p = _command(sub, "list-columns", inspect.handle_list_columns, "List columns", aliases=("columns",))
    p.add_argument("table")

    p = _command(sub, "count-records", inspect.handle_count_records, "Count rows", aliases=("count",))
    p.add_argument("table", nargs="?")
    p.add_argument("-a", "--all", action="store_true", help="Count every table")
    p.add_argument("-D", "--detailed", action="store_true", help="Include table size (PostgreSQL)")
    p.add_argument("-w", "--where", help="Filter (SQL WHERE clause or MongoDB JSON filter)")

    p = _command(sub, "query", inspect.handle_query, "Run a query", mutating=True)
    p.add_argument("statement", help="SQL, or a JSON command document for MongoDB")
    p.add_argument("-r", "--raw", action="store_true", help="Tab-separated output")
    p.add_argument("-j", "--json", action="store_true", help="JSON output")
    p.add_argument("-v", "--verbose", action="store_true", help="Show row counts")

    p = _command(sub, "search", inspect.handle_search, "Search for a value across tables")
    p.add_argument("-v", "--value", required=True)
    p.add_argument("-t", "--table", help="Only this table")
    p.add_argument("--column", help="Only this column")
    p.add_argument("-l", "--limit", type=int, default=1000)
    p.add_argument("-j", "--json", action="store_true")
    p.add_argument("--csv", action="store_true")
    p.add_argument("-c", "--compact", action="store_true")
    p.add_argument("--case-sensitive", action="store_true")
    p.add_argument("-e", "--exact", action="store_true")
    p.add_argument("-r", "--regex", action="store_true")
    p.add_argument("--recursive", action="store_true", help="Search nested JSON values")
    p.add_argument("--highlight", action="store_true")
    p.add_argument("--verbose", action="store_true", help="Show full rows")

    # --- Backups ----------------------------------------------------------
    p = _command(sub, "backup", backup.handle_backup, "Back up the database")
    p.add_argument("-o", "--output", help="Output file (default: backups/<project>_<timestamp>)")
    p.add_argument("-f", "--format", choices=["plain", "custom"], default="plain")
    p.add_argument("--encrypt", action="store_true", help="AES-256 encrypt; writes a .key file")

    p = _command(sub, "restore", backup.handle_restore, "Restore a backup", mutating=True)
    p.add_argument("-i", "--input", required=True, help="Backup file (.sql, .dump, .archive or .enc)")
    p.add_argument("--drop-first", action="store_true", help="Drop existing objects before restoring")
    p.add_argument("--key", help="Key file for .enc backups (default: sibling .key)")

    p = _command(sub, "auto-backup", backup.handle_auto_backup, "Schedule automatic backups")
    p.add_argument("--backup-dir", default="backups")
    p.add_argument("--retention-days", type=int, default=DEFAULT_RETENTION_DAYS)
    p.add_argument("--format", choices=["plain", "custom"], default="plain")
    p.add_argument("--encrypt", action="store_true")
    mode = p.add_mutually_exclusive_group()
    mode.add_argument("--schedule", metavar="CRON", help='Cron expression, e.g. "0 3 * * *"')
    mode.add_argument("--disable", action="store_true", help="Remove the schedule")
    mode.add_argument("--run", action="store_true", help="Take a backup now and prune old ones")

    _command(
        sub,
        "list-temp-backups",
        backup.handle_list_temp_backups,
        "List temporary safety backups",
        project="optional",
        standalone=True,
    )

    p = _command(sub, "restore-temp", backup.handle_restore_temp, "Restore a temporary safety backup", mutating=True)
    p.add_argument("name", nargs="?", help="Backup name (prompted when omitted)")

    # --- Roles and configuration ------------------------------------------
    p = _command(sub, "manage-permissions", permissions.handle_manage_permissions, "Manage the application role", mutating=True)
    p.add_argument("action", choices=permissions.ACTIONS, nargs="?", default="show")
    p.add_argument("--role", default=permissions.DEFAULT_ROLE)
    p.add_argument("--login-user", help="Also create a login user that inherits the role")
    p.add_argument("--password", help="Password for --login-user (prompted when omitted)")

    p = _command(
        sub,
        "validate-config",
        config.handle_validate_config,
        "Validate connect.json",
        project="none",
        standalone=True,
    )
    p.add_argument("-t", "--test-connections", action="store_true", help="Ping every connection")
    p.add_argument("-v", "--verbose", action="store_true", help="Show suggestions")
    p.add_argument("--fix", action="store_true", help="Rewrite connect.json canonically (keeps a .bak)")

    return parser


# ============================================================================
# Main entry point
# ============================================================================


async def _dispatch(args: argparse.Namespace) -> int:
    reporter = ErrorReporter(console, verbose=args.debug)
    adapter = CommandAdapter(console, ConsolePrompter(console), reporter=reporter)
    if args.standalone:
        return await adapter.run_standalone(args.handler, args)
    return await adapter.run(args.handler, args)


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Returns:
        Exit code: 0 success, 1 recoverable failure or cancellation,
        2 critical failure.
    """
    args = build_parser().parse_args(argv)
    configure_logging(args.debug)
    try:
        return asyncio.run(_dispatch(args))
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled[/yellow]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
