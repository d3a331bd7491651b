"""Migration ledger: record-once, idempotent migration application.

Each backend keeps a ``migrations`` table (PostgreSQL) or collection
(MongoDB) with one record per applied migration name.

For PostgreSQL the migration body is split into statements with
``split_sql_statements`` (aware of quotes, dollar quoting and comments)
and executed together with the ledger insert in a single transaction.
For MongoDB the body is a JSON array of database command documents,
replayed in order; the ledger entry is written last, best-effort.

Usage:
    from db_tools.schema.migrations import MigrationLedger

    ledger = MigrationLedger(backend)
    outcome = await ledger.apply("001_init.sql", Path("001_init.sql").read_text())
    if outcome.status == "skipped":
        print("already applied, skipping")
"""

import json
import logging
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, Field

from db_tools.config.models import BackendKind
from db_tools.errors import ValidationError, classify_error

if TYPE_CHECKING:
    from db_tools.adapters.base import Backend

logger = logging.getLogger(__name__)

LEDGER_NAME = "migrations"


class MigrationOutcome(BaseModel):
    """Result of applying one migration."""

    name: str
    status: Literal["applied", "skipped", "failed"]
    statements: int = 0
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)


# ------------------------------------------------------------------
# Statement splitting
# ------------------------------------------------------------------


def split_sql_statements(sql: str) -> list[str]:
    """Split a SQL script into statements at top-level semicolons.

    Semicolons inside single-quoted strings, double-quoted identifiers,
    dollar-quoted bodies (``$$ ... $$``, ``$fn$ ... $fn$``), ``--`` line
    comments and ``/* */`` block comments (nested) do not split.
    Statements that contain only whitespace or comments are dropped.

    Examples:
        >>> split_sql_statements("CREATE TABLE a (x int); INSERT INTO a VALUES (1);")
        ['CREATE TABLE a (x int)', 'INSERT INTO a VALUES (1)']
        >>> split_sql_statements("SELECT ';'; SELECT 2")
        ["SELECT ';'", 'SELECT 2']
    """
    statements: list[str] = []
    current: list[str] = []
    has_code = False
    i = 0
    n = len(sql)

    while i < n:
        ch = sql[i]
        nxt = sql[i + 1] if i + 1 < n else ""

        if ch == "-" and nxt == "-":
            end = sql.find("\n", i)
            end = n if end == -1 else end
            current.append(sql[i:end])
            i = end
            continue

        if ch == "/" and nxt == "*":
            depth = 1
            j = i + 2
            while j < n and depth:
                if sql.startswith("/*", j):
                    depth += 1
                    j += 2
                elif sql.startswith("*/", j):
                    depth -= 1
                    j += 2
                else:
                    j += 1
            current.append(sql[i:j])
            i = j
            continue

        if ch in ("'", '"'):
            j = i + 1
            while j < n:
                if sql[j] == ch:
                    if j + 1 < n and sql[j + 1] == ch:
                        j += 2
                        continue
                    break
                j += 1
            current.append(sql[i : j + 1])
            has_code = True
            i = j + 1
            continue

        if ch == "$":
            j = i + 1
            while j < n and (sql[j].isalnum() or sql[j] == "_"):
                j += 1
            if j < n and sql[j] == "$" and not sql[i + 1 : j][:1].isdigit():
                tag = sql[i : j + 1]
                close = sql.find(tag, j + 1)
                close = n if close == -1 else close + len(tag)
                current.append(sql[i:close])
                has_code = True
                i = close
                continue

        if ch == ";":
            if has_code:
                statements.append("".join(current).strip())
            current = []
            has_code = False
            i += 1
            continue

        if not ch.isspace():
            has_code = True
        current.append(ch)
        i += 1

    if has_code:
        statements.append("".join(current).strip())

    return statements


def parse_mongo_operations(body: str) -> list[dict]:
    """Parse a MongoDB migration body (JSON array of command documents)."""
    try:
        operations = json.loads(body)
    except json.JSONDecodeError as e:
        raise ValidationError(
            f"MongoDB migration must be a JSON array of commands: {e.msg}",
            suggestions=['Example: [{"createIndexes": "users", "indexes": [...]}]'],
        ) from e
    if isinstance(operations, dict):
        operations = [operations]
    if not isinstance(operations, list) or not all(isinstance(op, dict) for op in operations):
        raise ValidationError("MongoDB migration must be a JSON array of command documents")
    return operations


# ------------------------------------------------------------------
# Ledger
# ------------------------------------------------------------------


class MigrationLedger:
    """Applies migrations against a backend exactly once per name.

    Args:
        backend: Target backend.
    """

    def __init__(self, backend: "Backend") -> None:
        self.backend = backend

    def parse(self, body: str) -> list:
        """Statements (PG) or command documents (Mongo) of a migration body."""
        if self.backend.kind is BackendKind.MONGODB:
            return parse_mongo_operations(body)
        return split_sql_statements(body)

    async def is_applied(self, name: str) -> bool:
        records = await self.backend.list_applied_migrations()
        return any(r.name == name for r in records)

    async def apply(self, name: str, body: str) -> MigrationOutcome:
        """Apply *body* under *name* unless already recorded.

        Returns:
            ``MigrationOutcome`` with status ``applied``, ``skipped`` or
            ``failed``.  Failures roll back (PostgreSQL) and are returned,
            not raised.
        """
        await self.backend.ensure_migration_ledger()

        if await self.is_applied(name):
            logger.info("Migration %s already applied, skipping", name)
            return MigrationOutcome(name=name, status="skipped")

        statements = self.parse(body)
        if not statements:
            return MigrationOutcome(name=name, status="failed", error="Migration contains no statements")

        warnings: list[str] = []
        try:
            async with self.backend.transaction() as tx:
                for statement in statements:
                    await tx.execute(statement)
                if self.backend.kind is BackendKind.MONGODB:
                    try:
                        await tx.record_migration(name, body)
                    except Exception as e:
                        # Mongo has no cross-statement atomicity; ops already ran
                        warnings.append(f"Migration ran but could not be recorded: {e}")
                        logger.warning("Could not record migration %s: %s", name, e)
                else:
                    await tx.record_migration(name, body)
        except Exception as e:
            error = classify_error(e, {"migration": name})
            logger.debug("Migration %s failed", name, exc_info=True)
            return MigrationOutcome(
                name=name,
                status="failed",
                statements=len(statements),
                error=error.message,
            )

        return MigrationOutcome(name=name, status="applied", statements=len(statements), warnings=warnings)
