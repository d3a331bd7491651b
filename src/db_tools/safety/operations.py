"""Operation registry: static risk classification of every command.

Every CLI command appears exactly once in ``OPERATIONS``.  Raw queries
are classified lexically by ``classify_query``; parameter-dependent
risk (NOT NULL columns, forced writes) is resolved by ``risk_for``,
which is the single lookup the safety pipeline uses.

Usage:
    from db_tools.safety.operations import RiskLevel, classify_query, risk_for

    classify_query("SELECT * FROM users")          # RiskLevel.SAFE
    classify_query("DELETE FROM users WHERE id=1")  # RiskLevel.DANGER
    risk_for("add-column", {"not_null": True})     # RiskLevel.WARNING
"""

import json
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

from db_tools.errors import ValidationError
from db_tools.schema.migrations import split_sql_statements


class RiskLevel(IntEnum):
    """Totally ordered risk of an operation."""

    SAFE = 0
    CAUTION = 1
    WARNING = 2
    DANGER = 3

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @property
    def style(self) -> str:
        return {0: "green", 1: "cyan", 2: "yellow", 3: "bold red"}[self.value]


@dataclass(frozen=True)
class OperationDescriptor:
    name: str
    risk: RiskLevel
    params: tuple[str, ...] = ()
    description: str = ""


def _op(name: str, risk: RiskLevel, params: tuple[str, ...] = (), description: str = "") -> tuple[str, OperationDescriptor]:
    return name, OperationDescriptor(name, risk, params, description)


OPERATIONS: dict[str, OperationDescriptor] = dict(
    [
        # Safe
        _op("list-databases", RiskLevel.SAFE, (), "List databases on the server"),
        _op("list-tables", RiskLevel.SAFE, ("detailed",), "List tables or collections"),
        _op("list-columns", RiskLevel.SAFE, ("table",), "List columns or sampled fields"),
        _op("count-records", RiskLevel.SAFE, ("table", "all", "where", "detailed"), "Count rows"),
        _op("query", RiskLevel.SAFE, ("statement", "force"), "Run a query (risk depends on the statement)"),
        _op("search", RiskLevel.SAFE, ("value", "table", "column"), "Search values across tables"),
        _op("check", RiskLevel.SAFE, ("schema",), "Compare the live schema with the project schema"),
        _op("backup", RiskLevel.SAFE, ("output", "format", "encrypt"), "Back up the database"),
        _op("validate-config", RiskLevel.SAFE, ("test_connections", "fix"), "Validate connect.json"),
        _op("list-temp-backups", RiskLevel.SAFE, (), "List encrypted temporary backups"),
        # Caution
        _op("init", RiskLevel.CAUTION, ("schema",), "Create the project schema"),
        _op("create-table", RiskLevel.CAUTION, ("table", "columns"), "Create a table or collection"),
        _op("add-column", RiskLevel.CAUTION, ("table", "column", "type", "default", "not_null"), "Add a column"),
        _op("create-index", RiskLevel.CAUTION, ("table", "column", "unique", "index_name"), "Create an index"),
        _op("seed", RiskLevel.CAUTION, ("file",), "Insert seed rows"),
        _op("auto-backup", RiskLevel.CAUTION, ("schedule", "run", "disable"), "Schedule automatic backups"),
        # Warning
        _op("rename-table", RiskLevel.WARNING, ("table", "new_name"), "Rename a table"),
        _op("rename-column", RiskLevel.WARNING, ("table", "column", "new_name"), "Rename a column or field"),
        _op("rename-collection", RiskLevel.WARNING, ("table", "new_name"), "Rename a collection"),
        _op("migrate", RiskLevel.WARNING, ("name", "body"), "Apply a migration file"),
        _op("manage-permissions", RiskLevel.WARNING, ("action", "role"), "Manage the application role"),
        # Danger
        _op("delete-table", RiskLevel.DANGER, ("table",), "Drop a table"),
        _op("delete-collection", RiskLevel.DANGER, ("table",), "Drop a collection"),
        _op("remove-column", RiskLevel.DANGER, ("table", "column"), "Drop a column"),
        _op("remove-field", RiskLevel.DANGER, ("table", "column"), "Unset a field in every document"),
        _op("restore", RiskLevel.DANGER, ("input", "drop_first", "key"), "Restore a backup"),
        _op("restore-temp", RiskLevel.DANGER, ("name",), "Restore a temporary backup"),
    ]
)

# Commands whose dry-run report is meaningful
DRY_RUN_OPERATIONS = frozenset(
    {
        "create-table",
        "add-column",
        "remove-column",
        "rename-table",
        "rename-column",
        "create-index",
        "delete-table",
        "delete-collection",
        "remove-field",
        "query",
        "seed",
        "migrate",
    }
)


# ============================================================================
# Query Classification
# ============================================================================

_MASK = re.compile(
    r"--[^\n]*|/\*.*?\*/|'(?:[^']|'')*'|\"(?:[^\"]|\"\")*\"|\$(\w*)\$.*?\$\1\$",
    re.DOTALL,
)
_WORD = re.compile(r"[A-Z_]+")

_READ_KEYWORDS = frozenset({"SELECT", "SHOW", "EXPLAIN", "VALUES", "TABLE", "BEGIN", "START", "COMMIT", "END"})
_WRITE_KEYWORDS = frozenset({"INSERT", "UPDATE", "MERGE", "CREATE", "GRANT", "REVOKE", "COMMENT", "COPY"})
_DESTRUCTIVE_KEYWORDS = frozenset({"DELETE", "DROP", "TRUNCATE"})

_MONGO_READ = frozenset(
    {"find", "aggregate", "count", "distinct", "listCollections", "listIndexes", "dbStats", "collStats", "ping"}
)
_MONGO_DESTRUCTIVE = frozenset({"delete", "deleteMany", "drop", "dropCollection", "dropDatabase", "dropIndexes"})
_MONGO_DESTRUCTIVE_TEXT = re.compile(r"\b(deleteMany|dropCollection|dropDatabase|drop|remove)\s*\(")
_MONGO_SHELL = re.compile(r"^\s*db\s*\.")


def mask_sql(statement: str) -> str:
    """Blank out comments, string literals and quoted identifiers."""
    return _MASK.sub(" ", statement)


def classify_statement(statement: str) -> RiskLevel:
    """Classify one SQL statement by its top-level keyword.

    Examples:
        >>> classify_statement("select 1")
        <RiskLevel.SAFE: 0>
        >>> classify_statement("ALTER TABLE t DROP COLUMN c")
        <RiskLevel.DANGER: 3>
        >>> classify_statement("WITH gone AS (DELETE FROM t RETURNING *) SELECT * FROM gone")
        <RiskLevel.DANGER: 3>
    """
    words = _WORD.findall(mask_sql(statement).upper())
    if not words:
        return RiskLevel.SAFE

    first = words[0]
    if first == "EXPLAIN":
        if "ANALYZE" in words[1:3]:
            # EXPLAIN ANALYZE executes the statement it explains
            rest = words[2:] if words[1] == "ANALYZE" else words[3:]
            return classify_statement(" ".join(rest))
        return RiskLevel.SAFE
    if first == "WITH":
        found = set(words)
        if found & _DESTRUCTIVE_KEYWORDS:
            return RiskLevel.DANGER
        if found & {"INSERT", "UPDATE", "MERGE"}:
            return RiskLevel.WARNING
        return RiskLevel.SAFE
    if first in _DESTRUCTIVE_KEYWORDS:
        return RiskLevel.DANGER
    if first == "ALTER":
        return RiskLevel.DANGER if "DROP" in words else RiskLevel.WARNING
    if first == "SELECT":
        return RiskLevel.WARNING if "INTO" in words else RiskLevel.SAFE
    if first in _READ_KEYWORDS:
        return RiskLevel.SAFE
    if first in _WRITE_KEYWORDS:
        return RiskLevel.WARNING
    return RiskLevel.WARNING


def classify_mongo_command(text: str) -> RiskLevel:
    """Classify a MongoDB command document (or JSON array of them)."""
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return RiskLevel.DANGER if _MONGO_DESTRUCTIVE_TEXT.search(text) else RiskLevel.WARNING

    documents = parsed if isinstance(parsed, list) else [parsed]
    risk = RiskLevel.SAFE
    for doc in documents:
        if not isinstance(doc, dict) or not doc:
            risk = max(risk, RiskLevel.WARNING)
            continue
        command = next(iter(doc))
        if command in _MONGO_DESTRUCTIVE:
            return RiskLevel.DANGER
        if command == "aggregate" and any(
            isinstance(stage, dict) and ("$out" in stage or "$merge" in stage) for stage in doc.get("pipeline", [])
        ):
            risk = max(risk, RiskLevel.WARNING)
        elif command not in _MONGO_READ:
            risk = max(risk, RiskLevel.WARNING)
    return risk


def classify_query(text: str) -> RiskLevel:
    """Risk of a raw query: the maximum over its statements.

    JSON input is treated as MongoDB command documents and ``db.<coll>.<method>(...)``
    shell text is matched against the destructive shell methods. Anything else
    is split into SQL statements.
    """
    stripped = text.strip()
    if _MONGO_SHELL.match(stripped):
        return RiskLevel.DANGER if _MONGO_DESTRUCTIVE_TEXT.search(stripped) else RiskLevel.WARNING
    if stripped.startswith(("{", "[")):
        return classify_mongo_command(stripped)
    statements = split_sql_statements(text)
    if not statements:
        return RiskLevel.SAFE
    return max(classify_statement(s) for s in statements)


def risk_for(name: str, params: dict[str, Any] | None = None) -> RiskLevel:
    """Risk of running *name* with *params*.

    Raises:
        ValidationError: If *name* is not a registered operation.
    """
    descriptor = OPERATIONS.get(name)
    if descriptor is None:
        raise ValidationError(f"Unknown operation: {name}")
    params = params or {}

    if name == "query":
        risk = classify_query(str(params.get("statement", "")))
        if risk >= RiskLevel.WARNING and params.get("force"):
            return RiskLevel.DANGER
        return risk
    if name == "add-column" and params.get("not_null") and params.get("default") is None:
        return RiskLevel.WARNING
    return descriptor.risk


# ============================================================================
# Planned Operations
# ============================================================================


@dataclass
class PlannedOperation:
    """A mutating command resolved to engine statements.

    ``apply`` runs the operation against any backend of the same engine,
    which is how the same plan executes first in the shadow database and
    then on the live target.  ``estimate`` (optional) returns the number
    of rows the operation would touch on a given backend.
    """

    name: str
    params: dict[str, Any]
    statements: list[str]
    apply: Callable[[Any], Awaitable[Any]]
    estimate: Callable[[Any], Awaitable[int | None]] | None = None
    creates: list[str] = field(default_factory=list)
    modifies: list[str] = field(default_factory=list)
    deletes: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    risk: RiskLevel = field(init=False)

    def __post_init__(self) -> None:
        self.risk = risk_for(self.name, self.params)


def run_statements(statements: list[Any]) -> Callable[[Any], Awaitable[None]]:
    """Executor that runs *statements* in one ``backend.transaction()``."""

    async def apply(target: Any) -> None:
        async with target.transaction() as tx:
            for statement in statements:
                await tx.execute(statement)

    return apply
