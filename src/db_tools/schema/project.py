"""Project schema loading and initialization SQL.

A project schema is a JSON document (``schemas/<project-slug>.json``)
describing the tables, indexes, extensions, functions and seed rows a
project database should have.  When no file exists the default schema
(a single ``users`` table) is used.

Usage:
    from db_tools.schema.project import load_project_schema, generate_init_statements

    schema = load_project_schema("My App")
    for statement in generate_init_statements(schema):
        print(statement)
"""

import json
import logging
import re
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from db_tools.errors import ValidationError
from db_tools.schema.models import IndexSpec, ProjectSchema, TableSpec

logger = logging.getLogger(__name__)

DEFAULT_SCHEMA = ProjectSchema(
    name="Default Schema",
    description="Default schema with common tables",
    tables=[
        TableSpec(
            name="users",
            columns={
                "id": "SERIAL PRIMARY KEY",
                "email": "VARCHAR(255) NOT NULL UNIQUE",
                "password": "VARCHAR(255) NOT NULL",
                "name": "VARCHAR(255) NOT NULL",
                "created_at": "TIMESTAMP NOT NULL DEFAULT NOW()",
                "updated_at": "TIMESTAMP NOT NULL DEFAULT NOW()",
            },
            indexes=[IndexSpec(columns=["email"])],
        )
    ],
)

_REFERENCES = re.compile(r"REFERENCES\s+\"?(\w+)\"?\s*(?:\(|\b)", re.IGNORECASE)
_REFERENCES_CLAUSE = re.compile(
    r"\s+REFERENCES\s+\"?\w+\"?\s*(?:\([^)]*\))?(?:\s+ON\s+(?:DELETE|UPDATE)\s+(?:CASCADE|RESTRICT|NO\s+ACTION|SET\s+NULL|SET\s+DEFAULT))*",
    re.IGNORECASE,
)


def project_slug(name: str) -> str:
    """Filesystem/identifier friendly form of a project name."""
    slug = re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")
    return slug or "project"


def load_project_schema(
    project_name: str,
    schema_path: Path | str | None = None,
    schemas_dir: Path | None = None,
) -> ProjectSchema:
    """Load the schema of a project.

    Args:
        project_name: Project name; used to find ``<schemas_dir>/<slug>.json``.
        schema_path: Explicit schema file; wins over the lookup.
        schemas_dir: Directory of schema files (default ``./schemas``).

    Returns:
        The project's ``ProjectSchema``, or ``DEFAULT_SCHEMA``.

    Raises:
        ValidationError: If the file is not valid JSON or does not match
            the schema model.
    """
    if schema_path is None:
        directory = schemas_dir or Path.cwd() / "schemas"
        candidate = directory / f"{project_slug(project_name)}.json"
        if not candidate.exists():
            logger.debug("No schema file for %s, using default schema", project_name)
            return DEFAULT_SCHEMA
        schema_path = candidate

    path = Path(schema_path)
    try:
        return ProjectSchema.model_validate(json.loads(path.read_text(encoding="utf-8")))
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON in schema file {path}: {e.msg}") from e
    except PydanticValidationError as e:
        raise ValidationError(
            f"Schema file {path} does not match the expected structure",
            suggestions=[str(err["loc"]) + ": " + err["msg"] for err in e.errors()[:5]],
        ) from e


# ============================================================================
# Table ordering
# ============================================================================


def table_dependencies(schema: ProjectSchema) -> dict[str, set[str]]:
    """Map each table to the tables its columns reference."""
    deps: dict[str, set[str]] = {}
    for spec in schema.tables:
        refs: set[str] = set()
        for definition in spec.columns.values():
            for match in _REFERENCES.finditer(definition):
                if match.group(1) != spec.name:
                    refs.add(match.group(1))
        deps[spec.name] = refs
    return deps


def order_tables(schema: ProjectSchema) -> tuple[list[str], bool]:
    """Order tables parents first.

    Returns:
        Tuple of (table names, acyclic).  When the reference graph has a
        cycle the discovery order is returned with ``acyclic=False``.
    """
    names = [t.name for t in schema.tables]
    deps = {t: d & set(names) for t, d in table_dependencies(schema).items()}

    ordered: list[str] = []
    visited: set[str] = set()
    visiting: set[str] = set()
    acyclic = True

    def visit(table: str) -> None:
        nonlocal acyclic
        if table in visited:
            return
        if table in visiting:
            acyclic = False
            return
        visiting.add(table)
        for dep in sorted(deps.get(table, set()), key=names.index):
            visit(dep)
        visiting.discard(table)
        visited.add(table)
        ordered.append(table)

    for table in names:
        visit(table)

    if not acyclic:
        return names, False
    return ordered, True


def _quote(identifier: str) -> str:
    return '"' + identifier.replace('"', '""') + '"'


def create_table_sql(spec: TableSpec, with_foreign_keys: bool = True) -> str:
    """``CREATE TABLE IF NOT EXISTS`` statement for a declared table."""
    columns = []
    for name, definition in spec.columns.items():
        if not with_foreign_keys:
            definition = _REFERENCES_CLAUSE.sub("", definition)
        columns.append(f"  {_quote(name)} {definition}")
    return f"CREATE TABLE IF NOT EXISTS {_quote(spec.name)} (\n" + ",\n".join(columns) + "\n)"


def create_index_sql(table: str, index: IndexSpec) -> str:
    name = index.name or f"idx_{table}_{'_'.join(index.columns)}"
    unique = "UNIQUE " if index.unique else ""
    cols = ", ".join(_quote(c) for c in index.columns)
    return f"CREATE {unique}INDEX IF NOT EXISTS {_quote(name)} ON {_quote(table)} ({cols})"


def generate_init_statements(schema: ProjectSchema) -> list[str]:
    """All DDL needed to create a project schema, in execution order.

    Extensions first, then tables parents-first (without FK clauses if
    the reference graph is cyclic), indexes, then functions/triggers.
    """
    statements = [f"CREATE EXTENSION IF NOT EXISTS {_quote(ext)}" for ext in schema.extensions]

    order, acyclic = order_tables(schema)
    if not acyclic:
        logger.warning("Foreign key cycle in %s; creating tables without foreign keys", schema.name)

    for name in order:
        spec = schema.table(name)
        statements.append(create_table_sql(spec, with_foreign_keys=acyclic))

    for name in order:
        spec = schema.table(name)
        for index in spec.indexes:
            statements.append(create_index_sql(name, index))

    statements.extend(body.strip().rstrip(";") for body in schema.functions if body.strip())
    return statements


def seed_rows(schema: ProjectSchema) -> list[tuple[str, list[dict]]]:
    """Seed rows per table, parents first."""
    order, _ = order_tables(schema)
    rows = []
    for name in order:
        spec = schema.table(name)
        if spec.seed_data:
            rows.append((name, spec.seed_data))
    return rows
