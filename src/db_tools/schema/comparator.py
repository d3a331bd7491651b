"""State and schema comparison using set operations.

Pure logic -- no I/O, no database connections.

Usage:
    from db_tools.schema.comparator import diff_states

    before = await shadow.snapshot_state()
    await operation.apply(shadow)
    after = await shadow.snapshot_state()

    diff = diff_states(before, after)
    if not diff.safe:
        print(diff.format_report())
"""

import re

from db_tools.schema.models import (
    ColumnMismatch,
    DatabaseSchema,
    ProjectSchema,
    SchemaCheckResult,
    StateDiff,
    StateSnapshot,
    TableChange,
)


def diff_states(before: StateSnapshot, after: StateSnapshot) -> StateDiff:
    """Compute the delta between two snapshots of the same database.

    - ``tables_added``: tables in *after* but not in *before*
    - ``tables_removed``: tables in *before* but not in *after*
    - for every table in both: columns added, columns removed and the
      signed row count delta

    The resulting ``StateDiff.safe`` is true iff no table was removed,
    no column disappeared from a retained table and no retained table
    lost rows.

    Examples:
        >>> from db_tools.schema.models import TableState
        >>> before = StateSnapshot(tables={"orders": TableState(name="orders", row_count=3)})
        >>> diff_states(before, StateSnapshot()).safe
        False
        >>> diff_states(before, before).safe
        True
    """
    before_tables: set[str] = set(before.tables)
    after_tables: set[str] = set(after.tables)

    changes: dict[str, TableChange] = {}
    for table in sorted(before_tables & after_tables):
        old = before.tables[table]
        new = after.tables[table]
        old_cols = old.column_names
        new_cols = new.column_names
        changes[table] = TableChange(
            columns_added=sorted(new_cols - old_cols),
            columns_removed=sorted(old_cols - new_cols),
            row_delta=new.row_count - old.row_count,
        )

    return StateDiff(
        tables_added=sorted(after_tables - before_tables),
        tables_removed=sorted(before_tables - after_tables),
        tables=changes,
    )


_TYPE_ALIASES = {
    "serial": "integer",
    "bigserial": "bigint",
    "smallserial": "smallint",
    "int": "integer",
    "int4": "integer",
    "int8": "bigint",
    "int2": "smallint",
    "varchar": "character varying",
    "char": "character",
    "bool": "boolean",
    "timestamptz": "timestamp with time zone",
    "timestamp": "timestamp without time zone",
    "float8": "double precision",
    "float4": "real",
    "decimal": "numeric",
}


def declared_type(definition: str) -> str:
    """Base type of a column definition, in information_schema spelling.

    ``"VARCHAR(255) NOT NULL"`` → ``"character varying"``.
    """
    match = re.match(r"\s*([A-Za-z_][A-Za-z0-9_ ]*?)(?:\s*\(|\s+(?:NOT|NULL|PRIMARY|UNIQUE|DEFAULT|REFERENCES|CHECK)\b|$)", definition, re.IGNORECASE)
    base = (match.group(1) if match else definition.split()[0]).strip().lower()
    return _TYPE_ALIASES.get(base, base)


def check_schema(live: DatabaseSchema, expected: ProjectSchema) -> SchemaCheckResult:
    """Compare an introspected database against a project schema.

    Missing extensions, tables and columns are errors.  Type and
    nullability mismatches, extra tables and columns, and missing
    declared indexes are warnings.
    """
    missing_extensions = [e for e in expected.extensions if e not in live.extensions]
    expected_tables = {t.name for t in expected.tables}
    missing_tables = [t.name for t in expected.tables if t.name not in live.tables]
    extra_tables = sorted(set(live.tables) - expected_tables - {"migrations"})

    missing_columns: list[ColumnMismatch] = []
    mismatched: list[ColumnMismatch] = []
    extra_columns: list[ColumnMismatch] = []
    missing_indexes: list[str] = []

    for spec in expected.tables:
        table = live.tables.get(spec.name)
        if table is None:
            continue

        for column, definition in spec.columns.items():
            actual = table.columns.get(column)
            if actual is None:
                missing_columns.append(
                    ColumnMismatch(
                        table=spec.name,
                        column=column,
                        message=f"Column '{column}' missing from table '{spec.name}'",
                    )
                )
                continue
            want = declared_type(definition)
            if want != actual.data_type.lower() and want != (actual.udt_name or "").lower():
                mismatched.append(
                    ColumnMismatch(
                        table=spec.name,
                        column=column,
                        message=f"expected type {want}, found {actual.data_type}",
                    )
                )
            if "NOT NULL" in definition.upper() and actual.is_nullable:
                mismatched.append(
                    ColumnMismatch(table=spec.name, column=column, message="expected NOT NULL, column is nullable")
                )

        for column in table.columns:
            if column not in spec.columns:
                extra_columns.append(ColumnMismatch(table=spec.name, column=column))

        live_index_columns = [tuple(i.columns) for i in table.indexes.values()]
        for index in spec.indexes:
            if tuple(index.columns) not in live_index_columns:
                missing_indexes.append(f"{spec.name}({', '.join(index.columns)})")

    return SchemaCheckResult(
        valid=not (missing_extensions or missing_tables or missing_columns),
        missing_extensions=missing_extensions,
        missing_tables=missing_tables,
        missing_columns=missing_columns,
        mismatched_columns=mismatched,
        extra_columns=extra_columns,
        extra_tables=extra_tables,
        missing_indexes=missing_indexes,
    )
