"""Pydantic models for database state, diffs and project schemas."""

from pydantic import BaseModel, Field, computed_field


# ============================================================================
# Live State Models
# ============================================================================


class ColumnInfo(BaseModel):
    """A column (or sampled document field) of a live table."""

    name: str
    data_type: str
    is_nullable: bool = True
    default: str | None = None
    position: int = 0
    max_length: int | None = None
    numeric_precision: int | None = None
    numeric_scale: int | None = None
    udt_name: str | None = None
    identity_generation: str | None = None  # ALWAYS or BY DEFAULT


class ConstraintInfo(BaseModel):
    """A table constraint."""

    name: str
    constraint_type: str  # PRIMARY KEY, FOREIGN KEY, UNIQUE, CHECK
    columns: list[str] = Field(default_factory=list)
    references_table: str | None = None
    references_columns: list[str] | None = None
    on_delete: str | None = None


class IndexInfo(BaseModel):
    """An index on a table."""

    name: str
    columns: list[str] = Field(default_factory=list)
    is_unique: bool = False
    definition: str = ""


class TableState(BaseModel):
    """Captured state of one table."""

    name: str
    columns: list[ColumnInfo] = Field(default_factory=list)
    row_count: int = 0
    indexes: list[IndexInfo] = Field(default_factory=list)
    constraints: list[ConstraintInfo] = Field(default_factory=list)

    @property
    def column_names(self) -> set[str]:
        return {c.name for c in self.columns}


class StateSnapshot(BaseModel):
    """Schema and row counts of a database at an instant."""

    database: str = ""
    tables: dict[str, TableState] = Field(default_factory=dict)


class TableChange(BaseModel):
    """Per-table delta between two snapshots."""

    columns_added: list[str] = Field(default_factory=list)
    columns_removed: list[str] = Field(default_factory=list)
    row_delta: int = 0


class StateDiff(BaseModel):
    """Structural and data delta between two snapshots."""

    tables_added: list[str] = Field(default_factory=list)
    tables_removed: list[str] = Field(default_factory=list)
    tables: dict[str, TableChange] = Field(default_factory=dict)

    @computed_field
    @property
    def safe(self) -> bool:
        """No removed table, no removed column, no lost rows."""
        if self.tables_removed:
            return False
        return all(not c.columns_removed and c.row_delta >= 0 for c in self.tables.values())

    @property
    def has_changes(self) -> bool:
        return bool(
            self.tables_added
            or self.tables_removed
            or any(c.columns_added or c.columns_removed or c.row_delta for c in self.tables.values())
        )

    def format_report(self) -> str:
        """Format the diff as human-readable lines."""
        if not self.has_changes:
            return "No structural or data changes"

        lines: list[str] = []
        for table in self.tables_added:
            lines.append(f"+ table {table}")
        for table in self.tables_removed:
            lines.append(f"- table {table}")
        for table, change in sorted(self.tables.items()):
            for column in change.columns_added:
                lines.append(f"+ column {table}.{column}")
            for column in change.columns_removed:
                lines.append(f"- column {table}.{column}")
            if change.row_delta:
                sign = "+" if change.row_delta > 0 else ""
                lines.append(f"~ rows {table}: {sign}{change.row_delta}")
        return "\n".join(lines)


# ============================================================================
# Full Introspection Models (used by `check`)
# ============================================================================


class TriggerInfo(BaseModel):
    """A trigger attached to a table."""

    name: str
    event: str  # INSERT, UPDATE, DELETE
    timing: str  # BEFORE, AFTER
    function_name: str = ""


class TableSchema(BaseModel):
    """Introspected definition of a table."""

    name: str
    columns: dict[str, ColumnInfo] = Field(default_factory=dict)
    constraints: dict[str, ConstraintInfo] = Field(default_factory=dict)
    indexes: dict[str, IndexInfo] = Field(default_factory=dict)
    triggers: dict[str, TriggerInfo] = Field(default_factory=dict)


class DatabaseSchema(BaseModel):
    """Introspected definition of a database."""

    tables: dict[str, TableSchema] = Field(default_factory=dict)
    functions: list[str] = Field(default_factory=list)
    extensions: list[str] = Field(default_factory=list)


# ============================================================================
# Project Schema Models
# ============================================================================


class IndexSpec(BaseModel):
    """Declared index of a project table."""

    columns: list[str]
    unique: bool = False
    name: str | None = None


class TableSpec(BaseModel):
    """Declared table of a project schema.

    ``columns`` maps column name to its type and constraints, e.g.
    ``{"id": "SERIAL PRIMARY KEY", "user_id": "INTEGER REFERENCES users(id)"}``.
    """

    name: str
    columns: dict[str, str]
    indexes: list[IndexSpec] = Field(default_factory=list)
    seed_data: list[dict] = Field(default_factory=list)


class ProjectSchema(BaseModel):
    """Declarative expected schema of a project."""

    name: str = "Default Schema"
    description: str = ""
    extensions: list[str] = Field(default_factory=list)
    tables: list[TableSpec] = Field(default_factory=list)
    functions: list[str] = Field(default_factory=list)  # CREATE FUNCTION / TRIGGER bodies

    def table(self, name: str) -> TableSpec | None:
        for spec in self.tables:
            if spec.name == name:
                return spec
        return None


# ============================================================================
# Check Result
# ============================================================================


class ColumnMismatch(BaseModel):
    """A difference between a declared and a live column."""

    table: str
    column: str
    message: str = ""


class SchemaCheckResult(BaseModel):
    """Result of comparing a live database against a ProjectSchema."""

    valid: bool
    missing_extensions: list[str] = Field(default_factory=list)
    missing_tables: list[str] = Field(default_factory=list)
    missing_columns: list[ColumnMismatch] = Field(default_factory=list)
    mismatched_columns: list[ColumnMismatch] = Field(default_factory=list)  # Warning only
    extra_columns: list[ColumnMismatch] = Field(default_factory=list)  # Warning only
    extra_tables: list[str] = Field(default_factory=list)  # Warning only
    missing_indexes: list[str] = Field(default_factory=list)  # Warning only

    @property
    def error_count(self) -> int:
        """Count of critical errors (missing extensions, tables and columns)."""
        return len(self.missing_extensions) + len(self.missing_tables) + len(self.missing_columns)

    def format_report(self) -> str:
        """Format check result as human-readable report."""
        if self.valid and not (self.mismatched_columns or self.missing_indexes):
            return "Schema valid"

        lines = ["Schema valid (with warnings):" if self.valid else "Schema check failed:"]

        if self.missing_extensions:
            lines.append(f"\n  Missing extensions ({len(self.missing_extensions)}):")
            for ext in self.missing_extensions:
                lines.append(f"    - {ext}")

        if self.missing_tables:
            lines.append(f"\n  Missing tables ({len(self.missing_tables)}):")
            for table in self.missing_tables:
                lines.append(f"    - {table}")

        if self.missing_columns:
            lines.append(f"\n  Missing columns ({len(self.missing_columns)}):")
            for diff in self.missing_columns:
                lines.append(f"    - {diff.table}.{diff.column}")

        if self.mismatched_columns:
            lines.append(f"\n  Column mismatches (warning) ({len(self.mismatched_columns)}):")
            for diff in self.mismatched_columns:
                lines.append(f"    - {diff.table}.{diff.column}: {diff.message}")

        if self.extra_columns:
            lines.append(
                "\n  Extra columns (warning): "
                + ", ".join(f"{d.table}.{d.column}" for d in self.extra_columns)
            )

        if self.missing_indexes:
            lines.append(f"\n  Missing indexes (warning): {', '.join(self.missing_indexes)}")

        if self.extra_tables:
            lines.append(f"\n  Extra tables (warning): {', '.join(self.extra_tables)}")

        return "\n".join(lines)
