"""Schema models, state diffs and project-schema comparison.

Provides the structural models shared by both engines, the snapshot diff
used by shadow validation (``diff_states``) and the project-schema check
(``check_schema``).  Project-schema loading lives in
``db_tools.schema.project``, migrations in ``db_tools.schema.migrations``
and live introspection in ``db_tools.schema.introspector``.

Usage:
    from db_tools.schema import diff_states, check_schema
    from db_tools.schema import StateSnapshot, ProjectSchema
"""

from db_tools.schema.comparator import check_schema, declared_type, diff_states
from db_tools.schema.models import (
    ColumnInfo,
    ColumnMismatch,
    ConstraintInfo,
    DatabaseSchema,
    IndexInfo,
    IndexSpec,
    ProjectSchema,
    SchemaCheckResult,
    StateDiff,
    StateSnapshot,
    TableChange,
    TableSchema,
    TableSpec,
    TableState,
    TriggerInfo,
)

__all__ = [
    "check_schema",
    "declared_type",
    "diff_states",
    "ColumnInfo",
    "ColumnMismatch",
    "ConstraintInfo",
    "DatabaseSchema",
    "IndexInfo",
    "IndexSpec",
    "ProjectSchema",
    "SchemaCheckResult",
    "StateDiff",
    "StateSnapshot",
    "TableChange",
    "TableSchema",
    "TableSpec",
    "TableState",
    "TriggerInfo",
]
