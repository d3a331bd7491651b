"""Dry-run reports for mutating commands.

``build_dry_run`` resolves a planned operation into the statements it
would run and the number of rows it would touch, without executing
anything that changes the database.
"""

import logging
from typing import Any

from pydantic import BaseModel, Field

from db_tools.safety.operations import DRY_RUN_OPERATIONS, PlannedOperation, RiskLevel

logger = logging.getLogger(__name__)


class DryRunSummary(BaseModel):
    created: list[str] = Field(default_factory=list)
    modified: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class DryRunReport(BaseModel):
    """What an operation would do."""

    operation: str
    supported: bool = True
    risk: RiskLevel = RiskLevel.SAFE
    statements: list[str] = Field(default_factory=list)
    affected_rows: int | None = None
    summary: DryRunSummary = Field(default_factory=DryRunSummary)

    def format_report(self) -> str:
        lines = [f"Dry run: {self.operation} ({self.risk.label})"]
        if not self.supported:
            lines.extend(f"  ! {w}" for w in self.summary.warnings)
            return "\n".join(lines)
        lines.append("  Statements:")
        lines.extend(f"    {s}" for s in self.statements)
        if self.affected_rows is not None:
            lines.append(f"  Affected rows: {self.affected_rows}")
        for label, items, mark in (
            ("Creates", self.summary.created, "+"),
            ("Modifies", self.summary.modified, "~"),
            ("Deletes", self.summary.deleted, "-"),
        ):
            if items:
                lines.append(f"  {label}:")
                lines.extend(f"    {mark} {item}" for item in items)
        lines.extend(f"  ! {w}" for w in self.summary.warnings)
        lines.append("  No changes were made.")
        return "\n".join(lines)


async def build_dry_run(operation: PlannedOperation, backend: Any) -> DryRunReport:
    """Describe *operation* against *backend* without applying it."""
    if operation.name not in DRY_RUN_OPERATIONS:
        return DryRunReport(
            operation=operation.name,
            supported=False,
            risk=operation.risk,
            summary=DryRunSummary(warnings=[f"--dry-run is not supported for {operation.name}; nothing was done"]),
        )

    warnings = list(operation.warnings)
    affected = None
    if operation.estimate is not None:
        try:
            affected = await operation.estimate(backend)
        except Exception as e:
            logger.debug("Row estimate for %s failed: %s", operation.name, e)
            warnings.append(f"Could not estimate affected rows: {e}")

    return DryRunReport(
        operation=operation.name,
        risk=operation.risk,
        statements=list(operation.statements),
        affected_rows=affected,
        summary=DryRunSummary(
            created=list(operation.creates),
            modified=list(operation.modifies),
            deleted=list(operation.deletes),
            warnings=warnings,
        ),
    )
