"""Safety pipeline run before every mutating command.

``SafetyPipeline.evaluate`` decides whether a planned operation may run
on the live target.  It never runs the live mutation itself:

1. SAFE / CAUTION operations proceed immediately.
2. ``skip_safety`` proceeds with a warning.
3. WARNING / DANGER operations, under the store's advisory lock:
   evict expired temp backups; take an encrypted temp backup (DANGER
   only); rehearse the operation in a shadow database and diff the
   before/after snapshots.  ``proceed`` is true only when the rehearsal
   succeeded and the diff is safe.
4. ``force`` overrides a failed rehearsal, loudly.  An unavailable
   shadow is only bypassed with ``force`` plus ``skip_safety``.

MongoDB has no shadow: DANGER operations get a temp backup and then
proceed with a warning.

Usage:
    pipeline = SafetyPipeline(TempBackupStore())
    verdict = await pipeline.evaluate(operation, backend, "Shop")
    if verdict.proceed:
        await operation.apply(backend)
"""

import logging
from collections.abc import Callable
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from rich.console import Console

from db_tools.backup.temp_store import LockBusyError, TempBackupInfo, TempBackupStore
from db_tools.config.models import BackendKind
from db_tools.errors import ShadowUnavailableError, classify_error
from db_tools.safety.operations import PlannedOperation, RiskLevel
from db_tools.safety.shadow import ShadowReplicator
from db_tools.schema.comparator import diff_states
from db_tools.schema.models import StateDiff

logger = logging.getLogger(__name__)


class Verdict(BaseModel):
    """Outcome of a safety evaluation."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    operation: str
    proceed: bool
    risk: RiskLevel
    changes: StateDiff | None = None
    warnings: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    temp_backup: TempBackupInfo | None = None
    shadow_database: str | None = None


class SafetyPipeline:
    """Risk gate combining temp backups and shadow rehearsal.

    Args:
        store: Temp-backup store used for DANGER operations.
        console: Console for progress lines (silent when omitted).
        shadow_factory: Callable ``(target, project)`` returning an async
            context manager that yields a ``ShadowDatabase``.
    """

    def __init__(
        self,
        store: TempBackupStore,
        console: Console | None = None,
        shadow_factory: Callable[[Any, str], Any] = ShadowReplicator,
    ) -> None:
        self.store = store
        self.console = console
        self.shadow_factory = shadow_factory

    def _say(self, message: str) -> None:
        if self.console is not None:
            self.console.print(message)

    async def evaluate(
        self,
        operation: PlannedOperation,
        target: Any,
        project: str,
        force: bool = False,
        skip_safety: bool = False,
    ) -> Verdict:
        verdict = Verdict(operation=operation.name, proceed=False, risk=operation.risk)
        self.store.evict_expired()

        if operation.risk <= RiskLevel.CAUTION:
            verdict.proceed = True
            return verdict

        if skip_safety:
            verdict.warnings.append("Safety checks skipped (--skip-safety): no backup, no shadow validation")
            verdict.proceed = True
            return verdict

        try:
            with self.store.advisory_lock():
                await self._evaluate_locked(verdict, operation, target, project, force)
        except LockBusyError as e:
            verdict.errors.append(e.message)
            verdict.suggestions.extend(e.suggestions)
            verdict.proceed = False
        return verdict

    async def _evaluate_locked(
        self,
        verdict: Verdict,
        operation: PlannedOperation,
        target: Any,
        project: str,
        force: bool,
    ) -> None:
        if operation.risk is RiskLevel.DANGER:
            try:
                verdict.temp_backup = await self.store.create(target, project, operation.name)
                self._say(f"[dim]Temporary backup: {verdict.temp_backup.name}[/dim]")
            except Exception as e:
                logger.warning("Temporary backup before %s failed: %s", operation.name, e)
                verdict.warnings.append(f"Temporary backup failed: {classify_error(e).message}")

        if target.kind is BackendKind.MONGODB:
            verdict.warnings.append("Shadow validation is not available for MongoDB; running directly")
            verdict.proceed = True
            return

        succeeded = False
        try:
            async with self.shadow_factory(target, project) as shadow:
                verdict.shadow_database = shadow.name
                self._say(f"[dim]Rehearsing {operation.name} in shadow database {shadow.name}[/dim]")
                before = await shadow.backend.snapshot_state()
                try:
                    await operation.apply(shadow.backend)
                    succeeded = True
                except Exception as e:
                    error = classify_error(e)
                    verdict.errors.append(f"Operation failed in shadow database: {error.message}")
                    verdict.suggestions.extend(error.suggestions)
                after = await shadow.backend.snapshot_state()
                verdict.changes = diff_states(before, after)
        except ShadowUnavailableError as e:
            verdict.errors.append(e.message)
            verdict.suggestions.append("Re-run with --force --skip-safety to bypass shadow validation")
            verdict.proceed = False
            return
        except Exception as e:
            logger.debug("Shadow validation of %s failed", operation.name, exc_info=True)
            verdict.errors.append(f"Shadow validation failed: {classify_error(e).message}")
            succeeded = False

        verdict.proceed = succeeded and verdict.changes is not None and verdict.changes.safe
        if verdict.changes is not None and not verdict.changes.safe:
            verdict.warnings.append("Shadow validation detected data or structure loss")

        if not verdict.proceed and force:
            verdict.warnings.append(f"FORCED: proceeding with {operation.name} despite failed safety checks")
            if verdict.temp_backup is not None:
                verdict.warnings.append(f"Restore with: db-tools restore-temp {project} {verdict.temp_backup.name}")
            verdict.proceed = True
