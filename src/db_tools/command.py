"""Command adapter: the single owner of per-command backend handles.

Every project-scoped CLI command runs through ``CommandAdapter.run``,
which resolves the project to a connection profile, opens the backend,
hands a ``CommandContext`` to the handler and always closes the backend
again.  Handler outcomes (``Ok`` / ``Err`` / exceptions) are mapped to
process exit codes here and nowhere else.

Mutating handlers share ``execute_planned``: dry run, confirmation,
safety pipeline, then the live apply.

Usage:
    adapter = CommandAdapter(console, prompter)
    code = await adapter.run(handle_list_tables, args)
"""

import argparse
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from rich.console import Console

from db_tools.adapters.tools import ToolLocator
from db_tools.backup.temp_store import TempBackupStore
from db_tools.config.loader import ConnectionRegistry
from db_tools.config.models import ConnectionProfile
from db_tools.errors import DbToolsError, ErrorReporter, ProfileNotFoundError
from db_tools.factory import open_backend
from db_tools.prompt import Prompter, UnexpectedPromptError
from db_tools.result import Err, ErrKind, Ok, Result, exit_code
from db_tools.safety.dry_run import build_dry_run
from db_tools.safety.operations import PlannedOperation, RiskLevel
from db_tools.safety.pipeline import SafetyPipeline, Verdict

logger = logging.getLogger(__name__)


@dataclass
class CommandContext:
    """Everything a command handler needs."""

    project: str | None
    profile: ConnectionProfile | None
    backend: Any
    args: argparse.Namespace
    console: Console
    prompter: Prompter
    store: TempBackupStore
    pipeline: SafetyPipeline
    reporter: ErrorReporter
    tools: ToolLocator = field(default_factory=ToolLocator)
    registry: ConnectionRegistry | None = None
    adapter: "CommandAdapter | None" = None

    def option(self, name: str, default: Any = None) -> Any:
        return getattr(self.args, name, default)


Handler = Callable[[CommandContext], Awaitable["Result | bool | None"]]


class CommandAdapter:
    """Runs command handlers and maps their outcomes to exit codes.

    Args:
        console: Console for all operator output.
        prompter: Source of confirmations and project selection.
        store: Temp-backup store (default: ``TempBackupStore()``).
        reporter: Error reporter (default: logs next to the working directory).
        registry_loader: Loads the connection registry from ``--connect``.
        backend_opener: Opens a backend for a profile.
    """

    def __init__(
        self,
        console: Console,
        prompter: Prompter,
        store: TempBackupStore | None = None,
        reporter: ErrorReporter | None = None,
        registry_loader: Callable[[Path | str | None], ConnectionRegistry] = ConnectionRegistry.load,
        backend_opener: Callable[..., Any] = open_backend,
        tools: ToolLocator | None = None,
        pipeline: SafetyPipeline | None = None,
        verbose: bool = False,
    ) -> None:
        self.console = console
        self.prompter = prompter
        self.store = store or TempBackupStore()
        self.reporter = reporter or ErrorReporter(console, verbose=verbose)
        self.registry_loader = registry_loader
        self.backend_opener = backend_opener
        self.tools = tools or ToolLocator()
        self.pipeline = pipeline or SafetyPipeline(self.store, console)

    # ------------------------------------------------------------------
    # Outcome rendering
    # ------------------------------------------------------------------

    def show_result(self, result: "Result | bool | None") -> None:
        if isinstance(result, Err):
            self.console.print(f"[bold red]x[/bold red] {result.message}", highlight=False)
            for suggestion in result.suggestions:
                self.console.print(f"  [cyan]• {suggestion}[/cyan]", highlight=False)
        elif isinstance(result, Ok) and result.message:
            self.console.print(f"[bold green]v[/bold green] {result.message}", highlight=False)

    def _report(self, exc: BaseException, context: dict[str, Any]) -> int:
        error = self.reporter.report(exc, context)
        return 2 if error.is_critical else 1

    def _context(self, args: argparse.Namespace, **kwargs: Any) -> CommandContext:
        return CommandContext(
            args=args,
            console=self.console,
            prompter=self.prompter,
            store=self.store,
            pipeline=self.pipeline,
            reporter=self.reporter,
            tools=self.tools,
            adapter=self,
            **kwargs,
        )

    async def _invoke(self, handler: Handler, ctx: CommandContext) -> int:
        context = {"command": getattr(ctx.args, "command", None), "project": ctx.project}
        try:
            async with self.store.eviction_timer():
                result = await handler(ctx)
        except DbToolsError as e:
            return self._report(e, context)
        except UnexpectedPromptError as e:
            result = Err(ErrKind.CANCELLED, str(e), ["Pass --force to run without prompts"])
        except Exception as e:
            self.reporter.report(e, context)
            return 2
        self.show_result(result)
        return exit_code(result)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def connection(self, profile: ConnectionProfile, database: str | None = None) -> AsyncIterator[Any]:
        """Open a backend for *profile* and close it on exit.

        Usage:
            async with adapter.connection(profile) as backend:
                await backend.ping()
        """
        backend = self.backend_opener(profile, database=database, tools=self.tools)
        try:
            yield backend
        finally:
            await backend.close()

    def _load_registry(self, args: argparse.Namespace) -> ConnectionRegistry:
        return self.registry_loader(getattr(args, "connect", None))

    async def run(self, handler: Handler, args: argparse.Namespace) -> int:
        """Run a project-scoped *handler*.

        Returns:
            Exit code: 0 success, 1 recoverable failure, 2 critical failure.
        """
        try:
            registry = self._load_registry(args)
        except DbToolsError as e:
            self.reporter.report(e, {"command": getattr(args, "command", None)})
            return 2

        project = getattr(args, "project", None)
        if not project:
            if not (self.prompter.interactive and registry.names):
                result = Err(ErrKind.VALIDATION, "Project name is required", ["Pass the project name as an argument"])
                self.show_result(result)
                return exit_code(result)
            project = self.prompter.choose("Select a project", registry.names)

        try:
            profile = registry.get(project, getattr(args, "type", None))
        except ProfileNotFoundError as e:
            self.console.print(f"[bold red]x[/bold red] {e.message}", highlight=False)
            if e.available:
                self.console.print(f"  Available projects: {', '.join(e.available)}", highlight=False)
            if e.similar:
                self.console.print(f"  [yellow]Did you mean: {', '.join(e.similar)}?[/yellow]", highlight=False)
            self.reporter.log(e)
            return 1

        context = {"command": getattr(args, "command", None), "project": profile.name}
        try:
            backend = self.backend_opener(profile, database=getattr(args, "database", None), tools=self.tools)
        except DbToolsError as e:
            return self._report(e, context)
        except Exception as e:
            self.reporter.report(e, context)
            return 2
        ctx = self._context(args, project=profile.name, profile=profile, backend=backend, registry=registry)
        try:
            return await self._invoke(handler, ctx)
        finally:
            await backend.close()

    async def run_standalone(self, handler: Handler, args: argparse.Namespace) -> int:
        """Run a *handler* that needs no database connection."""
        ctx = self._context(args, project=getattr(args, "project", None), profile=None, backend=None)
        return await self._invoke(handler, ctx)


# ============================================================================
# Shared flow for mutating commands
# ============================================================================


def render_plan(console: Console, operation: PlannedOperation) -> None:
    console.print(
        f"\n[bold]{operation.name}[/bold]  risk: [{operation.risk.style}]{operation.risk.label}[/{operation.risk.style}]"
    )
    for statement in operation.statements[:20]:
        console.print(f"  [dim]{statement}[/dim]", highlight=False)
    if len(operation.statements) > 20:
        console.print(f"  [dim]... {len(operation.statements) - 20} more[/dim]")
    for warning in operation.warnings:
        console.print(f"  [yellow]! {warning}[/yellow]", highlight=False)


def render_verdict(console: Console, verdict: Verdict) -> None:
    if verdict.changes is not None:
        console.print("\n[bold]Shadow validation:[/bold]")
        console.print(verdict.changes.format_report(), highlight=False)
    for warning in verdict.warnings:
        console.print(f"[yellow]! {warning}[/yellow]", highlight=False)
    for error in verdict.errors:
        console.print(f"[bold red]x[/bold red] {error}", highlight=False)
    if verdict.temp_backup is not None:
        console.print(
            f"[dim]Temporary backup {verdict.temp_backup.name} kept for 4 hours[/dim]", highlight=False
        )


async def execute_planned(
    ctx: CommandContext,
    operation: PlannedOperation,
    done: str | None = None,
    live_apply: Callable[[Any], Awaitable[Any]] | None = None,
) -> Result:
    """Dry-run, confirm, evaluate and apply *operation* on ``ctx.backend``.

    Args:
        ctx: Command context.
        operation: Planned operation; its ``apply`` also runs in the shadow.
        done: Success message.
        live_apply: Replaces ``operation.apply`` for the live run only.
    """
    render_plan(ctx.console, operation)

    if ctx.option("dry_run"):
        report = await build_dry_run(operation, ctx.backend)
        ctx.console.print(report.format_report(), highlight=False)
        return Ok(report)

    force = bool(ctx.option("force"))
    if operation.risk >= RiskLevel.WARNING and not force:
        if not ctx.prompter.interactive:
            return Err(ErrKind.CANCELLED, "Confirmation required", ["Re-run with --force in non-interactive mode"])
        if not ctx.prompter.confirm(f"Run {operation.name} on {ctx.project}?", default=False):
            return Err(ErrKind.CANCELLED, "Operation cancelled")

    verdict = await ctx.pipeline.evaluate(
        operation,
        ctx.backend,
        ctx.project or "",
        force=force,
        skip_safety=bool(ctx.option("skip_safety")),
    )
    render_verdict(ctx.console, verdict)
    if not verdict.proceed:
        return Err(
            ErrKind.UNSAFE,
            f"{operation.name} blocked by safety checks",
            verdict.suggestions or ["Review the shadow validation report, or re-run with --force"],
        )

    await (live_apply or operation.apply)(ctx.backend)
    logger.info("%s applied to %s", operation.name, ctx.project)
    return Ok(operation, done or f"{operation.name} completed")
