"""Tests for the command adapter and the shared mutating-command flow."""

import argparse
from io import StringIO
from pathlib import Path

import pytest
from rich.console import Console

from db_tools.backup.temp_store import TempBackupStore
from db_tools.command import CommandAdapter, CommandContext, execute_planned
from db_tools.config.loader import ConnectionRegistry
from db_tools.config.models import BackendKind, ConnectionProfile
from db_tools.errors import ConfigurationError, DatabaseError, ErrorReporter
from db_tools.factory import open_backend
from db_tools.prompt import ConsolePrompter, ScriptedPrompter, UnexpectedPromptError
from db_tools.result import Err, ErrKind, Ok
from db_tools.safety.dry_run import DryRunReport
from db_tools.safety.operations import PlannedOperation, run_statements

from fakes import PG_URI, FakeBackend, StubPipeline, make_context

PROFILES = [
    ConnectionProfile(name="Shop", type=BackendKind.POSTGRES, uri=PG_URI),
    ConnectionProfile(name="Blog", type=BackendKind.POSTGRES, uri="postgresql://app@localhost/blog"),
]


@pytest.fixture
def harness(tmp_path: Path):
    output = StringIO()
    console = Console(file=output, width=200, color_system=None)
    opened: list[FakeBackend] = []

    def opener(profile, database=None, tools=None):
        backend = FakeBackend(database=database or "shop")
        opened.append(backend)
        return backend

    def make(prompter=None, registry_loader=None, backend_opener=None) -> CommandAdapter:
        return CommandAdapter(
            console,
            prompter or ConsolePrompter(console, interactive=False),
            store=TempBackupStore(tmp_path / "temp"),
            reporter=ErrorReporter(console, log_dir=tmp_path / "logs"),
            registry_loader=registry_loader or (lambda path: ConnectionRegistry(PROFILES)),
            backend_opener=backend_opener or opener,
        )

    make.output = output
    make.opened = opened
    return make


def _args(**kwargs) -> argparse.Namespace:
    defaults = {"command": "list-tables", "project": "Shop", "connect": None, "type": None, "database": None}
    defaults.update(kwargs)
    return argparse.Namespace(**defaults)


# ============================================================================
# CommandAdapter.run
# ============================================================================


class TestRun:
    async def test_ok_exits_zero_and_closes_backend(self, harness) -> None:
        seen = []

        async def handler(ctx: CommandContext):
            seen.append((ctx.project, ctx.profile.name, ctx.backend))
            return Ok(None, "Listed 2 tables")

        code = await harness().run(handler, _args())

        assert code == 0
        assert seen[0][0] == "Shop"
        assert seen[0][2] is harness.opened[0]
        assert harness.opened[0].closed
        assert "v Listed 2 tables" in harness.output.getvalue()

    async def test_database_override_passed_to_opener(self, harness) -> None:
        async def handler(ctx: CommandContext):
            return Ok()

        await harness().run(handler, _args(database="analytics"))
        assert harness.opened[0].database == "analytics"

    async def test_err_exits_one_with_suggestions(self, harness) -> None:
        async def handler(ctx: CommandContext):
            return Err(ErrKind.NOT_FOUND, 'Table "x" does not exist', ["Run list-tables"])

        assert await harness().run(handler, _args()) == 1
        text = harness.output.getvalue()
        assert 'x Table "x" does not exist' in text
        assert "• Run list-tables" in text

    async def test_critical_err_exits_two(self, harness) -> None:
        async def handler(ctx: CommandContext):
            return Err(ErrKind.CRITICAL, "Restore failed")

        assert await harness().run(handler, _args()) == 2

    async def test_typed_error_is_reported(self, harness) -> None:
        async def handler(ctx: CommandContext):
            raise DatabaseError('relation "x" does not exist', code="42P01")

        assert await harness().run(handler, _args()) == 1
        assert "DATABASE ERROR:" in harness.output.getvalue()
        assert harness.opened[0].closed

    async def test_unexpected_exception_is_critical(self, harness) -> None:
        async def handler(ctx: CommandContext):
            raise KeyError("boom")

        assert await harness().run(handler, _args()) == 2
        assert harness.opened[0].closed

    async def test_prompt_in_non_interactive_mode_is_cancelled(self, harness) -> None:
        async def handler(ctx: CommandContext):
            raise UnexpectedPromptError("Cannot prompt in non-interactive mode: Continue?")

        assert await harness().run(handler, _args()) == 1
        assert "Pass --force to run without prompts" in harness.output.getvalue()

    async def test_registry_error_is_critical(self, harness) -> None:
        def loader(path):
            raise ConfigurationError("connect.json not found", code="missing_file")

        async def handler(ctx: CommandContext):
            raise AssertionError("handler must not run")

        assert await harness(registry_loader=loader).run(handler, _args()) == 2
        assert harness.opened == []

    async def test_backend_construction_error_is_reported(self, harness) -> None:
        bad = ConnectionProfile(
            name="Shop", type=BackendKind.POSTGRES, uri="postgresql://u:p@localhost:5432/db?connect_timeout=abc"
        )

        async def handler(ctx: CommandContext):
            raise AssertionError("handler must not run")

        adapter = harness(registry_loader=lambda path: ConnectionRegistry([bad]), backend_opener=open_backend)

        assert await adapter.run(handler, _args()) == 2
        assert "abc" in harness.output.getvalue()

    async def test_unknown_project(self, harness) -> None:
        async def handler(ctx: CommandContext):
            raise AssertionError("handler must not run")

        assert await harness().run(handler, _args(project="shop")) == 1
        text = harness.output.getvalue()
        assert "Available projects: Shop, Blog" in text
        assert "Did you mean: Shop?" in text
        assert harness.opened == []

    async def test_missing_project_non_interactive(self, harness) -> None:
        async def handler(ctx: CommandContext):
            raise AssertionError("handler must not run")

        assert await harness().run(handler, _args(project=None)) == 1
        assert "Project name is required" in harness.output.getvalue()

    async def test_missing_project_chosen_interactively(self, harness) -> None:
        seen = []

        async def handler(ctx: CommandContext):
            seen.append(ctx.project)
            return Ok()

        prompter = ScriptedPrompter([1])
        assert await harness(prompter=prompter).run(handler, _args(project=None)) == 0
        assert seen == ["Blog"]
        assert prompter.asked == ["Select a project"]

    async def test_run_standalone_has_no_backend(self, harness) -> None:
        seen = []

        async def handler(ctx: CommandContext):
            seen.append(ctx.backend)
            return True

        assert await harness().run_standalone(handler, _args(command="validate-config", project=None)) == 0
        assert seen == [None]
        assert harness.opened == []


# ============================================================================
# execute_planned
# ============================================================================


def _delete_orders() -> PlannedOperation:
    statements = ['DROP TABLE "orders" CASCADE']
    return PlannedOperation("delete-table", {"table": "orders"}, statements, run_statements(statements))


def _create_index() -> PlannedOperation:
    statements = ['CREATE INDEX "idx_users_email" ON "users" ("email")']
    return PlannedOperation("create-index", {"table": "users"}, statements, run_statements(statements))


class TestExecutePlanned:
    async def test_dry_run_changes_nothing(self, backend: FakeBackend, tmp_path: Path) -> None:
        pipeline = StubPipeline()
        ctx = make_context(backend, tmp_path, ScriptedPrompter(), pipeline, dry_run=True)

        result = await execute_planned(ctx, _delete_orders())

        assert isinstance(result, Ok)
        assert isinstance(result.value, DryRunReport)
        assert backend.executed == []
        assert pipeline.calls == []

    async def test_caution_runs_without_confirmation(self, backend: FakeBackend, tmp_path: Path) -> None:
        pipeline = StubPipeline()
        ctx = make_context(backend, tmp_path, ScriptedPrompter(), pipeline)

        result = await execute_planned(ctx, _create_index(), done="Index created")

        assert result.message == "Index created"
        assert backend.executed == ['CREATE INDEX "idx_users_email" ON "users" ("email")']
        assert pipeline.calls[0]["operation"] == "create-index"

    async def test_confirmation_required_when_non_interactive(self, backend: FakeBackend, tmp_path: Path) -> None:
        console = Console(file=StringIO())
        ctx = make_context(backend, tmp_path, ConsolePrompter(console, interactive=False), StubPipeline())

        result = await execute_planned(ctx, _delete_orders())

        assert isinstance(result, Err)
        assert result.kind is ErrKind.CANCELLED
        assert result.message == "Confirmation required"
        assert backend.executed == []

    async def test_declined(self, backend: FakeBackend, tmp_path: Path) -> None:
        prompter = ScriptedPrompter([False])
        result = await execute_planned(make_context(backend, tmp_path, prompter, StubPipeline()), _delete_orders())

        assert result.message == "Operation cancelled"
        assert prompter.asked == ["Run delete-table on Shop?"]
        assert backend.executed == []

    async def test_confirmed_and_safe(self, backend: FakeBackend, tmp_path: Path) -> None:
        result = await execute_planned(
            make_context(backend, tmp_path, ScriptedPrompter([True]), StubPipeline()), _delete_orders()
        )
        assert isinstance(result, Ok)
        assert backend.executed == ['DROP TABLE "orders" CASCADE']

    async def test_force_skips_confirmation_and_is_passed_on(self, backend: FakeBackend, tmp_path: Path) -> None:
        pipeline = StubPipeline()
        ctx = make_context(backend, tmp_path, ScriptedPrompter(), pipeline, force=True, skip_safety=True)

        await execute_planned(ctx, _delete_orders())

        assert pipeline.calls == [{"operation": "delete-table", "project": "Shop", "force": True, "skip_safety": True}]

    async def test_blocked_by_pipeline(self, backend: FakeBackend, tmp_path: Path) -> None:
        pipeline = StubPipeline(proceed=False, suggestions=["Re-run with --force --skip-safety to bypass shadow validation"])
        result = await execute_planned(make_context(backend, tmp_path, ScriptedPrompter([True]), pipeline), _delete_orders())

        assert result.kind is ErrKind.UNSAFE
        assert result.message == "delete-table blocked by safety checks"
        assert result.suggestions == ["Re-run with --force --skip-safety to bypass shadow validation"]
        assert backend.executed == []

    async def test_live_apply_replaces_plan_apply(self, backend: FakeBackend, tmp_path: Path) -> None:
        calls = []

        async def live(target) -> None:
            calls.append(target)

        await execute_planned(
            make_context(backend, tmp_path, ScriptedPrompter([True]), StubPipeline()), _delete_orders(), live_apply=live
        )
        assert calls == [backend]
        assert backend.executed == []
