"""Backup and restore commands.

backup, restore, list-temp-backups, restore-temp and auto-backup.
"""

import shutil
from datetime import datetime, timezone
from pathlib import Path

from rich.table import Table

from db_tools.backup.scheduled import (
    DEFAULT_RETENTION_DAYS,
    backup_extension,
    cron_line,
    current_schedule,
    install_schedule,
    remove_schedule,
    run_scheduled_backup,
)
from db_tools.command import CommandContext, execute_planned
from db_tools.result import Err, ErrKind, Ok, Result
from db_tools.safety.operations import PlannedOperation
from db_tools.schema.project import project_slug


def default_backup_path(ctx: CommandContext, fmt: str) -> Path:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    return Path("backups") / f"{project_slug(ctx.project)}_{stamp}{backup_extension(ctx.backend.kind, fmt)}"


async def handle_backup(ctx: CommandContext) -> Result:
    fmt = ctx.option("format") or "plain"
    output = Path(ctx.option("output")) if ctx.option("output") else default_backup_path(ctx, fmt)

    ctx.console.print(f"Backing up [bold]{ctx.backend.database}[/bold]...", style="dim")
    result = await ctx.backend.backup(output, encrypt=bool(ctx.option("encrypt")), fmt=fmt)

    for warning in result.warnings:
        ctx.console.print(f"[yellow]! {warning}[/yellow]", highlight=False)
    ctx.console.print(f"  File: {result.path} ({result.size_bytes:,} bytes)", highlight=False)
    if result.key_path:
        ctx.console.print(f"  Key:  {result.key_path}", highlight=False)
        ctx.console.print("  [yellow]Keep the key file safe; the backup cannot be restored without it[/yellow]")
    return Ok(result, "Backup complete")


async def handle_restore(ctx: CommandContext) -> Result:
    path = Path(ctx.option("input"))
    key = Path(ctx.option("key")) if ctx.option("key") else None
    if not path.exists():
        return Err(ErrKind.NOT_FOUND, f"Backup file not found: {path}")

    if ctx.option("dry_run"):
        entries = await ctx.backend.describe_backup(path, key)
        ctx.console.print(f"[bold]Restore of {path} would replay {len(entries)} entries:[/bold]", highlight=False)
        for entry in entries[:50]:
            ctx.console.print(f"  [dim]{entry}[/dim]", highlight=False)
        if len(entries) > 50:
            ctx.console.print(f"  [dim]... {len(entries) - 50} more[/dim]")
        return Ok(entries, "Dry run complete; no changes were made")

    operation = ctx.backend.plan("restore", input=path, drop_first=bool(ctx.option("drop_first")), key=key)
    return await execute_planned(ctx, operation, f"Restored {path} into {ctx.backend.database}")


# ============================================================================
# Temporary backups
# ============================================================================


async def handle_list_temp_backups(ctx: CommandContext) -> Result:
    entries = ctx.store.list()
    if ctx.project:
        prefix = f"temp_{project_slug(ctx.project)}_"
        entries = [e for e in entries if e.name.startswith(prefix)]
    if not entries:
        return Ok([], "No temporary backups")

    now = datetime.now(timezone.utc)
    table = Table(title=f"Temporary backups in {ctx.store.directory}")
    table.add_column("Name", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Created")
    table.add_column("Expires in", justify="right")
    table.add_column("Restorable")
    for entry in entries:
        table.add_row(
            entry.name,
            entry.size_human,
            entry.created_at.astimezone().strftime("%Y-%m-%d %H:%M:%S"),
            f"{entry.expires_in_hours(now):.1f}h",
            "[green]yes[/green]" if entry.restorable else "[red]no (key missing)[/red]",
        )
    ctx.console.print(table)
    return Ok(entries)


async def handle_restore_temp(ctx: CommandContext) -> Result:
    name = ctx.option("name")
    if not name:
        prefix = f"temp_{project_slug(ctx.project)}_"
        candidates = [e.name for e in ctx.store.list() if e.name.startswith(prefix) and e.restorable]
        if not candidates:
            return Err(ErrKind.NOT_FOUND, f"No temporary backups for {ctx.project}")
        if not ctx.prompter.interactive:
            return Err(ErrKind.VALIDATION, "Backup name is required", [f"Available: {', '.join(candidates)}"])
        name = ctx.prompter.choose("Select a temporary backup", candidates)

    # Fails here, before the target is touched, when the entry or its key is unusable
    data = ctx.store.read(name)

    async def load(target) -> None:
        await target.load_dump(data)

    async def restore_live(target) -> None:
        await ctx.store.restore(name, target, ctx.prompter)

    operation = PlannedOperation(
        "restore-temp",
        {"name": name},
        [f"restore temporary backup {name}"],
        load,
        modifies=[f"database {ctx.backend.database}"],
    )
    return await execute_planned(ctx, operation, f"Restored {name}", live_apply=restore_live)


# ============================================================================
# Scheduled backups
# ============================================================================


def _scheduled_command(ctx: CommandContext, backup_dir: Path, retention: int, fmt: str) -> list[str]:
    command = [shutil.which("db-tools") or "db-tools"]
    if ctx.registry is not None and ctx.registry.path is not None:
        command += ["--connect", str(Path(ctx.registry.path).resolve())]
    command += [
        "auto-backup",
        ctx.project,
        "--run",
        "--backup-dir",
        str(backup_dir.resolve()),
        "--retention-days",
        str(retention),
        "--format",
        fmt,
    ]
    if ctx.option("encrypt"):
        command.append("--encrypt")
    return command


async def handle_auto_backup(ctx: CommandContext) -> Result:
    backup_dir = Path(ctx.option("backup_dir") or "backups")
    retention = ctx.option("retention_days") or DEFAULT_RETENTION_DAYS
    fmt = ctx.option("format") or "plain"

    if ctx.option("run"):
        result, pruned = await run_scheduled_backup(
            ctx.backend,
            ctx.project,
            backup_dir,
            fmt=fmt,
            encrypt=bool(ctx.option("encrypt")),
            retention_days=retention,
        )
        if pruned:
            ctx.console.print(f"  Pruned {len(pruned)} backup(s) older than {retention} days")
        return Ok(result, f"Backup written to {result.path}")

    if ctx.option("disable"):
        if await remove_schedule(ctx.tools, ctx.project):
            return Ok(None, f"Automatic backups disabled for {ctx.project}")
        return Ok(None, f"No automatic backup schedule for {ctx.project}")

    schedule = ctx.option("schedule")
    if schedule:
        line = cron_line(ctx.project, schedule, _scheduled_command(ctx, backup_dir, retention, fmt))
        replaced = await install_schedule(ctx.tools, ctx.project, line)
        ctx.console.print(f"  [dim]{line}[/dim]", highlight=False)
        verb = "updated" if replaced else "enabled"
        return Ok(line, f"Automatic backups {verb} for {ctx.project}")

    existing = await current_schedule(ctx.tools, ctx.project)
    if existing is None:
        return Ok(None, f"No automatic backup schedule for {ctx.project}; pass --schedule to add one")
    ctx.console.print(f"  {existing}", highlight=False)
    return Ok(existing)
