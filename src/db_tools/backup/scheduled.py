"""Scheduled backups through the user's crontab.

``auto-backup --schedule`` installs one crontab line per project, tagged
with ``# db-tools:<project>`` so it can be replaced or removed later.
The line re-invokes ``db-tools auto-backup <project> --run``, which
writes a timestamped backup and prunes old ones.

Usage:
    line = cron_line("Shop", "0 3 * * *", ["db-tools", "auto-backup", "Shop", "--run"])
    await install_schedule(tools, "Shop", line)
    result, pruned = await run_scheduled_backup(backend, "Shop", Path("backups"))
"""

import logging
import re
import shlex
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from db_tools.adapters.base import BackupResult
from db_tools.adapters.tools import ToolLocator
from db_tools.config.models import BackendKind
from db_tools.errors import FileSystemError, ValidationError
from db_tools.schema.project import project_slug

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30
TAG_PREFIX = "# db-tools:"

_MACROS = {"@hourly", "@daily", "@weekly", "@monthly", "@yearly", "@annually", "@midnight", "@reboot"}
_FIELD = re.compile(r"^[\d*/,\-]+$")


# ============================================================================
# Crontab management
# ============================================================================


def validate_schedule(schedule: str) -> str:
    """Check a cron expression (five fields or an ``@`` macro).

    Raises:
        ValidationError: If the expression is malformed.
    """
    schedule = schedule.strip()
    if schedule in _MACROS:
        return schedule
    fields = schedule.split()
    if len(fields) != 5 or not all(_FIELD.match(f) for f in fields):
        raise ValidationError(
            f"Invalid cron schedule: {schedule!r}",
            suggestions=['Use five fields, e.g. "0 3 * * *" for daily at 03:00, or @daily'],
        )
    return schedule


def schedule_tag(project: str) -> str:
    return f"{TAG_PREFIX}{project_slug(project)}"


def cron_line(project: str, schedule: str, command: list[str]) -> str:
    """Tagged crontab line running *command* on *schedule*."""
    return f"{validate_schedule(schedule)} {shlex.join(command)} {schedule_tag(project)}"


async def read_crontab(tools: ToolLocator) -> str:
    """Current user crontab, or an empty string when none is installed."""
    crontab = await tools.resolve("crontab")
    run = await tools.run([crontab.path, "-l"])
    if run.ok:
        return run.stdout.decode("utf-8", errors="replace")
    if "no crontab" in run.error_text.lower():
        return ""
    raise FileSystemError(f"crontab -l failed: {run.error_text}")


async def write_crontab(tools: ToolLocator, content: str) -> None:
    crontab = await tools.resolve("crontab")
    run = await tools.run([crontab.path, "-"], input=content.encode())
    if not run.ok:
        raise FileSystemError(f"Could not install crontab: {run.error_text}")


def _without_project(content: str, project: str) -> tuple[list[str], bool]:
    tag = schedule_tag(project)
    lines = content.splitlines()
    kept = [line for line in lines if not line.rstrip().endswith(tag)]
    return kept, len(kept) != len(lines)


async def install_schedule(tools: ToolLocator, project: str, line: str) -> bool:
    """Install *line*, replacing any earlier entry for *project*.

    Returns:
        True if an existing entry was replaced.
    """
    kept, replaced = _without_project(await read_crontab(tools), project)
    kept.append(line)
    await write_crontab(tools, "\n".join(kept) + "\n")
    logger.info("Installed backup schedule for %s", project)
    return replaced


async def remove_schedule(tools: ToolLocator, project: str) -> bool:
    """Remove the entry for *project*.  Returns False if there was none."""
    kept, removed = _without_project(await read_crontab(tools), project)
    if removed:
        await write_crontab(tools, "\n".join(kept) + "\n" if kept else "")
        logger.info("Removed backup schedule for %s", project)
    return removed


async def current_schedule(tools: ToolLocator, project: str) -> str | None:
    tag = schedule_tag(project)
    for line in (await read_crontab(tools)).splitlines():
        if line.rstrip().endswith(tag):
            return line
    return None


# ============================================================================
# Backup run and pruning
# ============================================================================


def backup_extension(kind: BackendKind, fmt: str) -> str:
    if kind is BackendKind.MONGODB:
        return ".archive"
    return ".dump" if fmt == "custom" else ".sql"


def prune_old_backups(
    backup_dir: Path,
    project: str,
    retention_days: int = DEFAULT_RETENTION_DAYS,
    now: datetime | None = None,
) -> list[Path]:
    """Remove *project*'s backups older than *retention_days*, with their keys.

    Returns:
        Paths of the removed backups.
    """
    backup_dir = Path(backup_dir)
    if not backup_dir.exists():
        return []
    now = now or datetime.now(timezone.utc)
    limit = timedelta(days=retention_days)

    pruned = []
    for path in backup_dir.glob(f"{project_slug(project)}_*"):
        if path.name.endswith(".key") or not path.is_file():
            continue
        modified = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        if now - modified <= limit:
            continue
        path.unlink()
        sidecar = path.with_name(path.name[: -len(".enc")] + ".key") if path.name.endswith(".enc") else None
        if sidecar is not None and sidecar.exists():
            sidecar.unlink()
        pruned.append(path)

    if pruned:
        logger.info("Pruned %d backup(s) older than %d days from %s", len(pruned), retention_days, backup_dir)
    return pruned


async def run_scheduled_backup(
    backend: Any,
    project: str,
    backup_dir: Path,
    fmt: str = "plain",
    encrypt: bool = False,
    retention_days: int = DEFAULT_RETENTION_DAYS,
    now: datetime | None = None,
) -> tuple[BackupResult, list[Path]]:
    """Write ``<slug>_<YYYYmmdd_HHMMSS><ext>`` and prune old backups."""
    now = now or datetime.now(timezone.utc)
    backup_dir = Path(backup_dir)
    backup_dir.mkdir(parents=True, exist_ok=True)

    name = f"{project_slug(project)}_{now.strftime('%Y%m%d_%H%M%S')}{backup_extension(backend.kind, fmt)}"
    result = await backend.backup(backup_dir / name, encrypt=encrypt, fmt=fmt)
    pruned = prune_old_backups(backup_dir, project, retention_days, now)
    return result, pruned
