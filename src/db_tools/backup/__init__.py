"""Encrypted temporary backups and scheduled backups.

Provides the ``TempBackupStore`` used by the safety pipeline before
dangerous operations, and the crontab-driven ``auto-backup`` helpers.

Usage:
    from db_tools.backup import TempBackupStore, TempBackupInfo
    from db_tools.backup import run_scheduled_backup, prune_old_backups
"""

from db_tools.backup.scheduled import (
    install_schedule,
    prune_old_backups,
    remove_schedule,
    run_scheduled_backup,
)
from db_tools.backup.temp_store import LockBusyError, TempBackupInfo, TempBackupStore

__all__ = [
    "LockBusyError",
    "TempBackupInfo",
    "TempBackupStore",
    "install_schedule",
    "prune_old_backups",
    "remove_schedule",
    "run_scheduled_backup",
]
