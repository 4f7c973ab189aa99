"""Backup and restore pipelines with a persisted run-state document.

Usage:
    from db_snapshot.backup import run_backup, run_restore, read_state, list_backups
"""

from db_snapshot.backup.backup_pipeline import run_backup
from db_snapshot.backup.models import (
    BackupRecord,
    BackupResult,
    Checksum,
    EndpointDescriptor,
    Manifest,
    RestoreRecord,
    RestoreResult,
    RunState,
    RunStats,
)
from db_snapshot.backup.restore_pipeline import run_restore
from db_snapshot.backup.state import (
    LegacyPointerResolver,
    StateDocumentResolver,
    list_backups,
    read_state,
    resolve_latest,
)

__all__ = [
    "run_backup",
    "run_restore",
    "read_state",
    "list_backups",
    "resolve_latest",
    "StateDocumentResolver",
    "LegacyPointerResolver",
    "BackupRecord",
    "BackupResult",
    "Checksum",
    "EndpointDescriptor",
    "Manifest",
    "RestoreRecord",
    "RestoreResult",
    "RunState",
    "RunStats",
]
