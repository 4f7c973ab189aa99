"""db-snapshot: PostgreSQL backup, restore, and verification via an object store.

Dumps a source database into a compressed artifact in an S3-compatible
bucket, restores the latest artifact into a target database exactly once,
and compares source and target inventories afterwards.

Usage:
    from db_snapshot import load_snapshot_config, run_backup, run_restore, compare
"""

__version__ = "0.1.0"

# Config
from db_snapshot.config.loader import load_snapshot_config
from db_snapshot.config.models import SnapshotConfig

# Errors
from db_snapshot.errors import (
    ArchiveContentMissing,
    ArchiveCorrupt,
    ChecksumMismatch,
    ConfigError,
    DownloadFailed,
    DumpFailed,
    PipelineFailure,
    RestoreFailed,
    SnapshotError,
    StateConflict,
    StatePublishFailed,
    UploadFailed,
)

# Pipelines
from db_snapshot.backup import (
    BackupResult,
    RestoreResult,
    RunState,
    list_backups,
    read_state,
    run_backup,
    run_restore,
)

# Verification
from db_snapshot.schema import VerificationDiff, compare, compare_inventories

__all__ = [
    # Config
    "load_snapshot_config",
    "SnapshotConfig",
    # Errors
    "SnapshotError",
    "ConfigError",
    "PipelineFailure",
    "DumpFailed",
    "RestoreFailed",
    "ArchiveCorrupt",
    "ArchiveContentMissing",
    "UploadFailed",
    "DownloadFailed",
    "ChecksumMismatch",
    "StatePublishFailed",
    "StateConflict",
    # Pipelines
    "run_backup",
    "run_restore",
    "read_state",
    "list_backups",
    "BackupResult",
    "RestoreResult",
    "RunState",
    # Verification
    "compare",
    "compare_inventories",
    "VerificationDiff",
]
