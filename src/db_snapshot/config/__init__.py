"""Configuration management: TOML loading, env overrides, and config models.

Usage:
    >>> from db_snapshot.config import load_snapshot_config, SnapshotConfig
"""

from db_snapshot.config.loader import load_snapshot_config
from db_snapshot.config.models import (
    DatabaseProfile,
    NotifyConfig,
    PipelineOptions,
    SnapshotConfig,
    StorageConfig,
    TargetProfile,
)

__all__ = [
    "load_snapshot_config",
    "SnapshotConfig",
    "DatabaseProfile",
    "TargetProfile",
    "StorageConfig",
    "NotifyConfig",
    "PipelineOptions",
]
