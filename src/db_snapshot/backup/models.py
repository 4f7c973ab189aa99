"""Run-state document, manifest, and pipeline result models.

The run-state document is the JSON record kept at ``<database>/latest.json``:

    {
      "version": 1,
      "database": "app",
      "bucket": "snapshots",
      "path_prefix": "app/",
      "latest_backup": {"key": ..., "size_bytes": ..., "created_at": ...,
                        "source": {"host", "port", "database"},
                        "checksum": {"algorithm": "sha256", "hex": ...}},
      "latest_restore": {"key": ..., "restored_at": ...,
                         "target": {"host", "port", "database"},
                         "checksum": {...}},
      "stats": {"backups_total": 3, "restores_total": 2},
      "updated_at": ...
    }

Usage:
    from db_snapshot.backup.models import RunState

    state = RunState.model_validate(json.loads(body))
"""

import hashlib
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

STATE_VERSION = 1
MANIFEST_VERSION = 1


class Checksum(BaseModel):
    """Content hash.  Older documents spell the fields ``algo`` / ``value``."""

    model_config = ConfigDict(populate_by_name=True)

    algorithm: str = Field(
        default="sha256", validation_alias=AliasChoices("algorithm", "algo")
    )
    hex: str = Field(validation_alias=AliasChoices("hex", "value"))

    @field_validator("algorithm")
    @classmethod
    def _check_algorithm(cls, value: str) -> str:
        try:
            hashlib.new(value)
        except ValueError as e:
            raise ValueError(f"unsupported checksum algorithm '{value}'") from e
        return value

    def matches(self, other: "Checksum | None") -> bool:
        """Same algorithm and digest (digest compared case-insensitively)."""
        if other is None:
            return False
        return (
            self.algorithm.lower() == other.algorithm.lower()
            and self.hex.lower() == other.hex.lower()
        )

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.hex}"


class EndpointDescriptor(BaseModel):
    """Where a database lives.  Carries no credentials."""

    host: str | None = None
    port: int | None = None
    database: str | None = None

    def __str__(self) -> str:
        return f"{self.host or 'localhost'}:{self.port or 5432}/{self.database or ''}"


# ============================================================================
# Run-State Document
# ============================================================================


class BackupRecord(BaseModel):
    key: str
    size_bytes: int
    created_at: str
    source: EndpointDescriptor
    checksum: Checksum


class RestoreRecord(BaseModel):
    key: str
    restored_at: str
    target: EndpointDescriptor
    checksum: Checksum | None = None  # None when restored from a legacy pointer


class RunStats(BaseModel):
    backups_total: int = 0
    restores_total: int = 0


class RunState(BaseModel):
    """Persisted record of the latest backup and restore for one database."""

    version: int = STATE_VERSION
    database: str
    bucket: str
    path_prefix: str
    latest_backup: BackupRecord | None = None
    latest_restore: RestoreRecord | None = None
    stats: RunStats = Field(default_factory=RunStats)
    updated_at: str | None = None


# ============================================================================
# Archive Manifest
# ============================================================================


class Manifest(BaseModel):
    """``manifest.json`` packed next to the dump inside every artifact."""

    format_version: int = MANIFEST_VERSION
    database: str
    created_at: str
    dump_file: str
    dump_size_bytes: int
    dump_checksum: Checksum
    compression: str = "gzip"
    source: EndpointDescriptor
    producer: list[str] = Field(default_factory=list)  # argv, no secrets


# ============================================================================
# Pipeline Results
# ============================================================================


class ResolvedArtifact(BaseModel):
    """What a restore should load, and how it was found."""

    key: str
    checksum: Checksum | None = None  # None for legacy pointers
    resolver: str


class BackupResult(BaseModel):
    key: str
    size_bytes: int
    checksum: Checksum
    elapsed_seconds: float


class RestoreResult(BaseModel):
    """Outcome of a restore invocation.

    ``key`` is ``None`` only for ``no_backup`` (nothing to restore).
    """

    status: Literal["restored", "skipped", "no_backup"]
    key: str | None = None
    checksum: Checksum | None = None
    manual: bool = False
    elapsed_seconds: float = 0.0
