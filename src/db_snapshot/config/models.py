"""Pydantic models for snapshot configuration."""

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

# Placeholder substituted with ``db_password`` when the URL is resolved
PASSWORD_PLACEHOLDER = "[YOUR-PASSWORD]"


# ============================================================================
# Connection Profiles
# ============================================================================


class DatabaseProfile(BaseModel):
    """Database connection profile (``[source]`` / ``[target]`` tables)."""

    url: str
    description: str = ""
    db_password: str | None = None  # For [YOUR-PASSWORD] placeholder substitution

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        try:
            url = make_url(value.replace(PASSWORD_PLACEHOLDER, "placeholder"))
        except ArgumentError as e:
            raise ValueError(f"not a valid database URL ({e})") from e
        if not url.drivername.startswith("postgres"):
            raise ValueError(
                f"unsupported scheme '{url.drivername}' (expected postgresql://)"
            )
        return value

    @property
    def database(self) -> str | None:
        """Database name from the URL, if any."""
        return make_url(self.url.replace(PASSWORD_PLACEHOLDER, "placeholder")).database

    @property
    def endpoint(self) -> tuple[str | None, int | None, str | None]:
        """(host, port, database) triple used to compare profiles."""
        url = make_url(self.url.replace(PASSWORD_PLACEHOLDER, "placeholder"))
        return url.host, url.port or 5432, url.database


class TargetProfile(DatabaseProfile):
    """Restore target.  Must name the database that is emptied and reloaded."""

    reset_strategy: Literal["recreate", "archive"] = "recreate"
    maintenance_database: str = "postgres"

    @model_validator(mode="after")
    def _require_database(self) -> "TargetProfile":
        if not self.database:
            raise ValueError("target url must name a database")
        if self.database == self.maintenance_database:
            raise ValueError(
                f"target database '{self.database}' cannot be the maintenance database"
            )
        return self


# ============================================================================
# Object Store, Notifications, Options
# ============================================================================


class StorageConfig(BaseModel):
    """S3-compatible bucket holding artifacts and run-state documents."""

    bucket: str = Field(min_length=1)
    endpoint_url: str | None = None
    region: str | None = None
    access_key_id: str | None = None
    secret_access_key: str | None = None
    prefix: str = ""  # Optional global key prefix, e.g. "snapshots/"
    force_path_style: bool = True
    conditional_writes: bool = False  # Store honours IfMatch / IfNoneMatch

    @field_validator("prefix")
    @classmethod
    def _normalize_prefix(cls, value: str) -> str:
        value = value.strip("/")
        return f"{value}/" if value else ""


class NotifyConfig(BaseModel):
    """Best-effort webhook sink (Slack-compatible ``{"text": ...}`` payload)."""

    webhook_url: str | None = None
    timeout_seconds: float = 10.0


class PipelineOptions(BaseModel):
    """Knobs shared by the backup and restore pipelines."""

    keep_workdir: bool = False
    verify_after_restore: bool = False
    workdir_root: str | None = None  # Parent of per-run temp dirs (default: system temp)
    dump_command: list[str] = Field(default_factory=lambda: ["pg_dump"], min_length=1)
    load_command: list[str] = Field(default_factory=lambda: ["psql"], min_length=1)
    dump_args: list[str] = Field(default_factory=list)


# ============================================================================
# Top-level Configuration
# ============================================================================


class SnapshotConfig(BaseModel):
    """Complete configuration threaded into every pipeline call."""

    source: DatabaseProfile
    target: TargetProfile
    storage: StorageConfig
    notify: NotifyConfig = Field(default_factory=NotifyConfig)
    options: PipelineOptions = Field(default_factory=PipelineOptions)

    @model_validator(mode="after")
    def _distinct_endpoints(self) -> "SnapshotConfig":
        if not self.source.database:
            raise ValueError("source url must name a database")
        if self.source.endpoint == self.target.endpoint:
            raise ValueError("source and target point at the same database")
        return self

    @property
    def database(self) -> str:
        """Source database name; namespaces all object-store keys."""
        return self.source.database or ""
