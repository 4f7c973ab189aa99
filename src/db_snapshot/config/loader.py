"""Load snapshot configuration from a TOML file plus environment overrides.

Secrets may live in the file or in the environment.  Environment values
only fill fields the file leaves unset:

==============================  ==============================
Environment variable            Field
==============================  ==============================
``{PREFIX}SNAPSHOT_CONFIG``     config file path
``{PREFIX}SOURCE_DB_PASSWORD``  ``source.db_password``
``{PREFIX}TARGET_DB_PASSWORD``  ``target.db_password``
``{PREFIX}S3_ACCESS_KEY_ID``    ``storage.access_key_id``
``{PREFIX}S3_SECRET_ACCESS_KEY`` ``storage.secret_access_key``
``{PREFIX}SLACK_WEBHOOK_URL``   ``notify.webhook_url``
==============================  ==============================
"""

import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from db_snapshot.config.models import SnapshotConfig
from db_snapshot.errors import ConfigError

DEFAULT_CONFIG_FILE = "snapshot.toml"

# (section, field) -> environment variable suffix
_ENV_OVERRIDES: dict[tuple[str, str], str] = {
    ("source", "db_password"): "SOURCE_DB_PASSWORD",
    ("target", "db_password"): "TARGET_DB_PASSWORD",
    ("storage", "access_key_id"): "S3_ACCESS_KEY_ID",
    ("storage", "secret_access_key"): "S3_SECRET_ACCESS_KEY",
    ("notify", "webhook_url"): "SLACK_WEBHOOK_URL",
}


def resolve_config_path(
    config_path: Path | None = None,
    env_prefix: str = "",
    environ: Mapping[str, str] | None = None,
) -> Path:
    """Pick the config file: explicit path, then env var, then ``./snapshot.toml``."""
    environ = os.environ if environ is None else environ
    if config_path is not None:
        return Path(config_path)
    env_path = environ.get(f"{env_prefix}SNAPSHOT_CONFIG")
    if env_path:
        return Path(env_path)
    return Path.cwd() / DEFAULT_CONFIG_FILE


def load_snapshot_config(
    config_path: Path | None = None,
    env_prefix: str = "",
    environ: Mapping[str, str] | None = None,
) -> SnapshotConfig:
    """Load and validate snapshot configuration.

    Args:
        config_path: Path to the TOML file.  See ``resolve_config_path``.
        env_prefix: Prefix for environment lookups (``APP_`` reads
            ``APP_SOURCE_DB_PASSWORD``).
        environ: Environment mapping (default: ``os.environ``).

    Returns:
        Validated ``SnapshotConfig``.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        ConfigError: If the file is not valid TOML or fails validation.
    """
    environ = os.environ if environ is None else environ
    path = resolve_config_path(config_path, env_prefix, environ)

    if not path.exists():
        raise FileNotFoundError(
            f"Snapshot config not found: {path}\n"
            f"Create {DEFAULT_CONFIG_FILE} or set {env_prefix}SNAPSHOT_CONFIG."
        )

    try:
        with open(path, "rb") as f:
            data: dict[str, Any] = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError([f"{path.name}: {e}"]) from e

    for (section, field), suffix in _ENV_OVERRIDES.items():
        value = environ.get(f"{env_prefix}{suffix}")
        if not value:
            continue
        table = data.setdefault(section, {})
        if isinstance(table, dict) and not table.get(field):
            table[field] = value

    return build_config(data)


def build_config(data: dict[str, Any]) -> SnapshotConfig:
    """Validate a raw config mapping, collecting every problem into one error."""
    try:
        return SnapshotConfig.model_validate(data)
    except ValidationError as e:
        problems = []
        for err in e.errors():
            loc = ".".join(str(part) for part in err["loc"])
            problems.append(f"{loc}: {err['msg']}" if loc else err["msg"])
        raise ConfigError(problems) from e
