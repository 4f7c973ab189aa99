"""Build clients and command lines from a validated ``SnapshotConfig``.

- ``resolve_url``: profile URL with the ``[YOUR-PASSWORD]`` placeholder filled
- ``libpq_command``: argv + env for ``pg_dump`` / ``psql`` (password via env)
- ``get_object_store``: boto3 S3 client wrapped in ``ObjectStore``
- ``get_maintenance_adapter``: AUTOCOMMIT adapter on the target's maintenance DB
"""

import logging
from collections.abc import Sequence
from urllib.parse import quote

import boto3
from botocore.config import Config as BotoConfig
from sqlalchemy.engine import URL, make_url

from db_snapshot.adapters import AsyncPostgresAdapter
from db_snapshot.config.models import (
    PASSWORD_PLACEHOLDER,
    DatabaseProfile,
    SnapshotConfig,
    TargetProfile,
)
from db_snapshot.storage import ObjectStore

logger = logging.getLogger(__name__)

# URL query parameters forwarded to libpq tools as environment variables
_LIBPQ_QUERY_ENV = {
    "sslmode": "PGSSLMODE",
    "sslrootcert": "PGSSLROOTCERT",
    "sslcert": "PGSSLCERT",
    "sslkey": "PGSSLKEY",
    "connect_timeout": "PGCONNECT_TIMEOUT",
    "application_name": "PGAPPNAME",
}


# ============================================================================
# Connection URLs
# ============================================================================


def resolve_url(profile: DatabaseProfile) -> str:
    """Resolve profile URL with password substitution.

    Args:
        profile: Database profile from config

    Returns:
        Connection URL with password substituted
    """
    url = profile.url
    if profile.db_password and PASSWORD_PLACEHOLDER in url:
        url = url.replace(PASSWORD_PLACEHOLDER, quote(profile.db_password, safe=""))
    return url


def _parsed(profile: DatabaseProfile) -> URL:
    return make_url(resolve_url(profile))


def libpq_command(
    base_command: Sequence[str],
    profile: DatabaseProfile,
    extra_args: Sequence[str] = (),
    database: str | None = None,
) -> tuple[list[str], dict[str, str]]:
    """Build argv and env for a libpq client tool.

    The password goes into ``PGPASSWORD``, never argv, so it does not show
    up in process listings or failure messages.

    Args:
        base_command: Executable and fixed leading args (e.g. ``["pg_dump"]``).
        profile: Connection profile.
        extra_args: Appended after the connection options.
        database: Override the URL's database name.

    Returns:
        ``(argv, env)`` where ``env`` holds only the extra variables.
    """
    url = _parsed(profile)
    argv = list(base_command)
    if url.host:
        argv += ["--host", url.host]
    if url.port:
        argv += ["--port", str(url.port)]
    if url.username:
        argv += ["--username", url.username]
    argv += ["--dbname", database or url.database or ""]
    argv += list(extra_args)

    env: dict[str, str] = {}
    if url.password:
        env["PGPASSWORD"] = str(url.password)
    for param, var in _LIBPQ_QUERY_ENV.items():
        value = url.query.get(param)
        if value:
            env[var] = value if isinstance(value, str) else value[0]
    return argv, env


# ============================================================================
# Object Store
# ============================================================================


def get_object_store(config: SnapshotConfig) -> ObjectStore:
    """Create the boto3 S3 client for ``config.storage``.

    Credentials left unset fall through to boto3's default chain
    (environment, shared config, instance profile).
    """
    storage = config.storage
    kwargs: dict = {}
    if storage.endpoint_url:
        kwargs["endpoint_url"] = storage.endpoint_url
    if storage.region:
        kwargs["region_name"] = storage.region
    if storage.access_key_id and storage.secret_access_key:
        kwargs["aws_access_key_id"] = storage.access_key_id
        kwargs["aws_secret_access_key"] = storage.secret_access_key

    addressing = "path" if storage.force_path_style else "auto"
    client = boto3.client(
        "s3",
        config=BotoConfig(s3={"addressing_style": addressing}, retries={"max_attempts": 3}),
        **kwargs,
    )
    return ObjectStore(client, storage.bucket, conditional_writes=storage.conditional_writes)


# ============================================================================
# Database Adapters
# ============================================================================


def maintenance_url(target: TargetProfile) -> str:
    """Target URL pointed at the maintenance database."""
    url = _parsed(target).set(database=target.maintenance_database)
    return url.render_as_string(hide_password=False)


def get_maintenance_adapter(target: TargetProfile) -> AsyncPostgresAdapter:
    """Adapter for DROP/CREATE DATABASE, which refuse to run inside a transaction."""
    return AsyncPostgresAdapter(maintenance_url(target), isolation_level="AUTOCOMMIT")
