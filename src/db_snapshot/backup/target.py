"""Restore-target preparation.

Before a load, the target database is made provably empty:

1. Terminate every other session connected to it (skipped with a warning if
   the database name is unknown).
2. ``recreate``: ``DROP DATABASE IF EXISTS`` (``WITH (FORCE)`` on
   PostgreSQL 13+) then ``CREATE DATABASE``.
   ``archive``: rename the existing database to
   ``<name>_archived_<timestamp>`` then ``CREATE DATABASE``.
3. Confirm the new database holds no tables or views.

All statements run on the maintenance database through a ``DatabaseClient``
opened with ``AUTOCOMMIT``.  Identifiers are quoted with
``quote_identifier``; values are bound parameters.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime

import psycopg
from sqlalchemy.exc import SQLAlchemyError

from db_snapshot.adapters import DatabaseClient, quote_identifier
from db_snapshot.backup.utils import artifact_stamp, utc_now
from db_snapshot.config import TargetProfile
from db_snapshot.errors import RestoreFailed
from db_snapshot.factory import resolve_url
from db_snapshot.schema import SchemaIntrospector

logger = logging.getLogger(__name__)

PARTICIPANT = "prepare-target"

# PostgreSQL truncates identifiers beyond 63 bytes
MAX_IDENTIFIER_BYTES = 63

TERMINATE_SESSIONS_SQL = """
    SELECT pg_terminate_backend(pid) AS terminated
    FROM pg_stat_activity
    WHERE datname = :database
      AND pid <> pg_backend_pid()
"""

DATABASE_EXISTS_SQL = "SELECT 1 AS found FROM pg_database WHERE datname = :database"

SERVER_VERSION_SQL = "SELECT current_setting('server_version_num')::int AS version"

# DROP DATABASE ... WITH (FORCE) exists from PostgreSQL 13
FORCE_DROP_MIN_VERSION = 130000

EmptinessCheck = Callable[[TargetProfile], Awaitable[bool]]


async def target_is_empty(target: TargetProfile) -> bool:
    """True if the target database holds no user tables or views."""
    async with SchemaIntrospector(resolve_url(target)) as introspector:
        return await introspector.is_empty()


def archived_name(database: str, moment: datetime) -> str:
    """``<database>_archived_<stamp>``, shortened to fit an identifier."""
    suffix = f"_archived_{artifact_stamp(moment)}"
    budget = MAX_IDENTIFIER_BYTES - len(suffix.encode())
    head = database.encode()[:budget].decode("utf-8", errors="ignore")
    return head + suffix


async def terminate_sessions(client: DatabaseClient, database: str | None) -> int:
    """Terminate other sessions on ``database``.  Returns how many were killed."""
    if not database:
        logger.warning("Target database name unknown; not terminating sessions")
        return 0
    rows = await client.fetch_all(TERMINATE_SESSIONS_SQL, {"database": database})
    terminated = sum(1 for row in rows if row.get("terminated"))
    if terminated:
        logger.info(f"Terminated {terminated} session(s) on {database}")
    return terminated


async def server_version(client: DatabaseClient) -> int:
    """``server_version_num`` of the connected server, 0 if unknown."""
    rows = await client.fetch_all(SERVER_VERSION_SQL)
    return int(rows[0].get("version") or 0) if rows else 0


async def prepare_target_database(
    client: DatabaseClient,
    target: TargetProfile,
    *,
    now: datetime | None = None,
    check_empty: EmptinessCheck = target_is_empty,
) -> None:
    """Empty the restore target so a load starts from nothing.

    Args:
        client: AUTOCOMMIT client on the maintenance database.
        target: Target profile (names the database and reset strategy).
        now: Timestamp for ``archive`` renames (default: current UTC time).
        check_empty: Async predicate run after recreation.

    Raises:
        RestoreFailed: Any statement failed, or the target is not empty.
    """
    database = target.database
    quoted = quote_identifier(database)

    try:
        await terminate_sessions(client, database)

        if target.reset_strategy == "archive":
            found = await client.fetch_all(DATABASE_EXISTS_SQL, {"database": database})
            if found:
                archive = archived_name(database, now or utc_now())
                await client.execute(
                    f"ALTER DATABASE {quoted} RENAME TO {quote_identifier(archive)}"
                )
                logger.info(f"Archived {database} as {archive}")
        else:
            drop = f"DROP DATABASE IF EXISTS {quoted}"
            # Sessions that reconnected after termination would block a plain drop
            if await server_version(client) >= FORCE_DROP_MIN_VERSION:
                drop += " WITH (FORCE)"
            await client.execute(drop)
            logger.info(f"Dropped {database}")

        await client.execute(
            f"CREATE DATABASE {quoted} TEMPLATE template0 ENCODING 'UTF8'"
        )
        logger.info(f"Created empty {database}")
    except (SQLAlchemyError, OSError) as e:
        raise RestoreFailed(PARTICIPANT, detail=str(e)) from e

    try:
        empty = await check_empty(target)
    except (psycopg.Error, OSError) as e:
        raise RestoreFailed(PARTICIPANT, detail=f"emptiness check failed: {e}") from e
    if not empty:
        raise RestoreFailed(PARTICIPANT, detail=f"{database} is not empty after reset")
