"""PostgreSQL table/view inventory via pg_catalog.

Builds the inventory the verifier compares: every user table and view with
its kind, plus an approximate row count for base tables taken from catalog
statistics (``pg_stat_user_tables.n_live_tup``, falling back to
``pg_class.reltuples``) rather than a full scan.

Uses psycopg (v3) ``AsyncConnection``.
"""

import logging

import psycopg
from psycopg import AsyncConnection

from db_snapshot.schema.models import InventoryEntry

logger = logging.getLogger(__name__)

# r = table, p = partitioned table, v = view, m = materialized view
_INVENTORY_QUERY = """
    SELECT
        n.nspname AS schema_name,
        c.relname AS relation_name,
        c.relkind AS relkind,
        COALESCE(s.n_live_tup, GREATEST(c.reltuples, 0)::bigint) AS approx_rows
    FROM pg_catalog.pg_class c
    JOIN pg_catalog.pg_namespace n ON n.oid = c.relnamespace
    LEFT JOIN pg_catalog.pg_stat_user_tables s ON s.relid = c.oid
    WHERE c.relkind IN ('r', 'p', 'v', 'm')
      AND NOT c.relispartition
      AND n.nspname NOT IN ('pg_catalog', 'information_schema', 'pg_toast')
      AND n.nspname NOT LIKE 'pg_temp_%%'
      AND n.nspname NOT LIKE 'pg_toast_temp_%%'
    ORDER BY n.nspname, c.relname
"""


def qualified_name(schema_name: str, relation_name: str) -> str:
    """Bare name for ``public``, ``schema.name`` otherwise."""
    if schema_name == "public":
        return relation_name
    return f"{schema_name}.{relation_name}"


class SchemaIntrospector:
    """Reads the table/view inventory of one PostgreSQL database.

    Never writes.  Usage:
        async with SchemaIntrospector(database_url) as introspector:
            inventory = await introspector.inventory()
            if await introspector.is_empty():
                ...
    """

    # Relations to leave out of the inventory (extension bookkeeping)
    EXCLUDED_TABLES = {
        "schema_migrations",
        "spatial_ref_sys",
    }

    def __init__(
        self,
        database_url: str,
        excluded_tables: set[str] | None = None,
        connect_timeout: int = 10,
    ):
        """Initialize with database connection URL.

        Args:
            database_url: PostgreSQL connection URL
            excluded_tables: Names to exclude (default: ``EXCLUDED_TABLES``)
            connect_timeout: Connection timeout in seconds
        """
        self._database_url = database_url
        self._excluded_tables = (
            self.EXCLUDED_TABLES if excluded_tables is None else excluded_tables
        )
        self._connect_timeout = connect_timeout
        self._conn: AsyncConnection | None = None

    async def __aenter__(self) -> "SchemaIntrospector":
        self._conn = await psycopg.AsyncConnection.connect(
            self._database_url,
            connect_timeout=self._connect_timeout,
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def inventory(self) -> dict[str, InventoryEntry]:
        """Map qualified relation name -> kind and approximate row count."""
        if not self._conn:
            raise RuntimeError("Introspector not connected. Use async with statement.")

        result: dict[str, InventoryEntry] = {}
        async with self._conn.cursor() as cur:
            await cur.execute(_INVENTORY_QUERY)
            rows = await cur.fetchall()

        for schema_name, relation_name, relkind, approx_rows in rows:
            if relation_name in self._excluded_tables:
                continue
            name = qualified_name(schema_name, relation_name)
            if relkind in ("r", "p"):
                result[name] = InventoryEntry(kind="base-table", row_count=int(approx_rows or 0))
            else:
                result[name] = InventoryEntry(kind="view")

        logger.debug(f"Inventory: {len(result)} relations")
        return result

    async def is_empty(self) -> bool:
        """True if the database holds no user tables or views."""
        return not await self.inventory()
