"""Database client protocol definition.

Defines the ``DatabaseClient`` Protocol used for target preparation.
All methods are ``async def`` -- the library is async-first.

Usage:
    from db_snapshot.adapters.base import DatabaseClient

    async def do_work(client: DatabaseClient) -> None:
        rows = await client.fetch_all("SELECT datname FROM pg_database")
        await client.execute('DROP DATABASE IF EXISTS "staging"')
        await client.close()
"""

from typing import Any, Protocol


class DatabaseClient(Protocol):
    """Database client interface that all adapters must implement.

    All methods are async -- callers must ``await`` every operation.
    """

    async def fetch_all(self, sql: str, params: dict[str, Any] | None = None) -> list[dict]:
        """Run a query and return every row.

        Args:
            sql: SQL text with ``:name`` bind parameters.
            params: Optional dict of named parameters.

        Returns:
            List of dicts, one per row.  Empty list if no rows.

        Example:
            rows = await client.fetch_all(
                "SELECT pid FROM pg_stat_activity WHERE datname = :db",
                {"db": "staging"},
            )
        """
        ...

    async def execute(self, sql: str, params: dict[str, Any] | None = None) -> None:
        """Execute a statement that returns no rows (DDL and the like).

        Args:
            sql: Raw SQL statement to execute.
            params: Optional dict of named parameters for the SQL statement.
        """
        ...

    async def close(self) -> None:
        """Close database connection and clean up resources."""
        ...
