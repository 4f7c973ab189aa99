"""Database adapters package.

Provides the ``DatabaseClient`` Protocol and the async PostgreSQL adapter
used for restore-target maintenance.

Usage:
    from db_snapshot.adapters import DatabaseClient, AsyncPostgresAdapter
"""

from db_snapshot.adapters.base import DatabaseClient
from db_snapshot.adapters.postgres import AsyncPostgresAdapter, quote_identifier

__all__ = [
    "DatabaseClient",
    "AsyncPostgresAdapter",
    "quote_identifier",
]
