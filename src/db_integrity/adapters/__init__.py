"""Database adapters package.

Provides the ``DatabaseClient`` Protocol and the async PostgreSQL adapter
the migration engine runs on.

Usage:
    from db_integrity.adapters import DatabaseClient, AsyncPostgresAdapter
"""

from db_integrity.adapters.base import DatabaseClient
from db_integrity.adapters.postgres import AsyncPostgresAdapter, create_async_engine_pooled

__all__ = [
    "DatabaseClient",
    "AsyncPostgresAdapter",
    "create_async_engine_pooled",
]
