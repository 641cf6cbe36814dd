"""Database client protocol definition.

Defines the ``DatabaseClient`` Protocol the migration engine runs against.
All methods are ``async def`` -- the library is async-first.

Usage:
    from db_integrity.adapters.base import DatabaseClient

    async def apply(client: DatabaseClient, sql: str) -> None:
        async with client.transaction() as tx:
            await tx.query(sql)
            await tx.query(
                "UPDATE schema_migrations SET status = :status WHERE id = :id",
                {"status": "completed", "id": "001_create_users"},
            )
"""

from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol


class DatabaseClient(Protocol):
    """Database client interface the engine depends on.

    Keeping the engine on this Protocol lets tests drive it with an
    in-memory fake, and lets callers bring their own connection handling.
    """

    async def query(self, sql: str, params: dict[str, Any] | None = None) -> None:
        """Execute SQL that returns no rows.

        With ``params`` of ``None`` the text is sent as-is and may contain
        several statements (a migration script).  With ``params`` it must be
        a single statement using ``:name`` placeholders.

        Example:
            await client.query("CREATE TABLE users (id SERIAL PRIMARY KEY);")
            await client.query("DELETE FROM t WHERE id = :id", {"id": "x"})
        """
        ...

    async def query_one(
        self, sql: str, params: dict[str, Any] | None = None
    ) -> dict | None:
        """Return the first row as a dict, or ``None`` when there are no rows."""
        ...

    async def query_many(
        self, sql: str, params: dict[str, Any] | None = None
    ) -> list[dict]:
        """Return every row as a dict.  Empty list if no rows."""
        ...

    def transaction(self) -> AbstractAsyncContextManager["DatabaseClient"]:
        """Open a transaction and yield a client bound to it.

        The transaction commits when the block exits normally and rolls back
        when it raises.

        Example:
            async with client.transaction() as tx:
                await tx.query(migration.sql)
        """
        ...

    async def close(self) -> None:
        """Close database connections and clean up resources."""
        ...
