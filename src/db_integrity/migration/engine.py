"""Migration execution with a tracking table and an advisory lock.

The engine discovers migration files, compares them against the tracking
table, and applies pending ones in natural version order.  Each migration
and its tracking-row write run in one transaction (unless the migration
opts out with ``-- @transactional: false``), so a failure leaves neither
half-applied DDL nor a COMPLETED row behind.

Cross-process safety comes from a PostgreSQL transaction-level advisory
lock held for the whole run.

Usage:
    from db_integrity.adapters import AsyncPostgresAdapter
    from db_integrity.migration.engine import MigrationEngine

    engine = MigrationEngine(AsyncPostgresAdapter(url), config.migrations)
    result = await engine.run_migrations()
    if not result.success:
        print(result.error.format())
"""

import asyncio
import hashlib
import json
import logging
import time
from datetime import datetime, timezone

from db_integrity.adapters.base import DatabaseClient
from db_integrity.config.models import MigrationConfig
from db_integrity.errors import ErrorCode, IntegrityError, IntegrityException, IntegrityResult
from db_integrity.events import EventEmitter, EventSink
from db_integrity.migration import files
from db_integrity.migration.models import Migration, MigrationOptions, MigrationStatus

logger = logging.getLogger(__name__)

LOCK_POLL_INTERVAL = 0.5

TRACKING_TABLE_DDL = """CREATE TABLE IF NOT EXISTS {table} (
    id VARCHAR(255) PRIMARY KEY,
    version VARCHAR(255) NOT NULL,
    name VARCHAR(255) NOT NULL,
    description TEXT,
    type VARCHAR(50) NOT NULL DEFAULT 'schema',
    checksum VARCHAR(64),
    executed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    execution_time INTEGER,
    status VARCHAR(50) NOT NULL DEFAULT 'pending',
    error TEXT,
    metadata JSONB
)"""

SELECT_TRACKED = """SELECT id, version, name, description, type, checksum, executed_at,
       execution_time, status, error, metadata
FROM {table}"""

UPSERT_TRACKED = """INSERT INTO {table}
    (id, version, name, description, type, checksum, executed_at,
     execution_time, status, error, metadata)
VALUES
    (:id, :version, :name, :description, :type, :checksum, CURRENT_TIMESTAMP,
     :execution_time, :status, :error, CAST(:metadata AS jsonb))
ON CONFLICT (id) DO UPDATE SET
    version = EXCLUDED.version,
    name = EXCLUDED.name,
    description = EXCLUDED.description,
    type = EXCLUDED.type,
    checksum = EXCLUDED.checksum,
    executed_at = EXCLUDED.executed_at,
    execution_time = EXCLUDED.execution_time,
    status = EXCLUDED.status,
    error = EXCLUDED.error,
    metadata = EXCLUDED.metadata"""

UPDATE_TRACKED = """UPDATE {table}
SET status = :status, error = :error, metadata = CAST(:metadata AS jsonb)
WHERE id = :id"""

DELETE_TRACKED = "DELETE FROM {table} WHERE id = :id"


def advisory_lock_key(database: str, table_name: str) -> int:
    """Signed 64-bit advisory lock key for one database and tracking table."""
    digest = hashlib.sha256(f"{database}:{table_name}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class MigrationEngine:
    """Apply and roll back migrations against a ``DatabaseClient``.

    Args:
        client: Database client (``AsyncPostgresAdapter`` or any
            ``DatabaseClient`` implementation).
        config: ``[migrations]`` settings.
        sink: Event sink for lifecycle events.
    """

    def __init__(
        self,
        client: DatabaseClient,
        config: MigrationConfig | None = None,
        sink: EventSink | None = None,
    ):
        self._client = client
        self._config = config or MigrationConfig()
        self._events = EventEmitter("MigrationEngine", sink)
        self._table = self._config.table_name

    # ------------------------------------------------------------------
    # Tracking table
    # ------------------------------------------------------------------

    async def initialize(self) -> IntegrityResult[None]:
        """Create the tracking table and its indexes if missing (idempotent)."""
        bare = self._table.split(".")[-1]
        statements = [
            TRACKING_TABLE_DDL.format(table=self._table),
            f"CREATE INDEX IF NOT EXISTS idx_{bare}_version ON {self._table} (version)",
            f"CREATE INDEX IF NOT EXISTS idx_{bare}_status ON {self._table} (status)",
        ]
        try:
            for statement in statements:
                await self._client.query(statement)
        except Exception as e:
            logger.error(f"Failed to initialize tracking table {self._table}: {e}")
            return IntegrityResult.fail(
                IntegrityError(
                    code=ErrorCode.MIGRATION_INIT_FAILED,
                    message=f"Failed to initialize tracking table {self._table}: {e}",
                )
            )
        return IntegrityResult.ok(None)

    async def _tracking_table_exists(self, client: DatabaseClient) -> bool:
        row = await client.query_one(
            "SELECT to_regclass(:name) AS regclass", {"name": self._table}
        )
        return bool(row and row["regclass"])

    async def _tracked(self, client: DatabaseClient | None = None) -> dict[str, Migration]:
        """Tracking rows keyed by id ({} when the table does not exist yet)."""
        client = client or self._client
        if not await self._tracking_table_exists(client):
            return {}
        rows = await client.query_many(SELECT_TRACKED.format(table=self._table))
        return {row["id"]: self._row_to_migration(row) for row in rows}

    @staticmethod
    def _row_to_migration(row: dict) -> Migration:
        metadata = row.get("metadata") or {}
        if isinstance(metadata, str):
            metadata = json.loads(metadata)
        return Migration(
            id=row["id"],
            version=row["version"],
            name=row["name"],
            description=row.get("description"),
            type=row.get("type") or "schema",
            checksum=row.get("checksum") or "",
            status=row["status"],
            executed_at=row.get("executed_at"),
            execution_time=row.get("execution_time"),
            error=row.get("error"),
            metadata=metadata,
        )

    async def _record(
        self,
        client: DatabaseClient,
        migration: Migration,
        status: MigrationStatus,
        execution_time: int | None,
        error: str | None,
    ) -> None:
        await client.query(
            UPSERT_TRACKED.format(table=self._table),
            {
                "id": migration.id,
                "version": migration.version,
                "name": migration.name,
                "description": migration.description,
                "type": migration.type.value,
                "checksum": migration.checksum,
                "execution_time": execution_time,
                "status": status.value,
                "error": error,
                "metadata": json.dumps(migration.metadata),
            },
        )

    async def _update(
        self,
        client: DatabaseClient,
        migration: Migration,
        status: MigrationStatus,
        error: str | None,
    ) -> None:
        await client.query(
            UPDATE_TRACKED.format(table=self._table),
            {
                "id": migration.id,
                "status": status.value,
                "error": error,
                "metadata": json.dumps(migration.metadata),
            },
        )

    # ------------------------------------------------------------------
    # Discovery and status
    # ------------------------------------------------------------------

    def load_migrations(self) -> list[Migration]:
        """Discover migration files in the configured directory.

        Raises:
            IntegrityException: ``MIGRATION_LOAD_FAILED``.
        """
        return files.discover_migrations(self._config.directory)

    @staticmethod
    def calculate_checksum(sql: str) -> str:
        """SHA-256 hex digest of migration SQL."""
        return files.calculate_checksum(sql)

    async def get_migration_status(self) -> IntegrityResult[list[Migration]]:
        """All tracked migrations in natural version order."""
        try:
            tracked = await self._tracked()
        except Exception as e:
            return IntegrityResult.fail(
                IntegrityError(
                    code=ErrorCode.MIGRATION_EXECUTION_FAILED,
                    message=f"Failed to read migration status: {e}",
                )
            )
        return IntegrityResult.ok(
            sorted(tracked.values(), key=lambda m: files.version_key(m.version))
        )

    async def get_pending_migrations(self) -> list[Migration]:
        """Discovered migrations without a COMPLETED tracking row."""
        return self._pending(self.load_migrations(), await self._tracked())

    @staticmethod
    def _pending(discovered: list[Migration], tracked: dict[str, Migration]) -> list[Migration]:
        return [
            m
            for m in discovered
            if m.id not in tracked or tracked[m.id].status != MigrationStatus.COMPLETED
        ]

    def _validate(
        self,
        discovered: list[Migration],
        tracked: dict[str, Migration],
        pending: list[Migration],
        options: MigrationOptions,
    ) -> None:
        """Refuse to run on modified or out-of-order migrations.

        Raises:
            IntegrityException: ``CHECKSUM_MISMATCH`` or ``MIGRATION_OUT_OF_ORDER``.
        """
        if self._config.validate_checksums:
            for migration in discovered:
                row = tracked.get(migration.id)
                if (
                    row is not None
                    and row.status == MigrationStatus.COMPLETED
                    and row.checksum
                    and row.checksum != migration.checksum
                ):
                    raise IntegrityException(
                        ErrorCode.CHECKSUM_MISMATCH,
                        f"Migration {migration.id} was modified after it was applied "
                        f"(stored {row.checksum[:12]}, file {migration.checksum[:12]})",
                        migration_id=migration.id,
                        version=migration.version,
                        details={"stored": row.checksum, "current": migration.checksum},
                    )

        if options.allow_out_of_order or self._config.allow_out_of_order:
            return
        applied = [
            files.version_key(row.version)
            for row in tracked.values()
            if row.status == MigrationStatus.COMPLETED
        ]
        if not applied:
            return
        highest = max(applied)
        for migration in pending:
            if files.version_key(migration.version) < highest:
                raise IntegrityException(
                    ErrorCode.MIGRATION_OUT_OF_ORDER,
                    f"Pending migration {migration.id} sorts before the latest "
                    f"applied migration; use --allow-out-of-order to apply it",
                    migration_id=migration.id,
                    version=migration.version,
                )

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    async def _acquire_lock(self, tx: DatabaseClient) -> None:
        """Take the transaction-level advisory lock, polling until lock_timeout.

        Raises:
            IntegrityException: ``MIGRATION_LOCK_FAILED``.
        """
        try:
            row = await tx.query_one("SELECT current_database() AS name")
            key = advisory_lock_key(row["name"], self._table)
            deadline = time.monotonic() + self._config.lock_timeout
            while True:
                row = await tx.query_one(
                    "SELECT pg_try_advisory_xact_lock(:key) AS locked", {"key": key}
                )
                if row and row["locked"]:
                    break
                if time.monotonic() >= deadline:
                    raise IntegrityException(
                        ErrorCode.MIGRATION_LOCK_FAILED,
                        f"Could not acquire migration lock within "
                        f"{self._config.lock_timeout}s; another migration run is active",
                    )
                await asyncio.sleep(LOCK_POLL_INTERVAL)
        except IntegrityException:
            raise
        except Exception as e:
            raise IntegrityException(
                ErrorCode.MIGRATION_LOCK_FAILED, f"Failed to acquire migration lock: {e}"
            ) from e
        self._events.emit(
            "migration.lock.acquired",
            f"Acquired migration lock on {self._table}",
            level="debug",
        )

    def _is_transactional(self, migration: Migration) -> bool:
        if migration.transactional is not None:
            return migration.transactional
        return self._config.transactional

    async def _execute_script(self, client: DatabaseClient, sql: str, transactional: bool) -> None:
        if transactional:
            await client.query(sql)
            return
        for unit in files.execution_units(sql):
            await client.query(unit)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run_migrations(
        self, options: MigrationOptions | None = None
    ) -> IntegrityResult[list[Migration]]:
        """Apply pending migrations in ascending version order.

        ``dry_run`` only reports what would run: it neither creates the
        tracking table nor takes the lock.  Otherwise the tracking table is
        initialized, the advisory lock taken, checksums and ordering
        validated, and up to ``batch_size`` migrations applied.  A failed
        migration stops the run unless ``force`` is set.

        Returns:
            IntegrityResult whose ``data`` lists every migration attempted
            (or, for a dry run, every pending migration).  On failure the
            error names the first failing migration.
        """
        options = options or MigrationOptions()
        self._events.renew()
        try:
            discovered = self.load_migrations()
        except IntegrityException as e:
            return IntegrityResult.fail(e)

        if options.dry_run:
            try:
                tracked = await self._tracked()
                pending = self._pending(discovered, tracked)
                self._validate(discovered, tracked, pending, options)
            except IntegrityException as e:
                return IntegrityResult.fail(e)
            except Exception as e:
                return IntegrityResult.fail(
                    IntegrityError(
                        code=ErrorCode.MIGRATION_EXECUTION_FAILED,
                        message=f"Failed to read migration status: {e}",
                    )
                )
            return IntegrityResult.ok(self._batch(pending, options))

        init = await self.initialize()
        if not init.success:
            return IntegrityResult.fail(init.error)

        try:
            async with self._client.transaction() as lock_tx:
                await self._acquire_lock(lock_tx)
                return await self._run_locked(discovered, options)
        except IntegrityException as e:
            return IntegrityResult.fail(e)
        except Exception as e:
            return IntegrityResult.fail(
                IntegrityError(
                    code=ErrorCode.MIGRATION_EXECUTION_FAILED,
                    message=f"Migration run failed: {e}",
                )
            )

    @staticmethod
    def _batch(migrations: list[Migration], options: MigrationOptions) -> list[Migration]:
        if options.batch_size:
            return migrations[: options.batch_size]
        return migrations

    async def _run_locked(
        self, discovered: list[Migration], options: MigrationOptions
    ) -> IntegrityResult[list[Migration]]:
        tracked = await self._tracked()
        pending = self._pending(discovered, tracked)
        self._validate(discovered, tracked, pending, options)

        attempted: list[Migration] = []
        first_error: IntegrityError | None = None
        for migration in self._batch(pending, options):
            result = await self._apply(migration, tracked.get(migration.id))
            attempted.append(result)
            if result.status == MigrationStatus.FAILED:
                if first_error is None:
                    first_error = IntegrityError(
                        code=ErrorCode.MIGRATION_EXECUTION_FAILED,
                        message=f"Migration {result.id} failed: {result.error}",
                        migration_id=result.id,
                        version=result.version,
                    )
                if not options.force:
                    break

        if first_error is not None:
            return IntegrityResult.fail(first_error, data=attempted)
        return IntegrityResult.ok(attempted)

    async def _apply(self, migration: Migration, previous: Migration | None) -> Migration:
        """Apply one migration and record the outcome; never raises."""
        attempt = 1
        if previous is not None:
            attempt = int(previous.metadata.get("attempt") or 1) + 1
        migration = migration.model_copy(
            update={
                "status": MigrationStatus.PENDING,
                "metadata": {**migration.metadata, "attempt": attempt},
            }
        )
        details = {"id": migration.id, "version": migration.version, "attempt": attempt}

        self._events.emit("migration.started", f"Applying {migration.id}", details=details)
        migration.transition(MigrationStatus.RUNNING)
        start = time.monotonic()
        try:
            if self._is_transactional(migration):
                async with self._client.transaction() as tx:
                    await self._execute_script(tx, migration.sql, transactional=True)
                    await self._record(
                        tx, migration, MigrationStatus.COMPLETED, _elapsed_ms(start), None
                    )
            else:
                await self._execute_script(self._client, migration.sql, transactional=False)
                await self._record(
                    self._client, migration, MigrationStatus.COMPLETED, _elapsed_ms(start), None
                )
        except Exception as e:
            migration.execution_time = _elapsed_ms(start)
            migration.error = str(e)
            migration.transition(MigrationStatus.FAILED)
            try:
                # The migration's own transaction is gone; record on a fresh one
                await self._record(
                    self._client,
                    migration,
                    MigrationStatus.FAILED,
                    migration.execution_time,
                    migration.error,
                )
            except Exception as record_error:
                logger.error(
                    f"Failed to record FAILED status for {migration.id}: {record_error}"
                )
            self._events.emit(
                "migration.failed",
                f"Migration {migration.id} failed: {e}",
                level="error",
                details=details,
                duration_ms=migration.execution_time,
                alert=True,
            )
            return migration

        migration.execution_time = _elapsed_ms(start)
        migration.executed_at = datetime.now(timezone.utc)
        migration.transition(MigrationStatus.COMPLETED)
        self._events.emit(
            "migration.completed",
            f"Applied {migration.id}",
            details=details,
            duration_ms=migration.execution_time,
        )
        return migration

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    async def rollback_migrations(
        self, target: str | None = None, options: MigrationOptions | None = None
    ) -> IntegrityResult[list[Migration]]:
        """Roll back applied migrations in descending version order.

        Args:
            target: Roll back every COMPLETED migration with a version above
                ``target``.  Without a target, only the most recent one.
            options: ``dry_run`` lists the candidates, ``force`` continues
                past failures, ``batch_size`` caps the count.

        Returns:
            IntegrityResult listing the migrations processed.  A migration
            without rollback SQL fails with ``ROLLBACK_EXECUTION_FAILED``.
        """
        options = options or MigrationOptions()
        self._events.renew()
        try:
            discovered = {m.id: m for m in self.load_migrations()}
        except IntegrityException as e:
            return IntegrityResult.fail(e)

        if options.dry_run:
            try:
                return IntegrityResult.ok(
                    self._rollback_candidates(await self._tracked(), target, options)
                )
            except Exception as e:
                return IntegrityResult.fail(
                    IntegrityError(
                        code=ErrorCode.ROLLBACK_EXECUTION_FAILED,
                        message=f"Failed to read migration status: {e}",
                    )
                )

        init = await self.initialize()
        if not init.success:
            return IntegrityResult.fail(init.error)

        try:
            async with self._client.transaction() as lock_tx:
                await self._acquire_lock(lock_tx)
                candidates = self._rollback_candidates(await self._tracked(), target, options)
                return await self._rollback_locked(candidates, discovered, options)
        except IntegrityException as e:
            return IntegrityResult.fail(e)
        except Exception as e:
            return IntegrityResult.fail(
                IntegrityError(
                    code=ErrorCode.ROLLBACK_EXECUTION_FAILED,
                    message=f"Rollback failed: {e}",
                )
            )

    def _rollback_candidates(
        self, tracked: dict[str, Migration], target: str | None, options: MigrationOptions
    ) -> list[Migration]:
        completed = sorted(
            (m for m in tracked.values() if m.status == MigrationStatus.COMPLETED),
            key=lambda m: files.version_key(m.version),
            reverse=True,
        )
        if target is None:
            return completed[:1]
        target_key = files.version_key(target)
        return self._batch(
            [m for m in completed if files.version_key(m.version) > target_key], options
        )

    async def _rollback_locked(
        self,
        candidates: list[Migration],
        discovered: dict[str, Migration],
        options: MigrationOptions,
    ) -> IntegrityResult[list[Migration]]:
        processed: list[Migration] = []
        first_error: IntegrityError | None = None
        for row in candidates:
            error = await self._rollback_one(row, discovered.get(row.id))
            processed.append(row)
            if error is not None:
                first_error = first_error or error
                if not options.force:
                    break

        if first_error is not None:
            return IntegrityResult.fail(first_error, data=processed)
        return IntegrityResult.ok(processed)

    async def _rollback_one(
        self, row: Migration, source: Migration | None
    ) -> IntegrityError | None:
        """Roll back one migration in place; returns the error on failure."""
        details = {"id": row.id, "version": row.version}
        rollback_sql = source.rollback_sql if source is not None else None
        if not rollback_sql:
            message = f"No rollback SQL for migration {row.id}"
            self._events.emit(
                "migration.rollback.failed", message, level="error", details=details, alert=True
            )
            return IntegrityError(
                code=ErrorCode.ROLLBACK_EXECUTION_FAILED,
                message=message,
                migration_id=row.id,
                version=row.version,
            )

        transactional = self._is_transactional(source)
        start = time.monotonic()
        rolled_back = row.model_copy(
            update={
                "metadata": {
                    **row.metadata,
                    "rolled_back_at": datetime.now(timezone.utc).isoformat(),
                }
            }
        )
        try:
            if transactional:
                async with self._client.transaction() as tx:
                    await self._execute_script(tx, rollback_sql, transactional=True)
                    await self._update(tx, rolled_back, MigrationStatus.ROLLED_BACK, None)
            else:
                await self._execute_script(self._client, rollback_sql, transactional=False)
                await self._update(self._client, rolled_back, MigrationStatus.ROLLED_BACK, None)
        except Exception as e:
            row.error = f"Rollback failed: {e}"
            try:
                await self._update(self._client, row, MigrationStatus.COMPLETED, row.error)
            except Exception as record_error:
                logger.error(f"Failed to record rollback error for {row.id}: {record_error}")
            self._events.emit(
                "migration.rollback.failed",
                f"Rollback of {row.id} failed: {e}",
                level="error",
                details=details,
                duration_ms=_elapsed_ms(start),
                alert=True,
            )
            return IntegrityError(
                code=ErrorCode.ROLLBACK_EXECUTION_FAILED,
                message=f"Rollback of {row.id} failed: {e}",
                migration_id=row.id,
                version=row.version,
            )

        row.metadata = rolled_back.metadata
        row.transition(MigrationStatus.ROLLED_BACK)
        self._events.emit(
            "migration.rollback.completed",
            f"Rolled back {row.id}",
            details=details,
            duration_ms=_elapsed_ms(start),
        )
        return None

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def forget_migration(self, migration_id: str) -> IntegrityResult[None]:
        """Delete a FAILED or ROLLED_BACK tracking row.

        COMPLETED rows are refused: their schema changes are in place.
        """
        try:
            tracked = await self._tracked()
            row = tracked.get(migration_id)
            if row is None:
                raise IntegrityException(
                    ErrorCode.MIGRATION_EXECUTION_FAILED,
                    f"Migration {migration_id} is not tracked",
                    migration_id=migration_id,
                )
            if row.status == MigrationStatus.COMPLETED:
                raise IntegrityException(
                    ErrorCode.MIGRATION_EXECUTION_FAILED,
                    f"Refusing to forget COMPLETED migration {migration_id}; roll it back first",
                    migration_id=migration_id,
                    version=row.version,
                )
            await self._client.query(
                DELETE_TRACKED.format(table=self._table), {"id": migration_id}
            )
        except IntegrityException as e:
            return IntegrityResult.fail(e)
        except Exception as e:
            return IntegrityResult.fail(
                IntegrityError(
                    code=ErrorCode.MIGRATION_EXECUTION_FAILED,
                    message=f"Failed to forget migration {migration_id}: {e}",
                    migration_id=migration_id,
                )
            )
        logger.info(f"Removed tracking row for {migration_id}")
        return IntegrityResult.ok(None)
