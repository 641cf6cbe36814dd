"""db-integrity: Schema snapshots, migrations, and drift repair for PostgreSQL.

Introspects a live database into an immutable snapshot, diffs snapshots
into ordered DDL with rollback, detects drift between a declared and a live
schema, and applies versioned migration files under an advisory lock.

Usage:
    from db_integrity import SchemaIntrospector, MigrationEngine, MigrationGenerator
    from db_integrity import diff_schemas, detect_drift, load_snapshot
    from db_integrity import AsyncPostgresAdapter, get_adapter, load_db_config
"""

__version__ = "0.1.0"

# Adapters
from db_integrity.adapters.base import DatabaseClient
from db_integrity.adapters.postgres import AsyncPostgresAdapter

# Config
from db_integrity.config.loader import load_db_config
from db_integrity.config.models import (
    DatabaseConfig,
    DatabaseProfile,
    MigrationConfig,
    SchemaConfig,
)

# Errors and events
from db_integrity.errors import ErrorCode, IntegrityError, IntegrityResult
from db_integrity.events import EventSink, IntegrityEvent, LoggingEventSink, MemoryEventSink

# Factory
from db_integrity.factory import (
    ProfileNotFoundError,
    connect_and_validate,
    get_adapter,
    resolve_url,
)

# Migrations
from db_integrity.migration.engine import MigrationEngine
from db_integrity.migration.generator import MigrationGenerator
from db_integrity.migration.models import (
    FormField,
    GeneratedMigration,
    GenerateOptions,
    Migration,
    MigrationOptions,
    MigrationStatus,
    MigrationType,
)

# Schema
from db_integrity.schema.comparator import detect_drift, diff_schemas
from db_integrity.schema.introspector import SchemaIntrospector
from db_integrity.schema.models import DatabaseSchema, DriftReport, Table
from db_integrity.schema.snapshot import load_snapshot, save_snapshot

__all__ = [
    # Adapters
    "DatabaseClient",
    "AsyncPostgresAdapter",
    # Config
    "load_db_config",
    "DatabaseConfig",
    "DatabaseProfile",
    "MigrationConfig",
    "SchemaConfig",
    # Errors and events
    "ErrorCode",
    "IntegrityError",
    "IntegrityResult",
    "EventSink",
    "IntegrityEvent",
    "LoggingEventSink",
    "MemoryEventSink",
    # Factory
    "get_adapter",
    "connect_and_validate",
    "ProfileNotFoundError",
    "resolve_url",
    # Migrations
    "MigrationEngine",
    "MigrationGenerator",
    "Migration",
    "MigrationOptions",
    "MigrationStatus",
    "MigrationType",
    "GenerateOptions",
    "GeneratedMigration",
    "FormField",
    # Schema
    "SchemaIntrospector",
    "DatabaseSchema",
    "DriftReport",
    "Table",
    "diff_schemas",
    "detect_drift",
    "load_snapshot",
    "save_snapshot",
]
