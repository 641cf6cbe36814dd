"""Migration discovery, generation, and execution.

Usage:
    from db_integrity.migration import MigrationEngine, MigrationGenerator
    from db_integrity.migration import MigrationOptions, GenerateOptions
"""

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

__all__ = [
    "MigrationEngine",
    "MigrationGenerator",
    "Migration",
    "MigrationOptions",
    "MigrationStatus",
    "MigrationType",
    "GenerateOptions",
    "GeneratedMigration",
    "FormField",
]
