"""Pydantic models for migrations, generation output, and form input."""

from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

from db_integrity.errors import Scalar
from db_integrity.schema.changes import SchemaChange


# ============================================================================
# Migrations
# ============================================================================


class MigrationStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class MigrationType(str, Enum):
    SCHEMA = "schema"
    DATA = "data"
    SEED = "seed"


# FAILED and ROLLED_BACK are terminal for a record; a re-run starts a new
# attempt from PENDING.
ALLOWED_TRANSITIONS: dict[MigrationStatus, set[MigrationStatus]] = {
    MigrationStatus.PENDING: {
        MigrationStatus.RUNNING,
        MigrationStatus.COMPLETED,
        MigrationStatus.FAILED,
    },
    MigrationStatus.RUNNING: {MigrationStatus.COMPLETED, MigrationStatus.FAILED},
    MigrationStatus.COMPLETED: {MigrationStatus.ROLLED_BACK},
    MigrationStatus.FAILED: set(),
    MigrationStatus.ROLLED_BACK: set(),
}


class Migration(BaseModel):
    """A migration discovered on disk or read from the tracking table."""

    id: str
    version: str
    name: str
    description: str | None = None
    type: MigrationType = MigrationType.SCHEMA
    sql: str = ""
    rollback_sql: str | None = None
    checksum: str = ""
    status: MigrationStatus = MigrationStatus.PENDING
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    executed_at: datetime | None = None
    execution_time: int | None = None  # milliseconds
    error: str | None = None
    metadata: dict[str, Scalar] = Field(default_factory=dict)
    transactional: bool | None = None  # None -> use MigrationConfig.transactional
    path: str | None = None

    def transition(self, status: MigrationStatus) -> None:
        """Move to ``status``, rejecting transitions the state machine forbids."""
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(
                f"Migration {self.id}: invalid status transition "
                f"{self.status.value} -> {status.value}"
            )
        self.status = status


class MigrationOptions(BaseModel):
    """Options for ``run_migrations`` / ``rollback_migrations``."""

    dry_run: bool = False
    batch_size: int | None = Field(default=None, ge=1)
    force: bool = False
    allow_out_of_order: bool = False


# ============================================================================
# Generation
# ============================================================================


class GenerateOptions(BaseModel):
    name: str = "migration"
    description: str | None = None
    include_rollback: bool = True
    atomic: bool = False
    declarative: bool = False


class GeneratedMigration(BaseModel):
    """Forward/reverse SQL produced by the generator (nothing executed)."""

    name: str
    description: str | None = None
    up_sql: str
    down_sql: str | None = None
    declarative_schema: str | None = None
    changes: list[SchemaChange] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    # False when the SQL manages its own transaction or builds indexes
    # concurrently; written to the file as ``-- @transactional: false``
    transactional: bool = True


# ============================================================================
# Form input
# ============================================================================


class FormField(BaseModel):
    """UI form field descriptor used to derive columns."""

    name: str
    type: Literal[
        "text",
        "email",
        "password",
        "number",
        "date",
        "datetime",
        "checkbox",
        "textarea",
        "select",
    ] = "text"
    required: bool = False
    max_length: int | None = None
    min: float | None = None
    max: float | None = None
    options: list[str] = Field(default_factory=list)
