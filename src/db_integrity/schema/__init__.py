"""Schema snapshots, comparison, and DDL rendering.

Provides live database introspection (``SchemaIntrospector``), snapshot
diffing (``diff_schemas``) and drift detection (``detect_drift``), typed
schema changes with phase ordering (``order_changes``), and snapshot
persistence (``save_snapshot``, ``load_snapshot``).

Usage:
    from db_integrity.schema import SchemaIntrospector, diff_schemas, detect_drift
    from db_integrity.schema import load_snapshot, order_changes
"""

from db_integrity.schema.changes import (
    AddColumn,
    AddConstraint,
    AlterColumn,
    CreateIndex,
    CreateTable,
    DropColumn,
    DropConstraint,
    DropIndex,
    DropTable,
    Phase,
    SchemaChange,
    invert_changes,
    order_changes,
)
from db_integrity.schema.comparator import detect_drift, diff_schemas
from db_integrity.schema.introspector import SchemaIntrospector
from db_integrity.schema.models import (
    Column,
    Constraint,
    ConstraintKind,
    DatabaseFunction,
    DatabaseSchema,
    DefaultValue,
    Drift,
    DriftReport,
    DriftType,
    EnumType,
    ForeignKey,
    Index,
    PrimaryKey,
    Table,
    View,
)
from db_integrity.schema.snapshot import load_snapshot, save_snapshot

__all__ = [
    "SchemaIntrospector",
    "diff_schemas",
    "detect_drift",
    "load_snapshot",
    "save_snapshot",
    "order_changes",
    "invert_changes",
    "Phase",
    "SchemaChange",
    "CreateTable",
    "DropTable",
    "AddColumn",
    "DropColumn",
    "AlterColumn",
    "CreateIndex",
    "DropIndex",
    "AddConstraint",
    "DropConstraint",
    "Column",
    "Constraint",
    "ConstraintKind",
    "DatabaseFunction",
    "DatabaseSchema",
    "DefaultValue",
    "Drift",
    "DriftReport",
    "DriftType",
    "EnumType",
    "ForeignKey",
    "Index",
    "PrimaryKey",
    "Table",
    "View",
]
