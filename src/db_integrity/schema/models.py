"""Pydantic models for a normalized relational schema snapshot.

Every model is frozen: a ``DatabaseSchema`` is built once (by the
introspector, or by loading a persisted ``schema.json``) and then only
read -- by the differ, the drift detector, and the generators.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from db_integrity.errors import Scalar


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


# ============================================================================
# Columns
# ============================================================================


class DefaultValue(_Frozen):
    """Parsed column default.

    ``literal`` holds a typed value (str/int/float/bool), ``expression`` holds
    raw SQL such as ``now()``, and ``auto_increment`` marks sequence-backed
    or identity columns.
    """

    kind: Literal["literal", "expression", "auto_increment"]
    value: Scalar = None


AUTO_INCREMENT = DefaultValue(kind="auto_increment")


class ColumnReference(_Frozen):
    """Single-column foreign key target."""

    table: str
    column: str
    on_delete: str | None = None
    on_update: str | None = None


class Column(_Frozen):
    """Schema for a table column."""

    name: str
    data_type: str
    nullable: bool = True
    default: DefaultValue | None = None
    primary_key: bool = False
    unique: bool = False
    auto_increment: bool = False
    references: ColumnReference | None = None
    comment: str | None = None

    def comparable(self) -> tuple:
        """Fields that define column equality for diffing."""
        return (self.data_type, self.nullable, self.default, self.unique)


# ============================================================================
# Keys, Indexes, Constraints
# ============================================================================


class PrimaryKey(_Frozen):
    name: str | None = None
    columns: list[str]


class ForeignKey(_Frozen):
    """Structural foreign key (possibly composite)."""

    name: str
    columns: list[str]
    referenced_table: str
    referenced_columns: list[str]
    on_delete: str | None = None
    on_update: str | None = None


class Index(_Frozen):
    """Schema for an index.

    ``concurrently`` is a build flag chosen by the caller, not something read
    from the catalog; indexes built concurrently cannot run inside a
    transaction block.
    """

    name: str
    table: str
    columns: list[str] = Field(default_factory=list)
    unique: bool = False
    method: str = "btree"
    where: str | None = None
    primary: bool = False
    concurrently: bool = False

    def comparable(self) -> tuple:
        return (self.table, tuple(self.columns), self.unique, self.method, self.where)


class ConstraintKind(str, Enum):
    CHECK = "check"
    FOREIGN_KEY = "foreign_key"
    PRIMARY_KEY = "primary_key"
    UNIQUE = "unique"
    EXCLUDE = "exclude"


class Constraint(_Frozen):
    """Table constraint; ``definition`` is kept as opaque SQL text."""

    name: str
    table: str
    kind: ConstraintKind
    definition: str
    columns: list[str] = Field(default_factory=list)

    def comparable(self) -> tuple:
        return (self.table, self.kind, " ".join(self.definition.split()))


# ============================================================================
# Tables
# ============================================================================


class Table(_Frozen):
    """Schema for a table.

    Every column named by the primary key, an index, or a foreign key must
    exist in ``columns``.
    """

    name: str
    schema_name: str = "public"
    columns: list[Column] = Field(default_factory=list)
    primary_key: PrimaryKey | None = None
    foreign_keys: list[ForeignKey] = Field(default_factory=list)
    indexes: list[Index] = Field(default_factory=list)
    constraints: list[Constraint] = Field(default_factory=list)
    comment: str | None = None

    @model_validator(mode="after")
    def _check_column_references(self) -> "Table":
        names = {col.name for col in self.columns}
        referenced: list[tuple[str, str]] = []
        if self.primary_key:
            referenced += [("primary key", c) for c in self.primary_key.columns]
        for fk in self.foreign_keys:
            referenced += [(f"foreign key {fk.name}", c) for c in fk.columns]
        for idx in self.indexes:
            # Expression indexes list their expression, not a column name
            referenced += [
                (f"index {idx.name}", c) for c in idx.columns if c.isidentifier()
            ]
        for owner, col in referenced:
            if col not in names:
                raise ValueError(
                    f"{owner} on table '{self.name}' references unknown column '{col}'"
                )
        return self

    @property
    def qualified_name(self) -> str:
        return f"{self.schema_name}.{self.name}"

    @property
    def display_name(self) -> str:
        """Bare name in ``public``, schema-qualified elsewhere."""
        return self.name if self.schema_name == "public" else self.qualified_name

    def get_column(self, name: str) -> Column | None:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    def column_names(self) -> list[str]:
        return [col.name for col in self.columns]

    def has_unique_constraint(self, column: str) -> bool:
        """True if a unique constraint covers exactly ``column``."""
        return any(
            c.kind == ConstraintKind.UNIQUE and c.columns == [column]
            for c in self.constraints
        )

    def fk_constraints(self) -> list[Constraint]:
        """Foreign keys rendered as opaque ``foreign_key`` constraints."""
        result = []
        for fk in self.foreign_keys:
            definition = (
                f"FOREIGN KEY ({', '.join(fk.columns)}) "
                f"REFERENCES {fk.referenced_table}({', '.join(fk.referenced_columns)})"
            )
            if fk.on_delete and fk.on_delete.upper() != "NO ACTION":
                definition += f" ON DELETE {fk.on_delete.upper()}"
            if fk.on_update and fk.on_update.upper() != "NO ACTION":
                definition += f" ON UPDATE {fk.on_update.upper()}"
            result.append(
                Constraint(
                    name=fk.name,
                    table=self.display_name,
                    kind=ConstraintKind.FOREIGN_KEY,
                    definition=definition,
                    columns=list(fk.columns),
                )
            )
        return result


# ============================================================================
# Views, Functions, Enums
# ============================================================================


class ViewColumn(_Frozen):
    name: str
    data_type: str
    nullable: bool = True


class View(_Frozen):
    name: str
    schema_name: str = "public"
    definition: str = ""
    columns: list[ViewColumn] = Field(default_factory=list)


class FunctionParameter(_Frozen):
    name: str | None = None
    data_type: str
    mode: Literal["IN", "OUT", "INOUT", "VARIADIC"] = "IN"
    default: str | None = None


class DatabaseFunction(_Frozen):
    name: str
    schema_name: str = "public"
    parameters: list[FunctionParameter] = Field(default_factory=list)
    return_type: str = ""
    language: str = ""
    definition: str = ""


class EnumType(_Frozen):
    """Native ``CREATE TYPE ... AS ENUM`` type."""

    name: str
    schema_name: str = "public"
    values: list[str] = Field(default_factory=list)


# ============================================================================
# Snapshot
# ============================================================================


class DatabaseSchema(_Frozen):
    """Complete, immutable schema snapshot.

    ``indexes`` and ``constraints`` are flattened across tables; column
    ``references`` must point at a table/column present in the snapshot.
    """

    version: str = "1"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    tables: list[Table] = Field(default_factory=list)
    views: list[View] = Field(default_factory=list)
    functions: list[DatabaseFunction] = Field(default_factory=list)
    enums: list[EnumType] = Field(default_factory=list)
    indexes: list[Index] = Field(default_factory=list)
    constraints: list[Constraint] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_references(self) -> "DatabaseSchema":
        by_name = {table.name: table for table in self.tables}
        for table in self.tables:
            for col in table.columns:
                ref = col.references
                if ref is None:
                    continue
                target = by_name.get(ref.table.split(".")[-1])
                if target is None or target.get_column(ref.column) is None:
                    raise ValueError(
                        f"Column {table.name}.{col.name} references "
                        f"missing {ref.table}.{ref.column}"
                    )
        return self

    @classmethod
    def build(cls, tables: list[Table], **kwargs) -> "DatabaseSchema":
        """Build a snapshot, deriving the flattened index/constraint lists."""
        return cls(
            tables=tables,
            indexes=[idx for table in tables for idx in table.indexes],
            constraints=[c for table in tables for c in table.constraints],
            **kwargs,
        )

    def get_table(self, name: str) -> Table | None:
        for table in self.tables:
            if table.name == name or table.qualified_name == name:
                return table
        return None

    def table_names(self) -> list[str]:
        return [table.name for table in self.tables]


# ============================================================================
# Drift
# ============================================================================


class DriftType(str, Enum):
    MISSING_TABLE = "missing_table"
    EXTRA_TABLE = "extra_table"
    MISSING_COLUMN = "missing_column"
    EXTRA_COLUMN = "extra_column"
    COLUMN_TYPE_MISMATCH = "column_type_mismatch"
    CONSTRAINT_MISMATCH = "constraint_mismatch"
    INDEX_MISMATCH = "index_mismatch"


class Drift(BaseModel):
    """One divergence between an expected and a live schema.

    ``object`` names the table, column, index, or constraint; ``expected``
    and ``actual`` describe each side (``None`` when absent).
    """

    type: DriftType
    table: str
    object: str
    expected: str | None = None
    actual: str | None = None

    def describe(self) -> str:
        return (
            f"{self.type.value}: {self.table}.{self.object} "
            f"(expected={self.expected!r}, actual={self.actual!r})"
        )


class DriftReport(BaseModel):
    drifts: list[Drift] = Field(default_factory=list)

    @property
    def has_drift(self) -> bool:
        return bool(self.drifts)

    def by_type(self, drift_type: DriftType) -> list[Drift]:
        return [d for d in self.drifts if d.type == drift_type]
