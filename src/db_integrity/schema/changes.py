"""Typed schema changes produced by the differ and drift repair.

``SchemaChange`` is a discriminated union on ``kind``.  Every change knows
its execution ``phase`` (see ``Phase``) and its ``inverse()``, which is all
the generator needs to order forward DDL and derive rollback DDL.
"""

from enum import IntEnum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from db_integrity.schema.models import Column, Constraint, Index, Table


class Phase(IntEnum):
    """Dependency-safe execution order for DDL."""

    DROP_CONSTRAINTS = 1
    DROP_INDEXES = 2
    DROP_COLUMNS = 3
    DROP_TABLES = 4
    CREATE_TABLES = 5
    ADD_ALTER_COLUMNS = 6
    CREATE_INDEXES = 7
    ADD_CONSTRAINTS = 8


class _Change(BaseModel):
    model_config = ConfigDict(frozen=True)


class CreateTable(_Change):
    kind: Literal["create_table"] = "create_table"
    table: Table

    @property
    def phase(self) -> Phase:
        return Phase.CREATE_TABLES

    def inverse(self) -> "DropTable":
        return DropTable(table=self.table)


class DropTable(_Change):
    kind: Literal["drop_table"] = "drop_table"
    table: Table

    @property
    def phase(self) -> Phase:
        return Phase.DROP_TABLES

    def inverse(self) -> CreateTable:
        return CreateTable(table=self.table)


class AddColumn(_Change):
    """Add ``column`` to ``table``.

    ``unique_managed`` means a named unique constraint on the column is added
    by its own change, so the column is rendered without inline ``UNIQUE``.
    """

    kind: Literal["add_column"] = "add_column"
    table: str
    column: Column
    unique_managed: bool = False

    @property
    def phase(self) -> Phase:
        return Phase.ADD_ALTER_COLUMNS

    def inverse(self) -> "DropColumn":
        return DropColumn(
            table=self.table, column=self.column, unique_managed=self.unique_managed
        )


class DropColumn(_Change):
    kind: Literal["drop_column"] = "drop_column"
    table: str
    column: Column
    unique_managed: bool = False

    @property
    def phase(self) -> Phase:
        return Phase.DROP_COLUMNS

    def inverse(self) -> AddColumn:
        return AddColumn(
            table=self.table, column=self.column, unique_managed=self.unique_managed
        )


class AlterColumn(_Change):
    """Change a column from ``old`` to ``new``.

    ``unique_managed`` is set when a named unique constraint covering the
    column is diffed separately, so the column-level unique flag is not
    rendered twice.
    """

    kind: Literal["alter_column"] = "alter_column"
    table: str
    old: Column
    new: Column
    unique_managed: bool = False

    @property
    def phase(self) -> Phase:
        return Phase.ADD_ALTER_COLUMNS

    def inverse(self) -> "AlterColumn":
        return AlterColumn(
            table=self.table,
            old=self.new,
            new=self.old,
            unique_managed=self.unique_managed,
        )


class CreateIndex(_Change):
    kind: Literal["create_index"] = "create_index"
    index: Index

    @property
    def phase(self) -> Phase:
        return Phase.CREATE_INDEXES

    def inverse(self) -> "DropIndex":
        return DropIndex(index=self.index)


class DropIndex(_Change):
    kind: Literal["drop_index"] = "drop_index"
    index: Index

    @property
    def phase(self) -> Phase:
        return Phase.DROP_INDEXES

    def inverse(self) -> CreateIndex:
        return CreateIndex(index=self.index)


class AddConstraint(_Change):
    kind: Literal["add_constraint"] = "add_constraint"
    constraint: Constraint

    @property
    def phase(self) -> Phase:
        return Phase.ADD_CONSTRAINTS

    def inverse(self) -> "DropConstraint":
        return DropConstraint(constraint=self.constraint)


class DropConstraint(_Change):
    kind: Literal["drop_constraint"] = "drop_constraint"
    constraint: Constraint

    @property
    def phase(self) -> Phase:
        return Phase.DROP_CONSTRAINTS

    def inverse(self) -> AddConstraint:
        return AddConstraint(constraint=self.constraint)


SchemaChange = Annotated[
    Union[
        CreateTable,
        DropTable,
        AddColumn,
        DropColumn,
        AlterColumn,
        CreateIndex,
        DropIndex,
        AddConstraint,
        DropConstraint,
    ],
    Field(discriminator="kind"),
]


def order_changes(changes: list[SchemaChange]) -> list[SchemaChange]:
    """Stable sort of changes into the eight dependency phases.

    Drops of constraints and indexes come before the columns and tables
    they depend on; constraints are added only after every table, column,
    and index they might reference exists.
    """
    return sorted(changes, key=lambda change: change.phase)


def invert_changes(changes: list[SchemaChange]) -> list[SchemaChange]:
    """Reverse the input list and invert each change (before re-ordering)."""
    return [change.inverse() for change in reversed(changes)]
