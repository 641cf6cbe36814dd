"""Shared schema fixtures: a two-table ``users`` / ``orders`` shop schema."""

import pytest

from db_integrity.schema.models import (
    AUTO_INCREMENT,
    Column,
    ColumnReference,
    Constraint,
    ConstraintKind,
    DatabaseSchema,
    DefaultValue,
    ForeignKey,
    Index,
    PrimaryKey,
    Table,
)

NOW = DefaultValue(kind="expression", value="now()")


def make_users() -> Table:
    """``users`` with a SERIAL key, a uniquely constrained email, and a timestamp."""
    return Table(
        name="users",
        columns=[
            Column(
                name="id",
                data_type="integer",
                nullable=False,
                default=AUTO_INCREMENT,
                primary_key=True,
                auto_increment=True,
            ),
            Column(name="email", data_type="varchar(255)", nullable=False, unique=True),
            Column(name="created_at", data_type="timestamptz", nullable=False, default=NOW),
        ],
        primary_key=PrimaryKey(name="users_pkey", columns=["id"]),
        indexes=[
            Index(name="users_pkey", table="users", columns=["id"], unique=True, primary=True),
        ],
        constraints=[
            Constraint(
                name="users_email_key",
                table="users",
                kind=ConstraintKind.UNIQUE,
                definition="UNIQUE (email)",
                columns=["email"],
            ),
        ],
    )


def make_orders() -> Table:
    """``orders`` referencing ``users`` with an index and a status check."""
    return Table(
        name="orders",
        columns=[
            Column(
                name="id",
                data_type="integer",
                nullable=False,
                default=AUTO_INCREMENT,
                primary_key=True,
                auto_increment=True,
            ),
            Column(
                name="user_id",
                data_type="integer",
                nullable=False,
                references=ColumnReference(table="users", column="id", on_delete="CASCADE"),
            ),
            Column(
                name="status",
                data_type="varchar(20)",
                nullable=False,
                default=DefaultValue(kind="literal", value="pending"),
            ),
            Column(
                name="total",
                data_type="numeric(10,2)",
                nullable=False,
                default=DefaultValue(kind="literal", value=0),
            ),
        ],
        primary_key=PrimaryKey(name="orders_pkey", columns=["id"]),
        foreign_keys=[
            ForeignKey(
                name="orders_user_id_fkey",
                columns=["user_id"],
                referenced_table="users",
                referenced_columns=["id"],
                on_delete="CASCADE",
            ),
        ],
        indexes=[
            Index(name="orders_pkey", table="orders", columns=["id"], unique=True, primary=True),
            Index(name="idx_orders_user_id", table="orders", columns=["user_id"]),
        ],
        constraints=[
            Constraint(
                name="orders_status_check",
                table="orders",
                kind=ConstraintKind.CHECK,
                definition="CHECK (status IN ('pending', 'paid', 'shipped'))",
                columns=["status"],
            ),
        ],
    )


def make_schema(*tables: Table) -> DatabaseSchema:
    return DatabaseSchema.build(list(tables))


@pytest.fixture
def users() -> Table:
    return make_users()


@pytest.fixture
def orders() -> Table:
    return make_orders()


@pytest.fixture
def shop_schema() -> DatabaseSchema:
    return make_schema(make_users(), make_orders())
