"""Tests for generated Python source: record types and declarative models.

Generated modules are parsed with ``ast`` and executed, so a rendering bug
that produces invalid or unimportable code fails here.
"""

import ast

from conftest import make_schema

from db_integrity.schema.declarative import render_declarative
from db_integrity.schema.models import (
    Column,
    Constraint,
    ConstraintKind,
    DatabaseSchema,
    EnumType,
    Table,
)
from db_integrity.schema.typegen import extract_check_enums, generate_types, write_types


def _exec(source: str) -> dict:
    namespace: dict = {}
    exec(compile(source, "<generated>", "exec"), namespace)
    return namespace


# ============================================================================
# Test: generate_types()
# ============================================================================


class TestGenerateTypes:
    """Verify TypedDict and Enum generation."""

    def test_module_is_valid(self, shop_schema) -> None:
        source = generate_types(shop_schema)
        ast.parse(source)
        namespace = _exec(source)
        assert {"Users", "Orders", "CreateOrdersInput", "UpdateOrdersInput"} <= set(namespace)

    def test_check_constraint_enum(self, shop_schema) -> None:
        """CHECK (status IN (...)) becomes a str Enum used by the record types."""
        source = generate_types(shop_schema)

        assert "class OrdersStatus(str, Enum):" in source
        assert "    PENDING = 'pending'" in source
        assert "    status: OrdersStatus" in source
        assert _exec(source)["OrdersStatus"]("paid").name == "PAID"

    def test_create_input_marks_defaults_not_required(self, shop_schema) -> None:
        source = generate_types(shop_schema)
        create = source[source.index("class CreateOrdersInput") :]

        assert "    id: NotRequired[int]" in create
        assert "    user_id: int" in create
        assert "    status: NotRequired[OrdersStatus]" in create
        assert "    total: NotRequired[Decimal]" in create

    def test_update_input_is_partial(self, shop_schema) -> None:
        source = generate_types(shop_schema)
        assert "class UpdateOrdersInput(TypedDict, total=False):" in source
        assert _exec(source)["UpdateOrdersInput"].__total__ is False

    def test_nullable_and_native_enum(self) -> None:
        """Nullable columns are optional; native enum columns use the enum class."""
        table = Table(
            name="tickets",
            columns=[
                Column(name="priority", data_type="ticket_priority", nullable=False),
                Column(name="notes", data_type="text"),
            ],
        )
        schema = DatabaseSchema.build(
            [table], enums=[EnumType(name="ticket_priority", values=["low", "high"])]
        )

        source = generate_types(schema)

        assert "class TicketPriority(str, Enum):" in source
        assert "    priority: TicketPriority" in source
        assert "    notes: str | None" in source

    def test_keyword_column_uses_functional_syntax(self) -> None:
        table = Table(name="rules", columns=[Column(name="class", data_type="text")])

        source = generate_types(make_schema(table))

        assert "Rules = TypedDict('Rules', {'class': str | None})" in source
        ast.parse(source)

    def test_write_types(self, tmp_path, shop_schema) -> None:
        path = write_types(shop_schema, tmp_path / "types")
        assert path == tmp_path / "types" / "models.py"
        assert path.read_text() == generate_types(shop_schema)


class TestExtractCheckEnums:
    """Verify allowed-value extraction from CHECK constraints."""

    def test_in_list(self, orders) -> None:
        assert extract_check_enums(orders) == {"status": ["pending", "paid", "shipped"]}

    def test_any_array(self) -> None:
        """The catalog's ``= ANY (ARRAY[...])`` spelling is understood."""
        table = Table(
            name="jobs",
            columns=[Column(name="state", data_type="varchar(20)")],
            constraints=[
                Constraint(
                    name="jobs_state_check",
                    table="jobs",
                    kind=ConstraintKind.CHECK,
                    definition=(
                        "CHECK (((state)::text = ANY ((ARRAY['queued'::character varying, "
                        "'done'::character varying])::text[])))"
                    ),
                    columns=["state"],
                )
            ],
        )

        assert extract_check_enums(table) == {"state": ["queued", "done"]}

    def test_non_enum_check_is_ignored(self) -> None:
        table = Table(
            name="items",
            columns=[Column(name="price", data_type="numeric")],
            constraints=[
                Constraint(
                    name="items_price_check",
                    table="items",
                    kind=ConstraintKind.CHECK,
                    definition="CHECK (price > 0)",
                    columns=["price"],
                )
            ],
        )
        assert extract_check_enums(table) == {}


# ============================================================================
# Test: render_declarative()
# ============================================================================


class TestRenderDeclarative:
    """Verify SQLAlchemy declarative output."""

    def test_mapped_classes(self, shop_schema) -> None:
        source = render_declarative(list(shop_schema.tables))

        assert "class Base(DeclarativeBase):" in source
        assert "    __tablename__ = 'orders'" in source
        assert "    id = Column(Integer, primary_key=True, autoincrement=True)" in source
        assert (
            "ForeignKey('users.id', ondelete='CASCADE', name='orders_user_id_fkey')" in source
        )
        assert "UniqueConstraint('email', name='users_email_key')" in source
        assert "Index('idx_orders_user_id', 'user_id')" in source
        assert "server_default=text('now()')" in source

    def test_parents_first(self, shop_schema) -> None:
        source = render_declarative(list(reversed(shop_schema.tables)))
        assert source.index("class Users(Base):") < source.index("class Orders(Base):")

    def test_module_executes(self, shop_schema) -> None:
        """The generated module imports and maps both tables."""
        namespace = _exec(render_declarative(list(shop_schema.tables)))

        orders = namespace["Orders"].__table__
        assert list(orders.c.keys()) == ["id", "user_id", "status", "total"]
        assert {c.name for c in orders.constraints if c.name} >= {
            "orders_status_check",
            "orders_user_id_fkey",
        }

    def test_table_without_primary_key(self) -> None:
        """Tables without a key become Table objects on Base.metadata."""
        table = Table(name="events", columns=[Column(name="payload", data_type="jsonb")])

        source = render_declarative([table])

        assert "events_table = Table(" in source
        assert "from sqlalchemy.dialects.postgresql import JSONB" in source
        namespace = _exec(source)
        assert "events" in namespace["Base"].metadata.tables

    def test_unknown_type_falls_back_to_text(self) -> None:
        table = Table(
            name="places",
            columns=[
                Column(name="id", data_type="integer", nullable=False, primary_key=True),
                Column(name="geom", data_type="geometry"),
            ],
        )
        assert "    geom = Column(Text, nullable=True)" in render_declarative([table])
