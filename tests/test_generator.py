"""Tests for migration generation.

Verifies that ``MigrationGenerator``:
- Orders forward DDL by phase (constraint drops before table drops)
- Derives rollback SQL that inverts the forward SQL
- Repairs drift without ever dropping extra objects
- Maps form fields to columns and never narrows existing ones
- Keeps concurrent index builds outside BEGIN/COMMIT
- Writes migration files the engine can read back
"""

import ast
from unittest.mock import patch

import pytest
from conftest import make_schema, make_users

from db_integrity.errors import ErrorCode
from db_integrity.events import MemoryEventSink
from db_integrity.migration.files import parse_migration_file
from db_integrity.migration.generator import MigrationGenerator, assemble_sql, slugify
from db_integrity.migration.models import FormField, GenerateOptions
from db_integrity.schema.changes import (
    AddColumn,
    CreateIndex,
    DropConstraint,
    DropTable,
    Phase,
    order_changes,
)
from db_integrity.schema.comparator import diff_schemas
from db_integrity.schema.models import (
    AUTO_INCREMENT,
    Column,
    Constraint,
    ConstraintKind,
    Drift,
    DriftReport,
    DriftType,
    Index,
    PrimaryKey,
    Table,
)


def _statements(sql: str) -> list[str]:
    """Non-empty, non-comment lines of generated SQL."""
    return [
        line for line in sql.splitlines() if line.strip() and not line.startswith("--")
    ]


# ============================================================================
# Test: Phase ordering
# ============================================================================


class TestOrdering:
    """Verify forward DDL follows the eight dependency phases."""

    def test_constraint_drop_before_table_drop(self, orders) -> None:
        """A DropConstraint is always emitted before a DropTable on the same table."""
        changes = [
            DropTable(table=orders),
            DropConstraint(constraint=orders.constraints[0]),
        ]

        result = MigrationGenerator().generate(changes)

        assert result.success
        up = result.data.up_sql
        assert up.index("DROP CONSTRAINT IF EXISTS orders_status_check") < up.index(
            "DROP TABLE IF EXISTS orders"
        )

    def test_order_changes_is_stable(self, orders) -> None:
        """Changes in the same phase keep their input order."""
        first = AddColumn(table="orders", column=Column(name="a", data_type="text"))
        second = AddColumn(table="orders", column=Column(name="b", data_type="text"))
        drop = DropTable(table=orders)

        ordered = order_changes([first, drop, second])

        assert ordered == [drop, first, second]
        assert [c.phase for c in ordered] == [
            Phase.DROP_TABLES,
            Phase.ADD_ALTER_COLUMNS,
            Phase.ADD_ALTER_COLUMNS,
        ]

    def test_tables_created_parents_first(self, users, orders) -> None:
        """CreateTable changes render referenced tables before referencing ones."""
        changes = diff_schemas(make_schema(), make_schema(users, orders))
        reversed_input = list(reversed(changes))

        up = MigrationGenerator().generate(reversed_input).data.up_sql

        assert up.index("CREATE TABLE users") < up.index("CREATE TABLE orders")


# ============================================================================
# Test: Rollback
# ============================================================================


class TestRollback:
    """Verify down SQL is the inverted, re-ordered change list."""

    def test_down_sql_matches_reverse_diff(self, shop_schema, users, orders) -> None:
        """Rolling back A->B renders exactly the forward SQL of B->A."""
        notes = Column(name="notes", data_type="text")
        total = orders.get_column("total").model_copy(update={"data_type": "numeric(12,2)"})
        index = orders.indexes[1].model_copy(update={"columns": ["user_id", "status"]})
        changed_orders = orders.model_copy(
            update={
                "columns": [total if c.name == "total" else c for c in orders.columns],
                "indexes": [orders.indexes[0], index],
            }
        )
        changed_users = users.model_copy(update={"columns": users.columns + [notes]})
        target = make_schema(changed_users, changed_orders)

        generator = MigrationGenerator()
        forward = generator.generate(diff_schemas(shop_schema, target)).data
        backward = generator.generate(diff_schemas(target, shop_schema)).data

        assert forward.down_sql == backward.up_sql

    def test_added_unique_column_keeps_one_constraint(self, users) -> None:
        """A column backed by a named unique constraint is added without inline UNIQUE."""
        handle = Column(name="handle", data_type="text", unique=True)
        handle_key = Constraint(
            name="users_handle_key",
            table="users",
            kind=ConstraintKind.UNIQUE,
            definition="UNIQUE (handle)",
            columns=["handle"],
        )
        with_handle = users.model_copy(
            update={
                "columns": users.columns + [handle],
                "constraints": users.constraints + [handle_key],
            }
        )
        before, after = make_schema(users), make_schema(with_handle)

        generator = MigrationGenerator()
        forward = generator.generate(diff_schemas(before, after)).data
        backward = generator.generate(diff_schemas(after, before)).data

        assert _statements(forward.up_sql) == [
            "ALTER TABLE users ADD COLUMN handle text;",
            "ALTER TABLE users ADD CONSTRAINT users_handle_key UNIQUE (handle);",
        ]
        assert _statements(forward.down_sql) == [
            "ALTER TABLE users DROP CONSTRAINT IF EXISTS users_handle_key;",
            "ALTER TABLE users DROP COLUMN IF EXISTS handle;",
        ]
        assert backward.down_sql == forward.up_sql

    def test_serial_default_is_restored(self, users) -> None:
        """Dropping a SERIAL default rolls back to a sequence-backed default."""
        plain_id = users.get_column("id").model_copy(
            update={"default": None, "auto_increment": False}
        )
        plain = users.model_copy(
            update={"columns": [plain_id if c.name == "id" else c for c in users.columns]}
        )

        generator = MigrationGenerator()
        forward = generator.generate(diff_schemas(make_schema(users), make_schema(plain))).data
        backward = generator.generate(diff_schemas(make_schema(plain), make_schema(users))).data

        assert _statements(forward.up_sql) == ["ALTER TABLE users ALTER COLUMN id DROP DEFAULT;"]
        assert _statements(forward.down_sql) == [
            "CREATE SEQUENCE IF NOT EXISTS users_id_seq OWNED BY users.id;",
            "SELECT setval('users_id_seq', "
            "COALESCE((SELECT max(id) FROM users), 0) + 1, false);",
            "ALTER TABLE users ALTER COLUMN id SET DEFAULT nextval('users_id_seq'::regclass);",
        ]
        assert forward.down_sql == backward.up_sql

    def test_down_sql_drops_created_table(self, orders) -> None:
        """A created table is dropped on rollback."""
        changes = diff_schemas(make_schema(make_users()), make_schema(make_users(), orders))

        result = MigrationGenerator().generate(changes)

        assert _statements(result.data.down_sql) == ["DROP TABLE IF EXISTS orders;"]

    def test_rollback_can_be_disabled(self, orders) -> None:
        """include_rollback=False yields no down SQL."""
        changes = [AddColumn(table="orders", column=Column(name="notes", data_type="text"))]

        result = MigrationGenerator().generate(
            changes, GenerateOptions(include_rollback=False)
        )

        assert result.data.down_sql is None

    def test_empty_change_list(self) -> None:
        """No changes produce a placeholder script, not an error."""
        result = MigrationGenerator().generate([])

        assert result.success
        assert result.data.up_sql == "-- No schema changes\n"


# ============================================================================
# Test: generate_create_table()
# ============================================================================


class TestGenerateCreateTable:
    """Verify CREATE TABLE output with constraints, indexes, and its DROP."""

    def test_create_table_statements(self, orders) -> None:
        """Columns, inline keys, constraints, and indexes in that order."""
        result = MigrationGenerator().generate_create_table(orders)

        assert result.success
        up = result.data.up_sql
        assert "CREATE TABLE orders (" in up
        assert "    id SERIAL PRIMARY KEY," in up
        assert "    status varchar(20) NOT NULL DEFAULT 'pending'," in up
        assert (
            "CONSTRAINT orders_user_id_fkey FOREIGN KEY (user_id) "
            "REFERENCES users(id) ON DELETE CASCADE"
        ) in up
        check = (
            "ALTER TABLE orders ADD CONSTRAINT orders_status_check "
            "CHECK (status IN ('pending', 'paid', 'shipped'));"
        )
        index = "CREATE INDEX idx_orders_user_id ON orders (user_id);"
        assert up.index("CREATE TABLE orders") < up.index(check) < up.index(index)

    def test_drop_is_cascade(self, orders) -> None:
        """The rollback drops the table with CASCADE."""
        result = MigrationGenerator().generate_create_table(orders)
        assert result.data.down_sql == "DROP TABLE IF EXISTS orders CASCADE;\n"

    def test_comments(self) -> None:
        """Table and column comments become COMMENT ON statements."""
        table = Table(
            name="notes",
            comment="Free-form notes",
            columns=[Column(name="body", data_type="text", comment="It's markdown")],
        )

        up = MigrationGenerator().generate_create_table(table).data.up_sql

        assert "COMMENT ON TABLE notes IS 'Free-form notes';" in up
        assert "COMMENT ON COLUMN notes.body IS 'It''s markdown';" in up


# ============================================================================
# Test: generate_from_drift_report()
# ============================================================================


class TestDriftRepair:
    """Verify drift repair migrations."""

    def test_missing_column_on_orders(self, shop_schema) -> None:
        """One MISSING_COLUMN yields exactly one ALTER TABLE orders ADD COLUMN."""
        report = DriftReport(
            drifts=[
                Drift(
                    type=DriftType.MISSING_COLUMN,
                    table="orders",
                    object="total",
                    expected="numeric(10,2)",
                ),
                Drift(
                    type=DriftType.EXTRA_TABLE,
                    table="audit_log",
                    object="audit_log",
                    actual="audit_log",
                ),
            ]
        )

        result = MigrationGenerator().generate_from_drift_report(report, shop_schema)

        assert result.success
        statements = _statements(result.data.up_sql)
        assert statements == [
            "ALTER TABLE orders ADD COLUMN total numeric(10,2) NOT NULL DEFAULT 0;"
        ]
        assert "-- Manual review needed: Extra table 'audit_log' found" in result.data.up_sql
        assert not any("audit_log" in s for s in statements)

    def test_missing_column_without_expected_schema(self) -> None:
        """Without an expected schema the drift's type is used, nullable."""
        report = DriftReport(
            drifts=[
                Drift(
                    type=DriftType.MISSING_COLUMN,
                    table="orders",
                    object="total",
                    expected="numeric(10,2)",
                )
            ]
        )

        result = MigrationGenerator().generate_from_drift_report(report)

        assert _statements(result.data.up_sql) == [
            "ALTER TABLE orders ADD COLUMN total numeric(10,2);"
        ]

    def test_not_null_without_default_is_relaxed(self, shop_schema) -> None:
        """A NOT NULL column without a default is added nullable with a warning."""
        report = DriftReport(
            drifts=[
                Drift(
                    type=DriftType.MISSING_COLUMN,
                    table="users",
                    object="email",
                    expected="varchar(255)",
                )
            ]
        )

        result = MigrationGenerator().generate_from_drift_report(report, shop_schema)

        assert _statements(result.data.up_sql) == [
            "ALTER TABLE users ADD COLUMN email varchar(255);"
        ]
        assert len(result.data.warnings) == 1
        assert "users.email" in result.data.warnings[0]

    def test_extra_column_is_comment_only(self) -> None:
        """EXTRA_COLUMN never becomes a DROP."""
        report = DriftReport(
            drifts=[
                Drift(
                    type=DriftType.EXTRA_COLUMN,
                    table="orders",
                    object="legacy_code",
                    actual="text",
                )
            ]
        )

        result = MigrationGenerator().generate_from_drift_report(report)

        assert _statements(result.data.up_sql) == []
        assert "DROP" not in result.data.up_sql
        assert "Extra column 'orders.legacy_code'" in result.data.up_sql

    def test_missing_table_is_created(self, shop_schema) -> None:
        """MISSING_TABLE recreates the table from the expected schema."""
        report = DriftReport(
            drifts=[
                Drift(
                    type=DriftType.MISSING_TABLE,
                    table="orders",
                    object="orders",
                    expected="orders",
                )
            ]
        )

        result = MigrationGenerator().generate_from_drift_report(report, shop_schema)

        assert "CREATE TABLE orders (" in result.data.up_sql
        assert _statements(result.data.down_sql) == ["DROP TABLE IF EXISTS orders;"]

    def test_index_repairs(self, shop_schema) -> None:
        """A missing index is created; a differing one is dropped and recreated."""
        generator = MigrationGenerator()
        missing = DriftReport(
            drifts=[
                Drift(
                    type=DriftType.INDEX_MISMATCH,
                    table="orders",
                    object="idx_orders_user_id",
                    expected="btree (user_id)",
                )
            ]
        )
        differing = DriftReport(
            drifts=[
                Drift(
                    type=DriftType.INDEX_MISMATCH,
                    table="orders",
                    object="idx_orders_user_id",
                    expected="btree (user_id)",
                    actual="btree (status)",
                )
            ]
        )

        created = generator.generate_from_drift_report(missing, shop_schema).data
        recreated = generator.generate_from_drift_report(differing, shop_schema).data

        assert _statements(created.up_sql) == [
            "CREATE INDEX idx_orders_user_id ON orders (user_id);"
        ]
        assert _statements(recreated.up_sql) == [
            "DROP INDEX IF EXISTS idx_orders_user_id;",
            "CREATE INDEX idx_orders_user_id ON orders (user_id);",
        ]

    def test_missing_constraint_is_added(self, shop_schema) -> None:
        """A missing constraint is added from the expected schema."""
        report = DriftReport(
            drifts=[
                Drift(
                    type=DriftType.CONSTRAINT_MISMATCH,
                    table="orders",
                    object="orders_status_check",
                    expected="CHECK (status IN ('pending', 'paid', 'shipped'))",
                )
            ]
        )

        result = MigrationGenerator().generate_from_drift_report(report, shop_schema)

        assert _statements(result.data.up_sql) == [
            "ALTER TABLE orders ADD CONSTRAINT orders_status_check "
            "CHECK (status IN ('pending', 'paid', 'shipped'));"
        ]

    def test_emits_drift_detected(self, shop_schema) -> None:
        """A non-empty report emits drift.detected with per-type counts."""
        sink = MemoryEventSink()
        report = DriftReport(
            drifts=[
                Drift(type=DriftType.EXTRA_TABLE, table="a", object="a", actual="a"),
                Drift(type=DriftType.EXTRA_TABLE, table="b", object="b", actual="b"),
            ]
        )

        MigrationGenerator(sink=sink).generate_from_drift_report(report, shop_schema)

        assert sink.names() == ["drift.detected"]
        assert sink.events[0].level == "warning"
        assert sink.events[0].details == {"extra_table": 2}

    def test_failure_code(self) -> None:
        """Generation errors map to DRIFT_MIGRATION_GENERATION_FAILED."""
        generator = MigrationGenerator()
        with patch.object(generator, "_drift_changes", side_effect=ValueError("boom")):
            result = generator.generate_from_drift_report(DriftReport())

        assert result.success is False
        assert result.error.code == ErrorCode.DRIFT_MIGRATION_GENERATION_FAILED
        assert "boom" in result.error.message


# ============================================================================
# Test: generate_from_form()
# ============================================================================


class TestGenerateFromForm:
    """Verify form-driven table creation and additive changes."""

    def test_new_table(self) -> None:
        """A new form table gets id, the field columns, and timestamps."""
        fields = [
            FormField(name="name", type="text", required=True, max_length=100),
            FormField(name="email", type="email"),
            FormField(name="age", type="number", max=120),
            FormField(name="subscribed", type="checkbox"),
        ]

        result = MigrationGenerator().generate_from_form("contacts", fields)

        assert result.success
        up = result.data.up_sql
        assert "CREATE TABLE contacts (" in up
        assert "    id SERIAL PRIMARY KEY," in up
        assert "    name varchar(100) NOT NULL," in up
        assert "    email varchar(255)," in up
        assert "    age smallint," in up
        assert "    subscribed boolean," in up
        assert "    created_at timestamp NOT NULL DEFAULT now()," in up
        assert "    updated_at timestamp NOT NULL DEFAULT now()" in up
        assert _statements(result.data.down_sql) == ["DROP TABLE IF EXISTS contacts;"]

    def test_existing_table_only_adds_and_widens(self) -> None:
        """Existing tables get nullable adds and widening alters; narrowing is a warning."""
        existing = Table(
            name="contacts",
            columns=[
                Column(
                    name="id",
                    data_type="integer",
                    nullable=False,
                    default=AUTO_INCREMENT,
                    primary_key=True,
                    auto_increment=True,
                ),
                Column(name="name", data_type="varchar(50)"),
                Column(name="bio", data_type="text"),
            ],
            primary_key=PrimaryKey(name="contacts_pkey", columns=["id"]),
        )
        fields = [
            FormField(name="name", type="text", max_length=100),
            FormField(name="bio", type="text", max_length=20),
            FormField(name="phone", type="text", required=True),
        ]

        result = MigrationGenerator().generate_from_form("contacts", fields, existing)

        assert result.success
        assert _statements(result.data.up_sql) == [
            "ALTER TABLE contacts ALTER COLUMN name TYPE varchar(100) USING name::varchar(100);",
            "ALTER TABLE contacts ADD COLUMN phone text;",
        ]
        assert "DROP" not in result.data.up_sql
        warnings = " ".join(result.data.warnings)
        assert "Skipped narrowing contacts.bio" in warnings
        assert "'phone' is required" in warnings

    def test_failure_code(self) -> None:
        """Generation errors map to FORM_MIGRATION_GENERATION_FAILED."""
        generator = MigrationGenerator()
        with patch.object(generator, "_form_table", side_effect=ValueError("bad field")):
            result = generator.generate_from_form("contacts", [])

        assert result.success is False
        assert result.error.code == ErrorCode.FORM_MIGRATION_GENERATION_FAILED


# ============================================================================
# Test: Atomic wrapping
# ============================================================================


class TestAtomic:
    """Verify BEGIN/COMMIT wrapping leaves concurrent index builds outside."""

    def test_concurrent_index_after_commit(self) -> None:
        """CREATE INDEX CONCURRENTLY follows COMMIT; DROP ... CONCURRENTLY precedes BEGIN."""
        index = Index(
            name="idx_orders_status", table="orders", columns=["status"], concurrently=True
        )
        changes = [
            CreateIndex(index=index),
            AddColumn(table="orders", column=Column(name="notes", data_type="text")),
        ]

        result = MigrationGenerator().generate(changes, GenerateOptions(atomic=True))

        assert result.data.up_sql.splitlines() == [
            "BEGIN;",
            "ALTER TABLE orders ADD COLUMN notes text;",
            "COMMIT;",
            "CREATE INDEX CONCURRENTLY idx_orders_status ON orders (status);",
        ]
        assert result.data.down_sql.splitlines() == [
            "DROP INDEX CONCURRENTLY IF EXISTS idx_orders_status;",
            "BEGIN;",
            "ALTER TABLE orders DROP COLUMN IF EXISTS notes;",
            "COMMIT;",
        ]
        assert result.data.transactional is False

    def test_plain_migration_is_transactional(self) -> None:
        """Without atomic or concurrent statements the engine wraps the migration."""
        changes = [AddColumn(table="orders", column=Column(name="notes", data_type="text"))]
        result = MigrationGenerator().generate(changes)
        assert result.data.transactional is True
        assert "BEGIN;" not in result.data.up_sql

    def test_assemble_sql_keeps_notes_first(self) -> None:
        """Advisory comment lines lead the script."""
        sql = assemble_sql(["SELECT 1;"], atomic=True, notes=["-- note"])
        assert sql == "-- note\nBEGIN;\nSELECT 1;\nCOMMIT;\n"


# ============================================================================
# Test: Declarative output
# ============================================================================


class TestDeclarative:
    """Verify optional declarative schema text."""

    def test_declarative_schema_parses(self, shop_schema) -> None:
        """The declarative module for the target schema is valid Python."""
        changes = diff_schemas(make_schema(make_users()), shop_schema)

        result = MigrationGenerator().generate(
            changes, GenerateOptions(declarative=True), target=shop_schema
        )

        source = result.data.declarative_schema
        assert source is not None
        ast.parse(source)
        assert "class Orders(Base):" in source
        assert "class Users(Base):" in source

    def test_declarative_off_by_default(self, orders) -> None:
        """No declarative text unless requested."""
        result = MigrationGenerator().generate_create_table(orders)
        assert result.data.declarative_schema is None


# ============================================================================
# Test: write_migration()
# ============================================================================


class TestWriteMigration:
    """Verify written files round-trip through migration discovery."""

    def test_file_name_and_headers(self, tmp_path) -> None:
        """The file is named {version}_{slug}.sql and carries headers."""
        generator = MigrationGenerator()
        changes = [AddColumn(table="orders", column=Column(name="notes", data_type="text"))]
        generated = generator.generate(
            changes, GenerateOptions(name="Add order notes", description="Notes column")
        ).data

        path = generator.write_migration(generated, tmp_path, version="003")

        assert path.name == "003_add_order_notes.sql"
        content = path.read_text()
        assert content.startswith(
            "-- @name: Add order notes\n-- @description: Notes column\n-- @type: schema\n"
        )
        assert "-- @transactional" not in content

    def test_round_trip(self, tmp_path) -> None:
        """parse_migration_file() recovers name, version, and rollback SQL."""
        generator = MigrationGenerator()
        changes = [AddColumn(table="orders", column=Column(name="notes", data_type="text"))]
        generated = generator.generate(changes, GenerateOptions(name="add_notes")).data

        migration = parse_migration_file(
            generator.write_migration(generated, tmp_path, version="003")
        )

        assert migration.version == "003"
        assert migration.name == "add_notes"
        assert "ALTER TABLE orders ADD COLUMN notes text;" in migration.sql
        assert migration.rollback_sql == generated.down_sql.strip()
        assert migration.transactional is None

    def test_non_transactional_header(self, tmp_path) -> None:
        """Concurrent builds are marked @transactional: false."""
        index = Index(name="idx_x", table="orders", columns=["status"], concurrently=True)
        generator = MigrationGenerator()
        generated = generator.generate([CreateIndex(index=index)]).data

        path = generator.write_migration(generated, tmp_path, version="004")

        assert "-- @transactional: false" in path.read_text()
        assert parse_migration_file(path).transactional is False

    def test_warnings_are_written(self, tmp_path) -> None:
        """Generator warnings become -- WARNING: lines."""
        generator = MigrationGenerator()
        generated = generator.generate([]).data.model_copy(
            update={"warnings": ["check the backfill"]}
        )

        path = generator.write_migration(generated, tmp_path, version="005")

        assert "-- WARNING: check the backfill" in path.read_text()

    def test_refuses_to_overwrite(self, tmp_path) -> None:
        """An existing file is never overwritten."""
        generator = MigrationGenerator()
        generated = generator.generate([]).data
        generator.write_migration(generated, tmp_path, version="006")

        with pytest.raises(FileExistsError):
            generator.write_migration(generated, tmp_path, version="006")

    def test_default_version_is_timestamp(self, tmp_path) -> None:
        """Without a version the prefix is a 14-digit UTC timestamp."""
        generator = MigrationGenerator()
        path = generator.write_migration(generator.generate([]).data, tmp_path)

        prefix = path.name.split("_", 1)[0]
        assert len(prefix) == 14 and prefix.isdigit()

    def test_slugify(self) -> None:
        """slugify() lower-cases and collapses non-alphanumerics."""
        assert slugify("Add Orders: v2!") == "add_orders_v2"
        assert slugify("***") == "migration"
