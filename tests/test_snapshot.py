"""Tests for snapshot persistence (schema.json / schema.sql / models.py)."""

import ast
from unittest.mock import patch

import pytest

from db_integrity.config.models import SchemaConfig
from db_integrity.schema.comparator import diff_schemas
from db_integrity.schema.ddl import render_schema_sql
from db_integrity.schema.models import DatabaseSchema, EnumType, View
from db_integrity.schema.snapshot import (
    SNAPSHOT_DECLARATIVE,
    SNAPSHOT_JSON,
    SNAPSHOT_SQL,
    load_snapshot,
    render_snapshot,
    save_snapshot,
)


# ============================================================================
# Test: save_snapshot() / load_snapshot()
# ============================================================================


class TestSaveAndLoad:
    """Verify snapshots survive a save/load cycle."""

    def test_json_round_trip(self, tmp_path, shop_schema) -> None:
        """A loaded snapshot diffs empty against the original."""
        paths = save_snapshot(shop_schema, SchemaConfig(directory=str(tmp_path)))

        assert paths == [tmp_path / SNAPSHOT_JSON]
        loaded = load_snapshot(tmp_path / SNAPSHOT_JSON)
        assert diff_schemas(shop_schema, loaded) == []
        assert loaded == shop_schema

    def test_load_from_directory(self, tmp_path, shop_schema) -> None:
        save_snapshot(shop_schema, SchemaConfig(directory=str(tmp_path)))
        assert load_snapshot(tmp_path).table_names() == ["users", "orders"]

    def test_all_formats(self, tmp_path, shop_schema) -> None:
        config = SchemaConfig(directory=str(tmp_path), formats=["json", "sql", "declarative"])

        paths = save_snapshot(shop_schema, config)

        assert sorted(p.name for p in paths) == sorted(
            [SNAPSHOT_JSON, SNAPSHOT_SQL, SNAPSHOT_DECLARATIVE]
        )
        ast.parse((tmp_path / SNAPSHOT_DECLARATIVE).read_text())
        assert "CREATE TABLE users" in (tmp_path / SNAPSHOT_SQL).read_text()

    def test_no_temporary_files_left(self, tmp_path, shop_schema) -> None:
        save_snapshot(shop_schema, SchemaConfig(directory=str(tmp_path), formats=["json", "sql"]))
        assert not list(tmp_path.glob(".*.tmp"))

    def test_failed_write_keeps_previous_snapshot(self, tmp_path, shop_schema) -> None:
        """A write error leaves the existing snapshot untouched."""
        config = SchemaConfig(directory=str(tmp_path))
        save_snapshot(DatabaseSchema(), config)
        before = (tmp_path / SNAPSHOT_JSON).read_text()

        with patch("db_integrity.schema.snapshot.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                save_snapshot(shop_schema, config)

        assert (tmp_path / SNAPSHOT_JSON).read_text() == before

    def test_missing_snapshot(self, tmp_path) -> None:
        with pytest.raises(FileNotFoundError, match="Schema snapshot not found"):
            load_snapshot(tmp_path / "nope.json")
        with pytest.raises(FileNotFoundError):
            load_snapshot(tmp_path)


# ============================================================================
# Test: Rendering
# ============================================================================


class TestRender:
    """Verify rendered snapshot contents."""

    def test_json_only_by_default(self, shop_schema) -> None:
        assert list(render_snapshot(shop_schema, ["json"])) == [SNAPSHOT_JSON]

    def test_schema_sql(self, shop_schema) -> None:
        """The SQL script creates enums, parent tables before children, then views."""
        schema = DatabaseSchema.build(
            list(shop_schema.tables),
            enums=[EnumType(name="order_status", values=["pending", "paid"])],
            views=[View(name="big_orders", definition="SELECT * FROM orders WHERE total > 100;")],
        )

        sql = render_schema_sql(schema)

        assert sql.startswith("-- Schema snapshot\n-- Version: 1\n")
        assert "CREATE TYPE order_status AS ENUM ('pending', 'paid');" in sql
        assert sql.index("CREATE TABLE users") < sql.index("CREATE TABLE orders")
        assert "CREATE OR REPLACE VIEW big_orders AS\nSELECT * FROM orders WHERE total > 100;" in sql
        assert sql.index("CREATE TABLE orders") < sql.index("CREATE OR REPLACE VIEW")
