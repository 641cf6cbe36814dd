"""Migration generation from schema changes, drift reports, and forms.

The generator turns typed ``SchemaChange`` lists into forward and reverse
SQL.  It never touches the database: its output is a ``GeneratedMigration``
that can be reviewed, printed, or written to the migrations directory.

Forward SQL is ``order_changes(changes)`` rendered in phase order; reverse
SQL is the inverted change list, re-ordered the same way, so every
rollback drops constraints before the objects they depend on.

Usage:
    from db_integrity.migration.generator import MigrationGenerator
    from db_integrity.schema.comparator import diff_schemas

    generator = MigrationGenerator()
    result = generator.generate(diff_schemas(old, new), GenerateOptions(name="add_orders"))
    if result.success:
        path = generator.write_migration(result.data, "migrations")
"""

import re
from datetime import datetime, timezone
from pathlib import Path

from db_integrity.errors import ErrorCode, IntegrityError, IntegrityResult
from db_integrity.events import EventEmitter, EventSink
from db_integrity.migration.models import FormField, GeneratedMigration, GenerateOptions
from db_integrity.schema.changes import (
    AddColumn,
    AddConstraint,
    AlterColumn,
    CreateIndex,
    CreateTable,
    DropConstraint,
    DropIndex,
    SchemaChange,
    invert_changes,
    order_changes,
)
from db_integrity.schema.comparator import table_constraints
from db_integrity.schema.ddl import create_table_statements, drop_table_statement, render_changes
from db_integrity.schema.declarative import render_declarative
from db_integrity.schema.models import (
    AUTO_INCREMENT,
    Column,
    DatabaseSchema,
    DefaultValue,
    Drift,
    DriftReport,
    DriftType,
    PrimaryKey,
    Table,
)
from db_integrity.schema.types import form_field_type, is_widening

_CONCURRENT_CREATE = re.compile(r"^CREATE (UNIQUE )?INDEX CONCURRENTLY\b")
_CONCURRENT_DROP = re.compile(r"^DROP INDEX CONCURRENTLY\b")

# Columns every form-backed table gets
_FORM_MANAGED_COLUMNS = {"id", "created_at", "updated_at"}
_NOW = DefaultValue(kind="expression", value="now()")


def _is_concurrent(statement: str) -> bool:
    return bool(_CONCURRENT_CREATE.match(statement) or _CONCURRENT_DROP.match(statement))


def assemble_sql(
    statements: list[str], atomic: bool = False, notes: list[str] | None = None
) -> str:
    """Join statements into a script, optionally wrapped in BEGIN/COMMIT.

    Concurrent index builds cannot run inside a transaction block: when
    ``atomic`` is set, concurrent drops are placed before ``BEGIN;`` and
    concurrent creates after ``COMMIT;``.
    """
    lines = list(notes or [])
    if not statements:
        lines.append("-- No schema changes")
    elif not atomic:
        lines.extend(statements)
    else:
        before = [s for s in statements if _CONCURRENT_DROP.match(s)]
        after = [s for s in statements if _CONCURRENT_CREATE.match(s)]
        inner = [s for s in statements if not _is_concurrent(s)]
        lines.extend(before)
        lines.append("BEGIN;")
        lines.extend(inner)
        lines.append("COMMIT;")
        lines.extend(after)
    return "\n".join(lines) + "\n"


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_") or "migration"


class MigrationGenerator:
    """Generate migration SQL (forward and rollback) without executing it."""

    def __init__(self, sink: EventSink | None = None):
        self._events = EventEmitter("MigrationGenerator", sink)

    # ------------------------------------------------------------------
    # From changes
    # ------------------------------------------------------------------

    def generate(
        self,
        changes: list[SchemaChange],
        options: GenerateOptions | None = None,
        target: DatabaseSchema | None = None,
    ) -> IntegrityResult[GeneratedMigration]:
        """Generate a migration from a list of schema changes.

        Args:
            changes: Changes in any order (typically from ``diff_schemas``).
            options: Name, rollback, atomic wrapping, declarative output.
            target: Target snapshot; its tables are rendered when
                ``options.declarative`` is set.  Without it, the tables
                created by ``changes`` are rendered.

        Returns:
            IntegrityResult with the generated migration, or
            ``MIGRATION_GENERATION_FAILED``.
        """
        options = options or GenerateOptions()
        if target is not None:
            tables = list(target.tables)
        else:
            tables = [c.table for c in changes if isinstance(c, CreateTable)]
        try:
            return IntegrityResult.ok(self._build(changes, options, tables))
        except (TypeError, ValueError, KeyError) as e:
            return IntegrityResult.fail(
                IntegrityError(
                    code=ErrorCode.MIGRATION_GENERATION_FAILED,
                    message=f"Failed to generate migration '{options.name}': {e}",
                )
            )

    def generate_create_table(
        self, table: Table, options: GenerateOptions | None = None
    ) -> IntegrityResult[GeneratedMigration]:
        """CREATE TABLE (with constraints, indexes, comments) and its DROP."""
        options = options or GenerateOptions(name=f"create_{table.name}")
        try:
            statements = create_table_statements(table)
            up_sql = assemble_sql(statements, options.atomic)
            down_sql = None
            if options.include_rollback:
                down_sql = assemble_sql(
                    [drop_table_statement(table, cascade=True)], options.atomic
                )
            generated = GeneratedMigration(
                name=options.name,
                description=options.description or f"Create table {table.display_name}",
                up_sql=up_sql,
                down_sql=down_sql,
                declarative_schema=render_declarative([table]) if options.declarative else None,
                changes=[CreateTable(table=table)],
                transactional=not options.atomic
                and not any(_is_concurrent(s) for s in statements),
            )
        except (TypeError, ValueError, KeyError) as e:
            return IntegrityResult.fail(
                IntegrityError(
                    code=ErrorCode.MIGRATION_GENERATION_FAILED,
                    message=f"Failed to generate CREATE TABLE for '{table.name}': {e}",
                )
            )
        return IntegrityResult.ok(generated)

    # ------------------------------------------------------------------
    # From drift
    # ------------------------------------------------------------------

    def generate_from_drift_report(
        self,
        report: DriftReport,
        expected: DatabaseSchema | None = None,
        options: GenerateOptions | None = None,
    ) -> IntegrityResult[GeneratedMigration]:
        """Generate a repair migration for a drift report.

        Missing objects are recreated from ``expected`` (falling back to the
        type recorded on the drift for missing columns).  Extra tables and
        columns are never dropped: they only get a ``-- Manual review
        needed`` comment.

        Returns:
            IntegrityResult with the repair migration, or
            ``DRIFT_MIGRATION_GENERATION_FAILED``.
        """
        options = options or GenerateOptions(name="drift_repair")
        if report.has_drift:
            self._events.emit(
                "drift.detected",
                f"Schema drift detected: {len(report.drifts)} difference(s)",
                level="warning",
                details={
                    drift_type.value: len(report.by_type(drift_type))
                    for drift_type in DriftType
                    if report.by_type(drift_type)
                },
            )
        try:
            changes, warnings, notes = self._drift_changes(report, expected)
            generated = self._build(
                changes,
                options,
                list(expected.tables) if expected else [],
                warnings=warnings,
                notes=notes,
            )
        except (TypeError, ValueError, KeyError) as e:
            return IntegrityResult.fail(
                IntegrityError(
                    code=ErrorCode.DRIFT_MIGRATION_GENERATION_FAILED,
                    message=f"Failed to generate drift repair migration: {e}",
                )
            )
        return IntegrityResult.ok(generated)

    def _drift_changes(
        self, report: DriftReport, expected: DatabaseSchema | None
    ) -> tuple[list[SchemaChange], list[str], list[str]]:
        changes: list[SchemaChange] = []
        warnings: list[str] = []
        notes: list[str] = []

        for drift in report.drifts:
            table = expected.get_table(drift.table) if expected else None

            if drift.type == DriftType.MISSING_TABLE:
                if table is None:
                    notes.append(
                        f"-- Manual review needed: Missing table '{drift.table}' "
                        f"has no definition in the expected schema"
                    )
                else:
                    changes.append(CreateTable(table=table))
            elif drift.type == DriftType.EXTRA_TABLE:
                notes.append(f"-- Manual review needed: Extra table '{drift.table}' found")
            elif drift.type == DriftType.EXTRA_COLUMN:
                notes.append(
                    f"-- Manual review needed: Extra column '{drift.table}.{drift.object}' found"
                )
            elif drift.type == DriftType.MISSING_COLUMN:
                column = self._missing_column(drift, table, warnings)
                changes.append(AddColumn(table=drift.table, column=column))
            elif drift.type == DriftType.COLUMN_TYPE_MISMATCH:
                new = table.get_column(drift.object) if table else None
                if new is None:
                    new = Column(name=drift.object, data_type=drift.expected or "text")
                old = new.model_copy(update={"data_type": drift.actual or new.data_type})
                changes.append(
                    AlterColumn(table=drift.table, old=old, new=new, unique_managed=True)
                )
            elif drift.type == DriftType.INDEX_MISMATCH:
                changes.extend(self._index_repair(drift, table, notes))
            elif drift.type == DriftType.CONSTRAINT_MISMATCH:
                changes.extend(self._constraint_repair(drift, table, notes))
            else:
                raise TypeError(f"Unknown drift type: {drift.type!r}")

        return changes, warnings, notes

    @staticmethod
    def _missing_column(drift: Drift, table: Table | None, warnings: list[str]) -> Column:
        column = table.get_column(drift.object) if table else None
        if column is None:
            column = Column(name=drift.object, data_type=drift.expected or "text")

        updates: dict = {}
        if column.primary_key:
            updates["primary_key"] = False
        if table is not None and table.has_unique_constraint(column.name):
            updates["unique"] = False
        if not column.nullable and column.default is None and not column.auto_increment:
            updates["nullable"] = True
            warnings.append(
                f"Column {drift.table}.{column.name} is added as nullable: "
                f"NOT NULL needs a default or a backfill of existing rows"
            )
        return column.model_copy(update=updates) if updates else column

    @staticmethod
    def _index_repair(drift: Drift, table: Table | None, notes: list[str]) -> list[SchemaChange]:
        if drift.expected is None:
            notes.append(
                f"-- Manual review needed: Extra index '{drift.object}' on '{drift.table}' found"
            )
            return []
        index = None
        if table is not None:
            index = next((i for i in table.indexes if i.name == drift.object), None)
        if index is None:
            notes.append(
                f"-- Manual review needed: Index '{drift.object}' on '{drift.table}' "
                f"has no definition in the expected schema"
            )
            return []
        if drift.actual is None:
            return [CreateIndex(index=index)]
        return [DropIndex(index=index), CreateIndex(index=index)]

    @staticmethod
    def _constraint_repair(
        drift: Drift, table: Table | None, notes: list[str]
    ) -> list[SchemaChange]:
        if drift.expected is None:
            notes.append(
                f"-- Manual review needed: Extra constraint '{drift.object}' "
                f"on '{drift.table}' found"
            )
            return []
        constraint = table_constraints(table).get(drift.object) if table else None
        if constraint is None:
            notes.append(
                f"-- Manual review needed: Constraint '{drift.object}' on '{drift.table}' "
                f"has no definition in the expected schema"
            )
            return []
        if drift.actual is None:
            return [AddConstraint(constraint=constraint)]
        return [DropConstraint(constraint=constraint), AddConstraint(constraint=constraint)]

    # ------------------------------------------------------------------
    # From forms
    # ------------------------------------------------------------------

    def generate_from_form(
        self,
        table_name: str,
        fields: list[FormField],
        existing: Table | None = None,
        options: GenerateOptions | None = None,
    ) -> IntegrityResult[GeneratedMigration]:
        """Derive a table (or additive changes) from UI form fields.

        Without ``existing``, a new table is created with an ``id SERIAL``
        primary key, one column per field, and ``created_at``/``updated_at``
        timestamps.  With ``existing``, only new nullable columns and
        widening type changes are generated; anything that would narrow a
        column becomes a warning.

        Returns:
            IntegrityResult with the migration, or
            ``FORM_MIGRATION_GENERATION_FAILED``.
        """
        options = options or GenerateOptions(name=f"form_{table_name}")
        warnings: list[str] = []
        try:
            if existing is None:
                changes: list[SchemaChange] = [
                    CreateTable(table=self._form_table(table_name, fields))
                ]
            else:
                changes = self._form_changes(existing, fields, warnings)
            generated = self._build(
                changes,
                options,
                [c.table for c in changes if isinstance(c, CreateTable)],
                warnings=warnings,
            )
        except (TypeError, ValueError, KeyError) as e:
            return IntegrityResult.fail(
                IntegrityError(
                    code=ErrorCode.FORM_MIGRATION_GENERATION_FAILED,
                    message=f"Failed to generate migration for form table '{table_name}': {e}",
                )
            )
        return IntegrityResult.ok(generated)

    @staticmethod
    def _form_column(field: FormField) -> Column:
        return Column(
            name=field.name,
            data_type=form_field_type(field.type, field.max_length, field.max),
            nullable=not field.required,
        )

    def _form_table(self, table_name: str, fields: list[FormField]) -> Table:
        columns = [
            Column(
                name="id",
                data_type="integer",
                nullable=False,
                default=AUTO_INCREMENT,
                primary_key=True,
                auto_increment=True,
            )
        ]
        columns += [
            self._form_column(f) for f in fields if f.name not in _FORM_MANAGED_COLUMNS
        ]
        columns += [
            Column(name="created_at", data_type="timestamp", nullable=False, default=_NOW),
            Column(name="updated_at", data_type="timestamp", nullable=False, default=_NOW),
        ]
        return Table(
            name=table_name,
            columns=columns,
            primary_key=PrimaryKey(name=f"{table_name}_pkey", columns=["id"]),
        )

    def _form_changes(
        self, existing: Table, fields: list[FormField], warnings: list[str]
    ) -> list[SchemaChange]:
        changes: list[SchemaChange] = []
        name = existing.display_name
        for field in fields:
            wanted = self._form_column(field)
            current = existing.get_column(field.name)
            if current is None:
                if field.required:
                    warnings.append(
                        f"Field '{field.name}' is required but is added to "
                        f"{name} as a nullable column"
                    )
                changes.append(
                    AddColumn(table=name, column=wanted.model_copy(update={"nullable": True}))
                )
            elif current.data_type == wanted.data_type:
                continue
            elif is_widening(current.data_type, wanted.data_type):
                changes.append(
                    AlterColumn(
                        table=name,
                        old=current,
                        new=current.model_copy(update={"data_type": wanted.data_type}),
                        unique_managed=True,
                    )
                )
            else:
                warnings.append(
                    f"Skipped narrowing {name}.{field.name}: "
                    f"{current.data_type} -> {wanted.data_type}"
                )
        return changes

    # ------------------------------------------------------------------
    # Assembly and output
    # ------------------------------------------------------------------

    def _build(
        self,
        changes: list[SchemaChange],
        options: GenerateOptions,
        tables: list[Table],
        warnings: list[str] | None = None,
        notes: list[str] | None = None,
    ) -> GeneratedMigration:
        up_statements = render_changes(order_changes(changes))
        down_statements: list[str] = []
        down_sql = None
        if options.include_rollback:
            down_statements = render_changes(order_changes(invert_changes(changes)))
            down_sql = assemble_sql(down_statements, options.atomic)

        concurrent = any(_is_concurrent(s) for s in up_statements + down_statements)
        return GeneratedMigration(
            name=options.name,
            description=options.description,
            up_sql=assemble_sql(up_statements, options.atomic, notes),
            down_sql=down_sql,
            declarative_schema=(
                render_declarative(tables) if options.declarative and tables else None
            ),
            changes=list(changes),
            warnings=list(warnings or []),
            transactional=not (options.atomic or concurrent),
        )

    def write_migration(
        self,
        generated: GeneratedMigration,
        directory: str | Path,
        version: str | None = None,
    ) -> Path:
        """Write ``{version}_{slug}.sql`` with headers and a rollback section.

        Args:
            generated: Migration to write.
            directory: Migrations directory (created if missing).
            version: Version prefix; defaults to a UTC ``YYYYMMDDHHMMSS``
                timestamp.

        Raises:
            FileExistsError: If the target file already exists.
        """
        version = version or datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        out_dir = Path(directory)
        out_dir.mkdir(parents=True, exist_ok=True)
        path = out_dir / f"{version}_{slugify(generated.name)}.sql"
        if path.exists():
            raise FileExistsError(f"Migration file already exists: {path}")

        lines = [f"-- @name: {generated.name}"]
        if generated.description:
            lines.append(f"-- @description: {' '.join(generated.description.split())}")
        lines.append("-- @type: schema")
        if not generated.transactional:
            lines.append("-- @transactional: false")
        for warning in generated.warnings:
            lines.append(f"-- WARNING: {warning}")
        lines.append("")
        lines.append(generated.up_sql.rstrip())
        if generated.down_sql:
            lines.append("")
            lines.append("-- @rollback")
            lines.append(generated.down_sql.rstrip())

        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return path
