"""PostgreSQL DDL rendering for schema models and schema changes.

Only the closed set of ``SchemaChange`` kinds is rendered -- there is no
SQL parsing here.  Identifiers are left bare when they are plain
lower-case names and double-quoted otherwise, so generated migrations read
like hand-written ones (``ALTER TABLE orders ADD COLUMN ...``).
"""

import re

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
    SchemaChange,
)
from db_integrity.schema.models import (
    Column,
    Constraint,
    ConstraintKind,
    DatabaseSchema,
    ForeignKey,
    Index,
    Table,
)
from db_integrity.schema.types import SERIAL_TYPES, render_default, split_type

RESERVED_WORDS = {
    "all", "analyse", "analyze", "and", "any", "array", "as", "asc",
    "asymmetric", "both", "case", "cast", "check", "collate", "column",
    "constraint", "create", "current_catalog", "current_date", "current_role",
    "current_time", "current_timestamp", "current_user", "default",
    "deferrable", "desc", "distinct", "do", "else", "end", "except", "false",
    "fetch", "for", "foreign", "from", "grant", "group", "having", "in",
    "initially", "intersect", "into", "lateral", "leading", "limit",
    "localtime", "localtimestamp", "not", "null", "offset", "on", "only",
    "or", "order", "placing", "primary", "references", "returning", "select",
    "session_user", "some", "symmetric", "table", "then", "to", "trailing",
    "true", "union", "unique", "user", "using", "variadic", "when", "where",
    "window", "with",
}

_PLAIN_IDENT = re.compile(r"[a-z_][a-z0-9_$]*")


def quote_ident(name: str) -> str:
    """Quote an identifier only when PostgreSQL requires it."""
    if _PLAIN_IDENT.fullmatch(name) and name not in RESERVED_WORDS:
        return name
    return '"' + name.replace('"', '""') + '"'


def quote_table(name: str) -> str:
    """Quote a possibly schema-qualified table name."""
    return ".".join(quote_ident(part) for part in name.split("."))


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _column_list(columns: list[str]) -> str:
    # Expression index entries (``lower(email)``) are emitted verbatim
    return ", ".join(c if not c.isidentifier() else quote_ident(c) for c in columns)


def _schema_prefix(table: str) -> str:
    return table.rsplit(".", 1)[0] + "." if "." in table else ""


def _bare(table: str) -> str:
    return table.rsplit(".", 1)[-1]


def _fk_actions(on_delete: str | None, on_update: str | None) -> str:
    sql = ""
    if on_delete and on_delete.upper() != "NO ACTION":
        sql += f" ON DELETE {on_delete.upper()}"
    if on_update and on_update.upper() != "NO ACTION":
        sql += f" ON UPDATE {on_update.upper()}"
    return sql


# ------------------------------------------------------------------
# Columns
# ------------------------------------------------------------------


def column_type(col: Column) -> str:
    """Column type, using SERIAL variants for auto-increment integers."""
    base, _ = split_type(col.data_type)
    if col.auto_increment and base in SERIAL_TYPES:
        return SERIAL_TYPES[base]
    return col.data_type


def column_definition(
    col: Column,
    inline_pk: bool = False,
    inline_unique: bool = True,
    include_references: bool = False,
) -> str:
    """Render ``name type [NOT NULL] [DEFAULT ..] [PRIMARY KEY] [UNIQUE]``."""
    parts = [quote_ident(col.name), column_type(col)]
    if not col.nullable and not inline_pk:
        parts.append("NOT NULL")
    default = render_default(col.default)
    if default is not None:
        parts.append(f"DEFAULT {default}")
    if inline_pk:
        parts.append("PRIMARY KEY")
    if col.unique and inline_unique and not inline_pk:
        parts.append("UNIQUE")
    if include_references and col.references:
        ref = col.references
        parts.append(
            f"REFERENCES {quote_table(ref.table)}({quote_ident(ref.column)})"
            + _fk_actions(ref.on_delete, ref.on_update)
        )
    return " ".join(parts)


def add_column_statement(table: str, col: Column, inline_unique: bool = True) -> str:
    return (
        f"ALTER TABLE {quote_table(table)} ADD COLUMN "
        f"{column_definition(col, inline_unique=inline_unique)};"
    )


def drop_column_statement(table: str, col: Column) -> str:
    return f"ALTER TABLE {quote_table(table)} DROP COLUMN IF EXISTS {quote_ident(col.name)};"


def _serial_default_statements(table: str, col: Column) -> list[str]:
    """Recreate the ``<table>_<column>_seq`` sequence a SERIAL default draws from.

    The sequence restarts after the largest existing value.
    """
    table_sql = quote_table(table)
    column = quote_ident(col.name)
    sequence = quote_table(f"{_schema_prefix(table)}{_bare(table)}_{col.name}_seq")
    regclass = quote_literal(sequence)
    return [
        f"CREATE SEQUENCE IF NOT EXISTS {sequence} OWNED BY {table_sql}.{column};",
        f"SELECT setval({regclass}, "
        f"COALESCE((SELECT max({column}) FROM {table_sql}), 0) + 1, false);",
        f"ALTER TABLE {table_sql} ALTER COLUMN {column} "
        f"SET DEFAULT nextval({regclass}::regclass);",
    ]


def alter_column_statements(
    table: str, old: Column, new: Column, unique_managed: bool = False
) -> list[str]:
    """Statements changing ``old`` into ``new`` (type, null, default, unique)."""
    prefix = f"ALTER TABLE {quote_table(table)} ALTER COLUMN {quote_ident(new.name)}"
    statements: list[str] = []

    if old.data_type != new.data_type:
        statements.append(
            f"{prefix} TYPE {new.data_type} USING {quote_ident(new.name)}::{new.data_type};"
        )
    if old.nullable != new.nullable:
        statements.append(f"{prefix} {'DROP' if new.nullable else 'SET'} NOT NULL;")
    if old.default != new.default:
        rendered = render_default(new.default)
        if new.default is not None and new.default.kind == "auto_increment":
            statements.extend(_serial_default_statements(table, new))
        elif rendered is None:
            statements.append(f"{prefix} DROP DEFAULT;")
        else:
            statements.append(f"{prefix} SET DEFAULT {rendered};")
    if old.unique != new.unique and not unique_managed:
        constraint = quote_ident(f"{_bare(table)}_{new.name}_key")
        if new.unique:
            statements.append(
                f"ALTER TABLE {quote_table(table)} ADD CONSTRAINT {constraint} "
                f"UNIQUE ({quote_ident(new.name)});"
            )
        else:
            statements.append(
                f"ALTER TABLE {quote_table(table)} DROP CONSTRAINT IF EXISTS {constraint};"
            )
    return statements


# ------------------------------------------------------------------
# Indexes and constraints
# ------------------------------------------------------------------


def create_index_statement(idx: Index) -> str:
    sql = "CREATE "
    if idx.unique:
        sql += "UNIQUE "
    sql += "INDEX "
    if idx.concurrently:
        sql += "CONCURRENTLY "
    sql += f"{quote_ident(idx.name)} ON {quote_table(idx.table)}"
    if idx.method and idx.method.lower() != "btree":
        sql += f" USING {idx.method.lower()}"
    sql += f" ({_column_list(idx.columns)})"
    if idx.where:
        sql += f" WHERE {idx.where}"
    return sql + ";"


def drop_index_statement(idx: Index) -> str:
    concurrently = "CONCURRENTLY " if idx.concurrently else ""
    name = _schema_prefix(idx.table) + idx.name
    return f"DROP INDEX {concurrently}IF EXISTS {quote_table(name)};"


def add_constraint_statement(con: Constraint) -> str:
    return (
        f"ALTER TABLE {quote_table(con.table)} ADD CONSTRAINT "
        f"{quote_ident(con.name)} {con.definition};"
    )


def drop_constraint_statement(con: Constraint) -> str:
    return (
        f"ALTER TABLE {quote_table(con.table)} DROP CONSTRAINT IF EXISTS "
        f"{quote_ident(con.name)};"
    )


def foreign_key_clause(fk: ForeignKey) -> str:
    return (
        f"CONSTRAINT {quote_ident(fk.name)} FOREIGN KEY ({_column_list(fk.columns)}) "
        f"REFERENCES {quote_table(fk.referenced_table)}"
        f"({_column_list(fk.referenced_columns)})"
        + _fk_actions(fk.on_delete, fk.on_update)
    )


def foreign_key_constraint(table: Table, fk: ForeignKey) -> str:
    return (
        f"ALTER TABLE {quote_table(table.display_name)} ADD {foreign_key_clause(fk)};"
    )


# ------------------------------------------------------------------
# Tables
# ------------------------------------------------------------------


def _pk_columns(table: Table) -> list[str]:
    if table.primary_key:
        return list(table.primary_key.columns)
    return [col.name for col in table.columns if col.primary_key]


def create_table_statements(
    table: Table, deferred_fks: set[str] | None = None
) -> list[str]:
    """CREATE TABLE plus its constraints, indexes, and comments.

    Primary and foreign keys are emitted inside the CREATE TABLE body;
    check/unique/exclude constraints follow as ``ALTER TABLE ... ADD
    CONSTRAINT``.  Foreign keys named in ``deferred_fks`` are left out (the
    caller adds them once the referenced tables exist).
    """
    deferred_fks = deferred_fks or set()
    name = quote_table(table.display_name)
    pk_cols = _pk_columns(table)
    pk_name = table.primary_key.name if table.primary_key else None
    inline_pk = len(pk_cols) == 1 and pk_name in (None, f"{table.name}_pkey")
    fk_columns = {tuple(fk.columns) for fk in table.foreign_keys}

    lines: list[str] = []
    for col in table.columns:
        lines.append(
            column_definition(
                col,
                inline_pk=inline_pk and col.name == pk_cols[0],
                inline_unique=not table.has_unique_constraint(col.name),
                include_references=(col.name,) not in fk_columns,
            )
        )
    if pk_cols and not inline_pk:
        clause = f"PRIMARY KEY ({_column_list(pk_cols)})"
        if pk_name:
            clause = f"CONSTRAINT {quote_ident(pk_name)} {clause}"
        lines.append(clause)
    for fk in table.foreign_keys:
        if fk.name not in deferred_fks:
            lines.append(foreign_key_clause(fk))

    body = ",\n".join(f"    {line}" for line in lines)
    statements = [f"CREATE TABLE {name} (\n{body}\n);"]

    fk_names = {fk.name for fk in table.foreign_keys}
    for con in table.constraints:
        if con.kind == ConstraintKind.PRIMARY_KEY and pk_cols:
            continue
        if con.kind == ConstraintKind.FOREIGN_KEY and con.name in fk_names:
            continue
        statements.append(add_constraint_statement(con))

    for idx in table.indexes:
        if not idx.primary:
            statements.append(create_index_statement(idx))

    if table.comment:
        statements.append(f"COMMENT ON TABLE {name} IS {quote_literal(table.comment)};")
    for col in table.columns:
        if col.comment:
            statements.append(
                f"COMMENT ON COLUMN {name}.{quote_ident(col.name)} IS "
                f"{quote_literal(col.comment)};"
            )
    return statements


def drop_table_statement(table: Table, cascade: bool = False) -> str:
    suffix = " CASCADE" if cascade else ""
    return f"DROP TABLE IF EXISTS {quote_table(table.display_name)}{suffix};"


def table_dependencies(tables: list[Table]) -> dict[str, set[str]]:
    """FK dependency graph (table -> referenced tables), self-references skipped."""
    deps: dict[str, set[str]] = {}
    for table in tables:
        refs = {_bare(fk.referenced_table) for fk in table.foreign_keys}
        refs |= {_bare(c.references.table) for c in table.columns if c.references}
        refs.discard(table.name)
        deps[table.name] = refs
    return deps


def _topological_sort(dependencies: dict[str, set[str]], tables: list[str]) -> list[str]:
    """Topological sort of tables based on FK dependencies.

    Returns tables in forward order: parent tables first, child tables last.
    Cycles are broken by emitting the table where the cycle is detected.
    """
    relevant = {t: dependencies.get(t, set()) & set(tables) for t in tables}

    sorted_tables: list[str] = []
    visited: set[str] = set()
    visiting: set[str] = set()

    def visit(table: str) -> None:
        if table in visited or table in visiting:
            return
        visiting.add(table)
        for dep in sorted(relevant.get(table, set())):
            visit(dep)
        visiting.discard(table)
        visited.add(table)
        sorted_tables.append(table)

    for table in tables:
        visit(table)

    return sorted_tables


def sort_tables(tables: list[Table]) -> list[Table]:
    """Order tables so referenced tables are created first."""
    by_name = {table.name: table for table in tables}
    order = _topological_sort(table_dependencies(tables), list(by_name))
    return [by_name[name] for name in order]


def create_tables_statements(tables: list[Table]) -> list[str]:
    """CREATE statements for several tables in FK-dependency order.

    A foreign key pointing at a table created later in the same batch (an
    FK cycle) is deferred to an ``ALTER TABLE ... ADD CONSTRAINT`` after
    every table exists.
    """
    ordered = sort_tables(tables)
    batch = {table.name for table in ordered}
    created: set[str] = set()
    statements: list[str] = []
    deferred: list[str] = []
    for table in ordered:
        late = {
            fk.name
            for fk in table.foreign_keys
            if _bare(fk.referenced_table) in batch
            and _bare(fk.referenced_table) not in created
            and _bare(fk.referenced_table) != table.name
        }
        statements.extend(create_table_statements(table, deferred_fks=late))
        deferred.extend(
            foreign_key_constraint(table, fk)
            for fk in table.foreign_keys
            if fk.name in late
        )
        created.add(table.name)
    return statements + deferred


def drop_tables_statements(tables: list[Table], cascade: bool = False) -> list[str]:
    """DROP statements, children before parents."""
    return [drop_table_statement(t, cascade) for t in reversed(sort_tables(tables))]


# ------------------------------------------------------------------
# Changes
# ------------------------------------------------------------------


def render_change(change: SchemaChange) -> list[str]:
    """Render one change to its DDL statements."""
    if isinstance(change, CreateTable):
        return create_table_statements(change.table)
    if isinstance(change, DropTable):
        return [drop_table_statement(change.table)]
    if isinstance(change, AddColumn):
        return [
            add_column_statement(
                change.table, change.column, inline_unique=not change.unique_managed
            )
        ]
    if isinstance(change, DropColumn):
        return [drop_column_statement(change.table, change.column)]
    if isinstance(change, AlterColumn):
        return alter_column_statements(
            change.table, change.old, change.new, change.unique_managed
        )
    if isinstance(change, CreateIndex):
        return [create_index_statement(change.index)]
    if isinstance(change, DropIndex):
        return [drop_index_statement(change.index)]
    if isinstance(change, AddConstraint):
        return [add_constraint_statement(change.constraint)]
    if isinstance(change, DropConstraint):
        return [drop_constraint_statement(change.constraint)]
    raise TypeError(f"Unknown schema change: {change!r}")


def render_changes(ordered: list[SchemaChange]) -> list[str]:
    """Render an already-ordered change list.

    Consecutive table creates/drops are rendered as one batch so tables are
    created parents-first and dropped children-first.
    """
    statements: list[str] = []
    i = 0
    while i < len(ordered):
        change = ordered[i]
        if isinstance(change, (CreateTable, DropTable)):
            kind = type(change)
            group = []
            while i < len(ordered) and isinstance(ordered[i], kind):
                group.append(ordered[i].table)
                i += 1
            if kind is CreateTable:
                statements.extend(create_tables_statements(group))
            else:
                statements.extend(drop_tables_statements(group))
            continue
        statements.extend(render_change(change))
        i += 1
    return statements


# ------------------------------------------------------------------
# Full schema script
# ------------------------------------------------------------------


def render_schema_sql(schema: DatabaseSchema) -> str:
    """Full CREATE TABLE / INDEX / COMMENT script for a snapshot."""
    lines = [
        "-- Schema snapshot",
        f"-- Version: {schema.version}",
        f"-- Generated: {schema.timestamp.isoformat()}",
        "",
    ]
    for enum in schema.enums:
        name = enum.name if enum.schema_name == "public" else f"{enum.schema_name}.{enum.name}"
        values = ", ".join(quote_literal(v) for v in enum.values)
        lines.append(f"CREATE TYPE {quote_table(name)} AS ENUM ({values});")
        lines.append("")
    for statement in create_tables_statements(schema.tables):
        lines.append(statement)
        lines.append("")
    for view in schema.views:
        if view.definition:
            name = quote_table(
                view.name if view.schema_name == "public" else f"{view.schema_name}.{view.name}"
            )
            lines.append(f"CREATE OR REPLACE VIEW {name} AS\n{view.definition.strip().rstrip(';')};")
            lines.append("")
    for function in schema.functions:
        if function.definition:
            lines.append(function.definition.strip().rstrip(";") + ";")
            lines.append("")
    return "\n".join(lines)
