"""Declarative schema emission as a SQLAlchemy model module.

Renders tables as Python source using SQLAlchemy's declarative mapping.
Engine types go through ``DECLARATIVE_TYPE_MAP``; anything unmapped falls
back to ``Text`` so emission never fails on an unknown type.  Tables
without a primary key cannot be mapped classes and are emitted as plain
``Table`` objects on ``Base.metadata``.

Usage:
    from db_integrity.schema.declarative import render_declarative

    source = render_declarative(schema.tables)
    Path("models.py").write_text(source)
"""

import keyword
import re

from db_integrity.schema.ddl import sort_tables
from db_integrity.schema.models import Column, ConstraintKind, Table
from db_integrity.schema.types import declarative_type, render_default

_POSTGRES_TYPES = {"ARRAY", "CIDR", "INET", "JSONB"}
_TYPE_NAME = re.compile(r"\b([A-Z][A-Za-z]*)\b")
_RESERVED_ATTRS = {"metadata", "registry"}
_IMPORTED_NAMES = {
    "ARRAY", "Base", "BigInteger", "Boolean", "CHAR", "CIDR", "CheckConstraint",
    "Column", "Date", "DateTime", "DeclarativeBase", "Double", "Float",
    "ForeignKey", "ForeignKeyConstraint", "INET", "Index", "Integer", "Interval",
    "JSON", "JSONB", "LargeBinary", "Numeric", "SmallInteger", "String", "Table",
    "Text", "Time", "UniqueConstraint", "Uuid",
}


def _class_name(table_name: str) -> str:
    parts = re.split(r"[^A-Za-z0-9]+", table_name)
    name = "".join(p[:1].upper() + p[1:] for p in parts if p)
    if not name or not name[0].isalpha():
        name = f"T{name}"
    return name


def _attr_name(column_name: str) -> str:
    name = re.sub(r"\W", "_", column_name)
    if not name or name[0].isdigit():
        name = f"_{name}"
    if keyword.iskeyword(name) or name in _RESERVED_ATTRS:
        name = f"{name}_"
    return name


def _check_body(definition: str) -> str:
    """``CHECK ((price > 0))`` -> ``price > 0``."""
    body = definition.strip()
    if body.upper().startswith("CHECK"):
        body = body[5:].strip()
    while body.startswith("(") and body.endswith(")") and _balanced(body[1:-1]):
        body = body[1:-1].strip()
    return body


def _balanced(text: str) -> bool:
    depth = 0
    for ch in text:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                return False
    return depth == 0


class _Emitter:
    def __init__(self) -> None:
        self.sa_names: set[str] = {"Column"}
        self.pg_names: set[str] = set()
        self.uses_text = False

    def type_expr(self, data_type: str) -> str:
        expr = declarative_type(data_type)
        for name in _TYPE_NAME.findall(expr):
            if name in _POSTGRES_TYPES:
                self.pg_names.add(name)
            elif name != "True":
                self.sa_names.add(name)
        return expr

    def column_args(self, table: Table, col: Column, pk_cols: list[str]) -> str:
        args: list[str] = []
        attr = _attr_name(col.name)
        if attr != col.name:
            args.append(repr(col.name))
        args.append(self.type_expr(col.data_type))

        single_fks = [fk for fk in table.foreign_keys if fk.columns == [col.name]]
        if single_fks:
            fk = single_fks[0]
            target = f"{fk.referenced_table}.{fk.referenced_columns[0]}"
            self.sa_names.add("ForeignKey")
            fk_args = [repr(target)]
            if fk.on_delete and fk.on_delete.upper() != "NO ACTION":
                fk_args.append(f"ondelete={fk.on_delete.upper()!r}")
            if fk.on_update and fk.on_update.upper() != "NO ACTION":
                fk_args.append(f"onupdate={fk.on_update.upper()!r}")
            fk_args.append(f"name={fk.name!r}")
            args.append(f"ForeignKey({', '.join(fk_args)})")
        elif col.references and not any(col.name in fk.columns for fk in table.foreign_keys):
            self.sa_names.add("ForeignKey")
            args.append(f"ForeignKey({f'{col.references.table}.{col.references.column}'!r})")

        if col.name in pk_cols:
            args.append("primary_key=True")
            if col.auto_increment:
                args.append("autoincrement=True")
        else:
            args.append(f"nullable={col.nullable}")
        if col.unique and not table.has_unique_constraint(col.name):
            args.append("unique=True")
        default = render_default(col.default)
        if default is not None:
            self.uses_text = True
            args.append(f"server_default=text({default!r})")
        if col.comment:
            args.append(f"comment={col.comment!r}")
        return ", ".join(args)

    def table_args(self, table: Table) -> tuple[list[str], dict[str, str], list[str]]:
        """(``__table_args__`` entries, table options, comment lines for
        constraints SQLAlchemy cannot express)."""
        entries: list[str] = []
        notes: list[str] = []
        for fk in table.foreign_keys:
            if len(fk.columns) > 1:
                self.sa_names.add("ForeignKeyConstraint")
                targets = [f"{fk.referenced_table}.{c}" for c in fk.referenced_columns]
                entry = f"ForeignKeyConstraint({fk.columns!r}, {targets!r}, name={fk.name!r}"
                if fk.on_delete and fk.on_delete.upper() != "NO ACTION":
                    entry += f", ondelete={fk.on_delete.upper()!r}"
                entries.append(entry + ")")
        fk_names = {fk.name for fk in table.foreign_keys}
        for con in table.constraints:
            if con.kind == ConstraintKind.CHECK:
                self.sa_names.add("CheckConstraint")
                entries.append(
                    f"CheckConstraint({_check_body(con.definition)!r}, name={con.name!r})"
                )
            elif con.kind == ConstraintKind.UNIQUE:
                self.sa_names.add("UniqueConstraint")
                cols = ", ".join(repr(c) for c in con.columns)
                entries.append(f"UniqueConstraint({cols}, name={con.name!r})")
            elif con.kind == ConstraintKind.EXCLUDE:
                notes.append(f"# {con.name}: {con.definition}")
            elif con.kind == ConstraintKind.FOREIGN_KEY and con.name not in fk_names:
                notes.append(f"# {con.name}: {con.definition}")
        for idx in table.indexes:
            if idx.primary:
                continue
            self.sa_names.add("Index")
            parts = [repr(idx.name)]
            for c in idx.columns:
                if c.isidentifier():
                    parts.append(repr(c))
                else:
                    self.uses_text = True
                    parts.append(f"text({c!r})")
            if idx.unique:
                parts.append("unique=True")
            if idx.method and idx.method != "btree":
                parts.append(f"postgresql_using={idx.method!r}")
            if idx.where:
                self.uses_text = True
                parts.append(f"postgresql_where=text({idx.where!r})")
            entries.append(f"Index({', '.join(parts)})")
        options: dict[str, str] = {}
        if table.schema_name != "public":
            options["schema"] = table.schema_name
        if table.comment:
            options["comment"] = table.comment
        return entries, options, notes


def render_declarative(tables: list[Table]) -> str:
    """Render tables as a SQLAlchemy declarative module (Python source)."""
    emitter = _Emitter()
    blocks: list[str] = []
    used_classes: set[str] = set()

    for table in sort_tables(tables):
        pk_cols = (
            list(table.primary_key.columns)
            if table.primary_key
            else [c.name for c in table.columns if c.primary_key]
        )
        columns = [(c, emitter.column_args(table, c, pk_cols)) for c in table.columns]
        entries, options, notes = emitter.table_args(table)

        lines: list[str] = list(notes)
        if pk_cols:
            class_name = _class_name(table.name)
            if class_name in _IMPORTED_NAMES:
                class_name += "Model"
            while class_name in used_classes:
                class_name += "_"
            used_classes.add(class_name)
            lines.append(f"class {class_name}(Base):")
            lines.append(f"    __tablename__ = {table.name!r}")
            if options:
                entries.append(repr(options))
            if entries:
                lines.append("    __table_args__ = (")
                lines.extend(f"        {entry}," for entry in entries)
                lines.append("    )")
            lines.append("")
            for col, args in columns:
                lines.append(f"    {_attr_name(col.name)} = Column({args})")
        else:
            emitter.sa_names.add("Table")
            var = _attr_name(table.name) + "_table"
            lines.append(f"{var} = Table(")
            lines.append(f"    {table.name!r},")
            lines.append("    Base.metadata,")
            for col, args in columns:
                if _attr_name(col.name) == col.name:
                    args = f"{col.name!r}, {args}"
                lines.append(f"    Column({args}),")
            lines.extend(f"    {entry}," for entry in entries)
            lines.extend(f"    {key}={value!r}," for key, value in options.items())
            lines.append(")")
        blocks.append("\n".join(lines))

    if emitter.uses_text:
        emitter.sa_names.add("text")

    header = [
        '"""SQLAlchemy declarative models generated from a schema snapshot."""',
        "",
        f"from sqlalchemy import {', '.join(sorted(emitter.sa_names, key=str.lower))}",
    ]
    if emitter.pg_names:
        header.append(
            f"from sqlalchemy.dialects.postgresql import {', '.join(sorted(emitter.pg_names))}"
        )
    header += [
        "from sqlalchemy.orm import DeclarativeBase",
        "",
        "",
        "class Base(DeclarativeBase):",
        "    pass",
    ]
    return "\n".join(header) + "\n\n\n" + "\n\n\n".join(blocks) + ("\n" if blocks else "")
