"""Python type generation from a schema snapshot.

For every table this emits a record ``TypedDict``, a ``Create<Name>Input``
(auto-increment and defaulted columns become ``NotRequired``) and an
``Update<Name>Input`` (``total=False``).  Views get a read-only record
type.  String enums are synthesized from native enum types and from
``CHECK (col IN (...))`` / ``col = ANY (ARRAY[...])`` constraints, with a
looser match for status/type/state-named columns.

Type generation is advisory: ``SchemaIntrospector.analyze()`` logs its
failures and carries on.
"""

import keyword
import re
from pathlib import Path

from db_integrity.schema.models import Column, ConstraintKind, DatabaseSchema, Table
from db_integrity.schema.types import python_type

_IN_LIST = re.compile(
    r"\(*\s*\"?(?P<column>\w+)\"?\)?(?:::[\w ]+?)?\s+IN\s*\((?P<values>[^)]*)\)",
    re.IGNORECASE,
)
_ANY_ARRAY = re.compile(
    r"\(*\s*\"?(?P<column>\w+)\"?\)?(?:::[\w ]+?)?\s*=\s*ANY\s*\(\(?ARRAY\[(?P<values>[^\]]*)\]",
    re.IGNORECASE,
)
_QUOTED = re.compile(r"'((?:[^']|'')*)'")
_ENUM_HINTS = ("status", "type", "state")


def _pascal(name: str) -> str:
    return "".join(p[:1].upper() + p[1:].lower() for p in re.split(r"[^A-Za-z0-9]+", name) if p)


def _member_name(value: str, taken: set[str]) -> str:
    name = re.sub(r"\W+", "_", value).strip("_").upper() or "EMPTY"
    if name[0].isdigit():
        name = f"V_{name}"
    base, n = name, 2
    while name in taken:
        name = f"{base}_{n}"
        n += 1
    taken.add(name)
    return name


def _quoted_values(text: str) -> list[str]:
    values: list[str] = []
    for raw in _QUOTED.findall(text):
        value = raw.replace("''", "'")
        if value not in values:
            values.append(value)
    return values


def extract_check_enums(table: Table) -> dict[str, list[str]]:
    """Map column name -> allowed values mined from CHECK constraints."""
    found: dict[str, list[str]] = {}
    checks = [c for c in table.constraints if c.kind == ConstraintKind.CHECK]
    for con in checks:
        for pattern in (_IN_LIST, _ANY_ARRAY):
            for match in pattern.finditer(con.definition):
                column = match.group("column")
                values = _quoted_values(match.group("values"))
                if values and table.get_column(column) is not None:
                    found.setdefault(column, values)

    # status/type/state columns: any check that mentions the column and
    # lists quoted values
    for col in table.columns:
        if col.name in found or not any(h in col.name.lower() for h in _ENUM_HINTS):
            continue
        for con in checks:
            if re.search(rf"\b{re.escape(col.name)}\b", con.definition):
                values = _quoted_values(con.definition)
                if values:
                    found[col.name] = values
                    break
    return found


def _render_enum(name: str, values: list[str]) -> str:
    taken: set[str] = set()
    lines = [f"class {name}(str, Enum):"]
    for value in values:
        lines.append(f"    {_member_name(value, taken)} = {value!r}")
    return "\n".join(lines)


def _render_typed_dict(
    name: str,
    fields: list[tuple[str, str]],
    total: bool = True,
    doc: str | None = None,
) -> str:
    total_arg = "" if total else ", total=False"
    if any(not key.isidentifier() or keyword.iskeyword(key) for key, _ in fields):
        items = ", ".join(f"{key!r}: {annotation}" for key, annotation in fields)
        return f"{name} = TypedDict({name!r}, {{{items}}}{total_arg})"
    lines = [f"class {name}(TypedDict{total_arg}):"]
    if doc:
        lines.append(f'    """{doc}"""')
        if fields:
            lines.append("")
    for key, annotation in fields:
        lines.append(f"    {key}: {annotation}")
    if not fields and not doc:
        lines.append("    pass")
    return "\n".join(lines)


def _annotation(col: Column, enum_names: dict[str, str], native: dict[str, str]) -> str:
    base = enum_names.get(col.name) or native.get(col.data_type) or python_type(col.data_type)
    return f"{base} | None" if col.nullable else base


def generate_types(schema: DatabaseSchema) -> str:
    """Render Python type definitions for a snapshot (module source)."""
    blocks: list[str] = []
    used: set[str] = {
        "Any", "Decimal", "Enum", "NotRequired", "TypedDict",
        "date", "datetime", "time", "timedelta",
    }

    def unique_name(name: str) -> str:
        candidate, n = name, 2
        while candidate in used:
            candidate = f"{name}{n}"
            n += 1
        used.add(candidate)
        return candidate

    native: dict[str, str] = {}
    for enum in schema.enums:
        class_name = unique_name(_pascal(enum.name))
        native[enum.name] = class_name
        blocks.append(_render_enum(class_name, enum.values))

    for table in schema.tables:
        table_class = _pascal(table.name)
        enum_names: dict[str, str] = {}
        for column, values in extract_check_enums(table).items():
            enum_class = unique_name(f"{table_class}{_pascal(column)}")
            enum_names[column] = enum_class
            blocks.append(_render_enum(enum_class, values))

        record = [(c.name, _annotation(c, enum_names, native)) for c in table.columns]
        blocks.append(
            _render_typed_dict(
                unique_name(table_class), record, doc=f"Row of table ``{table.name}``."
            )
        )

        create_fields: list[tuple[str, str]] = []
        for col in table.columns:
            annotation = _annotation(col, enum_names, native)
            if col.auto_increment or col.default is not None:
                annotation = f"NotRequired[{annotation}]"
            create_fields.append((col.name, annotation))
        blocks.append(_render_typed_dict(unique_name(f"Create{table_class}Input"), create_fields))

        blocks.append(
            _render_typed_dict(unique_name(f"Update{table_class}Input"), record, total=False)
        )

    for view in schema.views:
        fields = [
            (c.name, f"{python_type(c.data_type)} | None" if c.nullable else python_type(c.data_type))
            for c in view.columns
        ]
        blocks.append(
            _render_typed_dict(
                unique_name(f"{_pascal(view.name)}View"),
                fields,
                doc=f"Read-only row of view ``{view.name}``.",
            )
        )

    header = "\n".join(
        [
            '"""Record types generated from a schema snapshot."""',
            "",
            "from datetime import date, datetime, time, timedelta",
            "from decimal import Decimal",
            "from enum import Enum",
            "from typing import Any, NotRequired, TypedDict",
        ]
    )
    return header + "\n\n\n" + "\n\n\n".join(blocks) + "\n"


def write_types(schema: DatabaseSchema, directory: str | Path) -> Path:
    """Write generated types to ``<directory>/models.py``."""
    out_dir = Path(directory)
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / "models.py"
    path.write_text(generate_types(schema))
    return path
