"""Type normalization, default parsing, and type-mapping tables.

Pure helpers shared by the introspector (normalizing raw catalog strings),
the generators (rendering defaults, mapping form fields, checking that a
type change only widens), the snapshot writer (SQLAlchemy declarative
types), and type generation (Python annotation types).
"""

import re

from db_integrity.schema.models import AUTO_INCREMENT, DefaultValue

# ============================================================================
# Type normalization
# ============================================================================

_TYPE_ALIASES = {
    "character varying": "varchar",
    "character": "char",
    "bpchar": "char",
    "timestamp with time zone": "timestamptz",
    "timestamp without time zone": "timestamp",
    "time with time zone": "timetz",
    "time without time zone": "time",
    "int": "integer",
    "int2": "smallint",
    "int4": "integer",
    "int8": "bigint",
    "bool": "boolean",
    "float4": "real",
    "float8": "double precision",
    "decimal": "numeric",
}

_TYPE_WITH_ARGS = re.compile(r"^(?P<base>[a-z][a-z0-9_ ]*?)\s*\((?P<args>[\d\s,]+)\)$")


def split_type(data_type: str) -> tuple[str, list[int]]:
    """Split ``varchar(255)`` into ``("varchar", [255])``."""
    match = _TYPE_WITH_ARGS.match(data_type.strip().lower())
    if not match:
        return data_type.strip().lower(), []
    args = [int(a) for a in match.group("args").split(",") if a.strip()]
    return match.group("base").strip(), args


def normalize_data_type(
    data_type: str,
    character_maximum_length: int | None = None,
    numeric_precision: int | None = None,
    numeric_scale: int | None = None,
    udt_name: str | None = None,
) -> str:
    """Normalize a PostgreSQL catalog type string.

    Maps verbose information_schema names to short canonical names and
    folds length/precision/scale into the type string.

    Example:
        >>> normalize_data_type("character varying", character_maximum_length=255)
        'varchar(255)'
        >>> normalize_data_type("numeric", numeric_precision=10, numeric_scale=2)
        'numeric(10,2)'
    """
    raw = data_type.strip().lower()

    if raw == "array" and udt_name:
        element = udt_name.lstrip("_")
        return f"{normalize_data_type(element)}[]"
    if raw == "user-defined" and udt_name:
        return udt_name
    if raw.endswith("[]"):
        return f"{normalize_data_type(raw[:-2])}[]"

    base, args = split_type(raw)
    base = _TYPE_ALIASES.get(base, base)

    if not args:
        if base in ("varchar", "char") and character_maximum_length:
            args = [character_maximum_length]
        elif base == "numeric" and numeric_precision:
            args = [numeric_precision, numeric_scale or 0]

    if args:
        return f"{base}({','.join(str(a) for a in args)})"
    return base


# ============================================================================
# Default values
# ============================================================================

_CAST_SUFFIX = re.compile(
    r"^(?P<body>.+?)::[a-z_][a-z0-9_ ]*(\[\])?(\(\d+(,\s*\d+)?\))?$",
    re.IGNORECASE,
)
_QUOTED = re.compile(r"'((?:[^']|'')*)'")
_INT = re.compile(r"-?\d+")
_FLOAT = re.compile(r"-?(\d+\.\d*|\.\d+|\d+)([eE][-+]?\d+)?")


def strip_casts(raw: str) -> str:
    """Remove trailing ``::type`` casts (``'x'::character varying`` -> ``'x'``)."""
    value = raw.strip()
    while True:
        match = _CAST_SUFFIX.match(value)
        if not match:
            break
        value = match.group("body").strip()
        inner = re.fullmatch(r"\(([^()]*)\)", value)
        if inner:
            value = inner.group(1).strip()
    return value


def parse_default(raw: str | None) -> DefaultValue | None:
    """Parse a ``column_default`` string from the catalog.

    ``nextval(...)`` becomes the auto-increment sentinel, quoted strings are
    unquoted, booleans and numbers are typed, ``NULL`` means no default, and
    anything else is kept as a raw expression (``now()``).
    """
    if raw is None:
        return None
    if raw.strip().lower().startswith("nextval("):
        return AUTO_INCREMENT

    value = strip_casts(raw)
    quoted = _QUOTED.fullmatch(value)
    if quoted:
        return DefaultValue(kind="literal", value=quoted.group(1).replace("''", "'"))

    lowered = value.lower()
    if lowered == "null":
        return None
    if lowered in ("true", "false"):
        return DefaultValue(kind="literal", value=lowered == "true")
    if _INT.fullmatch(value):
        return DefaultValue(kind="literal", value=int(value))
    if _FLOAT.fullmatch(value):
        return DefaultValue(kind="literal", value=float(value))
    return DefaultValue(kind="expression", value=value)


def render_default(default: DefaultValue | None) -> str | None:
    """Render a parsed default back to SQL (``None`` for auto-increment)."""
    if default is None or default.kind == "auto_increment":
        return None
    if default.kind == "expression":
        return str(default.value)
    value = default.value
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        return str(value)
    if value is None:
        return "NULL"
    return "'" + str(value).replace("'", "''") + "'"


# ============================================================================
# Serial types
# ============================================================================

SERIAL_TYPES = {
    "smallint": "SMALLSERIAL",
    "integer": "SERIAL",
    "bigint": "BIGSERIAL",
}


# ============================================================================
# Widening rules (form-driven changes never narrow)
# ============================================================================

_INT_RANK = {"smallint": 1, "integer": 2, "bigint": 3}
_TEXTUAL = ("char", "varchar", "text")


def is_widening(old: str, new: str) -> bool:
    """Return True when changing ``old`` to ``new`` cannot lose data."""
    old_base, old_args = split_type(normalize_data_type(old))
    new_base, new_args = split_type(normalize_data_type(new))
    if (old_base, old_args) == (new_base, new_args):
        return False

    if old_base in _INT_RANK:
        if new_base in _INT_RANK:
            return _INT_RANK[new_base] > _INT_RANK[old_base]
        return new_base == "numeric" and not new_args

    if old_base in _TEXTUAL and new_base in _TEXTUAL:
        if new_base == "text":
            return True
        if old_base == "text":
            return False
        if not new_args:
            return new_base == "varchar"
        if not old_args:
            return False
        return new_args[0] >= old_args[0] and not (
            old_base == "varchar" and new_base == "char"
        )

    if old_base == "numeric" and new_base == "numeric":
        if not new_args:
            return True
        if not old_args:
            return False
        old_scale = old_args[1] if len(old_args) > 1 else 0
        new_scale = new_args[1] if len(new_args) > 1 else 0
        return new_scale >= old_scale and (new_args[0] - new_scale) >= (
            old_args[0] - old_scale
        )

    return old_base == "real" and new_base == "double precision"


# ============================================================================
# Form field mapping
# ============================================================================

SMALLINT_MAX = 32767


def form_field_type(
    kind: str,
    max_length: int | None = None,
    max_value: float | None = None,
) -> str:
    """Map a UI form field kind to a column type.

    Example:
        >>> form_field_type("text", max_length=80)
        'varchar(80)'
        >>> form_field_type("number", max_value=100)
        'smallint'
    """
    if kind == "text":
        return f"varchar({max_length})" if max_length else "text"
    if kind in ("email", "password"):
        return "varchar(255)"
    if kind == "number":
        if max_value is not None and max_value < SMALLINT_MAX:
            return "smallint"
        return "integer"
    if kind == "date":
        return "date"
    if kind == "datetime":
        return "timestamp"
    if kind == "checkbox":
        return "boolean"
    if kind == "textarea":
        return "text"
    return "varchar(255)"


# ============================================================================
# Declarative (SQLAlchemy) type map
# ============================================================================

DECLARATIVE_TYPE_MAP = {
    "smallint": "SmallInteger",
    "integer": "Integer",
    "bigint": "BigInteger",
    "numeric": "Numeric",
    "real": "Float",
    "double precision": "Double",
    "varchar": "String",
    "char": "CHAR",
    "text": "Text",
    "boolean": "Boolean",
    "date": "Date",
    "time": "Time",
    "timetz": "Time(timezone=True)",
    "timestamp": "DateTime",
    "timestamptz": "DateTime(timezone=True)",
    "interval": "Interval",
    "uuid": "Uuid",
    "json": "JSON",
    "jsonb": "JSONB",
    "bytea": "LargeBinary",
    "inet": "INET",
    "cidr": "CIDR",
    "citext": "Text",
}

DECLARATIVE_FALLBACK = "Text"


def declarative_type(data_type: str) -> str:
    """SQLAlchemy type expression for an engine type (``Text`` if unknown)."""
    if data_type.endswith("[]"):
        return f"ARRAY({declarative_type(data_type[:-2])})"
    base, args = split_type(data_type)
    mapped = DECLARATIVE_TYPE_MAP.get(base, DECLARATIVE_FALLBACK)
    if args and mapped in ("String", "CHAR", "Numeric"):
        return f"{mapped}({', '.join(str(a) for a in args)})"
    return mapped


# ============================================================================
# Python annotation type map
# ============================================================================

PYTHON_TYPE_MAP = {
    "smallint": "int",
    "integer": "int",
    "bigint": "int",
    "numeric": "Decimal",
    "real": "float",
    "double precision": "float",
    "varchar": "str",
    "char": "str",
    "text": "str",
    "citext": "str",
    "uuid": "str",
    "boolean": "bool",
    "date": "date",
    "time": "time",
    "timetz": "time",
    "timestamp": "datetime",
    "timestamptz": "datetime",
    "interval": "timedelta",
    "json": "dict[str, Any]",
    "jsonb": "dict[str, Any]",
    "bytea": "bytes",
    "inet": "str",
    "cidr": "str",
}


def python_type(data_type: str) -> str:
    """Python annotation for an engine type (``Any`` if unknown)."""
    if data_type.endswith("[]"):
        return f"list[{python_type(data_type[:-2])}]"
    base, _ = split_type(data_type)
    return PYTHON_TYPE_MAP.get(base, "Any")
