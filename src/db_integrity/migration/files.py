"""Migration file discovery.

A migration is a ``*.sql`` file whose name starts with a version::

    migrations/
        001_create_users.sql
        002_add_email_index.sql
        002_add_email_index.down.sql      (optional rollback file)
        V3_backfill.sql
        20250101120000_add_orders.sql

Header lines of the form ``-- @key: value`` override the id, version, name,
description, type, and transactional flag.  Everything before a line
reading ``-- @rollback`` is the forward SQL; everything after it is the
rollback SQL.  The checksum covers the forward SQL only.
"""

import hashlib
import re
from pathlib import Path

from db_integrity.errors import ErrorCode, IntegrityException
from db_integrity.migration.models import Migration, MigrationType

METADATA_PATTERN = re.compile(r"--\s*@(\w+):\s*(.+)$")
VERSION_PATTERN = re.compile(r"^(V?\d+(?:_\d+)*)_")
ROLLBACK_MARKER = re.compile(r"^\s*--\s*@rollback\s*$", re.IGNORECASE)
DOWN_SUFFIX = ".down.sql"

_TRUE = {"true", "yes", "on", "1"}
_FALSE = {"false", "no", "off", "0"}


def calculate_checksum(sql: str) -> str:
    """SHA-256 hex digest of the forward SQL."""
    return hashlib.sha256(sql.encode("utf-8")).hexdigest()


def version_key(version: str) -> tuple:
    """Natural sort key: digit runs compare numerically.

    Example:
        >>> sorted(["10", "9", "2_1"], key=version_key)
        ['2_1', '9', '10']
    """
    parts = re.findall(r"\d+|[^\d]+", version.lstrip("Vv"))
    return tuple((0, int(p)) if p.isdigit() else (1, p) for p in parts)


def split_rollback(content: str) -> tuple[str, str | None]:
    """Split file content at the ``-- @rollback`` marker."""
    lines = content.splitlines()
    for i, line in enumerate(lines):
        if ROLLBACK_MARKER.match(line):
            forward = "\n".join(lines[:i]).strip()
            rollback = "\n".join(lines[i + 1 :]).strip()
            return forward, rollback or None
    return content.strip(), None


def parse_metadata(content: str) -> dict[str, str]:
    """Collect ``-- @key: value`` header lines (first occurrence wins)."""
    metadata: dict[str, str] = {}
    for line in content.splitlines():
        match = METADATA_PATTERN.match(line.strip())
        if match:
            metadata.setdefault(match.group(1).lower(), match.group(2).strip())
    return metadata


def _parse_bool(value: str, path: Path) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise IntegrityException(
        ErrorCode.MIGRATION_LOAD_FAILED,
        f"Invalid @transactional value {value!r} in {path.name}",
    )


def parse_migration_file(path: Path) -> Migration:
    """Parse a single migration file.

    Raises:
        IntegrityException: ``MIGRATION_LOAD_FAILED`` when the file name has
            no version prefix or a header value is invalid.
    """
    content = path.read_text(encoding="utf-8")
    metadata = parse_metadata(content)

    match = VERSION_PATTERN.match(path.name)
    if not match and "version" not in metadata:
        raise IntegrityException(
            ErrorCode.MIGRATION_LOAD_FAILED,
            f"Migration file name has no version prefix: {path.name}",
        )
    prefix = match.group(1) if match else ""
    stem = path.name[: -len(".sql")]
    version = metadata.get("version", prefix.lstrip("V"))
    default_name = stem[len(prefix) :].lstrip("_") if match else stem

    forward, rollback = split_rollback(content)
    down_file = path.with_name(stem + DOWN_SUFFIX)
    if rollback is None and down_file.exists():
        rollback = down_file.read_text(encoding="utf-8").strip() or None

    try:
        migration_type = MigrationType(metadata.get("type", "schema").lower())
    except ValueError:
        raise IntegrityException(
            ErrorCode.MIGRATION_LOAD_FAILED,
            f"Invalid @type {metadata['type']!r} in {path.name}",
            version=version,
        )

    transactional = None
    if "transactional" in metadata:
        transactional = _parse_bool(metadata["transactional"], path)

    return Migration(
        id=metadata.get("id", stem),
        version=version,
        name=metadata.get("name", default_name),
        description=metadata.get("description"),
        type=migration_type,
        sql=forward,
        rollback_sql=rollback,
        checksum=calculate_checksum(forward),
        transactional=transactional,
        path=str(path),
    )


_DOLLAR_TAG = re.compile(r"\$[A-Za-z_]*\$")
_LEADING_COMMENTS = re.compile(r"^(?:\s*(?:--[^\n]*(?:\n|$)|/\*.*?\*/))*\s*", re.DOTALL)


def split_statements(sql: str) -> list[str]:
    """Split a script on top-level semicolons.

    Quoted strings, quoted identifiers, dollar-quoted bodies, and comments
    are skipped over; chunks holding only comments are dropped.  Returned
    statements have no trailing semicolon.
    """
    statements: list[str] = []
    current: list[str] = []
    has_code = False
    i, n = 0, len(sql)
    while i < n:
        ch = sql[i]
        if sql.startswith("--", i):
            end = sql.find("\n", i)
            end = n if end == -1 else end
        elif sql.startswith("/*", i):
            end = sql.find("*/", i + 2)
            end = n if end == -1 else end + 2
        elif ch in ("'", '"'):
            end = i + 1
            while end < n:
                if sql[end] == ch:
                    if sql[end + 1 : end + 2] == ch:
                        end += 2
                        continue
                    break
                end += 1
            end = min(end + 1, n)
            has_code = True
        elif ch == "$" and _DOLLAR_TAG.match(sql, i):
            tag = _DOLLAR_TAG.match(sql, i).group(0)
            end = sql.find(tag, i + len(tag))
            end = n if end == -1 else end + len(tag)
            has_code = True
        elif ch == ";":
            if has_code:
                statements.append("".join(current).strip())
            current, has_code = [], False
            i += 1
            continue
        else:
            if not ch.isspace():
                has_code = True
            end = i + 1
        current.append(sql[i:end])
        i = end
    if has_code:
        statements.append("".join(current).strip())
    return statements


def _first_keyword(statement: str) -> str:
    body = _LEADING_COMMENTS.sub("", statement, count=1)
    return body.split(None, 1)[0].upper() if body.strip() else ""


def execution_units(sql: str) -> list[str]:
    """Group a script into units for autocommit execution.

    Each top-level statement is its own unit, except that an explicit
    ``BEGIN`` ... ``COMMIT`` block is kept together so it runs on a single
    connection.  Needed for scripts that cannot run inside one implicit
    transaction (``CREATE INDEX CONCURRENTLY``).
    """
    units: list[str] = []
    block: list[str] | None = None
    for statement in split_statements(sql):
        keyword = _first_keyword(statement)
        if block is None:
            if keyword in ("BEGIN", "START"):
                block = [statement]
            else:
                units.append(statement + ";")
            continue
        block.append(statement)
        if keyword in ("COMMIT", "END", "ROLLBACK"):
            units.append(";\n".join(block) + ";")
            block = None
    if block:
        units.append(";\n".join(block) + ";")
    return units


def discover_migrations(directory: str | Path) -> list[Migration]:
    """Load every migration in ``directory``, in natural version order.

    ``*.down.sql`` files are rollback companions, not migrations.  A
    missing directory yields an empty list.

    Raises:
        IntegrityException: ``MIGRATION_LOAD_FAILED`` for unparseable files
            or duplicate ids.
    """
    root = Path(directory)
    if not root.is_dir():
        return []

    migrations: list[Migration] = []
    seen: dict[str, str] = {}
    for path in sorted(root.glob("*.sql")):
        if path.name.endswith(DOWN_SUFFIX):
            continue
        migration = parse_migration_file(path)
        if migration.id in seen:
            raise IntegrityException(
                ErrorCode.MIGRATION_LOAD_FAILED,
                f"Duplicate migration id '{migration.id}' "
                f"({seen[migration.id]} and {path.name})",
                migration_id=migration.id,
                version=migration.version,
            )
        seen[migration.id] = path.name
        migrations.append(migration)

    return sorted(migrations, key=lambda m: version_key(m.version))
