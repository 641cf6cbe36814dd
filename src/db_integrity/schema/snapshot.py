"""Snapshot persistence: schema.json, schema.sql, and declarative models.

``schema.json`` is always written.  ``schema.sql`` and the declarative
``models.py`` are written when listed in ``SchemaConfig.formats``.  Every
file is rendered and written to a temporary sibling first, and the set is
renamed into place only once all of them succeeded, so a failure never
leaves a partial snapshot behind.

Usage:
    from db_integrity.schema.snapshot import load_snapshot, save_snapshot

    paths = save_snapshot(schema, config.schema_settings)
    schema = load_snapshot("schema/schema.json")
"""

import logging
import os
from pathlib import Path

from db_integrity.config.models import SchemaConfig
from db_integrity.schema.ddl import render_schema_sql
from db_integrity.schema.declarative import render_declarative
from db_integrity.schema.models import DatabaseSchema

logger = logging.getLogger(__name__)

SNAPSHOT_JSON = "schema.json"
SNAPSHOT_SQL = "schema.sql"
SNAPSHOT_DECLARATIVE = "models.py"


def render_snapshot(schema: DatabaseSchema, formats: list[str]) -> dict[str, str]:
    """Render snapshot files (file name -> content) without writing."""
    files = {SNAPSHOT_JSON: schema.model_dump_json(indent=2) + "\n"}
    if "sql" in formats:
        files[SNAPSHOT_SQL] = render_schema_sql(schema)
    if "declarative" in formats:
        files[SNAPSHOT_DECLARATIVE] = render_declarative(schema.tables)
    return files


def save_snapshot(schema: DatabaseSchema, config: SchemaConfig) -> list[Path]:
    """Persist a snapshot in the configured formats.

    Args:
        schema: Complete snapshot to persist.
        config: Schema settings (output directory and formats).

    Returns:
        Paths of the files written.
    """
    directory = Path(config.directory)
    directory.mkdir(parents=True, exist_ok=True)
    files = render_snapshot(schema, list(config.formats))

    staged: list[tuple[Path, Path]] = []
    try:
        for name, content in files.items():
            final = directory / name
            tmp = directory / f".{name}.tmp"
            tmp.write_text(content)
            staged.append((tmp, final))
    except OSError:
        for tmp, _ in staged:
            tmp.unlink(missing_ok=True)
        raise

    written: list[Path] = []
    for tmp, final in staged:
        os.replace(tmp, final)
        written.append(final)
    logger.info(f"Saved schema snapshot ({len(schema.tables)} tables) to {directory}")
    return written


def load_snapshot(path: str | Path) -> DatabaseSchema:
    """Load a persisted snapshot.

    Args:
        path: ``schema.json`` file, or the directory containing it.

    Raises:
        FileNotFoundError: If no snapshot exists at ``path``.
    """
    snapshot = Path(path)
    if snapshot.is_dir():
        snapshot = snapshot / SNAPSHOT_JSON
    if not snapshot.exists():
        raise FileNotFoundError(f"Schema snapshot not found: {snapshot}")
    return DatabaseSchema.model_validate_json(snapshot.read_text())
