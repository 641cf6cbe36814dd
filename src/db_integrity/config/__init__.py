"""Configuration models and the db.toml loader.

Usage:
    from db_integrity.config import load_db_config

    config = load_db_config()
    config.migrations.table_name
"""

from db_integrity.config.loader import load_db_config
from db_integrity.config.models import (
    DatabaseConfig,
    DatabaseProfile,
    MigrationConfig,
    SchemaConfig,
)

__all__ = [
    "load_db_config",
    "DatabaseConfig",
    "DatabaseProfile",
    "MigrationConfig",
    "SchemaConfig",
]
