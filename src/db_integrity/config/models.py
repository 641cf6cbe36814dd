"""Pydantic models for db.toml configuration."""

import re
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)?$")

EXCLUDED_TABLES_DEFAULT = ["schema_migrations", "pg_stat_statements", "spatial_ref_sys"]


# ============================================================================
# Configuration Models
# ============================================================================


class DatabaseProfile(BaseModel):
    """Database connection profile from db.toml."""

    model_config = ConfigDict(frozen=True)

    url: str
    description: str = ""
    db_password: str | None = None  # For [YOUR-PASSWORD] placeholder substitution


class MigrationConfig(BaseModel):
    """``[migrations]`` section."""

    model_config = ConfigDict(frozen=True)

    directory: str = "migrations"
    table_name: str = "schema_migrations"
    validate_checksums: bool = True
    transactional: bool = True
    lock_timeout: float = Field(default=30.0, ge=0)
    allow_out_of_order: bool = False

    @field_validator("table_name")
    @classmethod
    def _plain_identifier(cls, value: str) -> str:
        # Interpolated into DDL, so only plain (optionally schema-qualified) names
        if not _TABLE_NAME.match(value):
            raise ValueError(f"Invalid tracking table name: {value!r}")
        return value


class SchemaConfig(BaseModel):
    """``[schema]`` section."""

    model_config = ConfigDict(frozen=True)

    directory: str = "schema"
    formats: list[Literal["json", "sql", "declarative"]] = Field(
        default_factory=lambda: ["json"]
    )
    generate_types: bool = False
    type_output_directory: str = "schema/types"
    include_views: bool = True
    include_functions: bool = True
    include_indexes: bool = True
    schema_name: str = "public"
    excluded_tables: list[str] = Field(
        default_factory=lambda: list(EXCLUDED_TABLES_DEFAULT)
    )


class DatabaseConfig(BaseModel):
    """Complete database configuration from db.toml."""

    model_config = ConfigDict(frozen=True)

    profiles: dict[str, DatabaseProfile] = Field(default_factory=dict)
    migrations: MigrationConfig = Field(default_factory=MigrationConfig)
    schema_settings: SchemaConfig = Field(default_factory=SchemaConfig)
