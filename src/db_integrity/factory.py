"""Profile selection and adapter construction.

Profiles live in ``db.toml``.  The active profile is chosen by, in order:
an explicit name, the ``{prefix}DB_PROFILE`` environment variable, and the
``.db-profile`` lock file written by a successful ``connect``.

Usage:
    from db_integrity.factory import connect_and_validate, get_adapter

    result = await connect_and_validate("local")     # writes .db-profile
    adapter = get_adapter()                          # uses the locked profile
"""

import os
from pathlib import Path
from urllib.parse import quote

from pydantic import BaseModel

from db_integrity.adapters.postgres import AsyncPostgresAdapter
from db_integrity.config.loader import load_db_config
from db_integrity.config.models import DatabaseConfig, DatabaseProfile
from db_integrity.schema.introspector import SchemaIntrospector

PROFILE_LOCK_FILE = ".db-profile"


class ProfileNotFoundError(Exception):
    """Raised when no database profile is configured or the name is unknown."""

    pass


class ConnectionResult(BaseModel):
    """Result of ``connect_and_validate``."""

    success: bool
    profile_name: str | None = None
    error: str | None = None


# ============================================================================
# Profile Lock File Operations
# ============================================================================


def _lock_path() -> Path:
    return Path.cwd() / PROFILE_LOCK_FILE


def read_profile_lock() -> str | None:
    """Read profile name from lock file.

    Returns:
        Profile name if lock file exists, None otherwise
    """
    path = _lock_path()
    if path.exists():
        return path.read_text().strip() or None
    return None


def write_profile_lock(profile_name: str) -> None:
    """Write profile name to lock file (only after a successful connection)."""
    _lock_path().write_text(profile_name)


def clear_profile_lock() -> None:
    """Remove profile lock file."""
    path = _lock_path()
    if path.exists():
        path.unlink()


def get_active_profile_name(env_prefix: str = "") -> str:
    """Get active profile name from env var or lock file.

    Priority:
    1. ``{env_prefix}DB_PROFILE`` env var (for initial connect or CI/CD)
    2. .db-profile file (profile from a previous successful connect)
    3. Raise ProfileNotFoundError

    Raises:
        ProfileNotFoundError: If no profile is configured
    """
    env_var = f"{env_prefix}DB_PROFILE"
    env_profile = os.environ.get(env_var)
    if env_profile:
        return env_profile

    lock_profile = read_profile_lock()
    if lock_profile:
        return lock_profile

    raise ProfileNotFoundError(
        "No database profile configured.\n"
        f"Run: db-integrity connect --profile <name>  (or set {env_var})"
    )


def get_active_profile(
    profile_name: str | None = None,
    config: DatabaseConfig | None = None,
    env_prefix: str = "",
) -> tuple[str, DatabaseProfile]:
    """Resolve the active profile name and its configuration.

    Raises:
        ProfileNotFoundError: If no profile is selected or it is not in db.toml
        FileNotFoundError: If db.toml is missing
    """
    name = profile_name or get_active_profile_name(env_prefix)
    config = config or load_db_config()
    if name not in config.profiles:
        available = ", ".join(config.profiles) or "(none)"
        raise ProfileNotFoundError(
            f"Profile '{name}' not found in db.toml. Available profiles: {available}"
        )
    return name, config.profiles[name]


def resolve_url(profile: DatabaseProfile) -> str:
    """Resolve profile URL with password substitution.

    A ``[YOUR-PASSWORD]`` placeholder is replaced by the URL-encoded
    ``db_password``.
    """
    url = profile.url
    if profile.db_password and "[YOUR-PASSWORD]" in url:
        url = url.replace("[YOUR-PASSWORD]", quote(profile.db_password, safe=""))
    return url


# ============================================================================
# Connection and Adapter Factory
# ============================================================================


async def connect_and_validate(
    profile_name: str | None = None,
    config: DatabaseConfig | None = None,
    env_prefix: str = "",
) -> ConnectionResult:
    """Test the connection for a profile and lock it in on success.

    Example:
        >>> result = await connect_and_validate("local")
        >>> if not result.success:
        ...     print(result.error)
    """
    try:
        name, profile = get_active_profile(profile_name, config, env_prefix)
    except (ProfileNotFoundError, FileNotFoundError) as e:
        return ConnectionResult(success=False, profile_name=profile_name, error=str(e))

    try:
        async with SchemaIntrospector(resolve_url(profile)) as introspector:
            await introspector.test_connection()
    except Exception as e:
        return ConnectionResult(
            success=False,
            profile_name=name,
            error=f"Failed to connect to database: {e}",
        )

    write_profile_lock(name)
    return ConnectionResult(success=True, profile_name=name)


def get_adapter(
    profile_name: str | None = None,
    config: DatabaseConfig | None = None,
    env_prefix: str = "",
) -> AsyncPostgresAdapter:
    """Create an adapter for the active (or named) profile.

    Raises:
        ProfileNotFoundError: If no profile is configured
    """
    _, profile = get_active_profile(profile_name, config, env_prefix)
    return AsyncPostgresAdapter(resolve_url(profile))
