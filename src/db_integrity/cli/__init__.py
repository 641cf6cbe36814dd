"""CLI module for schema analysis, migrations, and drift repair.

Provides commands for database profile management, schema snapshots,
migration execution and rollback, and migration generation from snapshot
diffs or live drift.

Usage:
    db-integrity --profile local connect
    db-integrity profiles
    db-integrity analyze
    db-integrity status
    db-integrity migrate --dry-run
    db-integrity migrate --batch-size 1
    db-integrity rollback --to 20250101120000
    db-integrity diff schema/old.json schema/schema.json --name add_orders --write
    db-integrity drift --expected schema/schema.json --write

Commands:
    profiles  - List available profiles
    connect   - Test connection and lock in the profile
    analyze   - Introspect the live schema and persist a snapshot
    status    - Show tracked and pending migrations
    migrate   - Apply pending migrations
    rollback  - Roll back applied migrations
    forget    - Remove a FAILED or ROLLED_BACK tracking row
    diff      - Generate a migration from two snapshots
    drift     - Compare the live schema to a snapshot
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from db_integrity.adapters.postgres import AsyncPostgresAdapter
from db_integrity.config.loader import load_db_config
from db_integrity.config.models import DatabaseConfig
from db_integrity.errors import IntegrityError
from db_integrity.factory import (
    ProfileNotFoundError,
    connect_and_validate,
    get_active_profile,
    get_adapter,
    read_profile_lock,
    resolve_url,
)
from db_integrity.migration.engine import MigrationEngine
from db_integrity.migration.generator import MigrationGenerator
from db_integrity.migration.models import (
    GeneratedMigration,
    GenerateOptions,
    Migration,
    MigrationOptions,
    MigrationStatus,
)
from db_integrity.schema.comparator import detect_drift, diff_schemas
from db_integrity.schema.introspector import SchemaIntrospector
from db_integrity.schema.snapshot import load_snapshot

console = Console()

_STATUS_STYLES = {
    MigrationStatus.PENDING: "yellow",
    MigrationStatus.RUNNING: "blue",
    MigrationStatus.COMPLETED: "green",
    MigrationStatus.FAILED: "red",
    MigrationStatus.ROLLED_BACK: "magenta",
}


# ============================================================================
# Helpers
# ============================================================================


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
    )


def _load_config(args: argparse.Namespace) -> DatabaseConfig | None:
    config_path = getattr(args, "config", None)
    try:
        return load_db_config(Path(config_path) if config_path else None)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        return None


def _print_error(error: IntegrityError | None) -> None:
    if error is not None:
        console.print(f"[bold red]x[/bold red] {escape(error.format())}")


def _migrations_table(title: str, migrations: list[Migration]) -> Table:
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Version", style="dim")
    table.add_column("Migration")
    table.add_column("Status")
    table.add_column("Time (ms)", justify="right")
    table.add_column("Error")
    for m in migrations:
        style = _STATUS_STYLES.get(m.status, "")
        table.add_row(
            m.version,
            m.id,
            f"[{style}]{m.status.value}[/{style}]",
            str(m.execution_time) if m.execution_time is not None else "",
            escape(m.error or ""),
        )
    return table


def _show_generated(generated: GeneratedMigration) -> None:
    for warning in generated.warnings:
        console.print(f"[yellow]! {escape(warning)}[/yellow]")
    console.print(generated.up_sql, markup=False, highlight=False)
    if generated.down_sql:
        console.print("-- @rollback", style="dim", markup=False)
        console.print(generated.down_sql, markup=False, highlight=False)
    if generated.declarative_schema:
        console.print("# Declarative schema", style="dim", markup=False)
        console.print(generated.declarative_schema, markup=False, highlight=False)


def _make_engine(
    args: argparse.Namespace, config: DatabaseConfig
) -> tuple[AsyncPostgresAdapter, MigrationEngine] | None:
    try:
        adapter = get_adapter(args.profile, config, args.env_prefix)
    except ProfileNotFoundError as e:
        console.print(f"[yellow]{escape(str(e))}[/yellow]")
        return None
    return adapter, MigrationEngine(adapter, config.migrations)


def _live_url(args: argparse.Namespace, config: DatabaseConfig) -> str | None:
    try:
        _, profile = get_active_profile(args.profile, config, args.env_prefix)
    except ProfileNotFoundError as e:
        console.print(f"[yellow]{escape(str(e))}[/yellow]")
        return None
    return resolve_url(profile)


# ============================================================================
# Async command implementations
# ============================================================================


async def _async_connect(args: argparse.Namespace) -> int:
    """Async implementation for connect command.

    Returns:
        0 on success, 1 on failure.
    """
    config = _load_config(args)
    if config is None:
        return 1

    previous_profile = read_profile_lock()
    console.print("Connecting to database...", style="dim")

    result = await connect_and_validate(args.profile, config, args.env_prefix)
    if not result.success:
        console.print()
        console.print(f"[bold red]x[/bold red] {escape(result.error or 'Connection failed')}")
        return 1

    console.print()
    console.print(
        f"[bold green]v[/bold green] Connected to profile: "
        f"[bold cyan]{result.profile_name}[/bold cyan]"
    )
    # Show profile switch notice
    if previous_profile and previous_profile != result.profile_name:
        console.print(
            f"\n[dim]Switched from[/dim] [bold]{previous_profile}[/bold] "
            f"[dim]to[/dim] [bold cyan]{result.profile_name}[/bold cyan]"
        )
    return 0


async def _async_analyze(args: argparse.Namespace) -> int:
    """Async implementation for analyze command."""
    config = _load_config(args)
    if config is None:
        return 1
    url = _live_url(args, config)
    if url is None:
        return 1

    result = await SchemaIntrospector(url, config.schema_settings).analyze()
    if not result.success:
        _print_error(result.error)
        return 1

    schema = result.data
    table = Table(title="Schema Snapshot", show_header=True, header_style="bold")
    table.add_column("Table")
    table.add_column("Columns", justify="right")
    table.add_column("Indexes", justify="right")
    table.add_column("Constraints", justify="right")
    for t in schema.tables:
        table.add_row(
            t.display_name, str(len(t.columns)), str(len(t.indexes)), str(len(t.constraints))
        )
    console.print(table)
    console.print(
        f"\n[bold green]v[/bold green] {len(schema.tables)} tables, "
        f"{len(schema.views)} views, {len(schema.functions)} functions, "
        f"{len(schema.enums)} enums saved to "
        f"[cyan]{config.schema_settings.directory}[/cyan]"
    )
    return 0


async def _async_status(args: argparse.Namespace) -> int:
    """Async implementation for status command."""
    config = _load_config(args)
    if config is None:
        return 1
    made = _make_engine(args, config)
    if made is None:
        return 1
    adapter, engine = made

    try:
        result = await engine.get_migration_status()
        if not result.success:
            _print_error(result.error)
            return 1
        pending = await engine.get_pending_migrations()
    finally:
        await adapter.close()

    tracked_ids = {m.id for m in result.data}
    rows = result.data + [m for m in pending if m.id not in tracked_ids]
    console.print(_migrations_table("Migrations", rows))
    console.print(
        f"\n{sum(m.status == MigrationStatus.COMPLETED for m in result.data)} applied, "
        f"{len(pending)} pending"
    )
    return 0


async def _async_migrate(args: argparse.Namespace) -> int:
    """Async implementation for migrate command."""
    config = _load_config(args)
    if config is None:
        return 1
    made = _make_engine(args, config)
    if made is None:
        return 1
    adapter, engine = made

    options = MigrationOptions(
        dry_run=args.dry_run,
        batch_size=args.batch_size,
        force=args.force,
        allow_out_of_order=args.allow_out_of_order,
    )
    try:
        result = await engine.run_migrations(options)
    finally:
        await adapter.close()

    if result.data:
        title = "Pending Migrations (dry run)" if args.dry_run else "Applied Migrations"
        console.print(_migrations_table(title, result.data))
    elif result.success:
        console.print("[bold green]v[/bold green] Database is up to date")

    if not result.success:
        _print_error(result.error)
        return 1
    return 0


async def _async_rollback(args: argparse.Namespace) -> int:
    """Async implementation for rollback command."""
    config = _load_config(args)
    if config is None:
        return 1
    made = _make_engine(args, config)
    if made is None:
        return 1
    adapter, engine = made

    options = MigrationOptions(dry_run=args.dry_run, force=args.force)
    try:
        result = await engine.rollback_migrations(args.to, options)
    finally:
        await adapter.close()

    if result.data:
        title = "Rollback Candidates (dry run)" if args.dry_run else "Rolled Back"
        console.print(_migrations_table(title, result.data))
    elif result.success:
        console.print("Nothing to roll back", style="dim")

    if not result.success:
        _print_error(result.error)
        return 1
    return 0


async def _async_forget(args: argparse.Namespace) -> int:
    """Async implementation for forget command."""
    config = _load_config(args)
    if config is None:
        return 1
    made = _make_engine(args, config)
    if made is None:
        return 1
    adapter, engine = made

    try:
        result = await engine.forget_migration(args.migration_id)
    finally:
        await adapter.close()

    if not result.success:
        _print_error(result.error)
        return 1
    console.print(f"[bold green]v[/bold green] Forgot {escape(args.migration_id)}")
    return 0


async def _async_drift(args: argparse.Namespace) -> int:
    """Async implementation for drift command.

    Returns:
        0 when in sync (or a repair migration was written), 1 otherwise.
    """
    config = _load_config(args)
    if config is None:
        return 1
    url = _live_url(args, config)
    if url is None:
        return 1

    try:
        expected = load_snapshot(args.expected or config.schema_settings.directory)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        return 1

    try:
        async with SchemaIntrospector(url, config.schema_settings) as introspector:
            actual = await introspector.introspect()
    except Exception as e:
        console.print(f"[red]Error: failed to introspect database: {escape(str(e))}[/red]")
        return 1

    report = detect_drift(expected, actual)
    if not report.has_drift:
        console.print("[bold green]v[/bold green] No drift detected")
        return 0

    table = Table(title="Schema Drift", show_header=True, header_style="bold")
    table.add_column("Type")
    table.add_column("Table", style="dim")
    table.add_column("Object")
    table.add_column("Expected")
    table.add_column("Actual")
    for drift in report.drifts:
        table.add_row(
            drift.type.value,
            drift.table,
            drift.object,
            escape(drift.expected or "-"),
            escape(drift.actual or "-"),
        )
    console.print(table)

    generator = MigrationGenerator()
    result = generator.generate_from_drift_report(
        report, expected, GenerateOptions(name=args.name)
    )
    if not result.success:
        _print_error(result.error)
        return 1

    if not args.write:
        console.print()
        _show_generated(result.data)
        return 1

    try:
        path = generator.write_migration(result.data, config.migrations.directory)
    except FileExistsError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        return 1
    console.print(f"\n[bold green]v[/bold green] Wrote repair migration [cyan]{path}[/cyan]")
    return 0


# ============================================================================
# Command wrappers
# ============================================================================


def cmd_profiles(args: argparse.Namespace) -> int:
    """List available profiles.

    Returns:
        0 on success, 1 if db.toml not found.
    """
    config = _load_config(args)
    if config is None:
        return 1

    current = read_profile_lock()

    table = Table(title="Database Profiles", show_header=True, header_style="bold")
    table.add_column("", width=2)
    table.add_column("Profile")
    table.add_column("Description")

    for name, profile in config.profiles.items():
        marker = "[bold green]*[/bold green]" if name == current else " "
        name_style = "bold cyan" if name == current else ""
        table.add_row(
            marker,
            f"[{name_style}]{name}[/{name_style}]" if name_style else name,
            profile.description or "",
        )

    console.print(table)

    if current:
        console.print("\n[bold green]*[/bold green] = current profile")

    return 0


def cmd_diff(args: argparse.Namespace) -> int:
    """Generate a migration that turns the OLD snapshot into NEW.

    Returns:
        0 on success, 1 on failure.
    """
    try:
        old = load_snapshot(args.old)
        new = load_snapshot(args.new)
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        return 1

    changes = diff_schemas(old, new)
    if not changes:
        console.print("[bold green]v[/bold green] Snapshots are equivalent")
        return 0

    generator = MigrationGenerator()
    options = GenerateOptions(
        name=args.name, atomic=args.atomic, declarative=args.declarative
    )
    result = generator.generate(changes, options, target=new)
    if not result.success:
        _print_error(result.error)
        return 1

    if not args.write:
        _show_generated(result.data)
        return 0

    directory = "migrations"
    if Path(args.config or "db.toml").exists():
        config = _load_config(args)
        if config is None:
            return 1
        directory = config.migrations.directory
    try:
        path = generator.write_migration(result.data, directory)
    except FileExistsError as e:
        console.print(f"[red]Error: {escape(str(e))}[/red]")
        return 1
    console.print(f"[bold green]v[/bold green] Wrote [cyan]{path}[/cyan]")
    return 0


def cmd_connect(args: argparse.Namespace) -> int:
    """Wraps the async implementation with ``asyncio.run()``."""
    return asyncio.run(_async_connect(args))


def cmd_analyze(args: argparse.Namespace) -> int:
    """Wraps the async implementation with ``asyncio.run()``."""
    return asyncio.run(_async_analyze(args))


def cmd_status(args: argparse.Namespace) -> int:
    """Wraps the async implementation with ``asyncio.run()``."""
    return asyncio.run(_async_status(args))


def cmd_migrate(args: argparse.Namespace) -> int:
    """Wraps the async implementation with ``asyncio.run()``."""
    return asyncio.run(_async_migrate(args))


def cmd_rollback(args: argparse.Namespace) -> int:
    """Wraps the async implementation with ``asyncio.run()``."""
    return asyncio.run(_async_rollback(args))


def cmd_forget(args: argparse.Namespace) -> int:
    """Wraps the async implementation with ``asyncio.run()``."""
    return asyncio.run(_async_forget(args))


def cmd_drift(args: argparse.Namespace) -> int:
    """Wraps the async implementation with ``asyncio.run()``."""
    return asyncio.run(_async_drift(args))


# ============================================================================
# Main entry point
# ============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="db-integrity",
        description="Schema snapshots, migrations, and drift repair for PostgreSQL",
    )

    # Global options
    parser.add_argument(
        "--env-prefix",
        default="",
        help=(
            "Prefix for environment variable lookup "
            "(e.g., --env-prefix APP_ reads APP_DB_PROFILE)"
        ),
    )
    parser.add_argument("--profile", help="Profile name from db.toml")
    parser.add_argument("--config", help="Path to db.toml (default: ./db.toml)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_profiles = subparsers.add_parser("profiles", help="List available profiles")
    p_profiles.set_defaults(func=cmd_profiles)

    p_connect = subparsers.add_parser(
        "connect", help="Test connection and lock in the profile"
    )
    p_connect.set_defaults(func=cmd_connect)

    p_analyze = subparsers.add_parser(
        "analyze", help="Introspect the live schema and persist a snapshot"
    )
    p_analyze.set_defaults(func=cmd_analyze)

    p_status = subparsers.add_parser("status", help="Show tracked and pending migrations")
    p_status.set_defaults(func=cmd_status)

    p_migrate = subparsers.add_parser("migrate", help="Apply pending migrations")
    p_migrate.add_argument(
        "--dry-run", action="store_true", help="List pending migrations without applying"
    )
    p_migrate.add_argument(
        "--batch-size", type=int, default=None, help="Apply at most N migrations"
    )
    p_migrate.add_argument(
        "--force", action="store_true", help="Continue past failed migrations"
    )
    p_migrate.add_argument(
        "--allow-out-of-order",
        action="store_true",
        help="Apply pending migrations older than the latest applied one",
    )
    p_migrate.set_defaults(func=cmd_migrate)

    p_rollback = subparsers.add_parser("rollback", help="Roll back applied migrations")
    p_rollback.add_argument(
        "--to",
        default=None,
        help="Roll back every migration above this version (default: the latest only)",
    )
    p_rollback.add_argument(
        "--dry-run", action="store_true", help="List candidates without rolling back"
    )
    p_rollback.add_argument(
        "--force", action="store_true", help="Continue past failed rollbacks"
    )
    p_rollback.set_defaults(func=cmd_rollback)

    p_forget = subparsers.add_parser(
        "forget", help="Remove a FAILED or ROLLED_BACK tracking row"
    )
    p_forget.add_argument("migration_id", help="Migration id to forget")
    p_forget.set_defaults(func=cmd_forget)

    p_diff = subparsers.add_parser("diff", help="Generate a migration from two snapshots")
    p_diff.add_argument("old", help="Current snapshot (schema.json or its directory)")
    p_diff.add_argument("new", help="Target snapshot (schema.json or its directory)")
    p_diff.add_argument("--name", default="schema_update", help="Migration name")
    p_diff.add_argument(
        "--atomic", action="store_true", help="Wrap statements in BEGIN/COMMIT"
    )
    p_diff.add_argument(
        "--declarative",
        action="store_true",
        help="Also render the target tables as SQLAlchemy models",
    )
    p_diff.add_argument(
        "--write", action="store_true", help="Write the migration file instead of printing"
    )
    p_diff.set_defaults(func=cmd_diff)

    p_drift = subparsers.add_parser(
        "drift", help="Compare the live schema to a snapshot"
    )
    p_drift.add_argument(
        "--expected",
        default=None,
        help="Expected snapshot (default: the [schema] directory)",
    )
    p_drift.add_argument("--name", default="drift_repair", help="Repair migration name")
    p_drift.add_argument(
        "--write", action="store_true", help="Write a repair migration file"
    )
    p_drift.set_defaults(func=cmd_drift)

    return parser


def main() -> int:
    """Main CLI entry point.

    Parses command line arguments and dispatches to appropriate handler.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = build_parser().parse_args()
    _configure_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
