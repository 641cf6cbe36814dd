"""PostgreSQL schema introspection via information_schema and pg_catalog.

This module queries the live database to build a ``DatabaseSchema``:
- Tables, columns, normalized data types, nullability, parsed defaults
- Primary keys, foreign keys (with ON DELETE/UPDATE rules)
- Indexes (columns/expressions, uniqueness, method, partial predicate)
- Constraints (check, foreign key, primary key, unique, exclude)
- Views (definition and derived columns), functions, enum types

Each kind is fetched once for the whole schema and grouped per table.

Uses psycopg (v3) async connections.
"""

import logging
import re
import time

import psycopg
from psycopg import AsyncConnection
from psycopg.rows import dict_row

from db_integrity.config.models import SchemaConfig
from db_integrity.errors import ErrorCode, IntegrityError, IntegrityResult
from db_integrity.events import EventEmitter, EventSink
from db_integrity.schema.models import (
    AUTO_INCREMENT,
    Column,
    ColumnReference,
    Constraint,
    ConstraintKind,
    DatabaseFunction,
    DatabaseSchema,
    EnumType,
    ForeignKey,
    FunctionParameter,
    Index,
    PrimaryKey,
    Table,
    View,
    ViewColumn,
)
from db_integrity.schema.snapshot import save_snapshot
from db_integrity.schema.typegen import write_types
from db_integrity.schema.types import normalize_data_type, parse_default

logger = logging.getLogger(__name__)

CONSTRAINT_KINDS = {
    "c": ConstraintKind.CHECK,
    "f": ConstraintKind.FOREIGN_KEY,
    "p": ConstraintKind.PRIMARY_KEY,
    "u": ConstraintKind.UNIQUE,
    "x": ConstraintKind.EXCLUDE,
}

_FK_ACTION = """
    CASE {col}
        WHEN 'a' THEN 'NO ACTION'
        WHEN 'r' THEN 'RESTRICT'
        WHEN 'c' THEN 'CASCADE'
        WHEN 'n' THEN 'SET NULL'
        WHEN 'd' THEN 'SET DEFAULT'
    END
"""

_CONSTRAINT_COLUMNS = """
    ARRAY(
        SELECT a.attname::text
        FROM unnest({keys}) WITH ORDINALITY AS k(attnum, ord)
        JOIN pg_attribute a ON a.attrelid = {rel} AND a.attnum = k.attnum
        ORDER BY k.ord
    )
"""

# ------------------------------------------------------------------
# Catalog queries
# ------------------------------------------------------------------

TABLES_QUERY = """
    SELECT
        c.relname AS table_name,
        obj_description(c.oid, 'pg_class') AS comment
    FROM pg_class c
    JOIN pg_namespace n ON n.oid = c.relnamespace
    WHERE n.nspname = %s
      AND c.relkind IN ('r', 'p')
      AND NOT c.relispartition
    ORDER BY c.relname
"""

COLUMNS_QUERY = """
    SELECT
        c.table_name,
        c.column_name,
        c.data_type,
        c.udt_name,
        c.character_maximum_length,
        c.numeric_precision,
        c.numeric_scale,
        c.is_nullable,
        c.column_default,
        c.is_identity,
        col_description(
            format('%%I.%%I', c.table_schema, c.table_name)::regclass,
            c.ordinal_position
        ) AS comment,
        COALESCE(k.is_primary, FALSE) AS is_primary,
        COALESCE(k.is_unique, FALSE) AS is_unique
    FROM information_schema.columns c
    LEFT JOIN (
        SELECT
            kcu.table_name,
            kcu.column_name,
            bool_or(tc.constraint_type = 'PRIMARY KEY') AS is_primary,
            bool_or(
                tc.constraint_type = 'UNIQUE'
                AND (
                    SELECT count(*)
                    FROM information_schema.key_column_usage k2
                    WHERE k2.constraint_schema = tc.constraint_schema
                      AND k2.constraint_name = tc.constraint_name
                ) = 1
            ) AS is_unique
        FROM information_schema.table_constraints tc
        JOIN information_schema.key_column_usage kcu
            ON tc.constraint_name = kcu.constraint_name
            AND tc.table_schema = kcu.table_schema
            AND tc.table_name = kcu.table_name
        WHERE tc.table_schema = %s
          AND tc.constraint_type IN ('PRIMARY KEY', 'UNIQUE')
        GROUP BY kcu.table_name, kcu.column_name
    ) k ON k.table_name = c.table_name AND k.column_name = c.column_name
    WHERE c.table_schema = %s
    ORDER BY c.table_name, c.ordinal_position
"""

PRIMARY_KEYS_QUERY = """
    SELECT
        tc.table_name,
        tc.constraint_name,
        array_agg(kcu.column_name::text ORDER BY kcu.ordinal_position) AS columns
    FROM information_schema.table_constraints tc
    JOIN information_schema.key_column_usage kcu
        ON tc.constraint_name = kcu.constraint_name
        AND tc.table_schema = kcu.table_schema
        AND tc.table_name = kcu.table_name
    WHERE tc.table_schema = %s
      AND tc.constraint_type = 'PRIMARY KEY'
    GROUP BY tc.table_name, tc.constraint_name
"""

FOREIGN_KEYS_QUERY = f"""
    SELECT
        cl.relname AS table_name,
        con.conname AS constraint_name,
        {_CONSTRAINT_COLUMNS.format(keys="con.conkey", rel="con.conrelid")} AS columns,
        rn.nspname AS referenced_schema,
        rcl.relname AS referenced_table,
        {_CONSTRAINT_COLUMNS.format(keys="con.confkey", rel="con.confrelid")}
            AS referenced_columns,
        {_FK_ACTION.format(col="con.confdeltype")} AS on_delete,
        {_FK_ACTION.format(col="con.confupdtype")} AS on_update
    FROM pg_constraint con
    JOIN pg_class cl ON cl.oid = con.conrelid
    JOIN pg_namespace n ON n.oid = cl.relnamespace
    JOIN pg_class rcl ON rcl.oid = con.confrelid
    JOIN pg_namespace rn ON rn.oid = rcl.relnamespace
    WHERE n.nspname = %s
      AND con.contype = 'f'
    ORDER BY cl.relname, con.conname
"""

# Indexes backing unique/exclude constraints are represented by the
# constraint itself.
INDEXES_QUERY = """
    SELECT
        t.relname AS table_name,
        i.relname AS index_name,
        ARRAY(
            SELECT pg_get_indexdef(ix.indexrelid, k, true)
            FROM generate_series(1, ix.indnkeyatts) AS k
            ORDER BY k
        ) AS columns,
        ix.indisunique AS is_unique,
        ix.indisprimary AS is_primary,
        am.amname AS method,
        pg_get_expr(ix.indpred, ix.indrelid) AS predicate
    FROM pg_index ix
    JOIN pg_class t ON t.oid = ix.indrelid
    JOIN pg_class i ON i.oid = ix.indexrelid
    JOIN pg_namespace n ON n.oid = t.relnamespace
    JOIN pg_am am ON am.oid = i.relam
    WHERE n.nspname = %s
      AND t.relkind IN ('r', 'p')
      AND NOT EXISTS (
          SELECT 1 FROM pg_constraint c
          WHERE c.conindid = ix.indexrelid
            AND c.contype IN ('u', 'x')
      )
    ORDER BY t.relname, i.relname
"""

CONSTRAINTS_QUERY = f"""
    SELECT
        cl.relname AS table_name,
        con.conname AS constraint_name,
        con.contype AS constraint_type,
        pg_get_constraintdef(con.oid, true) AS definition,
        {_CONSTRAINT_COLUMNS.format(keys="con.conkey", rel="con.conrelid")} AS columns
    FROM pg_constraint con
    JOIN pg_class cl ON cl.oid = con.conrelid
    JOIN pg_namespace n ON n.oid = cl.relnamespace
    WHERE n.nspname = %s
      AND con.contype IN ('c', 'f', 'p', 'u', 'x')
    ORDER BY cl.relname, con.conname
"""

VIEWS_QUERY = """
    SELECT
        v.table_name AS view_name,
        pg_get_viewdef(
            format('%%I.%%I', v.table_schema, v.table_name)::regclass, true
        ) AS definition
    FROM information_schema.views v
    WHERE v.table_schema = %s
    ORDER BY v.table_name
"""

# prokind = 'f' keeps regular functions only (PostgreSQL 11+); functions
# owned by extensions are skipped.
FUNCTIONS_QUERY = """
    SELECT
        p.proname AS function_name,
        pg_get_function_arguments(p.oid) AS arguments,
        pg_get_function_result(p.oid) AS return_type,
        l.lanname AS language,
        pg_get_functiondef(p.oid) AS definition
    FROM pg_proc p
    JOIN pg_namespace n ON n.oid = p.pronamespace
    JOIN pg_language l ON l.oid = p.prolang
    WHERE n.nspname = %s
      AND p.prokind = 'f'
      AND NOT EXISTS (
          SELECT 1 FROM pg_depend d
          WHERE d.objid = p.oid AND d.deptype = 'e'
      )
    ORDER BY p.proname
"""

ENUMS_QUERY = """
    SELECT
        t.typname AS enum_name,
        array_agg(e.enumlabel::text ORDER BY e.enumsortorder) AS labels
    FROM pg_type t
    JOIN pg_enum e ON t.oid = e.enumtypid
    JOIN pg_namespace n ON n.oid = t.typnamespace
    WHERE n.nspname = %s
    GROUP BY t.typname
    ORDER BY t.typname
"""


# ------------------------------------------------------------------
# Function argument parsing
# ------------------------------------------------------------------

_MODES = {"IN", "OUT", "INOUT", "VARIADIC"}
_MULTIWORD_TYPE_STARTS = {"double", "character", "timestamp", "time", "bit", "interval"}


def _split_top_level(text: str) -> list[str]:
    parts: list[str] = []
    depth = 0
    quoted = False
    current = ""
    for ch in text:
        if ch == "'":
            quoted = not quoted
        elif not quoted and ch == "(":
            depth += 1
        elif not quoted and ch == ")":
            depth -= 1
        elif not quoted and depth == 0 and ch == ",":
            parts.append(current.strip())
            current = ""
            continue
        current += ch
    if current.strip():
        parts.append(current.strip())
    return parts


def parse_function_arguments(arguments: str | None) -> list[FunctionParameter]:
    """Parse ``pg_get_function_arguments`` output into parameters.

    Example:
        >>> parse_function_arguments("user_id integer, OUT total numeric DEFAULT 0")
        [FunctionParameter(name='user_id', data_type='integer', mode='IN', default=None),
         FunctionParameter(name='total', data_type='numeric', mode='OUT', default='0')]
    """
    params: list[FunctionParameter] = []
    for part in _split_top_level(arguments or ""):
        default = None
        match = re.search(r"\s+(?:DEFAULT|=)\s+", part, re.IGNORECASE)
        if match:
            default = part[match.end():].strip()
            part = part[: match.start()].strip()

        tokens = part.split()
        mode = "IN"
        if tokens and tokens[0].upper() in _MODES:
            mode = tokens.pop(0).upper()

        name = None
        if len(tokens) > 1 and tokens[0].lower() not in _MULTIWORD_TYPE_STARTS:
            name = tokens.pop(0).strip('"')
        data_type = normalize_data_type(" ".join(tokens)) if tokens else "unknown"
        params.append(
            FunctionParameter(name=name, data_type=data_type, mode=mode, default=default)
        )
    return params


class SchemaIntrospector:
    """Introspects a PostgreSQL schema into a ``DatabaseSchema`` snapshot.

    Works with any PostgreSQL database (RDS, Supabase, local).

    Usage:
        async with SchemaIntrospector(database_url, config) as introspector:
            # Full snapshot, nothing persisted
            schema = await introspector.introspect()

        # Snapshot + persistence + optional type generation, as a result
        result = await SchemaIntrospector(database_url, config).analyze()
    """

    def __init__(
        self,
        database_url: str,
        config: SchemaConfig | None = None,
        sink: EventSink | None = None,
        connect_timeout: int = 10,
    ):
        """Initialize with database connection URL.

        Args:
            database_url: PostgreSQL connection URL
            config: Schema settings (namespace, exclusions, output formats)
            sink: Event sink for lifecycle events
            connect_timeout: Connection timeout in seconds
        """
        self._database_url = database_url
        self._connect_timeout = connect_timeout
        self._config = config or SchemaConfig()
        self._excluded_tables = set(self._config.excluded_tables)
        self._events = EventEmitter("SchemaIntrospector", sink)
        self._conn: AsyncConnection | None = None

    async def __aenter__(self) -> "SchemaIntrospector":
        """Async context manager entry - opens connection."""
        self._conn = await psycopg.AsyncConnection.connect(
            self._database_url, connect_timeout=self._connect_timeout
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit - closes connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def test_connection(self) -> bool:
        """Run ``SELECT 1``.

        Raises:
            RuntimeError: If not connected.
            ConnectionError: If the query fails.
        """
        if not self._conn:
            raise RuntimeError("Introspector not connected. Use async with statement.")
        try:
            async with self._conn.cursor() as cur:
                await cur.execute("SELECT 1")
                row = await cur.fetchone()
                return row is not None and row[0] == 1
        except psycopg.Error as e:
            raise ConnectionError(f"Connection test failed: {e}") from e

    # ------------------------------------------------------------------
    # Analyze (introspect + persist)
    # ------------------------------------------------------------------

    async def analyze(self) -> IntegrityResult[DatabaseSchema]:
        """Introspect the live schema and persist the snapshot.

        The snapshot is written only after the whole catalog was read, so a
        failed query never leaves a partial snapshot.  Type generation is
        advisory: its failures are logged, not returned.

        Returns:
            IntegrityResult with the snapshot, or ``SCHEMA_ANALYSIS_FAILED``.
        """
        self._events.renew()
        self._events.emit(
            "schema.analysis.started",
            f"Analyzing schema '{self._config.schema_name}'",
        )
        start = time.monotonic()
        opened = False
        try:
            if self._conn is None:
                await self.__aenter__()
                opened = True
            schema = await self.introspect()
            save_snapshot(schema, self._config)
        except (psycopg.Error, OSError, ValueError) as e:
            self._events.emit(
                "schema.analysis.failed",
                f"Schema analysis failed: {e}",
                level="error",
                duration_ms=int((time.monotonic() - start) * 1000),
                alert=True,
            )
            return IntegrityResult.fail(
                IntegrityError(
                    code=ErrorCode.SCHEMA_ANALYSIS_FAILED,
                    message=f"Schema analysis failed: {e}",
                    details={"schema": self._config.schema_name},
                )
            )
        finally:
            if opened:
                await self.__aexit__(None, None, None)

        if self._config.generate_types:
            try:
                path = write_types(schema, self._config.type_output_directory)
                logger.info(f"Generated types: {path}")
            except Exception as e:  # advisory codegen
                logger.warning(f"Type generation failed: {e}", exc_info=True)

        self._events.emit(
            "schema.analysis.completed",
            f"Analyzed {len(schema.tables)} tables, {len(schema.views)} views, "
            f"{len(schema.functions)} functions",
            duration_ms=int((time.monotonic() - start) * 1000),
            details={"tables": len(schema.tables)},
        )
        return IntegrityResult.ok(schema)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    async def introspect(self) -> DatabaseSchema:
        """Introspect the configured schema.

        Returns:
            DatabaseSchema with tables, views, functions, and enums.

        Raises:
            RuntimeError: If not connected.
            psycopg.Error: If a catalog query fails.
        """
        if not self._conn:
            raise RuntimeError("Introspector not connected. Use async with statement.")

        schema_name = self._config.schema_name
        table_rows = [
            row
            for row in await self._fetch_all(TABLES_QUERY, (schema_name,))
            if row["table_name"] not in self._excluded_tables
        ]
        table_names = {row["table_name"] for row in table_rows}

        columns_by_table = self._group(
            await self._fetch_all(COLUMNS_QUERY, (schema_name, schema_name))
        )
        pk_rows = {
            row["table_name"]: row
            for row in await self._fetch_all(PRIMARY_KEYS_QUERY, (schema_name,))
        }
        fks_by_table = self._group(await self._fetch_all(FOREIGN_KEYS_QUERY, (schema_name,)))
        cons_by_table = self._group(await self._fetch_all(CONSTRAINTS_QUERY, (schema_name,)))
        idx_by_table: dict[str, list[dict]] = {}
        if self._config.include_indexes:
            idx_by_table = self._group(await self._fetch_all(INDEXES_QUERY, (schema_name,)))

        tables = [
            self._build_table(
                row,
                table_names,
                columns_by_table.get(row["table_name"], []),
                pk_rows.get(row["table_name"]),
                fks_by_table.get(row["table_name"], []),
                cons_by_table.get(row["table_name"], []),
                idx_by_table.get(row["table_name"], []),
            )
            for row in table_rows
        ]

        views: list[View] = []
        if self._config.include_views:
            for row in await self._fetch_all(VIEWS_QUERY, (schema_name,)):
                views.append(
                    View(
                        name=row["view_name"],
                        schema_name=schema_name,
                        definition=row["definition"] or "",
                        columns=[
                            ViewColumn(
                                name=col["column_name"],
                                data_type=self._column_type(col),
                                nullable=col["is_nullable"] == "YES",
                            )
                            for col in columns_by_table.get(row["view_name"], [])
                        ],
                    )
                )

        functions: list[DatabaseFunction] = []
        if self._config.include_functions:
            for row in await self._fetch_all(FUNCTIONS_QUERY, (schema_name,)):
                functions.append(
                    DatabaseFunction(
                        name=row["function_name"],
                        schema_name=schema_name,
                        parameters=parse_function_arguments(row["arguments"]),
                        return_type=row["return_type"] or "",
                        language=row["language"] or "",
                        definition=row["definition"] or "",
                    )
                )

        enums = [
            EnumType(name=row["enum_name"], schema_name=schema_name, values=list(row["labels"]))
            for row in await self._fetch_all(ENUMS_QUERY, (schema_name,))
        ]

        return DatabaseSchema.build(tables, views=views, functions=functions, enums=enums)

    def _build_table(
        self,
        row: dict,
        table_names: set[str],
        column_rows: list[dict],
        pk_row: dict | None,
        fk_rows: list[dict],
        constraint_rows: list[dict],
        index_rows: list[dict],
    ) -> Table:
        schema_name = self._config.schema_name
        name = row["table_name"]
        display = name if schema_name == "public" else f"{schema_name}.{name}"

        foreign_keys = []
        references: dict[str, ColumnReference] = {}
        for fk in fk_rows:
            ref_table = fk["referenced_table"]
            if fk["referenced_schema"] != schema_name:
                ref_table = f"{fk['referenced_schema']}.{ref_table}"
            foreign_keys.append(
                ForeignKey(
                    name=fk["constraint_name"],
                    columns=list(fk["columns"]),
                    referenced_table=ref_table,
                    referenced_columns=list(fk["referenced_columns"]),
                    on_delete=fk["on_delete"],
                    on_update=fk["on_update"],
                )
            )
            # Column-level references only for targets inside this snapshot
            if (
                len(fk["columns"]) == 1
                and fk["referenced_schema"] == schema_name
                and fk["referenced_table"] in table_names
            ):
                references[fk["columns"][0]] = ColumnReference(
                    table=fk["referenced_table"],
                    column=fk["referenced_columns"][0],
                    on_delete=fk["on_delete"],
                    on_update=fk["on_update"],
                )

        columns = []
        for col in column_rows:
            default = parse_default(col["column_default"])
            if col["is_identity"] == "YES":
                default = AUTO_INCREMENT
            columns.append(
                Column(
                    name=col["column_name"],
                    data_type=self._column_type(col),
                    nullable=col["is_nullable"] == "YES",
                    default=default,
                    primary_key=bool(col["is_primary"]),
                    unique=bool(col["is_unique"]),
                    auto_increment=default is not None and default.kind == "auto_increment",
                    references=references.get(col["column_name"]),
                    comment=col["comment"],
                )
            )

        primary_key = None
        if pk_row:
            primary_key = PrimaryKey(
                name=pk_row["constraint_name"], columns=list(pk_row["columns"])
            )

        constraints = [
            Constraint(
                name=con["constraint_name"],
                table=display,
                kind=CONSTRAINT_KINDS[con["constraint_type"]],
                definition=con["definition"],
                columns=list(con["columns"]),
            )
            for con in constraint_rows
        ]

        indexes = [
            Index(
                name=idx["index_name"],
                table=display,
                columns=list(idx["columns"]),
                unique=idx["is_unique"],
                method=idx["method"],
                where=idx["predicate"],
                primary=idx["is_primary"],
            )
            for idx in index_rows
        ]

        return Table(
            name=name,
            schema_name=schema_name,
            columns=columns,
            primary_key=primary_key,
            foreign_keys=foreign_keys,
            indexes=indexes,
            constraints=constraints,
            comment=row["comment"],
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _fetch_all(self, query: str, params: tuple) -> list[dict]:
        """Run a catalog query and return rows as dicts."""
        async with self._conn.cursor(row_factory=dict_row) as cur:
            await cur.execute(query, params)
            return await cur.fetchall()

    @staticmethod
    def _group(rows: list[dict], key: str = "table_name") -> dict[str, list[dict]]:
        grouped: dict[str, list[dict]] = {}
        for row in rows:
            grouped.setdefault(row[key], []).append(row)
        return grouped

    @staticmethod
    def _column_type(col: dict) -> str:
        return normalize_data_type(
            col["data_type"],
            character_maximum_length=col["character_maximum_length"],
            numeric_precision=col["numeric_precision"],
            numeric_scale=col["numeric_scale"],
            udt_name=col["udt_name"],
        )
