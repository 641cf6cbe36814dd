"""Schema comparison: snapshot diffing and drift detection.

``diff_schemas(old, new)`` is a pure function producing the typed changes
that turn ``old`` into ``new``.  ``detect_drift(expected, actual)`` compares
a declared snapshot against a live one and reports divergences for the
drift-repair generator.

Both use name-keyed set operations: names only on one side are
missing/extra, names on both sides are compared field by field.

Usage:
    from db_integrity.schema.comparator import detect_drift, diff_schemas

    changes = diff_schemas(load_snapshot("old"), load_snapshot("new"))
    report = detect_drift(expected=declared, actual=live)
"""

from db_integrity.schema.changes import (
    AddColumn,
    AddConstraint,
    AlterColumn,
    CreateIndex,
    CreateTable,
    DropColumn,
    DropConstraint,
    DropIndex,
    DropTable,
    SchemaChange,
)
from db_integrity.schema.models import (
    Constraint,
    ConstraintKind,
    DatabaseSchema,
    Drift,
    DriftReport,
    DriftType,
    Index,
    Table,
)

# ------------------------------------------------------------------
# Keyed views
# ------------------------------------------------------------------


def _tables_by_key(schema: DatabaseSchema) -> dict[str, Table]:
    return {table.qualified_name: table for table in schema.tables}


def _indexes_by_name(table: Table) -> dict[str, Index]:
    return {idx.name: idx for idx in table.indexes if not idx.primary}


def table_constraints(table: Table) -> dict[str, Constraint]:
    """All constraints of a table keyed by name.

    Catalog constraints win; structural primary/foreign keys are added
    only when no constraint of the same name was recorded.
    """
    result = {c.name: c for c in table.constraints}
    for fk in table.fk_constraints():
        result.setdefault(fk.name, fk)
    if table.primary_key:
        name = table.primary_key.name or f"{table.name}_pkey"
        result.setdefault(
            name,
            Constraint(
                name=name,
                table=table.display_name,
                kind=ConstraintKind.PRIMARY_KEY,
                definition=f"PRIMARY KEY ({', '.join(table.primary_key.columns)})",
                columns=list(table.primary_key.columns),
            ),
        )
    return result


# ------------------------------------------------------------------
# Diff
# ------------------------------------------------------------------


def diff_schemas(old: DatabaseSchema, new: DatabaseSchema) -> list[SchemaChange]:
    """Compute the changes that transform ``old`` into ``new``.

    Table creates/drops are computed first and short-circuit per-column
    diffing for that table; columns, indexes, and constraints are diffed
    only for tables present in both snapshots.  The result is in emission
    order -- callers must pass it through ``order_changes`` before
    rendering DDL.

    Args:
        old: Current schema.
        new: Target schema.

    Returns:
        List of changes (empty when the snapshots are equivalent).
    """
    old_tables = _tables_by_key(old)
    new_tables = _tables_by_key(new)

    changes: list[SchemaChange] = []

    for key, table in new_tables.items():
        if key not in old_tables:
            changes.append(CreateTable(table=table))
    for key, table in old_tables.items():
        if key not in new_tables:
            changes.append(DropTable(table=table))

    for key, new_table in new_tables.items():
        old_table = old_tables.get(key)
        if old_table is not None:
            changes.extend(_diff_table(old_table, new_table))

    return changes


def _diff_table(old: Table, new: Table) -> list[SchemaChange]:
    changes: list[SchemaChange] = []
    table_name = new.display_name

    # Columns
    old_cols = {col.name: col for col in old.columns}
    new_cols = {col.name: col for col in new.columns}
    for name, col in new_cols.items():
        if name not in old_cols:
            changes.append(
                AddColumn(
                    table=table_name,
                    column=col,
                    unique_managed=new.has_unique_constraint(name),
                )
            )
    for name, col in old_cols.items():
        if name not in new_cols:
            changes.append(
                DropColumn(
                    table=table_name,
                    column=col,
                    unique_managed=old.has_unique_constraint(name),
                )
            )
    for name, new_col in new_cols.items():
        old_col = old_cols.get(name)
        if old_col is None or old_col.comparable() == new_col.comparable():
            continue
        unique_managed = old.has_unique_constraint(name) or new.has_unique_constraint(name)
        only_unique = (
            old_col.data_type == new_col.data_type
            and old_col.nullable == new_col.nullable
            and old_col.default == new_col.default
        )
        if only_unique and unique_managed:
            continue
        changes.append(
            AlterColumn(
                table=table_name,
                old=old_col,
                new=new_col,
                unique_managed=unique_managed,
            )
        )

    # Indexes
    old_idx = _indexes_by_name(old)
    new_idx = _indexes_by_name(new)
    for name, idx in new_idx.items():
        if name not in old_idx:
            changes.append(CreateIndex(index=idx))
    for name, idx in old_idx.items():
        if name not in new_idx:
            changes.append(DropIndex(index=idx))
        elif idx.comparable() != new_idx[name].comparable():
            changes.append(DropIndex(index=idx))
            changes.append(CreateIndex(index=new_idx[name]))

    # Constraints (including foreign and primary keys)
    old_cons = table_constraints(old)
    new_cons = table_constraints(new)
    for name, con in new_cons.items():
        if name not in old_cons:
            changes.append(AddConstraint(constraint=con))
    for name, con in old_cons.items():
        if name not in new_cons:
            changes.append(DropConstraint(constraint=con))
        elif con.comparable() != new_cons[name].comparable():
            changes.append(DropConstraint(constraint=con))
            changes.append(AddConstraint(constraint=new_cons[name]))

    return changes


# ------------------------------------------------------------------
# Drift
# ------------------------------------------------------------------


def _index_signature(idx: Index) -> str:
    sig = f"{'UNIQUE ' if idx.unique else ''}{idx.method} ({', '.join(idx.columns)})"
    if idx.where:
        sig += f" WHERE {idx.where}"
    return sig


def detect_drift(expected: DatabaseSchema, actual: DatabaseSchema) -> DriftReport:
    """Compare a declared schema against the live one.

    Args:
        expected: Declared/expected schema (e.g. a committed snapshot).
        actual: Live schema from the introspector.

    Returns:
        DriftReport listing every divergence; empty when in sync.
    """
    drifts: list[Drift] = []
    expected_tables = _tables_by_key(expected)
    actual_tables = _tables_by_key(actual)

    for key, table in expected_tables.items():
        if key not in actual_tables:
            name = table.display_name
            drifts.append(
                Drift(type=DriftType.MISSING_TABLE, table=name, object=name, expected=name)
            )
    for key, table in actual_tables.items():
        if key not in expected_tables:
            name = table.display_name
            drifts.append(
                Drift(type=DriftType.EXTRA_TABLE, table=name, object=name, actual=name)
            )

    for key, exp_table in expected_tables.items():
        act_table = actual_tables.get(key)
        if act_table is not None:
            drifts.extend(_table_drift(exp_table, act_table))

    return DriftReport(drifts=drifts)


def _table_drift(expected: Table, actual: Table) -> list[Drift]:
    drifts: list[Drift] = []
    name = expected.display_name

    act_cols = {col.name: col for col in actual.columns}
    exp_cols = {col.name: col for col in expected.columns}
    for col_name, col in exp_cols.items():
        live = act_cols.get(col_name)
        if live is None:
            drifts.append(
                Drift(
                    type=DriftType.MISSING_COLUMN,
                    table=name,
                    object=col_name,
                    expected=col.data_type,
                )
            )
        elif live.data_type != col.data_type:
            drifts.append(
                Drift(
                    type=DriftType.COLUMN_TYPE_MISMATCH,
                    table=name,
                    object=col_name,
                    expected=col.data_type,
                    actual=live.data_type,
                )
            )
    for col_name, col in act_cols.items():
        if col_name not in exp_cols:
            drifts.append(
                Drift(
                    type=DriftType.EXTRA_COLUMN,
                    table=name,
                    object=col_name,
                    actual=col.data_type,
                )
            )

    exp_idx = _indexes_by_name(expected)
    act_idx = _indexes_by_name(actual)
    for idx_name, idx in exp_idx.items():
        live_idx = act_idx.get(idx_name)
        if live_idx is None or live_idx.comparable() != idx.comparable():
            drifts.append(
                Drift(
                    type=DriftType.INDEX_MISMATCH,
                    table=name,
                    object=idx_name,
                    expected=_index_signature(idx),
                    actual=_index_signature(live_idx) if live_idx else None,
                )
            )
    for idx_name, idx in act_idx.items():
        if idx_name not in exp_idx:
            drifts.append(
                Drift(
                    type=DriftType.INDEX_MISMATCH,
                    table=name,
                    object=idx_name,
                    actual=_index_signature(idx),
                )
            )

    exp_cons = table_constraints(expected)
    act_cons = table_constraints(actual)
    for con_name, con in exp_cons.items():
        live_con = act_cons.get(con_name)
        if live_con is None or live_con.comparable() != con.comparable():
            drifts.append(
                Drift(
                    type=DriftType.CONSTRAINT_MISMATCH,
                    table=name,
                    object=con_name,
                    expected=con.definition,
                    actual=live_con.definition if live_con else None,
                )
            )
    for con_name, con in act_cons.items():
        if con_name not in exp_cons:
            drifts.append(
                Drift(
                    type=DriftType.CONSTRAINT_MISMATCH,
                    table=name,
                    object=con_name,
                    actual=con.definition,
                )
            )

    return drifts
