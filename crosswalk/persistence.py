"""Statements for the crosswalk, the ODS source reads, and the reconciliation log.

Same rules as scd2.statements: names are quoted through quote_table /
quote_identifier, values are ``?`` parameters.
"""

from __future__ import annotations

import logging
from typing import Sequence

from config import WarehouseSettings
from connections import quote_identifier, quote_table
from crosswalk.models import CROSSWALK_COLUMNS, ReconciliationLogEntry
from crosswalk.profiles import EntityProfile
from data_load.row_hash import display_text
from scd2.statements import Statement

logger = logging.getLogger(__name__)

RECONCILIATION_LOG_TABLE = "ref_reconciliation_log"

_RECONCILIATION_COLUMNS = (
    "batch_id",
    "entity_type",
    "master_id",
    "conflict_field",
    "source_a_value",
    "source_b_value",
    "resolved_value",
    "resolution_rule",
    "reconciliation_timestamp",
)


def crosswalk_table(settings: WarehouseSettings, profile: EntityProfile) -> str:
    return quote_table(f"{settings.reference_schema}.{profile.crosswalk_table}")


def ods_table(settings: WarehouseSettings, profile: EntityProfile) -> str:
    return quote_table(f"{settings.ods_schema}.{profile.ods_table}")


def reconciliation_log_table(settings: WarehouseSettings) -> str:
    return quote_table(f"{settings.reference_schema}.{RECONCILIATION_LOG_TABLE}")


def _as_text(column_sql: str) -> str:
    """Source ids and keys are compared as trimmed NVARCHAR."""
    return f"LTRIM(RTRIM(CAST({column_sql} AS NVARCHAR(100))))"


def build_source_records_select(
    settings: WarehouseSettings,
    profile: EntityProfile,
    system: str,
    key_column: str,
    name_columns: Sequence[str],
    batch_id: str,
) -> Statement:
    """One source system's records in a batch: id, strong key, name parts."""
    q = quote_identifier
    names = ", ".join(q(c) for c in name_columns)
    sql = (
        f"SELECT {q(profile.record_id_column)}, {q(key_column)}, {names} "
        f"FROM {ods_table(settings, profile)} "
        f"WHERE {q(profile.source_system_column)} = ? AND {q(settings.batch_column)} = ? "
        f"ORDER BY {q(profile.record_id_column)}"
    )
    return Statement(
        sql,
        (system, batch_id),
        kind="read_source_records",
        columns=(profile.record_id_column, key_column, *name_columns),
    )


def build_existing_entries_select(
    settings: WarehouseSettings,
    profile: EntityProfile,
    batch_id: str,
) -> Statement:
    """Crosswalk rows touching any record or strong key present in the batch."""
    q = quote_identifier
    ods = ods_table(settings, profile)
    rid = _as_text(f"o.{q(profile.record_id_column)}")
    sys_col = q(profile.source_system_column)
    batch_col = q(settings.batch_column)
    key_a = _as_text(f"o.{q(profile.strong_key_a)}")
    key_b = _as_text(f"o.{q(profile.strong_key_b)}")
    select_list = ", ".join(f"x.{q(c)}" for c in CROSSWALK_COLUMNS)
    sql = (
        f"SELECT {select_list} FROM {crosswalk_table(settings, profile)} x "
        f"WHERE EXISTS (SELECT 1 FROM {ods} o WHERE o.{sys_col} = ? AND o.{batch_col} = ? "
        f"AND ({rid} = x.[source_a_id] OR {key_a} = x.[source_a_natural_key] "
        f"OR {key_a} = x.[source_b_natural_key])) "
        f"OR EXISTS (SELECT 1 FROM {ods} o WHERE o.{sys_col} = ? AND o.{batch_col} = ? "
        f"AND ({rid} = x.[source_b_id] OR {key_b} = x.[source_b_natural_key] "
        f"OR {key_b} = x.[source_a_natural_key]))"
    )
    return Statement(
        sql,
        (profile.source_a_system, batch_id, profile.source_b_system, batch_id),
        kind="read_crosswalk",
        columns=CROSSWALK_COLUMNS,
    )


def build_crosswalk_merge(settings: WarehouseSettings, profile: EntityProfile) -> Statement:
    """Upsert keyed on master_id; bind CrosswalkEntry.as_row() tuples."""
    cols = CROSSWALK_COLUMNS
    source_cols = ", ".join(quote_identifier(c) for c in cols)
    placeholders = ", ".join("?" for _ in cols)
    updates = ", ".join(f"tgt.{quote_identifier(c)} = src.{quote_identifier(c)}" for c in cols[1:])
    insert_vals = ", ".join(f"src.{quote_identifier(c)}" for c in cols)
    sql = (
        f"MERGE {crosswalk_table(settings, profile)} AS tgt "
        f"USING (SELECT * FROM (VALUES ({placeholders})) AS v ({source_cols})) AS src "
        f"ON tgt.[master_id] = src.[master_id] "
        f"WHEN MATCHED THEN UPDATE SET {updates}, tgt.[updated_timestamp] = SYSUTCDATETIME() "
        f"WHEN NOT MATCHED THEN INSERT ({source_cols}, [created_timestamp], [updated_timestamp]) "
        f"VALUES ({insert_vals}, SYSUTCDATETIME(), SYSUTCDATETIME());"
    )
    return Statement(sql, kind="merge_crosswalk", columns=cols)


def build_crosswalk_ddl(settings: WarehouseSettings, profile: EntityProfile) -> Statement:
    table = crosswalk_table(settings, profile)
    name = f"{settings.reference_schema}.{profile.crosswalk_table}"
    sql = (
        f"IF OBJECT_ID(?, 'U') IS NULL "
        f"CREATE TABLE {table} ("
        "[master_id] NVARCHAR(64) NOT NULL PRIMARY KEY, "
        "[source_a_id] NVARCHAR(100) NULL, "
        "[source_a_natural_key] NVARCHAR(100) NULL, "
        "[source_b_id] NVARCHAR(100) NULL, "
        "[source_b_natural_key] NVARCHAR(100) NULL, "
        "[match_confidence] DECIMAL(5,2) NOT NULL, "
        "[match_method] NVARCHAR(20) NOT NULL, "
        "[primary_source] NVARCHAR(20) NOT NULL, "
        "[created_timestamp] DATETIME2 NOT NULL DEFAULT SYSUTCDATETIME(), "
        "[updated_timestamp] DATETIME2 NOT NULL DEFAULT SYSUTCDATETIME())"
    )
    return Statement(sql, (name,), kind="crosswalk_ddl")


def build_reconciliation_log_ddl(settings: WarehouseSettings) -> Statement:
    table = reconciliation_log_table(settings)
    name = f"{settings.reference_schema}.{RECONCILIATION_LOG_TABLE}"
    sql = (
        f"IF OBJECT_ID(?, 'U') IS NULL "
        f"CREATE TABLE {table} ("
        "[reconciliation_id] BIGINT IDENTITY(1,1) NOT NULL PRIMARY KEY, "
        "[batch_id] NVARCHAR(64) NOT NULL, "
        "[entity_type] NVARCHAR(50) NOT NULL, "
        "[master_id] NVARCHAR(64) NOT NULL, "
        "[conflict_field] NVARCHAR(128) NOT NULL, "
        "[source_a_value] NVARCHAR(4000) NULL, "
        "[source_b_value] NVARCHAR(4000) NULL, "
        "[resolved_value] NVARCHAR(4000) NULL, "
        "[resolution_rule] NVARCHAR(50) NOT NULL, "
        "[reconciliation_timestamp] DATETIME2 NOT NULL)"
    )
    return Statement(sql, (name,), kind="reconciliation_log_ddl")


def build_reconciliation_log_insert(settings: WarehouseSettings) -> Statement:
    """Append one conflict unless the same (batch, entity, master, field) is logged.

    Re-running a batch therefore does not duplicate its audit trail.
    """
    table = reconciliation_log_table(settings)
    cols = ", ".join(quote_identifier(c) for c in _RECONCILIATION_COLUMNS)
    placeholders = ", ".join("?" for _ in _RECONCILIATION_COLUMNS)
    sql = (
        f"INSERT INTO {table} ({cols}) "
        f"SELECT {placeholders} "
        f"WHERE NOT EXISTS (SELECT 1 FROM {table} "
        "WHERE [batch_id] = ? AND [entity_type] = ? AND [master_id] = ? AND [conflict_field] = ?)"
    )
    return Statement(sql, kind="insert_reconciliation_log", columns=_RECONCILIATION_COLUMNS)


def _log_row(entry: ReconciliationLogEntry) -> tuple:
    return (
        entry.batch_id,
        entry.entity_type,
        entry.master_id,
        entry.conflict_field,
        display_text(entry.source_a_value),
        display_text(entry.source_b_value),
        display_text(entry.resolved_value),
        entry.resolution_rule,
        entry.timestamp,
        # NOT EXISTS check
        entry.batch_id,
        entry.entity_type,
        entry.master_id,
        entry.conflict_field,
    )


def write_reconciliation_log(
    ex,
    settings: WarehouseSettings,
    entries: Sequence[ReconciliationLogEntry],
) -> int:
    """Persist buffered conflicts on the caller's executor (and transaction)."""
    if not entries:
        return 0
    written = ex.execute_many(build_reconciliation_log_insert(settings), [_log_row(e) for e in entries])
    logger.info("Logged %d attribute conflicts to %s", written, RECONCILIATION_LOG_TABLE)
    return written
