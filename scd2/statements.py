"""Parameterized statement builders for the SCD2 loader.

Every builder takes raw names, quotes them through connections.quote_identifier
/ quote_table (which validate against the allow-list), and returns a Statement
whose literals are all ``?`` parameters. No value is ever formatted into SQL
text.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

from connections import quote_identifier, quote_table

# SQL Server rejects requests with more than 2,100 parameters.
MAX_STATEMENT_PARAMS = 2000


@dataclass(frozen=True)
class Statement:
    """SQL text plus bound parameters.

    kind names the step (``close_versions``, ``insert_versions``...) for
    logging and error context. columns lists the bound column order for
    executemany statements.
    """

    sql: str
    params: tuple = ()
    kind: str = "statement"
    columns: tuple[str, ...] = field(default=())


def _key_join(left: str, right: str, key_columns: Sequence[str]) -> str:
    return " AND ".join(
        f"{left}.{quote_identifier(c)} = {right}.{quote_identifier(c)}"
        for c in key_columns
    )


def build_column_discovery(schema: str, table: str) -> Statement:
    """Reflect the source table's columns from the catalog, in ordinal order."""
    # Names are bound as values here, but still validated: they are reused
    # as identifiers by every later statement.
    quote_table(f"{schema}.{table}")
    return Statement(
        "SELECT COLUMN_NAME FROM INFORMATION_SCHEMA.COLUMNS "
        "WHERE TABLE_SCHEMA = ? AND TABLE_NAME = ? "
        "ORDER BY ORDINAL_POSITION",
        (schema, table),
        kind="discover_columns",
    )


def build_batch_select(
    schema: str,
    table: str,
    columns: Sequence[str],
    batch_column: str,
    batch_id: str,
    order_by: Sequence[str],
) -> Statement:
    """Select one batch's source rows.

    Ordered by business key so that duplicate-key resolution downstream is
    deterministic.
    """
    select_list = ", ".join(quote_identifier(c) for c in columns)
    order_list = ", ".join(quote_identifier(c) for c in order_by)
    return Statement(
        f"SELECT {select_list} FROM {quote_table(f'{schema}.{table}')} "
        f"WHERE {quote_identifier(batch_column)} = ? "
        f"ORDER BY {order_list}",
        (batch_id,),
        kind="read_batch",
        columns=tuple(columns),
    )


def build_target_state_select(
    target_schema: str,
    target_table: str,
    source_schema: str,
    source_table: str,
    key_columns: Sequence[str],
    hash_column: str,
    current_flag_column: str,
    batch_column: str,
    batch_id: str,
) -> Statement:
    """Per business key of this batch: does any row exist, and the current hash.

    Returns one row per target key that also appears in the batch, with
    ``has_current`` (0/1) and ``current_hash``. Keys absent from the result
    are brand new to the dimension.
    """
    keys = ", ".join(f"t.{quote_identifier(c)}" for c in key_columns)
    flag = quote_identifier(current_flag_column)
    return Statement(
        f"SELECT {keys}, "
        f"MAX(CASE WHEN t.{flag} = 1 THEN 1 ELSE 0 END) AS has_current, "
        f"MAX(CASE WHEN t.{flag} = 1 THEN t.{quote_identifier(hash_column)} END) AS current_hash "
        f"FROM {quote_table(f'{target_schema}.{target_table}')} AS t "
        f"WHERE EXISTS (SELECT 1 FROM {quote_table(f'{source_schema}.{source_table}')} AS s "
        f"WHERE s.{quote_identifier(batch_column)} = ? AND {_key_join('s', 't', key_columns)}) "
        f"GROUP BY {keys}",
        (batch_id,),
        kind="read_target_state",
        columns=tuple(key_columns) + ("has_current", "current_hash"),
    )


def close_chunk_size(key_width: int, configured: int) -> int:
    """Largest number of keys one close UPDATE may bind."""
    return max(1, min(configured, (MAX_STATEMENT_PARAMS - 2) // max(key_width, 1)))


def build_close_update(
    target_schema: str,
    target_table: str,
    key_columns: Sequence[str],
    keys: Sequence[Sequence],
    current_flag_column: str,
    effective_end_column: str,
    updated_column: str,
    closed_at: datetime,
) -> Statement:
    """Close the current version of each given business key.

    The OUTPUT clause returns the keys that were actually closed; that set,
    not a time window, decides which keys get a new version. The
    ``is_current = 1`` guard makes re-closing an already closed row a no-op.
    """
    if not keys:
        raise ValueError("build_close_update requires at least one key")
    width = len(key_columns)
    if (len(keys) * width) + 2 > MAX_STATEMENT_PARAMS:
        raise ValueError(
            f"{len(keys)} keys x {width} columns exceeds {MAX_STATEMENT_PARAMS} parameters"
        )
    row_placeholder = "(" + ", ".join("?" for _ in range(width)) + ")"
    values = ", ".join(row_placeholder for _ in keys)
    key_list = ", ".join(quote_identifier(c) for c in key_columns)
    output = ", ".join(f"inserted.{quote_identifier(c)}" for c in key_columns)
    flag = quote_identifier(current_flag_column)
    params: list = [closed_at, closed_at]
    for key in keys:
        if len(key) != width:
            raise ValueError(f"Key {key!r} does not have {width} columns")
        params.extend(key)
    return Statement(
        f"UPDATE t SET t.{flag} = 0, "
        f"t.{quote_identifier(effective_end_column)} = ?, "
        f"t.{quote_identifier(updated_column)} = ? "
        f"OUTPUT {output} "
        f"FROM {quote_table(f'{target_schema}.{target_table}')} AS t "
        f"INNER JOIN (VALUES {values}) AS k ({key_list}) "
        f"ON {_key_join('t', 'k', key_columns)} "
        f"WHERE t.{flag} = 1",
        tuple(params),
        kind="close_versions",
        columns=tuple(key_columns),
    )


def build_insert(target_schema: str, target_table: str, columns: Sequence[str]) -> Statement:
    """INSERT for executemany; one ``?`` per column, surrogate key excluded by the caller."""
    column_list = ", ".join(quote_identifier(c) for c in columns)
    placeholders = ", ".join("?" for _ in columns)
    return Statement(
        f"INSERT INTO {quote_table(f'{target_schema}.{target_table}')} "
        f"({column_list}) VALUES ({placeholders})",
        (),
        kind="insert_versions",
        columns=tuple(columns),
    )
