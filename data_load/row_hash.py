"""Content hashing: change detection for SCD2 versions.

Single source of truth for the digest stored in a dimension's change hash
column. Two versions of a business key are the same version iff their
digests are equal. Output is a full SHA-256 hex string (64 characters,
VARCHAR(64) in SQL Server).

Rules:
  - Only tracked columns contribute; they are taken in sorted-name order, so
    unrelated columns and column order never change the digest.
  - NULL hashes as the empty string, the same as ``""`` (warehouse
    convention, COALESCE(col, '')). A NULL can therefore never collide with
    a non-empty legitimate value.
  - E-19: Values are joined with the Unit Separator (\\x1F) to prevent
    cross-column collisions ("ab" + "c" vs "a" + "bc").

V-11 ONLY: DataFrames are hashed through the same hashlib path as single
rows (a per-row callback over canonical_text), not through polars
expressions and a native SHA-256 plugin. Frame and row digests come from one
function.

A-1 HASH SCOPE CONSTRAINT:
  The digest is compared only against the same business key's previous
  digest. Do NOT repurpose it as a surrogate key or for cross-key
  deduplication.
"""

from __future__ import annotations

import hashlib
import logging
import math
import unicodedata
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Iterable, Mapping

import polars as pl

logger = logging.getLogger(__name__)

# V-1: Decimal places for float normalization before hashing. Prevents
# phantom new versions from IEEE 754 representation noise
# (0.30000000000000004 vs 0.3).
FLOAT_HASH_PRECISION = 10

_NULL_SENTINEL = ""
_SEPARATOR = "\x1f"

# W-3: IEEE 754 edge case sentinels for float columns.
_NAN_SENTINEL = "\x1fNaN\x1f"
_INF_SENTINEL = "\x1fINF\x1f"
_NEG_INF_SENTINEL = "\x1f-INF\x1f"


def canonical_text(value: Any) -> str:
    """Render one value the way it enters the hash.

    Also used by the conflict reconciler to decide whether two source
    values are equal, so both agree on what "the same value" means.
    """
    if value is None:
        return _NULL_SENTINEL
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, str):
        # V-2: NFC so composed/decomposed accents hash alike.
        # E-4: RTRIM trailing spaces (CHAR padding).
        return unicodedata.normalize("NFC", value).rstrip(" ")
    if isinstance(value, float):
        if math.isnan(value):
            return _NAN_SENTINEL
        if math.isinf(value):
            return _INF_SENTINEL if value > 0 else _NEG_INF_SENTINEL
        rounded = round(value, FLOAT_HASH_PRECISION)
        if rounded == 0.0:
            rounded = 0.0  # -0.0
        return repr(rounded)
    if isinstance(value, Decimal):
        if value.is_nan():
            return _NAN_SENTINEL
        if value == 0:
            return "0"
        text = format(value.normalize(), "f")
        return text
    if isinstance(value, datetime):
        return value.isoformat(sep=" ")
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    return str(value)


def compute_hash(row: Mapping[str, Any], tracked_columns: Iterable[str]) -> str:
    """Hash the tracked columns of one row.

    Args:
        row: Column name -> value. Columns not in tracked_columns are ignored.
        tracked_columns: Columns that define a version. A tracked column
            missing from row hashes as NULL.

    Returns:
        64-character SHA-256 hex digest.
    """
    columns = sorted(set(tracked_columns))
    if not columns:
        raise ValueError("compute_hash requires at least one tracked column")
    payload = _SEPARATOR.join(canonical_text(row.get(c)) for c in columns)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def add_content_hash(
    df: pl.DataFrame,
    tracked_columns: Iterable[str],
    hash_column: str,
    only_missing: bool = False,
) -> pl.DataFrame:
    """Add (or fill) hash_column on a DataFrame using compute_hash().

    V-11: Uses a per-row Python callback rather than a native plugin so that
    DataFrame hashing and single-row hashing share one canonicalization and
    can never drift apart. Dimension batches are small enough for this.

    Args:
        df: Source rows.
        tracked_columns: Columns that define a version.
        hash_column: Output column.
        only_missing: Keep existing non-null values of hash_column and hash
            only rows where it is null.
    """
    columns = sorted(set(tracked_columns))
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise ValueError(f"Tracked columns not present in rows: {missing}")
    if len(df) == 0:
        if hash_column not in df.columns:
            return df.with_columns(pl.lit(None, dtype=pl.Utf8).alias(hash_column))
        return df

    computed = pl.struct([pl.col(c) for c in columns]).map_elements(
        lambda r: compute_hash(r, columns), return_dtype=pl.Utf8,
    )
    if only_missing and hash_column in df.columns:
        null_count = df[hash_column].null_count()
        if null_count == 0:
            return df
        logger.debug("Filling %d missing %s values from tracked columns", null_count, hash_column)
        expr = pl.coalesce([pl.col(hash_column).cast(pl.Utf8), computed])
    else:
        expr = computed
    logger.debug("V-11: hashlib row hashing for %s (%d rows)", hash_column, len(df))
    return df.with_columns(expr.alias(hash_column))


def display_text(value: Any, limit: int = 4000) -> str | None:
    """canonical_text() for audit columns: NULL stays NULL, truncated to fit."""
    if value is None:
        return None
    return canonical_text(value)[:limit]
