"""Generic SCD2 loader: one algorithm, driven by DimensionConfig rows.

load(table_name, batch_id) promotes the staging rows tagged with batch_id
into the configured dimension:

  1. Validate table_name / batch_id, resolve the config, re-validate every
     identifier (H-1). Nothing is executed before this passes.
  2. Take the per-table lock (P1-2).
  3. In ONE transaction:
       a. Reflect the source table's columns (validated, SCD/surrogate/
          excluded columns dropped).
       b. Read this batch's rows; fill missing content hashes.
       c. Read the target state for the batch's business keys.
       d. CLOSE: UPDATE ... OUTPUT the current rows whose hash differs.
       e. INSERT: rows whose key is brand new, or whose key is in the set
          returned by (d). Nothing else.
  4. Return a BatchResult. Errors never escape load().

The close/insert pair runs in one transaction, so a crash between them
cannot leave a business key closed with no replacement. The set of keys
that get a new version is exactly the close phase's OUTPUT, never a
wall-clock window.

RETIRED KEYS:
  A key whose target rows are all closed (no current row) is not revived
  by a later batch. It is counted and logged; operators reopen it
  deliberately if the entity returns.

DUPLICATE KEYS IN ONE BATCH:
  Rows are read ordered by business key and change hash; the last row per
  key is kept, so the choice is deterministic across replays.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Sequence

import polars as pl

import connections
from config import WarehouseSettings
from connections import validate_batch_id, validate_identifier
from data_load.row_hash import add_content_hash
from orchestration.dimension_config import DimensionConfig, DimensionConfigRegistry
from orchestration.table_lock import table_lock
from scd2.errors import (
    ColumnDiscoveryEmpty,
    ConfigDisabled,
    ConfigInactive,
    DimensionLoadError,
    InvalidIdentifier,
)
from scd2.models import BatchResult, LoadStatus
from scd2.statements import (
    build_batch_select,
    build_close_update,
    build_column_discovery,
    build_insert,
    build_target_state_select,
    close_chunk_size,
)

logger = logging.getLogger(__name__)

_HAS_CURRENT = "_has_current"
_CURRENT_HASH = "_current_hash"


def _utcnow() -> datetime:
    # DATETIME2 columns hold naive UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class SourceShape:
    """Resolved column layout of one dimension's source table."""

    copy_columns: list[str]
    business_key_columns: list[str]
    hash_column: str
    hash_in_source: bool
    batch_column: str
    tracked_columns: list[str]

    @property
    def insert_columns(self) -> list[str]:
        if self.hash_in_source:
            return list(self.copy_columns)
        return list(self.copy_columns) + [self.hash_column]


@dataclass
class ChangePlan:
    """Per-key classification of one batch against the target."""

    new_keys: pl.DataFrame
    changed_keys: pl.DataFrame
    unchanged_keys: pl.DataFrame
    retired_keys: pl.DataFrame


def plan_changes(
    df_source: pl.DataFrame,
    df_state: pl.DataFrame,
    key_columns: Sequence[str],
    hash_column: str,
) -> ChangePlan:
    """Classify each business key of the batch.

    df_state has the key columns plus _has_current (0/1) and _current_hash,
    one row per key that exists in the target. A current row with a NULL
    hash counts as changed (P0-10: NULL != anything).
    """
    keys = list(key_columns)
    joined = df_source.select(keys + [hash_column]).join(df_state, on=keys, how="left")

    has_current = pl.col(_HAS_CURRENT)
    return ChangePlan(
        new_keys=joined.filter(has_current.is_null()).select(keys),
        changed_keys=joined.filter(
            (has_current == 1) & pl.col(hash_column).ne_missing(pl.col(_CURRENT_HASH))
        ).select(keys),
        unchanged_keys=joined.filter(
            (has_current == 1) & pl.col(hash_column).eq_missing(pl.col(_CURRENT_HASH))
        ).select(keys),
        retired_keys=joined.filter(has_current == 0).select(keys),
    )


def _align_key_dtypes(df: pl.DataFrame, reference: pl.DataFrame, key_columns: Sequence[str]) -> pl.DataFrame:
    """Cast df's key columns to reference's dtypes so joins line up."""
    return df.with_columns([
        pl.col(c).cast(reference.schema[c], strict=False) for c in key_columns
    ])


class Scd2Loader:
    """Loads one dimension per call; safe to share across worker threads.

    All collaborators are injected; nothing is resolved from module globals
    mid-algorithm.

    Args:
        settings: Warehouse names, SCD column names, batch sizes, timeouts.
        registry: Config lookup. Defaults to the metadata table.
        executor_factory: ``(database, timeout_seconds) -> context manager``
            yielding a SqlExecutor.
        lock_factory: ``(settings, schema, table) -> context manager``
            yielding True when the dimension lock was acquired.
        sink: Pipeline logging sink with ``log_execution(...)``.
        clock: Returns the naive-UTC "now" for one load.
    """

    def __init__(
        self,
        settings: WarehouseSettings,
        registry: DimensionConfigRegistry | None = None,
        executor_factory: Callable | None = None,
        lock_factory: Callable | None = None,
        sink=None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings
        self._executor_factory = executor_factory or connections.executor_for
        self._registry = registry or DimensionConfigRegistry(settings, self._executor_factory)
        self._lock_factory = lock_factory or table_lock
        self._sink = sink
        self._clock = clock or _utcnow

    @property
    def registry(self) -> DimensionConfigRegistry:
        return self._registry

    def load(self, table_name: str, batch_id: str) -> BatchResult:
        """Promote one batch into one dimension. Never raises."""
        start = time.monotonic()
        result = BatchResult(
            table_name=table_name if isinstance(table_name, str) else repr(table_name),
            status=LoadStatus.ERROR,
            batch_id=batch_id if isinstance(batch_id, str) else repr(batch_id),
        )
        try:
            validate_identifier(table_name, "table name")
            validate_batch_id(batch_id)
            dimension = self._registry.get(table_name)
            if not dimension.enabled:
                raise ConfigDisabled(table_name)
            if not dimension.active:
                raise ConfigInactive(table_name)
            dimension.validate()
            for kind, value in self._settings.identifier_fields.items():
                validate_identifier(value, kind)

            with self._lock_factory(self._settings, dimension.target_schema, dimension.table_name) as acquired:
                if not acquired:
                    result.status = LoadStatus.SKIPPED
                    result.skip_reason = "lock held by another load"
                else:
                    self._load_dimension(dimension, batch_id, result)
                    result.status = LoadStatus.SUCCESS

        except (ConfigDisabled, ConfigInactive) as e:
            result.status = LoadStatus.SKIPPED
            result.error_code = e.error_code
            result.skip_reason = "disabled" if isinstance(e, ConfigDisabled) else "inactive"
            logger.info("Skipping %s: %s", result.table_name, e)
        except InvalidIdentifier as e:
            result.error_code = e.error_code
            result.error_detail = str(e)
            logger.error("H-1: Rejected load of %s: %s", result.table_name, e)
        except DimensionLoadError as e:
            result.error_code = e.error_code
            result.error_detail = str(e)
            logger.error("SCD2 load failed for %s (batch %s): %s", result.table_name, result.batch_id, e)
        except Exception as e:
            result.error_code = "UNEXPECTED_ERROR"
            result.error_detail = f"{type(e).__name__}: {e}"
            logger.exception("SCD2 load failed for %s (batch %s)", result.table_name, result.batch_id)

        if result.status != LoadStatus.SUCCESS:
            result.rows_closed = 0
            result.rows_inserted = 0
            result.rows_unchanged = 0
        result.duration_seconds = time.monotonic() - start
        self._report(result)
        return result

    # ------------------------------------------------------------------
    # Algorithm
    # ------------------------------------------------------------------

    def _load_dimension(self, dimension: DimensionConfig, batch_id: str, result: BatchResult) -> None:
        s = self._settings
        now = self._clock()

        with self._executor_factory(s.database, s.statement_timeout_seconds) as ex:
            with ex.transaction():
                shape = self._discover_shape(ex, dimension)
                df_source = self._read_batch(ex, dimension, shape, batch_id)
                if df_source.is_empty():
                    logger.info("No source rows for %s in batch %s", dimension.table_name, batch_id)
                    return

                keys = shape.business_key_columns
                df_state = ex.fetch_frame(build_target_state_select(
                    dimension.target_schema,
                    dimension.table_name,
                    dimension.source_schema,
                    dimension.source_table,
                    keys,
                    shape.hash_column,
                    s.current_flag_column,
                    shape.batch_column,
                    batch_id,
                ))
                df_state = df_state.rename(
                    dict(zip(df_state.columns, keys + [_HAS_CURRENT, _CURRENT_HASH]))
                )
                df_state = _align_key_dtypes(df_state, df_source, keys).with_columns(
                    pl.col(_HAS_CURRENT).cast(pl.Int64, strict=False),
                    pl.col(_CURRENT_HASH).cast(pl.Utf8),
                )

                plan = plan_changes(df_source, df_state, keys, shape.hash_column)
                if len(plan.retired_keys):
                    logger.info(
                        "%d keys of %s have no current row (retired); not reinserted",
                        len(plan.retired_keys), dimension.table_name,
                    )

                closed = self._close_changed(ex, dimension, keys, plan.changed_keys, now)
                closed = _align_key_dtypes(closed, df_source, keys)

                to_insert = pl.concat([
                    df_source.join(plan.new_keys, on=keys, how="semi"),
                    df_source.join(closed, on=keys, how="semi"),
                ])
                inserted = self._insert_versions(ex, dimension, shape, to_insert, now)

        result.rows_closed = len(closed)
        result.rows_inserted = inserted
        result.rows_unchanged = len(plan.unchanged_keys)
        logger.info(
            "SCD2 %s batch %s: new=%d, closed=%d, inserted=%d, unchanged=%d",
            dimension.table_name, batch_id, len(plan.new_keys), result.rows_closed,
            result.rows_inserted, result.rows_unchanged,
        )

    def _discover_shape(self, ex, dimension: DimensionConfig) -> SourceShape:
        s = self._settings
        rows = ex.fetch_all(build_column_discovery(dimension.source_schema, dimension.source_table))
        discovered = [r[0] for r in rows]
        if not discovered:
            raise ColumnDiscoveryEmpty(
                f"No columns found for source table {dimension.source_full_table_name}"
            )
        for column in discovered:
            validate_identifier(column, "source column")

        by_lower = {c.lower(): c for c in discovered}
        reserved = {c.lower() for c in s.scd_columns}
        reserved.add(dimension.surrogate_key_column.lower())
        reserved.update(c.lower() for c in dimension.exclude_columns)
        copy_columns = [c for c in discovered if c.lower() not in reserved]

        def resolve(name: str, what: str) -> str:
            actual = by_lower.get(name.lower())
            if actual is None or actual.lower() in reserved:
                raise ColumnDiscoveryEmpty(
                    f"{what} '{name}' not found in {dimension.source_full_table_name}"
                )
            return actual

        keys = [resolve(k, "Business key column") for k in dimension.business_key_columns]
        batch_column = resolve(s.batch_column, "Batch column")
        hash_actual = by_lower.get(dimension.change_hash_column.lower())
        hash_in_source = hash_actual is not None and hash_actual.lower() not in reserved
        hash_column = hash_actual if hash_in_source else dimension.change_hash_column

        if dimension.tracked_columns:
            tracked = [resolve(c, "Tracked column") for c in dimension.tracked_columns]
        else:
            skip = {c.lower() for c in keys} | {batch_column.lower(), hash_column.lower()}
            tracked = [c for c in copy_columns if c.lower() not in skip] or list(keys)

        logger.debug(
            "Discovered %d source columns for %s (%d copied, %d tracked)",
            len(discovered), dimension.table_name, len(copy_columns), len(tracked),
        )
        return SourceShape(
            copy_columns=copy_columns,
            business_key_columns=keys,
            hash_column=hash_column,
            hash_in_source=hash_in_source,
            batch_column=batch_column,
            tracked_columns=tracked,
        )

    def _read_batch(self, ex, dimension: DimensionConfig, shape: SourceShape, batch_id: str) -> pl.DataFrame:
        keys = shape.business_key_columns
        order_by = keys + ([shape.hash_column] if shape.hash_in_source else [])
        df = ex.fetch_frame(build_batch_select(
            dimension.source_schema,
            dimension.source_table,
            shape.copy_columns,
            shape.batch_column,
            batch_id,
            order_by,
        ))
        if df.is_empty():
            return df

        null_key = pl.any_horizontal([pl.col(k).is_null() for k in keys])
        null_count = df.filter(null_key).height
        if null_count:
            logger.warning(
                "Dropping %d rows of %s batch %s with a NULL business key",
                null_count, dimension.table_name, batch_id,
            )
            df = df.filter(~null_key)

        df = add_content_hash(
            df, shape.tracked_columns, shape.hash_column, only_missing=shape.hash_in_source,
        )

        distinct = df.select(keys).n_unique()
        if distinct < len(df):
            logger.warning(
                "Batch %s has %d duplicate rows for %s business keys; keeping the last per key",
                batch_id, len(df) - distinct, dimension.table_name,
            )
            df = df.unique(subset=keys, keep="last", maintain_order=True)
        return df

    def _close_changed(
        self,
        ex,
        dimension: DimensionConfig,
        keys: list[str],
        changed_keys: pl.DataFrame,
        now: datetime,
    ) -> pl.DataFrame:
        """Close current versions of changed keys; return the keys actually closed."""
        s = self._settings
        closed_rows: list[tuple] = []
        key_rows = changed_keys.rows()
        # B-2: chunk to stay under the parameter cap and lock escalation.
        chunk = close_chunk_size(len(keys), s.close_batch_size)
        for i in range(0, len(key_rows), chunk):
            stmt = build_close_update(
                dimension.target_schema,
                dimension.table_name,
                keys,
                key_rows[i:i + chunk],
                s.current_flag_column,
                s.effective_end_column,
                s.updated_column,
                now,
            )
            closed_rows.extend(ex.fetch_all(stmt))

        if len(closed_rows) != len(key_rows):
            logger.warning(
                "Close phase for %s closed %d rows but %d keys changed; "
                "only closed keys receive a new version",
                dimension.table_name, len(closed_rows), len(key_rows),
            )
        if not closed_rows:
            return changed_keys.clear()
        return pl.DataFrame(closed_rows, schema=keys, orient="row").unique(maintain_order=True)

    def _insert_versions(
        self,
        ex,
        dimension: DimensionConfig,
        shape: SourceShape,
        df: pl.DataFrame,
        now: datetime,
    ) -> int:
        if df.is_empty():
            return 0
        s = self._settings
        columns = shape.insert_columns + list(s.scd_columns)
        stmt = build_insert(dimension.target_schema, dimension.table_name, columns)
        # effective_start, effective_end, is_current, created, updated
        scd_values = (now, s.open_end_date, 1, now, now)
        rows = [row + scd_values for row in df.select(shape.insert_columns).iter_rows()]

        inserted = 0
        for i in range(0, len(rows), s.insert_batch_size):
            inserted += ex.execute_many(stmt, rows[i:i + s.insert_batch_size])
        return inserted

    def _report(self, result: BatchResult) -> None:
        """Hand the result to the logging sink; a sink failure is only logged."""
        if self._sink is None:
            return
        try:
            self._sink.log_execution(
                f"SCD2_LOAD:{result.table_name}",
                result.status.value,
                result.duration_seconds,
                result.counts,
                result.error_detail or result.skip_reason,
                result.batch_id,
            )
        except Exception:
            logger.warning("Pipeline logging sink failed for %s", result.table_name, exc_info=True)
