"""SCD2 structural integrity validation on a loaded dimension.

Checks, each one COUNT query against the target table:
  - duplicate_current_rows    business keys with more than one is_current=1 row (FAIL)
  - overlapping_versions      versions of one key whose [start, end) ranges overlap (FAIL)
  - inverted_date_ranges      rows whose effective_end is not after effective_start (FAIL)
  - current_rows_not_open     is_current=1 rows not ending at the open sentinel (FAIL)
  - closed_rows_still_open    is_current=0 rows still ending at the open sentinel (FAIL)
  - keys_without_current_row  business keys with history but no current row (WARN)

The last one is expected for retired keys, hence WARN rather than FAIL.
"""

from __future__ import annotations

import logging
from typing import Callable

import connections
from config import WarehouseSettings
from connections import quote_identifier, quote_table, validate_identifier
from integrity.models import CheckResult, CheckStatus, sort_checks
from orchestration.dimension_config import DimensionConfig, DimensionConfigRegistry
from scd2.errors import StatementExecutionError
from scd2.statements import Statement

logger = logging.getLogger(__name__)


def _integrity_statements(
    settings: WarehouseSettings,
    dimension: DimensionConfig,
) -> list[tuple[str, CheckStatus, Statement]]:
    """(check name, status when violated, COUNT statement) for every check."""
    s = settings
    table = quote_table(dimension.target_full_table_name)
    keys = ", ".join(quote_identifier(c) for c in dimension.business_key_columns)
    key_join = " AND ".join(
        f"a.{quote_identifier(c)} = b.{quote_identifier(c)}" for c in dimension.business_key_columns
    )
    sk = quote_identifier(dimension.surrogate_key_column)
    cur = quote_identifier(s.current_flag_column)
    start = quote_identifier(s.effective_start_column)
    end = quote_identifier(s.effective_end_column)

    return [
        (
            "duplicate_current_rows",
            CheckStatus.FAIL,
            Statement(
                f"SELECT COUNT(*) FROM (SELECT {keys} FROM {table} WHERE {cur} = 1 "
                f"GROUP BY {keys} HAVING COUNT(*) > 1) AS d",
                kind="check_duplicate_current_rows",
            ),
        ),
        (
            "overlapping_versions",
            CheckStatus.FAIL,
            Statement(
                f"SELECT COUNT(*) FROM (SELECT DISTINCT a.{sk} FROM {table} a "
                f"INNER JOIN {table} b ON {key_join} AND a.{sk} <> b.{sk} "
                f"AND a.{start} < b.{end} AND b.{start} < a.{end}) AS o",
                kind="check_overlapping_versions",
            ),
        ),
        (
            "inverted_date_ranges",
            CheckStatus.FAIL,
            Statement(
                f"SELECT COUNT(*) FROM {table} WHERE {end} <= {start}",
                kind="check_inverted_date_ranges",
            ),
        ),
        (
            "current_rows_not_open",
            CheckStatus.FAIL,
            Statement(
                f"SELECT COUNT(*) FROM {table} WHERE {cur} = 1 AND ({end} IS NULL OR {end} <> ?)",
                (s.open_end_date,),
                kind="check_current_rows_not_open",
            ),
        ),
        (
            "closed_rows_still_open",
            CheckStatus.FAIL,
            Statement(
                f"SELECT COUNT(*) FROM {table} WHERE {cur} = 0 AND {end} = ?",
                (s.open_end_date,),
                kind="check_closed_rows_still_open",
            ),
        ),
        (
            "keys_without_current_row",
            CheckStatus.WARN,
            Statement(
                f"SELECT COUNT(*) FROM (SELECT {keys} FROM {table} GROUP BY {keys} "
                f"HAVING SUM(CASE WHEN {cur} = 1 THEN 1 ELSE 0 END) = 0) AS z",
                kind="check_keys_without_current_row",
            ),
        ),
    ]


class IntegrityValidator:
    """Runs the structural checks against one configured dimension.

    Args:
        settings: Warehouse names and SCD column names.
        registry: Config lookup. Defaults to the metadata table.
        executor_factory: ``(database, timeout_seconds) -> context manager``
            yielding a SqlExecutor.
    """

    def __init__(
        self,
        settings: WarehouseSettings,
        registry: DimensionConfigRegistry | None = None,
        executor_factory: Callable | None = None,
    ) -> None:
        self._settings = settings
        self._executor_factory = executor_factory or connections.executor_for
        self._registry = registry or DimensionConfigRegistry(settings, self._executor_factory)

    def check(self, table_name: str) -> list[CheckResult]:
        """Run every check on table_name's dimension.

        Returns:
            One CheckResult per check: FAIL first, then WARN, then PASS.

        Raises:
            InvalidIdentifier: table_name or a configured name is invalid.
            ConfigNotFound: table_name has no configuration.
        """
        validate_identifier(table_name, "table name")
        dimension = self._registry.get(table_name)
        dimension.validate()
        for kind, value in self._settings.identifier_fields.items():
            validate_identifier(value, kind)

        checks = _integrity_statements(self._settings, dimension)
        results: list[CheckResult] = []
        s = self._settings
        with self._executor_factory(s.database, s.statement_timeout_seconds) as ex:
            for name, violated, stmt in checks:
                try:
                    rows = ex.fetch_all(stmt)
                except StatementExecutionError as e:
                    logger.error("V-3: Integrity check %s failed to run on %s: %s", name, table_name, e)
                    results.append(CheckResult(name, CheckStatus.FAIL, detail=f"check failed: {e}"))
                    continue
                affected = int(rows[0][0]) if rows and rows[0][0] is not None else 0
                if affected:
                    results.append(CheckResult(
                        name, violated, affected,
                        detail=f"{affected} violations in {dimension.target_full_table_name}",
                    ))
                else:
                    results.append(CheckResult(name, CheckStatus.PASS))

        results = sort_checks(results)
        failed = [r.check_name for r in results if r.status == CheckStatus.FAIL]
        warned = [r.check_name for r in results if r.status == CheckStatus.WARN]
        if failed:
            logger.error("V-3: SCD2 integrity FAILED for %s: %s", table_name, failed)
        elif warned:
            logger.warning("V-3: SCD2 integrity passed with warnings for %s: %s", table_name, warned)
        else:
            logger.info("V-3: SCD2 integrity PASSED for %s", table_name)
        return results
