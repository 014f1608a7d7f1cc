"""CLI entry point for SCD2 dimension loads.

Usage:
    python3 main_load_dimensions.py --batch-id BATCH_20250117_120000
    python3 main_load_dimensions.py --batch-id BATCH_20250117_120000 --table dim_veteran
    python3 main_load_dimensions.py --batch-id BATCH_20250117_120000 --workers 4 --check
    python3 main_load_dimensions.py --list-tables
"""

from __future__ import annotations

# L-1: cli_common sets MALLOC_ARENA_MAX (M-1) and sys.path; must be
# imported before any other project modules.
import cli_common  # noqa: F401

import argparse
import logging
import sys

import config
from config import WarehouseSettings
from integrity.models import CheckStatus
from integrity.scd2_integrity import IntegrityValidator
from observability.event_tracker import PipelineEventTracker
from orchestration.batch_loader import BatchLoader
from orchestration.dimension_config import DimensionConfigRegistry
from scd2.engine import Scd2Loader
from scd2.models import LoadStatus


def main() -> None:
    parser = argparse.ArgumentParser(description="Veteran Evaluation DW - SCD2 Dimension Loads")
    parser.add_argument("--batch-id", type=str, help="Batch to promote (default: new BATCH_YYYYMMDD_HHMMSS)")
    parser.add_argument("--table", type=str, help="Load a single dimension by table name")
    parser.add_argument("--workers", type=int, default=config.LOAD_WORKERS, help="Parallel dimension loads (default: LOAD_WORKERS)")
    parser.add_argument("--list-tables", action="store_true", help="List configured dimensions and exit")
    parser.add_argument("--check", action="store_true", help="Run SCD2 integrity checks after each successful load")
    args = parser.parse_args()

    logger = logging.getLogger(__name__)
    settings = WarehouseSettings.from_env()
    registry = DimensionConfigRegistry(settings)

    if args.list_tables:
        configs = registry.list_all()
        print(f"\n{'Table':<32} {'Target':<12} {'Source':<32} {'Keys':<24} {'Enabled':<8} {'Active':<6}")
        print("-" * 118)
        for dc in configs:
            print(
                f"{dc.table_name:<32} {dc.target_schema:<12} {dc.source_full_table_name:<32} "
                f"{','.join(dc.business_key_columns):<24} {str(dc.enabled):<8} {str(dc.active):<6}"
            )
        print(f"\nTotal: {len(configs)} dimensions")
        return

    batch_id = args.batch_id or cli_common.new_batch_id()
    sql_handler = cli_common.setup_logging(settings, batch_id)

    # H-4: Validate --table against known values before loading
    cli_common.validate_table_filter(registry, args.table)

    cli_common.startup_checks(settings)
    cli_common.warn_malloc_arena()
    cli_common.warn_workers(args.workers)

    tracker = PipelineEventTracker(settings)
    loader = Scd2Loader(settings, registry=registry, sink=tracker)

    def before_table(table_name: str) -> None:
        # B-8: RSS monitoring between table iterations.
        cli_common.check_rss_memory(table_name)
        sql_handler.set_context(batch_id=batch_id, table_name=table_name)

    logger.info("Starting dimension loads: batch_id=%s, workers=%d", batch_id, args.workers)
    batch = BatchLoader(loader, workers=args.workers, before_table=before_table)
    results = batch.load_all(batch_id, [args.table] if args.table else None)
    cli_common.print_results(results)

    failed_checks = 0
    if args.check:
        validator = IntegrityValidator(settings, registry=registry)
        for r in results:
            if r.status != LoadStatus.SUCCESS:
                continue
            sql_handler.set_context(batch_id=batch_id, table_name=r.table_name)
            for check in validator.check(r.table_name):
                if check.status != CheckStatus.PASS:
                    print(f"  {r.table_name:<32} {check.check_name:<28} {check.status.value:<5} {check.detail or ''}")
                if check.status == CheckStatus.FAIL:
                    failed_checks += 1

    sql_handler.flush()

    errors = sum(1 for r in results if r.is_error)
    logger.info(
        "Pipeline complete: batch_id=%s, tables=%d, errors=%d, failed_checks=%d",
        batch_id, len(results), errors, failed_checks,
    )

    sys.exit(1 if errors or failed_checks else 0)


if __name__ == "__main__":
    main()
