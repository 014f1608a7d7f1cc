"""CLI entry point for the multi-source (OMS + VEMS) pipeline.

Usage:
    python3 main_multisource.py --batch-id BATCH_20250117_120000
    python3 main_multisource.py --batch-id BATCH_20250117_120000 --entity VETERAN
    python3 main_multisource.py --ensure-tables
"""

from __future__ import annotations

# L-1: cli_common sets MALLOC_ARENA_MAX (M-1) and sys.path; must be
# imported before any other project modules.
import cli_common  # noqa: F401

import argparse
import logging
import sys

from config import WarehouseSettings
from crosswalk.builder import CrosswalkBuilder
from crosswalk.profiles import ENTITY_PROFILES
from observability.event_tracker import PipelineEventTracker
from orchestration.multisource import MultiSourcePipeline
from scd2.engine import Scd2Loader


def main() -> None:
    parser = argparse.ArgumentParser(description="Veteran Evaluation DW - Multi-Source Pipeline")
    parser.add_argument("--batch-id", type=str, help="ODS batch to process (default: new BATCH_YYYYMMDD_HHMMSS)")
    parser.add_argument(
        "--entity", action="append", choices=sorted(ENTITY_PROFILES),
        help="Entity type to process; repeatable (default: all)",
    )
    parser.add_argument("--ensure-tables", action="store_true", help="Create crosswalk and reconciliation tables and exit")
    args = parser.parse_args()

    logger = logging.getLogger(__name__)
    settings = WarehouseSettings.from_env()

    if args.ensure_tables:
        CrosswalkBuilder(settings).ensure_tables()
        print("Crosswalk and reconciliation log tables are in place.")
        return

    batch_id = args.batch_id or cli_common.new_batch_id()
    sql_handler = cli_common.setup_logging(settings, batch_id)
    cli_common.startup_checks(settings)
    cli_common.warn_malloc_arena()

    tracker = PipelineEventTracker(settings)
    pipeline = MultiSourcePipeline(
        settings,
        loader=Scd2Loader(settings, sink=tracker),
        tracker=tracker,
    )

    logger.info("Starting multi-source pipeline: batch_id=%s", batch_id)
    results = pipeline.run(batch_id, args.entity)

    print(f"\n{'Entity':<10} {'Xwalk':>6} {'Review':>7} {'Staged':>7} {'Conflicts':>10} {'Load':<8} Detail")
    print("-" * 90)
    for r in results:
        load_status = r.load.status.value if r.load is not None else "-"
        print(
            f"{r.entity_type:<10} {r.crosswalk_entries:>6} {r.low_confidence_entries:>7} "
            f"{r.staged_rows:>7} {r.conflicts_logged:>10} {load_status:<8} {r.summary[:50]}"
        )
    print()

    sql_handler.flush()
    failed = sum(1 for r in results if not r.succeeded)
    logger.info("Multi-source pipeline complete: batch_id=%s, failed=%d", batch_id, failed)
    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
