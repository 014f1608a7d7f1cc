"""CLI common boilerplate: shared setup for the dimension and multi-source entry points.

L-1: Centralizes environment setup, logging, startup checks, RSS
monitoring, batch id generation, and result printing for main_*.py.

Import this module BEFORE any other project imports in main_*.py files.
Module-level code sets MALLOC_ARENA_MAX and sys.path.
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime
from pathlib import Path

# M-1: Capture BEFORE setdefault: was MALLOC_ARENA_MAX set externally?
# glibc arena configuration is locked at process start.
MALLOC_ARENA_EXTERNALLY_SET = "MALLOC_ARENA_MAX" in os.environ

# M-1: Reduces glibc arenas from 8x cores to 2 (Polars #23128).
os.environ.setdefault("MALLOC_ARENA_MAX", "2")

# Ensure project root is on sys.path for imports
sys.path.insert(0, str(Path(__file__).parent))

import psutil

import config
from config import WarehouseSettings
from observability.log_handler import SqlServerLogHandler

logger = logging.getLogger(__name__)

_BATCH_ID_FORMAT = "BATCH_%Y%m%d_%H%M%S"


def new_batch_id(now: datetime | None = None) -> str:
    """Batch id in the warehouse's format, e.g. ``BATCH_20250117_120000``."""
    return (now or datetime.now()).strftime(_BATCH_ID_FORMAT)


def setup_logging(settings: WarehouseSettings, batch_id: str | None = None) -> SqlServerLogHandler:
    """Configure logging: StreamHandler + SqlServerLogHandler.

    Args:
        settings: Where ops.PipelineLog lives.
        batch_id: Pipeline batch id for log context.

    Returns:
        The SqlServerLogHandler instance (for flush/context updates).
    """
    level = getattr(logging, config.LOG_LEVEL, logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)

    # Console handler
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(logging.INFO)
    console.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(name)s - %(message)s")
    )
    root.addHandler(console)

    # SQL Server log handler
    sql_handler = SqlServerLogHandler(settings, level=level)
    if batch_id is not None:
        sql_handler.set_context(batch_id=batch_id)
    root.addHandler(sql_handler)

    return sql_handler


def startup_checks(settings: WarehouseSettings) -> None:
    """E-9: Verify RCSI on the warehouse so dimension readers don't block on loads."""
    from connections import verify_rcsi_enabled
    verify_rcsi_enabled(settings.database)


def warn_malloc_arena() -> None:
    """W-4: Warn if MALLOC_ARENA_MAX was not set in the external environment.

    os.environ.setdefault() at import time is too late for the running
    interpreter; the variable must be set by the systemd unit file or
    shell wrapper.
    """
    if not MALLOC_ARENA_EXTERNALLY_SET:
        logger.warning(
            "W-4: MALLOC_ARENA_MAX was not set in the external environment "
            "(current: %s, set by os.environ.setdefault). Set MALLOC_ARENA_MAX=2 "
            "in the systemd unit file or shell wrapper to prevent glibc arena "
            "fragmentation (Polars issue #23128).",
            os.environ.get("MALLOC_ARENA_MAX"),
        )


def warn_workers(workers: int) -> None:
    """M-2: Each worker holds a load transaction plus a lock connection."""
    if workers > 4:
        logger.warning(
            "M-2: Running with %d workers. Every worker keeps a load transaction and "
            "an app-lock session open on the warehouse. Recommended: --workers 4 or fewer.",
            workers,
        )


def check_rss_memory(label: str) -> None:
    """B-8: Check RSS memory between table iterations.

    Logs WARNING at 85% of MAX_RSS_GB and ERROR at the limit.
    """
    rss_gb = psutil.Process().memory_info().rss / (1024 ** 3)
    if rss_gb > config.MAX_RSS_GB:
        logger.error(
            "B-8: RSS memory %.1f GB exceeds MAX_RSS_GB (%.1f GB) before %s. "
            "Consider: (a) set MALLOC_ARENA_MAX=2 (W-4), (b) reduce --workers, "
            "(c) restart the pipeline to reclaim RSS.",
            rss_gb, config.MAX_RSS_GB, label,
        )
    elif rss_gb > config.MAX_RSS_GB * 0.85:
        logger.warning(
            "B-8: RSS memory %.1f GB approaching MAX_RSS_GB (%.1f GB) before %s.",
            rss_gb, config.MAX_RSS_GB, label,
        )


def validate_table_filter(registry, table_name: str | None) -> None:
    """H-4: Validate --table against the SCD2 configuration table.

    The loader validates again; this only catches typos before a batch
    starts.

    Raises:
        SystemExit: If the table is not configured.
    """
    if table_name is None:
        return
    known_tables = registry.get_known_tables()
    if table_name not in known_tables:
        logger.error(
            "H-4: --table '%s' not found in %s. Known tables (first 20): %s",
            table_name, registry.table_ref, sorted(known_tables)[:20],
        )
        sys.exit(1)


def print_results(results) -> None:
    """Print one line per BatchResult (already sorted: errors first)."""
    print(f"\n{'Table':<32} {'Status':<8} {'Closed':>8} {'Inserted':>9} {'Unchanged':>10}  Detail")
    print("-" * 100)
    for r in results:
        detail = r.error_detail or r.skip_reason or ""
        print(
            f"{r.table_name:<32} {r.status.value:<8} {r.rows_closed:>8} "
            f"{r.rows_inserted:>9} {r.rows_unchanged:>10}  {detail[:60]}"
        )
    print()
