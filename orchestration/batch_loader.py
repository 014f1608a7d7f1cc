"""BatchLoader: run the SCD2 loader over every loadable dimension.

Dimensions are independent tables, so they may load in parallel on worker
threads; loads of the same table are serialized by the loader's table lock.
One table's failure never stops the others: Scd2Loader.load() returns an
ERROR result instead of raising, and anything that still escapes a worker
is converted here.

A registry row that cannot be parsed still gets its table name scheduled;
its load fails on its own with INVALID_CONFIG.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable

from scd2.engine import Scd2Loader
from scd2.models import BatchResult, LoadStatus, sort_results

logger = logging.getLogger(__name__)


class BatchLoader:
    """Runs Scd2Loader.load() for each enabled and active configuration.

    Args:
        loader: Shared loader (thread-safe).
        workers: Parallel loads. 1 = sequential, in table-name order.
        before_table: Optional hook called with each table name before it
            loads (RSS checks, log context).
    """

    def __init__(
        self,
        loader: Scd2Loader,
        workers: int = 1,
        before_table: Callable[[str], None] | None = None,
    ) -> None:
        self._loader = loader
        self._workers = max(1, workers)
        self._before_table = before_table

    def load_all(self, batch_id: str, table_names: list[str] | None = None) -> list[BatchResult]:
        """Load every loadable dimension (or the named subset) for one batch.

        Returns:
            One BatchResult per table: errors first, then skips, then
            successes.
        """
        names = self._loader.registry.loadable_table_names()
        if table_names is not None:
            wanted = set(table_names)
            names = [n for n in names if n in wanted]

        logger.info(
            "Loading %d dimensions for batch %s (workers=%d)",
            len(names), batch_id, self._workers,
        )

        if self._workers == 1 or len(names) <= 1:
            results = [self._load_one(name, batch_id) for name in names]
        else:
            results = []
            with ThreadPoolExecutor(max_workers=self._workers) as pool:
                futures = {pool.submit(self._load_one, name, batch_id): name for name in names}
                for future in as_completed(futures):
                    results.append(future.result())

        results = sort_results(results)
        counts = {status: sum(1 for r in results if r.status == status) for status in LoadStatus}
        logger.info(
            "Batch %s complete: succeeded=%d, skipped=%d, failed=%d",
            batch_id, counts[LoadStatus.SUCCESS], counts[LoadStatus.SKIPPED], counts[LoadStatus.ERROR],
        )
        return results

    def _load_one(self, table_name: str, batch_id: str) -> BatchResult:
        try:
            if self._before_table is not None:
                self._before_table(table_name)
            return self._loader.load(table_name, batch_id)
        except Exception as e:
            logger.exception("Worker exception for %s", table_name)
            return BatchResult(
                table_name=table_name,
                status=LoadStatus.ERROR,
                batch_id=batch_id,
                error_code="UNEXPECTED_ERROR",
                error_detail=f"{type(e).__name__}: {e}",
            )
