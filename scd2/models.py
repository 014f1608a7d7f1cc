"""Structured results of dimension loads."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class LoadStatus(str, Enum):
    SUCCESS = "SUCCESS"
    SKIPPED = "SKIPPED"
    ERROR = "ERROR"


# Report order: errors first, then skips, then successes.
_STATUS_ORDER = {LoadStatus.ERROR: 0, LoadStatus.SKIPPED: 1, LoadStatus.SUCCESS: 2}


@dataclass
class BatchResult:
    """Per-table outcome of one Scd2Loader.load() call."""

    table_name: str
    status: LoadStatus
    batch_id: str | None = None
    rows_closed: int = 0
    rows_inserted: int = 0
    rows_unchanged: int = 0
    duration_seconds: float = 0.0
    error_code: str | None = None
    error_detail: str | None = None
    skip_reason: str | None = None

    @property
    def is_error(self) -> bool:
        return self.status == LoadStatus.ERROR

    @property
    def counts(self) -> dict[str, int]:
        return {
            "rows_closed": self.rows_closed,
            "rows_inserted": self.rows_inserted,
            "rows_unchanged": self.rows_unchanged,
        }


def sort_results(results: list[BatchResult]) -> list[BatchResult]:
    return sorted(results, key=lambda r: (_STATUS_ORDER[r.status], r.table_name))
