"""Integrity check result dataclasses."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class CheckStatus(str, Enum):
    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"


_STATUS_ORDER = {CheckStatus.FAIL: 0, CheckStatus.WARN: 1, CheckStatus.PASS: 2}


@dataclass
class CheckResult:
    """Outcome of one structural check on one dimension."""

    check_name: str
    status: CheckStatus
    affected_rows: int = 0
    detail: str | None = None

    @property
    def is_clean(self) -> bool:
        return self.status == CheckStatus.PASS


def sort_checks(results: list[CheckResult]) -> list[CheckResult]:
    """FAIL first, then WARN, then PASS; by check name within a status."""
    return sorted(results, key=lambda r: (_STATUS_ORDER[r.status], r.check_name))
