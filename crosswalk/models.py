"""Crosswalk and reconciliation records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class MatchMethod(str, Enum):
    EXACT = "EXACT"
    FUZZY_NAME = "FUZZY_NAME"
    SOURCE_A_ONLY = "SOURCE_A_ONLY"
    SOURCE_B_ONLY = "SOURCE_B_ONLY"
    NO_MATCH = "NO_MATCH"


MATCH_CONFIDENCE: dict[MatchMethod, float] = {
    MatchMethod.EXACT: 100.0,
    MatchMethod.FUZZY_NAME: 95.0,
    MatchMethod.SOURCE_A_ONLY: 90.0,
    MatchMethod.SOURCE_B_ONLY: 90.0,
    MatchMethod.NO_MATCH: 0.0,
}

CROSSWALK_COLUMNS = (
    "master_id",
    "source_a_id",
    "source_a_natural_key",
    "source_b_id",
    "source_b_natural_key",
    "match_confidence",
    "match_method",
    "primary_source",
)


@dataclass
class CrosswalkEntry:
    """One resolved master identity and the source records mapped to it."""

    master_id: str
    source_a_id: str | None
    source_a_natural_key: str | None
    source_b_id: str | None
    source_b_natural_key: str | None
    match_confidence: float
    match_method: MatchMethod
    primary_source: str

    def as_row(self) -> tuple:
        return (
            self.master_id,
            self.source_a_id,
            self.source_a_natural_key,
            self.source_b_id,
            self.source_b_natural_key,
            self.match_confidence,
            self.match_method.value,
            self.primary_source,
        )

    @classmethod
    def from_row(cls, row: dict) -> CrosswalkEntry:
        return cls(
            master_id=row["master_id"],
            source_a_id=row.get("source_a_id"),
            source_a_natural_key=row.get("source_a_natural_key"),
            source_b_id=row.get("source_b_id"),
            source_b_natural_key=row.get("source_b_natural_key"),
            match_confidence=float(row.get("match_confidence") or 0),
            match_method=MatchMethod(row.get("match_method") or MatchMethod.NO_MATCH.value),
            primary_source=row.get("primary_source") or "",
        )


@dataclass(frozen=True)
class ReconciliationLogEntry:
    """Append-only audit record of one resolved attribute conflict."""

    batch_id: str
    entity_type: str
    master_id: str
    conflict_field: str
    source_a_value: Any
    source_b_value: Any
    resolved_value: Any
    resolution_rule: str
    timestamp: datetime
