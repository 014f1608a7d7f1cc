"""CrosswalkBuilder: link the OMS and VEMS records of one entity type to master ids.

Matching runs in a fixed order over one batch of ODS records; each record
takes part in at most one match:

  1. EXACT        strong natural key equal on both sides          (100)
  2. FUZZY_NAME   remaining records, strong key present on exactly
                  one side, normalized names equal and unique on
                  both sides                                       (95)
  3. SOURCE_A_ONLY / SOURCE_B_ONLY  unmatched record with its key (90)
  4. NO_MATCH     unmatched record without a key                   (0)

An exact match therefore always wins over a name match for the same
record. NO_MATCH records still get a master id so they are not silently
dropped; their confidence is below the review threshold and they are
logged for review.

Master ids are stable across batches: a record or strong key already in
the crosswalk reuses that row's master id (merging in the newly seen
side); otherwise the id is derived from the strong key (uuid5), or from
the source system and record id when there is no key.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

import polars as pl

import connections
from config import WarehouseSettings
from connections import validate_batch_id
from crosswalk.models import CROSSWALK_COLUMNS, MATCH_CONFIDENCE, CrosswalkEntry, MatchMethod
from crosswalk.persistence import (
    build_crosswalk_ddl,
    build_crosswalk_merge,
    build_existing_entries_select,
    build_reconciliation_log_ddl,
    build_source_records_select,
)
from crosswalk.profiles import (
    ENTITY_PROFILES,
    SYSTEM_OF_RECORD,
    EntityProfile,
    SourcePrecedence,
    get_precedence,
    get_profile,
)

logger = logging.getLogger(__name__)

_MASTER_ID_NAMESPACE = uuid.uuid5(uuid.NAMESPACE_URL, "urn:veteran-evaluation-dw:master-id")


@dataclass(frozen=True)
class MatchedPair:
    """Outcome of matching for one source record (or one linked pair)."""

    method: MatchMethod
    a_id: str | None = None
    a_key: str | None = None
    b_id: str | None = None
    b_key: str | None = None


# ---------------------------------------------------------------------------
# Matching (pure, polars)
# ---------------------------------------------------------------------------

def _blank_to_null(expr: pl.Expr) -> pl.Expr:
    text = expr.cast(pl.Utf8).str.strip_chars()
    return pl.when(text == "").then(None).otherwise(text)


def normalize_source_frame(
    df: pl.DataFrame,
    record_id_column: str,
    key_column: str,
    name_columns: Sequence[str],
) -> pl.DataFrame:
    """Reduce one system's ODS rows to record_id, natural_key, name_norm.

    Blank ids and keys become NULL; the name is the trimmed name parts
    joined by a space, uppercased. Rows without a record id are dropped;
    a record id seen twice keeps its last row.
    """
    name = pl.concat_str(
        [pl.col(c).cast(pl.Utf8).str.strip_chars().fill_null("") for c in name_columns],
        separator=" ",
    ).str.strip_chars().str.to_uppercase()
    out = df.select(
        _blank_to_null(pl.col(record_id_column)).alias("record_id"),
        _blank_to_null(pl.col(key_column)).alias("natural_key"),
        pl.when(name == "").then(None).otherwise(name).alias("name_norm"),
    )
    missing_id = out.filter(pl.col("record_id").is_null()).height
    if missing_id:
        logger.warning("Ignoring %d source rows without a %s", missing_id, record_id_column)
        out = out.filter(pl.col("record_id").is_not_null())
    return out.unique(subset=["record_id"], keep="last", maintain_order=True).sort("record_id")


def _split_duplicate_keys(df: pl.DataFrame) -> tuple[pl.DataFrame, pl.DataFrame]:
    """(records, records whose key an earlier record already holds)."""
    keyed = df.filter(pl.col("natural_key").is_not_null())
    first = keyed.unique(subset=["natural_key"], keep="first", maintain_order=True)
    dupes = keyed.join(first.select("record_id"), on="record_id", how="anti")
    return df.join(dupes.select("record_id"), on="record_id", how="anti"), dupes


def _unique_names(df: pl.DataFrame) -> pl.DataFrame:
    named = df.filter(pl.col("name_norm").is_not_null())
    unique = named.group_by("name_norm").len().filter(pl.col("len") == 1).select("name_norm")
    return named.join(unique, on="name_norm", how="semi")


def match_records(df_a: pl.DataFrame, df_b: pl.DataFrame) -> list[MatchedPair]:
    """Match two normalized frames (see normalize_source_frame).

    Returns one MatchedPair per linked pair or unmatched record, in a
    deterministic order: exact, fuzzy, A-only, B-only.
    """
    df_a, dupes_a = _split_duplicate_keys(df_a)
    df_b, dupes_b = _split_duplicate_keys(df_b)
    for side, dupes in (("A", dupes_a), ("B", dupes_b)):
        if len(dupes):
            logger.warning(
                "Source %s has %d records repeating another record's strong key; skipped: %s",
                side, len(dupes), dupes["record_id"].to_list()[:20],
            )

    pairs: list[MatchedPair] = []

    exact = df_a.filter(pl.col("natural_key").is_not_null()).join(
        df_b.filter(pl.col("natural_key").is_not_null()),
        on="natural_key", how="inner", suffix="_b",
    ).sort("record_id")
    for r in exact.iter_rows(named=True):
        pairs.append(MatchedPair(MatchMethod.EXACT, r["record_id"], r["natural_key"], r["record_id_b"], r["natural_key"]))

    rest_a = df_a.join(exact.select("record_id"), on="record_id", how="anti")
    rest_b = df_b.join(exact.select(pl.col("record_id_b").alias("record_id")), on="record_id", how="anti")

    fuzzy = _unique_names(rest_a).join(
        _unique_names(rest_b), on="name_norm", how="inner", suffix="_b",
    ).filter(
        pl.col("natural_key").is_null() != pl.col("natural_key_b").is_null()
    ).sort("record_id")
    for r in fuzzy.iter_rows(named=True):
        pairs.append(MatchedPair(MatchMethod.FUZZY_NAME, r["record_id"], r["natural_key"], r["record_id_b"], r["natural_key_b"]))

    rest_a = rest_a.join(fuzzy.select("record_id"), on="record_id", how="anti")
    rest_b = rest_b.join(fuzzy.select(pl.col("record_id_b").alias("record_id")), on="record_id", how="anti")

    for r in rest_a.iter_rows(named=True):
        method = MatchMethod.SOURCE_A_ONLY if r["natural_key"] is not None else MatchMethod.NO_MATCH
        pairs.append(MatchedPair(method, a_id=r["record_id"], a_key=r["natural_key"]))
    for r in rest_b.iter_rows(named=True):
        method = MatchMethod.SOURCE_B_ONLY if r["natural_key"] is not None else MatchMethod.NO_MATCH
        pairs.append(MatchedPair(method, b_id=r["record_id"], b_key=r["natural_key"]))
    return pairs


# ---------------------------------------------------------------------------
# Master id resolution
# ---------------------------------------------------------------------------

def classify_match(a_id: str | None, a_key: str | None, b_id: str | None, b_key: str | None) -> MatchMethod:
    """Match method implied by which sides and keys an entry holds."""
    if a_id is not None and b_id is not None:
        if a_key is not None and a_key == b_key:
            return MatchMethod.EXACT
        return MatchMethod.FUZZY_NAME
    if a_id is not None:
        return MatchMethod.SOURCE_A_ONLY if a_key is not None else MatchMethod.NO_MATCH
    if b_id is not None:
        return MatchMethod.SOURCE_B_ONLY if b_key is not None else MatchMethod.NO_MATCH
    return MatchMethod.NO_MATCH


def new_master_id(entity_type: str, pair: MatchedPair, source_a_system: str, source_b_system: str) -> str:
    """Deterministic master id: replaying a batch yields the same ids."""
    key = pair.a_key if pair.a_key is not None else pair.b_key
    if key is not None:
        name = f"{entity_type}|{key}"
    elif pair.a_id is not None:
        name = f"{entity_type}|{source_a_system}|{pair.a_id}"
    else:
        name = f"{entity_type}|{source_b_system}|{pair.b_id}"
    return str(uuid.uuid5(_MASTER_ID_NAMESPACE, name))


def primary_source_for(
    precedence: SourcePrecedence,
    has_a: bool,
    has_b: bool,
    source_a_system: str,
) -> str:
    """System of record, or the fallback when the preferred system has no record."""
    def has(system: str) -> bool:
        return has_a if system == source_a_system else has_b

    if has(precedence.primary_source) or precedence.fallback_source is None:
        return precedence.primary_source
    return precedence.fallback_source


def _coalesce(*values):
    return next((v for v in values if v is not None), None)


class _ExistingIndex:
    def __init__(self, entries: Iterable[CrosswalkEntry]) -> None:
        self.by_a_id: dict[str, CrosswalkEntry] = {}
        self.by_b_id: dict[str, CrosswalkEntry] = {}
        self.by_key: dict[str, CrosswalkEntry] = {}
        for e in entries:
            if e.source_a_id is not None:
                self.by_a_id.setdefault(e.source_a_id, e)
            if e.source_b_id is not None:
                self.by_b_id.setdefault(e.source_b_id, e)
            for key in (e.source_a_natural_key, e.source_b_natural_key):
                if key is not None:
                    self.by_key.setdefault(key, e)

    def find(self, pair: MatchedPair) -> CrosswalkEntry | None:
        candidates = [
            self.by_a_id.get(pair.a_id) if pair.a_id is not None else None,
            self.by_b_id.get(pair.b_id) if pair.b_id is not None else None,
            self.by_key.get(pair.a_key) if pair.a_key is not None else None,
            self.by_key.get(pair.b_key) if pair.b_key is not None else None,
        ]
        found = [c for c in candidates if c is not None]
        if not found:
            return None
        distinct = {c.master_id for c in found}
        if len(distinct) > 1:
            logger.warning(
                "Record pair (A=%s, B=%s) links existing master ids %s; keeping %s",
                pair.a_id, pair.b_id, sorted(distinct), found[0].master_id,
            )
        return found[0]


def resolve_entries(
    pairs: Sequence[MatchedPair],
    existing: Sequence[CrosswalkEntry],
    entity_type: str,
    precedence: SourcePrecedence,
    source_a_system: str,
    source_b_system: str,
) -> list[CrosswalkEntry]:
    """Turn matched pairs into crosswalk entries, reusing existing master ids.

    Newly seen ids and keys take precedence over stored ones; sides the
    batch does not mention keep their stored values.
    """
    index = _ExistingIndex(existing)
    resolved: dict[str, CrosswalkEntry] = {}

    for pair in pairs:
        prior = index.find(pair)
        master_id = prior.master_id if prior is not None else new_master_id(
            entity_type, pair, source_a_system, source_b_system,
        )
        earlier = [e for e in (resolved.get(master_id), prior) if e is not None]

        a_id = _coalesce(pair.a_id, *(e.source_a_id for e in earlier))
        a_key = _coalesce(pair.a_key, *(e.source_a_natural_key for e in earlier))
        b_id = _coalesce(pair.b_id, *(e.source_b_id for e in earlier))
        b_key = _coalesce(pair.b_key, *(e.source_b_natural_key for e in earlier))

        method = classify_match(a_id, a_key, b_id, b_key)
        resolved[master_id] = CrosswalkEntry(
            master_id=master_id,
            source_a_id=a_id,
            source_a_natural_key=a_key,
            source_b_id=b_id,
            source_b_natural_key=b_key,
            match_confidence=MATCH_CONFIDENCE[method],
            match_method=method,
            primary_source=primary_source_for(precedence, a_id is not None, b_id is not None, source_a_system),
        )

    return sorted(resolved.values(), key=lambda e: e.master_id)


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

class CrosswalkBuilder:
    """Builds and persists the crosswalk for one entity type and batch.

    Args:
        settings: Warehouse names and the review threshold.
        executor_factory: ``(database, timeout_seconds) -> context manager``
            yielding a SqlExecutor.
        profiles: Entity profiles by type. Defaults to ENTITY_PROFILES.
        precedence: System-of-record table. Defaults to SYSTEM_OF_RECORD.
    """

    def __init__(
        self,
        settings: WarehouseSettings,
        executor_factory: Callable | None = None,
        profiles: dict[str, EntityProfile] | None = None,
        precedence: dict[str, SourcePrecedence] | None = None,
    ) -> None:
        self._settings = settings
        self._executor_factory = executor_factory or connections.executor_for
        self._profiles = profiles if profiles is not None else ENTITY_PROFILES
        self._precedence = precedence if precedence is not None else SYSTEM_OF_RECORD

    def ensure_tables(self) -> None:
        """Create the crosswalk tables and the reconciliation log if missing."""
        s = self._settings
        with self._executor_factory(s.database, s.statement_timeout_seconds) as ex:
            for profile in self._profiles.values():
                profile.validate()
                ex.execute(build_crosswalk_ddl(s, profile))
            ex.execute(build_reconciliation_log_ddl(s))

    def build_crosswalk(self, entity_type: str, batch_id: str) -> list[CrosswalkEntry]:
        """Match the batch's records and upsert the crosswalk; commits before returning.

        Raises:
            ValueError: Unknown entity type or precedence entry.
            InvalidIdentifier: Malformed batch id or profile name.
            StatementExecutionError: A read or the upsert failed (rolled back).
        """
        validate_batch_id(batch_id)
        profile = get_profile(entity_type, self._profiles)
        profile.validate()
        precedence = get_precedence(profile.entity_type, self._precedence)
        systems = (profile.source_a_system, profile.source_b_system)
        if precedence.primary_source not in systems:
            raise ValueError(
                f"System of record {precedence.primary_source!r} for {profile.entity_type} "
                f"is not one of {systems}"
            )

        s = self._settings
        with self._executor_factory(s.database, s.statement_timeout_seconds) as ex:
            with ex.transaction():
                df_a = ex.fetch_frame(build_source_records_select(
                    s, profile, profile.source_a_system, profile.strong_key_a, profile.name_columns_a, batch_id,
                ))
                df_b = ex.fetch_frame(build_source_records_select(
                    s, profile, profile.source_b_system, profile.strong_key_b, profile.name_columns_b, batch_id,
                ))
                existing = [
                    CrosswalkEntry.from_row(dict(zip(CROSSWALK_COLUMNS, row)))
                    for row in ex.fetch_all(build_existing_entries_select(s, profile, batch_id))
                ]

                pairs = match_records(
                    normalize_source_frame(df_a, profile.record_id_column, profile.strong_key_a, profile.name_columns_a),
                    normalize_source_frame(df_b, profile.record_id_column, profile.strong_key_b, profile.name_columns_b),
                )
                entries = resolve_entries(
                    pairs, existing, profile.entity_type, precedence,
                    profile.source_a_system, profile.source_b_system,
                )
                if entries:
                    ex.execute_many(build_crosswalk_merge(s, profile), [e.as_row() for e in entries])

        counts = Counter(e.match_method.value for e in entries)
        logger.info(
            "Crosswalk %s batch %s: %d entries (%d existing rows touched) %s",
            profile.entity_type, batch_id, len(entries), len(existing), dict(sorted(counts.items())),
        )
        low = [e for e in entries if e.match_confidence < s.match_confidence_threshold]
        if low:
            logger.warning(
                "%d %s crosswalk entries below confidence %d need review: %s",
                len(low), profile.entity_type, s.match_confidence_threshold,
                [e.master_id for e in low[:20]],
            )
        return entries
