"""StagingMaterializer: one merged staging row per master id.

Reads the crosswalk joined to both systems' ODS rows for the batch,
cleanses each mapped field, resolves conflicts through the
ConflictReconciler (system of record wins), computes the change hash over
the profile's tracked fields, and replaces the batch's staging rows. The
staging rows, and the conflicts logged for them, are written in one
transaction, so a rerun of the same batch leaves the same staging rows
and no duplicate audit entries.

The dimension load (Scd2Loader) then promotes the staging rows; staging
business key = master id.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

import connections
from config import WarehouseSettings
from connections import quote_identifier, quote_table, validate_batch_id
from crosswalk.persistence import crosswalk_table, ods_table
from crosswalk.profiles import ENTITY_PROFILES, EntityProfile, apply_transform, get_profile
from crosswalk.reconciler import ConflictReconciler
from data_load.row_hash import compute_hash
from scd2.statements import Statement

logger = logging.getLogger(__name__)

_A_PREFIX = "a__"
_B_PREFIX = "b__"


@dataclass
class StagingResult:
    entity_type: str
    batch_id: str
    rows_written: int = 0
    conflicts_logged: int = 0


def build_merged_source_select(
    settings: WarehouseSettings,
    profile: EntityProfile,
    batch_id: str,
) -> Statement:
    """Crosswalk rows with their batch records from each side, one per master id."""
    q = quote_identifier
    ods = ods_table(settings, profile)
    rid = q(profile.record_id_column)
    sys_col = q(profile.source_system_column)
    batch_col = q(settings.batch_column)

    select_list = ["x.[master_id]", "x.[primary_source]"]
    select_list += [f"a.{q(c)} AS {q(_A_PREFIX + c)}" for c in profile.columns_a]
    select_list += [f"b.{q(c)} AS {q(_B_PREFIX + c)}" for c in profile.columns_b]
    # Record ids first, then every read column, so duplicate ODS rows for one
    # master id come back in the same order on every replay.
    order_by = ["x.[master_id]"]
    order_by += [f"a.{q(c)}" for c in profile.columns_a]
    order_by += [f"b.{q(c)}" for c in profile.columns_b]

    sql = (
        f"SELECT {', '.join(select_list)} "
        f"FROM {crosswalk_table(settings, profile)} x "
        f"LEFT JOIN {ods} a ON LTRIM(RTRIM(CAST(a.{rid} AS NVARCHAR(100)))) = x.[source_a_id] "
        f"AND a.{sys_col} = ? AND a.{batch_col} = ? "
        f"LEFT JOIN {ods} b ON LTRIM(RTRIM(CAST(b.{rid} AS NVARCHAR(100)))) = x.[source_b_id] "
        f"AND b.{sys_col} = ? AND b.{batch_col} = ? "
        f"WHERE a.{rid} IS NOT NULL OR b.{rid} IS NOT NULL "
        f"ORDER BY {', '.join(order_by)}"
    )
    return Statement(
        sql,
        (profile.source_a_system, batch_id, profile.source_b_system, batch_id),
        kind="read_merged_sources",
    )


def build_staging_delete(settings: WarehouseSettings, profile: EntityProfile, batch_id: str) -> Statement:
    table = quote_table(f"{settings.staging_schema}.{profile.staging_table}")
    return Statement(
        f"DELETE FROM {table} WHERE {quote_identifier(settings.batch_column)} = ?",
        (batch_id,),
        kind="clear_staging",
    )


def staging_insert_columns(settings: WarehouseSettings, profile: EntityProfile) -> list[str]:
    return profile.staging_columns + [
        profile.source_system_column,
        settings.batch_column,
        profile.hash_column,
    ]


def build_staging_insert(settings: WarehouseSettings, profile: EntityProfile) -> Statement:
    table = quote_table(f"{settings.staging_schema}.{profile.staging_table}")
    columns = staging_insert_columns(settings, profile)
    col_list = ", ".join(quote_identifier(c) for c in columns)
    placeholders = ", ".join("?" for _ in columns)
    return Statement(
        f"INSERT INTO {table} ({col_list}) VALUES ({placeholders})",
        kind="insert_staging",
        columns=tuple(columns),
    )


def merge_record(
    profile: EntityProfile,
    row: dict,
    reconciler: ConflictReconciler,
    hash_column: str,
) -> dict:
    """Build one staging row from a merged-source row (a__/b__ prefixed columns)."""
    master_id = row["master_id"]
    primary = row["primary_source"]
    out = {profile.business_key_column: master_id}
    for mapping in profile.fields:
        value_a = apply_transform(mapping.transform, row.get(_A_PREFIX + mapping.column_a))
        value_b = apply_transform(mapping.transform, row.get(_B_PREFIX + mapping.source_b_column))
        out[mapping.target], _ = reconciler.reconcile(master_id, mapping.target, value_a, value_b, primary)
    out[profile.source_system_column] = f"{primary}_MERGED"
    out[hash_column] = compute_hash(out, profile.tracked_fields)
    return out


class StagingMaterializer:
    """Materializes the reconciled staging rows of one entity type for one batch.

    Requires the batch's crosswalk to be built and committed first
    (CrosswalkBuilder.build_crosswalk).
    """

    def __init__(
        self,
        settings: WarehouseSettings,
        executor_factory: Callable | None = None,
        profiles: dict[str, EntityProfile] | None = None,
        clock: Callable | None = None,
    ) -> None:
        self._settings = settings
        self._executor_factory = executor_factory or connections.executor_for
        self._profiles = profiles if profiles is not None else ENTITY_PROFILES
        self._clock = clock

    def materialize(self, entity_type: str, batch_id: str) -> StagingResult:
        """Replace the batch's staging rows for entity_type.

        Raises:
            ValueError: Unknown entity type, or a crosswalk row names a
                primary source outside the profile's two systems.
            InvalidIdentifier: Malformed batch id or profile name.
            StatementExecutionError: A statement failed (rolled back).
        """
        validate_batch_id(batch_id)
        profile = get_profile(entity_type, self._profiles)
        profile.validate()
        s = self._settings
        result = StagingResult(entity_type=profile.entity_type, batch_id=batch_id)
        reconciler = ConflictReconciler(
            profile.entity_type, batch_id, profile.source_a_system, profile.source_b_system, clock=self._clock,
        )

        with self._executor_factory(s.database, s.statement_timeout_seconds) as ex:
            with ex.transaction():
                df = ex.fetch_frame(build_merged_source_select(s, profile, batch_id))
                if df.height and df["master_id"].n_unique() < df.height:
                    logger.warning(
                        "%s batch %s has %d extra ODS rows for crosswalked records; keeping the last per master id",
                        profile.entity_type, batch_id, df.height - df["master_id"].n_unique(),
                    )
                    df = df.unique(subset=["master_id"], keep="last", maintain_order=True)

                rows = []
                for row in df.iter_rows(named=True):
                    merged = merge_record(profile, row, reconciler, profile.hash_column)
                    merged[s.batch_column] = batch_id
                    rows.append(merged)

                ex.execute(build_staging_delete(s, profile, batch_id))
                insert = build_staging_insert(s, profile)
                result.rows_written = ex.execute_many(
                    insert, [tuple(r[c] for c in insert.columns) for r in rows],
                )
                result.conflicts_logged = reconciler.flush(ex, s)

        logger.info(
            "Staged %d %s rows for batch %s (%d conflicts resolved)",
            result.rows_written, profile.entity_type, batch_id, result.conflicts_logged,
        )
        return result
