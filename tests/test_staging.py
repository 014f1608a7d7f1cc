"""Staging materialization: merged rows, conflict logging, one transaction."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime

import polars as pl
import pytest

from crosswalk.profiles import ENTITY_PROFILES
from crosswalk.reconciler import ConflictReconciler
from crosswalk.staging import (
    StagingMaterializer,
    build_merged_source_select,
    build_staging_delete,
    merge_record,
    staging_insert_columns,
)
from data_load.row_hash import compute_hash

VETERAN = ENTITY_PROFILES["VETERAN"]
NOW = datetime(2025, 1, 17, 12)


def merged_row(master_id="m1", primary="OMS", **values):
    row = {"master_id": master_id, "primary_source": primary}
    row.update(values)
    return row


class TestMergeRecord:
    def test_cleanses_reconciles_and_hashes(self):
        reconciler = ConflictReconciler("VETERAN", "B1", "OMS", "VEMS", clock=lambda: NOW)
        row = merged_row(
            a__first_name=" ann ", b__first_name="ANN",
            a__last_name="lee", b__last_name=None,
            a__email="ANN@X.ORG", b__email="ann.lee@y.org",
            a__phone_primary="(555) 123-4567", b__phone="555.123.4567",
            a__date_of_birth=date(1970, 1, 1), b__date_of_birth=date(1970, 1, 1),
        )

        out = merge_record(VETERAN, row, reconciler, "source_record_hash")

        assert out["veteran_id"] == "m1"
        assert out["first_name"] == "ANN"
        assert out["last_name"] == "LEE"
        assert out["email"] == "ann@x.org"
        assert out["phone"] == "5551234567"
        assert out["middle_name"] is None
        assert out["source_system"] == "OMS_MERGED"
        assert out["source_record_hash"] == compute_hash(out, VETERAN.tracked_fields)
        assert [e.conflict_field for e in reconciler.entries] == ["email"]

    def test_source_b_record_of_truth(self):
        reconciler = ConflictReconciler("VETERAN", "B1", "OMS", "VEMS")
        out = merge_record(
            VETERAN, merged_row(primary="VEMS", a__email="a@x.org", b__email="b@x.org"),
            reconciler, "source_record_hash",
        )
        assert out["email"] == "b@x.org"
        assert out["source_system"] == "VEMS_MERGED"

    def test_hash_ignores_untracked_fields(self):
        r1 = ConflictReconciler("VETERAN", "B1", "OMS", "VEMS")
        one = merge_record(VETERAN, merged_row(a__first_name="A", a__city="X"), r1, "h")
        two = merge_record(VETERAN, merged_row(a__first_name="A", a__city="Y"), r1, "h")
        assert one["h"] == two["h"]


class TestStatements:
    def test_merged_select_binds_systems_and_batch(self, settings):
        stmt = build_merged_source_select(settings, VETERAN, "B1")
        assert stmt.params == ("OMS", "B1", "VEMS", "B1")
        assert "[reference].[ref_entity_crosswalk_veteran]" in stmt.sql
        assert "b.[phone] AS [b__phone]" in stmt.sql
        assert "a.[phone_primary] AS [a__phone_primary]" in stmt.sql

    def test_merged_select_order_is_total(self, settings):
        stmt = build_merged_source_select(settings, VETERAN, "B1")
        order_by = stmt.sql.split(" ORDER BY ", 1)[1].split(", ")
        assert order_by[:2] == ["x.[master_id]", "a.[source_record_id]"]
        assert order_by[2:] == (
            [f"a.[{c}]" for c in VETERAN.columns_a[1:]] + [f"b.[{c}]" for c in VETERAN.columns_b]
        )

    def test_delete_is_scoped_to_batch(self, settings):
        stmt = build_staging_delete(settings, VETERAN, "B1")
        assert stmt.sql == "DELETE FROM [staging].[stg_veterans] WHERE [batch_id] = ?"
        assert stmt.params == ("B1",)

    def test_insert_columns(self, settings):
        columns = staging_insert_columns(settings, VETERAN)
        assert columns[0] == "veteran_id"
        assert columns[-3:] == ["source_system", "batch_id", "source_record_hash"]


@pytest.fixture
def executor(mocker):
    ex = mocker.MagicMock()
    ex.execute_many.side_effect = lambda stmt, rows: len(rows)
    return ex


def _factory(ex):
    @contextmanager
    def factory(database, timeout_seconds=0):
        yield ex

    return factory


class TestMaterialize:
    def test_replaces_batch_rows_and_logs_conflicts(self, settings, executor):
        executor.fetch_frame.return_value = pl.DataFrame([
            merged_row("m1", a__first_name="Ann", b__first_name="Anne"),
            merged_row("m2", primary="VEMS", a__first_name=None, b__first_name="Bob"),
        ])

        result = StagingMaterializer(settings, _factory(executor), clock=lambda: NOW).materialize("VETERAN", "B1")

        assert (result.rows_written, result.conflicts_logged) == (2, 1)
        assert executor.execute.call_args.args[0].kind == "clear_staging"
        calls = executor.execute_many.call_args_list
        assert [c.args[0].kind for c in calls] == ["insert_staging", "insert_reconciliation_log"]
        insert_stmt, rows = calls[0].args
        as_dicts = [dict(zip(insert_stmt.columns, r)) for r in rows]
        assert [d["veteran_id"] for d in as_dicts] == ["m1", "m2"]
        assert as_dicts[0]["first_name"] == "ANN"
        assert as_dicts[1]["first_name"] == "BOB"
        assert all(d["batch_id"] == "B1" for d in as_dicts)
        executor.transaction.assert_called_once()

    def test_duplicate_master_ids_keep_last(self, settings, executor):
        executor.fetch_frame.return_value = pl.DataFrame([
            merged_row("m1", a__first_name="First"),
            merged_row("m1", a__first_name="Second"),
        ])

        result = StagingMaterializer(settings, _factory(executor)).materialize("VETERAN", "B1")

        assert result.rows_written == 1
        insert_stmt, rows = executor.execute_many.call_args_list[0].args
        assert dict(zip(insert_stmt.columns, rows[0]))["first_name"] == "SECOND"

    def test_empty_batch_still_clears(self, settings, executor):
        executor.fetch_frame.return_value = pl.DataFrame(schema={"master_id": pl.Utf8, "primary_source": pl.Utf8})

        result = StagingMaterializer(settings, _factory(executor)).materialize("VETERAN", "B1")

        assert (result.rows_written, result.conflicts_logged) == (0, 0)
        executor.execute.assert_called_once()

    def test_failure_propagates_before_audit_write(self, settings, executor):
        executor.fetch_frame.return_value = pl.DataFrame([merged_row("m1", a__email="a@x", b__email="b@x")])
        executor.execute.side_effect = RuntimeError("delete failed")

        with pytest.raises(RuntimeError):
            StagingMaterializer(settings, _factory(executor)).materialize("VETERAN", "B1")

        executor.execute_many.assert_not_called()

    def test_unknown_primary_source_raises(self, settings, executor):
        executor.fetch_frame.return_value = pl.DataFrame([merged_row("m1", primary="LEGACY", a__email="a")])
        with pytest.raises(ValueError):
            StagingMaterializer(settings, _factory(executor)).materialize("VETERAN", "B1")
