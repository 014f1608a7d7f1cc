"""ConflictReconciler resolution rules and audit buffering."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

import pytest

from crosswalk.persistence import build_reconciliation_log_insert
from crosswalk.reconciler import ConflictReconciler

NOW = datetime(2025, 1, 17, 12)


@pytest.fixture
def reconciler():
    return ConflictReconciler("VETERAN", "B1", "OMS", "VEMS", clock=lambda: NOW)


class TestReconcile:
    def test_both_absent(self, reconciler):
        assert reconciler.reconcile("m1", "email", None, "  ", "OMS") == (None, False)
        assert reconciler.entries == []

    def test_one_side_present_wins_without_log(self, reconciler):
        assert reconciler.reconcile("m1", "email", None, "b@x.org", "OMS") == ("b@x.org", False)
        assert reconciler.reconcile("m1", "phone", "5551234", "", "VEMS") == ("5551234", False)
        assert reconciler.entries == []

    def test_equal_values_do_not_log(self, reconciler):
        assert reconciler.reconcile("m1", "rating", Decimal("70.0"), Decimal("70"), "OMS") == (Decimal("70.0"), False)
        assert reconciler.reconcile("m1", "name", "ANN", "ANN  ", "OMS") == ("ANN", False)
        assert reconciler.entries == []

    def test_conflict_prefers_system_of_record(self, reconciler):
        value, logged = reconciler.reconcile("m1", "email", "a@x.org", "b@x.org", "VEMS")

        assert (value, logged) == ("b@x.org", True)
        [entry] = reconciler.entries
        assert entry.master_id == "m1"
        assert entry.conflict_field == "email"
        assert (entry.source_a_value, entry.source_b_value, entry.resolved_value) == ("a@x.org", "b@x.org", "b@x.org")
        assert entry.resolution_rule == "PREFER_VEMS"
        assert entry.batch_id == "B1"
        assert entry.entity_type == "VETERAN"
        assert entry.timestamp == NOW

    def test_unknown_primary_source(self, reconciler):
        with pytest.raises(ValueError, match="Unknown primary source"):
            reconciler.reconcile("m1", "email", "a", "b", "CLAIMS")

    def test_entries_is_a_copy(self, reconciler):
        reconciler.reconcile("m1", "email", "a", "b", "OMS")
        reconciler.entries.clear()
        assert len(reconciler.entries) == 1


class TestFlush:
    def test_writes_and_clears(self, reconciler, settings, mocker):
        ex = mocker.Mock()
        ex.execute_many.side_effect = lambda stmt, rows: len(rows)
        reconciler.reconcile("m1", "email", "a", "b", "OMS")
        reconciler.reconcile("m2", "dob", datetime(1970, 1, 1), datetime(1971, 1, 1), "OMS")

        assert reconciler.flush(ex, settings) == 2

        stmt, rows = ex.execute_many.call_args.args
        assert stmt.kind == "insert_reconciliation_log"
        assert rows[0][:9] == ("B1", "VETERAN", "m1", "email", "a", "b", "a", "PREFER_OMS", NOW)
        assert rows[0][9:] == ("B1", "VETERAN", "m1", "email")
        assert rows[1][4] == "1970-01-01 00:00:00"
        assert reconciler.entries == []

    def test_empty_flush_executes_nothing(self, reconciler, settings, mocker):
        ex = mocker.Mock()
        assert reconciler.flush(ex, settings) == 0
        ex.execute_many.assert_not_called()


def test_log_insert_is_idempotent_and_parameterized(settings):
    stmt = build_reconciliation_log_insert(settings)
    assert "WHERE NOT EXISTS" in stmt.sql
    assert stmt.sql.count("?") == 13
    assert "[reference].[ref_reconciliation_log]" in stmt.sql
