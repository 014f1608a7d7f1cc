"""PipelineEventTracker: one row per step, never raises."""

from __future__ import annotations

import json

import pytest

from observability.event_tracker import PipelineEventTracker


@pytest.fixture
def conn(mocker):
    return mocker.Mock()


@pytest.fixture
def tracker(settings, conn):
    return PipelineEventTracker(settings, connection_factory=lambda database: conn)


def _params(conn):
    args = conn.cursor.return_value.execute.call_args.args
    return args[0], args[1:]


def test_log_execution_writes_one_row(tracker, conn):
    tracker.log_execution(
        "SCD2_LOAD:dim_veteran", "SUCCESS", 1.5,
        {"rows_closed": 2, "rows_inserted": 3, "rows_unchanged": 4}, None, "B1",
    )

    sql, params = _params(conn)
    assert "INSERT INTO [ops].[PipelineEventLog]" in sql
    batch_id, table_name, event_type = params[:3]
    assert (batch_id, table_name, event_type) == ("B1", "dim_veteran", "SCD2_LOAD")
    assert params[5] == 1500
    assert params[6] == "SUCCESS"
    assert params[8:12] == (9, 3, 2, 4)
    assert json.loads(params[12])["rows_inserted"] == 3
    conn.commit.assert_called_once()
    conn.close.assert_called_once()


def test_log_execution_truncates_error(tracker, conn):
    tracker.log_execution("SCD2_LOAD:dim_x", "ERROR", 0.1, None, "x" * 5000, "B1")
    _, params = _params(conn)
    assert len(params[7]) == 4000
    assert params[12] is None


def test_write_failure_is_swallowed(settings, caplog):
    def broken(database):
        raise RuntimeError("log database down")

    PipelineEventTracker(settings, connection_factory=broken).log_execution(
        "SCD2_LOAD:dim_x", "SUCCESS", 0.1, {}, None, "B1",
    )
    assert "Failed to write event" in caplog.text


def test_track_success(tracker, conn):
    with tracker.track("CROSSWALK", "VETERAN", "B1") as event:
        event.rows_processed = 7

    _, params = _params(conn)
    assert params[:3] == ("B1", "VETERAN", "CROSSWALK")
    assert params[6] == "SUCCESS"
    assert params[8] == 7


def test_track_failure_records_and_reraises(tracker, conn):
    with pytest.raises(ValueError):
        with tracker.track("STAGING", "VETERAN", "B1"):
            raise ValueError("bad primary source")

    _, params = _params(conn)
    assert params[6] == "FAILED"
    assert params[7] == "bad primary source"


def test_track_preserves_explicit_status(tracker, conn):
    with tracker.track("STAGING", "VETERAN", "B1") as event:
        event.status = "SKIPPED"

    _, params = _params(conn)
    assert params[6] == "SKIPPED"
