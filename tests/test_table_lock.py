"""Dimension table lock (sp_getapplock) with a mocked lock connection."""

from __future__ import annotations

import pytest

from orchestration import table_lock as tl
from scd2.errors import InvalidIdentifier


@pytest.fixture
def lock_conn(mocker):
    conn = mocker.Mock()
    mocker.patch.object(tl, "_get_resilient_lock_connection", return_value=conn)
    return conn


def test_lock_resource_name():
    assert tl.lock_resource("warehouse", "dim_veteran") == "DW_SCD2_warehouse_dim_veteran"


def test_lock_resource_validates():
    with pytest.raises(InvalidIdentifier):
        tl.lock_resource("warehouse", "dim'; --")


def test_acquired_lock_is_released(settings, lock_conn):
    lock_conn.cursor.return_value.fetchone.return_value = (0,)

    with tl.table_lock(settings, "warehouse", "dim_x") as acquired:
        assert acquired is True
        lock_conn.close.assert_not_called()

    executed = [c.args[0] for c in lock_conn.cursor.return_value.execute.call_args_list]
    assert "sp_getapplock" in executed[0]
    assert "sp_releaseapplock" in executed[-1]
    lock_conn.close.assert_called_once()


def test_busy_lock_yields_false(settings, lock_conn):
    lock_conn.cursor.return_value.fetchone.return_value = (-1,)

    with tl.table_lock(settings, "warehouse", "dim_x") as acquired:
        assert acquired is False

    executed = [c.args[0] for c in lock_conn.cursor.return_value.execute.call_args_list]
    assert not any("sp_releaseapplock" in sql for sql in executed)
    lock_conn.close.assert_called_once()


def test_lock_released_when_body_raises(settings, lock_conn):
    lock_conn.cursor.return_value.fetchone.return_value = (1,)

    with pytest.raises(RuntimeError):
        with tl.table_lock(settings, "warehouse", "dim_x"):
            raise RuntimeError("load failed")

    lock_conn.close.assert_called_once()
    # The in-process lock is free again.
    assert tl._process_lock(tl.lock_resource("warehouse", "dim_x")).acquire(blocking=False)
    tl._process_lock(tl.lock_resource("warehouse", "dim_x")).release()


def test_acquire_failure_closes_connection(settings, lock_conn):
    lock_conn.cursor.return_value.execute.side_effect = RuntimeError("network")

    with pytest.raises(RuntimeError):
        tl.acquire_table_lock(settings.database, "warehouse", "dim_x")

    lock_conn.close.assert_called_once()


def test_release_never_raises(lock_conn):
    lock_conn.cursor.return_value.execute.side_effect = RuntimeError("gone")
    tl.release_table_lock(lock_conn, "warehouse", "dim_x")
    lock_conn.close.assert_called_once()
