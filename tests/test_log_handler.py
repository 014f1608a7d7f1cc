"""SqlServerLogHandler buffering and context tagging."""

from __future__ import annotations

import logging
import sys

import pytest

from observability.log_handler import SqlServerLogHandler


@pytest.fixture
def conn(mocker):
    return mocker.Mock()


@pytest.fixture
def handler(settings, conn):
    h = SqlServerLogHandler(settings, connection_factory=lambda database: conn)
    h.setFormatter(logging.Formatter("%(message)s"))
    return h


def _record(level=logging.INFO, msg="hello", exc_info=None):
    return logging.LogRecord("scd2.engine", level, __file__, 1, msg, (), exc_info, func="load")


def _written_rows(conn):
    return [row for c in conn.cursor.return_value.executemany.call_args_list for row in c.args[1]]


def test_records_without_batch_are_dropped(handler, conn):
    handler.emit(_record(logging.ERROR))
    handler.flush()
    conn.cursor.assert_not_called()


def test_info_is_buffered_until_flush(handler, conn):
    handler.set_context(batch_id="B1", table_name="dim_veteran")
    handler.emit(_record())
    conn.cursor.assert_not_called()

    handler.flush()

    [row] = _written_rows(conn)
    assert row[:6] == ("B1", "dim_veteran", "INFO", "scd2.engine", "load", "hello")
    conn.commit.assert_called_once()


def test_warning_flushes_immediately(handler, conn):
    handler.set_context(batch_id="B1")
    handler.emit(_record(logging.WARNING, "careful"))
    assert [r[5] for r in _written_rows(conn)] == ["careful"]


def test_exception_details_are_captured(handler, conn):
    handler.set_context(batch_id="B1")
    try:
        raise ValueError("bad")
    except ValueError:
        handler.emit(_record(logging.ERROR, "failed", exc_info=sys.exc_info()))

    [row] = _written_rows(conn)
    assert row[6] == "ValueError"
    assert "ValueError: bad" in row[7]


def test_flush_failure_goes_to_stderr(settings, capsys):
    def broken(database):
        raise RuntimeError("down")

    h = SqlServerLogHandler(settings, connection_factory=broken)
    h.set_context(batch_id="B1")
    h.emit(_record(logging.ERROR))

    assert "FLUSH FAILED (1 entries lost)" in capsys.readouterr().err
