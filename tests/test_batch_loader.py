"""BatchLoader: every loadable dimension, failures isolated, results ordered."""

from __future__ import annotations

from contextlib import contextmanager

import polars as pl
import pytest

from conftest import LOAD_TIME, FakeRegistry, FakeWarehouse, no_lock
from orchestration.batch_loader import BatchLoader
from orchestration.dimension_config import DimensionConfig, DimensionConfigRegistry
from scd2.engine import Scd2Loader
from scd2.models import BatchResult, LoadStatus


def _dim(name, **kw):
    return DimensionConfig(name, "warehouse", "staging", f"stg_{name}", ("ext_id",), "row_key", "h", **kw)


@pytest.fixture
def loader(settings):
    wh = FakeWarehouse(settings, ["ext_id", "name", "h", "batch_id"], ["ext_id"], hash_column="h")
    wh.add_source("B1", ext_id="A1", name="n", h="h1")
    registry = FakeRegistry(_dim("dim_b"), _dim("dim_a"), _dim("dim_off", enabled=False))
    return Scd2Loader(
        settings, registry=registry, executor_factory=wh.executor_factory,
        lock_factory=no_lock, clock=lambda: LOAD_TIME,
    )


class TestLoadAll:
    def test_loads_only_loadable_tables_in_name_order(self, loader):
        seen = []
        results = BatchLoader(loader, before_table=seen.append).load_all("B1")

        assert seen == ["dim_a", "dim_b"]
        assert [r.table_name for r in results] == ["dim_a", "dim_b"]
        assert all(r.status == LoadStatus.SUCCESS for r in results)

    def test_table_filter(self, loader):
        results = BatchLoader(loader).load_all("B1", ["dim_b", "dim_unknown"])
        assert [r.table_name for r in results] == ["dim_b"]

    def test_parallel_workers_return_every_result(self, loader):
        results = BatchLoader(loader, workers=4).load_all("B1")
        assert sorted(r.table_name for r in results) == ["dim_a", "dim_b"]

    def test_one_failure_does_not_stop_the_rest(self, settings, loader, mocker):
        def flaky(table_name, batch_id):
            if table_name == "dim_a":
                raise RuntimeError("boom")
            return BatchResult(table_name, LoadStatus.SUCCESS, batch_id)

        mocker.patch.object(loader, "load", side_effect=flaky)
        results = BatchLoader(loader).load_all("B1")

        assert [(r.table_name, r.status) for r in results] == [
            ("dim_a", LoadStatus.ERROR),
            ("dim_b", LoadStatus.SUCCESS),
        ]
        assert results[0].error_code == "UNEXPECTED_ERROR"
        assert "boom" in results[0].error_detail

    def test_before_table_failure_becomes_error_result(self, loader):
        def hook(table_name):
            if table_name == "dim_b":
                raise MemoryError("rss ceiling")

        results = BatchLoader(loader, before_table=hook).load_all("B1")

        statuses = {r.table_name: r.status for r in results}
        assert statuses == {"dim_a": LoadStatus.SUCCESS, "dim_b": LoadStatus.ERROR}
        assert results[0].table_name == "dim_b"


def _registry_row(name, keys):
    return {
        "table_name": name,
        "target_schema": "warehouse",
        "source_schema": "staging",
        "source_table": f"stg_{name}",
        "business_key_columns": keys,
        "change_hash_column": "h",
        "surrogate_key_column": "row_key",
        "enabled": 1,
        "active": 1,
        "exclude_columns": None,
        "tracked_columns": None,
    }


def test_malformed_registry_row_fails_only_its_table(settings, mocker):
    rows = [_registry_row("dim_a", '["ext_id"]'), _registry_row("dim_b", '["ext_id"')]
    mocker.patch("orchestration.dimension_config.connections.connectorx_uri", return_value="mssql://test")
    mocker.patch("orchestration.dimension_config.cx.read_sql", return_value=pl.DataFrame(rows))

    registry_ex = mocker.Mock()
    registry_ex.fetch_all.side_effect = lambda stmt: [
        tuple(r.values()) for r in rows if r["table_name"] == stmt.params[0]
    ]

    @contextmanager
    def registry_factory(database, timeout_seconds=0):
        yield registry_ex

    wh = FakeWarehouse(settings, ["ext_id", "name", "h", "batch_id"], ["ext_id"], hash_column="h")
    wh.add_source("B1", ext_id="A1", name="n", h="h1")
    loader = Scd2Loader(
        settings, registry=DimensionConfigRegistry(settings, registry_factory),
        executor_factory=wh.executor_factory, lock_factory=no_lock, clock=lambda: LOAD_TIME,
    )

    results = BatchLoader(loader).load_all("B1")

    assert [(r.table_name, r.status) for r in results] == [
        ("dim_b", LoadStatus.ERROR),
        ("dim_a", LoadStatus.SUCCESS),
    ]
    assert results[0].error_code == "INVALID_CONFIG"
    assert results[1].rows_inserted == 1
