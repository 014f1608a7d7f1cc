"""DimensionConfig parsing, validation and registry lookups."""

from __future__ import annotations

from contextlib import contextmanager

import polars as pl
import pytest

from orchestration.dimension_config import (
    DimensionConfig,
    DimensionConfigRegistry,
    _parse_column_list,
    config_from_row,
)
from scd2.errors import ConfigNotFound, InvalidConfig, InvalidIdentifier


def _row(**overrides):
    row = {
        "table_name": "dim_veteran",
        "target_schema": "warehouse",
        "source_schema": "staging",
        "source_table": "stg_veterans",
        "business_key_columns": '["veteran_id"]',
        "change_hash_column": "source_record_hash",
        "surrogate_key_column": "veteran_key",
        "enabled": 1,
        "active": 1,
        "exclude_columns": None,
        "tracked_columns": "first_name, last_name",
    }
    row.update(overrides)
    return row


def _factory(ex):
    @contextmanager
    def factory(database, timeout_seconds=0):
        yield ex

    return factory


class TestParseColumnList:
    @pytest.mark.parametrize("value, expected", [
        (None, ()),
        ("", ()),
        ('["a", "b"]', ("a", "b")),
        ("a, b ,c", ("a", "b", "c")),
        ("a,,b", ("a", "b")),
        (["a", " b "], ("a", "b")),
    ])
    def test_forms(self, value, expected):
        assert _parse_column_list(value) == expected


class TestConfigFromRow:
    def test_parses_row(self):
        dc = config_from_row(_row())
        assert dc.business_key_columns == ("veteran_id",)
        assert dc.tracked_columns == ("first_name", "last_name")
        assert dc.exclude_columns == ()
        assert dc.enabled is True
        assert dc.active is True
        assert dc.target_full_table_name == "warehouse.dim_veteran"
        assert dc.source_full_table_name == "staging.stg_veterans"

    @pytest.mark.parametrize("flag, expected", [(None, False), ("Y", True), ("0", False), (0, False)])
    def test_flags(self, flag, expected):
        assert config_from_row(_row(enabled=flag)).enabled is expected

    def test_blank_hash_column_falls_back_to_default(self):
        assert config_from_row(_row(change_hash_column=None)).change_hash_column == "source_record_hash"

    def test_lists_become_tuples(self):
        dc = DimensionConfig("dim_x", "warehouse", "staging", "stg_x", ["k"], "x_key")
        assert dc.business_key_columns == ("k",)

    @pytest.mark.parametrize("field, value", [
        ("business_key_columns", '["veteran_id"'),
        ("tracked_columns", "[1, 2"),
    ])
    def test_malformed_column_list_raises_invalid_config(self, field, value):
        with pytest.raises(InvalidConfig) as exc:
            config_from_row(_row(**{field: value}))
        assert exc.value.error_code == "INVALID_CONFIG"
        assert exc.value.table_name == "dim_veteran"

    def test_missing_column_raises_invalid_config(self):
        row = _row()
        del row["surrogate_key_column"]
        with pytest.raises(InvalidConfig, match="surrogate_key_column"):
            config_from_row(row)

    @pytest.mark.parametrize("name", [None, "", "  "])
    def test_missing_table_name_raises_invalid_config(self, name):
        with pytest.raises(InvalidConfig):
            config_from_row(_row(table_name=name))


class TestValidate:
    def test_valid_config_passes(self):
        config_from_row(_row()).validate()

    @pytest.mark.parametrize("field, value", [
        ("table_name", "dim;x"),
        ("source_table", "stg x"),
        ("surrogate_key_column", "k]"),
        ("business_key_columns", '["ok", "bad col"]'),
        ("tracked_columns", "a, b;c"),
        ("business_key_columns", "[]"),
    ])
    def test_rejects_bad_identifiers(self, field, value):
        with pytest.raises(InvalidIdentifier):
            config_from_row(_row(**{field: value})).validate()


class TestRegistry:
    def test_get_binds_table_name(self, settings, mocker):
        ex = mocker.Mock()
        ex.fetch_all.return_value = [tuple(_row().values())]
        registry = DimensionConfigRegistry(settings, _factory(ex))

        dc = registry.get("dim_veteran")

        stmt = ex.fetch_all.call_args.args[0]
        assert stmt.params == ("dim_veteran",)
        assert "dim_veteran" not in stmt.sql
        assert "FROM [metadata].[scd_type2_config]" in stmt.sql
        assert dc.surrogate_key_column == "veteran_key"

    def test_get_missing_raises(self, settings, mocker):
        ex = mocker.Mock()
        ex.fetch_all.return_value = []
        with pytest.raises(ConfigNotFound):
            DimensionConfigRegistry(settings, _factory(ex)).get("dim_missing")

    def test_get_validates_before_querying(self, settings, mocker):
        ex = mocker.Mock()
        with pytest.raises(InvalidIdentifier):
            DimensionConfigRegistry(settings, _factory(ex)).get("dim_x'--")
        ex.fetch_all.assert_not_called()

    def test_list_loadable_filters_and_sorts(self, settings, mocker):
        rows = [
            _row(table_name="dim_b"),
            _row(table_name="dim_a"),
            _row(table_name="dim_off", enabled=0),
            _row(table_name="dim_idle", active=0),
        ]
        mocker.patch("orchestration.dimension_config.connections.connectorx_uri", return_value="mssql://test")
        mocker.patch(
            "orchestration.dimension_config.cx.read_sql",
            return_value=pl.DataFrame(rows),
        )
        registry = DimensionConfigRegistry(settings)

        assert [c.table_name for c in registry.list_loadable()] == ["dim_a", "dim_b"]
        assert registry.get_known_tables() == {"dim_a", "dim_b", "dim_off", "dim_idle"}

    def test_save_validates_and_binds(self, settings, mocker):
        ex = mocker.Mock()
        registry = DimensionConfigRegistry(settings, _factory(ex))

        registry.save(config_from_row(_row()))

        stmt = ex.execute.call_args.args[0]
        assert stmt.kind == "registry_save"
        assert stmt.params[0] == "dim_veteran"
        assert stmt.params[4] == '["veteran_id"]'
        assert "stg_veterans" not in stmt.sql

    def test_save_rejects_invalid(self, settings, mocker):
        ex = mocker.Mock()
        with pytest.raises(InvalidIdentifier):
            DimensionConfigRegistry(settings, _factory(ex)).save(config_from_row(_row(source_table="x;y")))
        ex.execute.assert_not_called()

    def test_malformed_row_is_skipped_by_list_all_but_still_loadable(self, settings, mocker, caplog):
        rows = [
            _row(table_name="dim_a"),
            _row(table_name="dim_b", business_key_columns='["veteran_id"'),
            _row(table_name=None),
        ]
        mocker.patch("orchestration.dimension_config.connections.connectorx_uri", return_value="mssql://test")
        mocker.patch("orchestration.dimension_config.cx.read_sql", return_value=pl.DataFrame(rows))
        registry = DimensionConfigRegistry(settings)

        assert [c.table_name for c in registry.list_all()] == ["dim_a"]
        assert "dim_b" in caplog.text
        assert registry.loadable_table_names() == ["dim_a", "dim_b"]
        assert registry.get_known_tables() == {"dim_a", "dim_b"}

    def test_get_malformed_row_raises_invalid_config(self, settings, mocker):
        ex = mocker.Mock()
        ex.fetch_all.return_value = [tuple(_row(business_key_columns='["veteran_id"').values())]
        with pytest.raises(InvalidConfig):
            DimensionConfigRegistry(settings, _factory(ex)).get("dim_veteran")
