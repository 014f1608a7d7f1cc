"""Shared fixtures: settings, an in-memory dimension warehouse, a fake registry.

FakeWarehouse stands in for SqlExecutor. It dispatches on Statement.kind
and keeps one staging table and one dimension table as lists of dicts, so
engine tests assert on the resulting rows rather than on SQL text. A
transaction snapshots the dimension and restores it on exception.
"""

from __future__ import annotations

import copy
from contextlib import contextmanager
from datetime import datetime

import polars as pl
import pytest

from config import WarehouseSettings
from scd2.errors import ConfigNotFound, StatementExecutionError
from scd2.statements import Statement

LOAD_TIME = datetime(2025, 1, 17, 12, 0, 0)


class FakeWarehouse:
    def __init__(
        self,
        settings: WarehouseSettings,
        source_columns: list[str],
        key_columns: list[str],
        hash_column: str = "source_record_hash",
        surrogate_key: str = "row_key",
    ) -> None:
        self.settings = settings
        self.source_columns = list(source_columns)
        self.key_columns = list(key_columns)
        self.hash_column = hash_column
        self.surrogate_key = surrogate_key
        self.source_rows: list[dict] = []
        self.target_rows: list[dict] = []
        self.statements: list[Statement] = []
        self.commits = 0
        self.rollbacks = 0
        self.fail_on: str | None = None
        self._next_key = 1

    # --- seeding -----------------------------------------------------------

    def add_source(self, batch_id: str, **values) -> None:
        row = {c: None for c in self.source_columns}
        row.update(values)
        row[self.settings.batch_column] = batch_id
        self.source_rows.append(row)

    def add_target(self, is_current: bool = True, **values) -> dict:
        s = self.settings
        row = dict(values)
        row[self.surrogate_key] = self._next_key
        self._next_key += 1
        row[s.effective_start_column] = datetime(2024, 1, 1)
        row[s.effective_end_column] = s.open_end_date if is_current else datetime(2024, 6, 1)
        row[s.current_flag_column] = 1 if is_current else 0
        row[s.created_column] = datetime(2024, 1, 1)
        row[s.updated_column] = datetime(2024, 1, 1)
        self.target_rows.append(row)
        return row

    # --- queries used by assertions ------------------------------------------

    def rows_for(self, **key) -> list[dict]:
        return [r for r in self.target_rows if all(r.get(k) == v for k, v in key.items())]

    def current_rows_for(self, **key) -> list[dict]:
        flag = self.settings.current_flag_column
        return [r for r in self.rows_for(**key) if r[flag] == 1]

    def kinds(self) -> list[str]:
        return [s.kind for s in self.statements]

    # --- executor factory ----------------------------------------------------

    @contextmanager
    def executor_factory(self, database: str, timeout_seconds: int = 0):
        yield FakeExecutor(self)

    def _key(self, row: dict) -> tuple:
        return tuple(row.get(k) for k in self.key_columns)


class FakeExecutor:
    def __init__(self, warehouse: FakeWarehouse) -> None:
        self.wh = warehouse

    def _record(self, statement: Statement) -> None:
        self.wh.statements.append(statement)
        if self.wh.fail_on == statement.kind:
            raise StatementExecutionError(statement.kind, statement.sql, RuntimeError("simulated failure"))

    def execute(self, statement: Statement) -> int:
        self._record(statement)
        return 0

    def fetch_all(self, statement: Statement) -> list[tuple]:
        self._record(statement)
        wh = self.wh
        if statement.kind == "discover_columns":
            return [(c,) for c in wh.source_columns]
        if statement.kind == "close_versions":
            return self._close(statement)
        raise AssertionError(f"unexpected fetch_all kind {statement.kind}")

    def fetch_frame(self, statement: Statement) -> pl.DataFrame:
        self._record(statement)
        wh = self.wh
        columns = list(statement.columns)
        if statement.kind == "read_batch":
            batch_id = statement.params[0]
            rows = [r for r in wh.source_rows if r[wh.settings.batch_column] == batch_id]
            rows.sort(key=lambda r: tuple("" if v is None else str(v) for v in wh._key(r)))
            data = [tuple(r.get(c) for c in columns) for r in rows]
        elif statement.kind == "read_target_state":
            batch_id = statement.params[0]
            batch_keys = {
                wh._key(r) for r in wh.source_rows if r[wh.settings.batch_column] == batch_id
            }
            flag = wh.settings.current_flag_column
            state: dict[tuple, list] = {}
            for r in wh.target_rows:
                key = wh._key(r)
                if key not in batch_keys:
                    continue
                entry = state.setdefault(key, [0, None])
                if r[flag] == 1:
                    entry[0] = 1
                    entry[1] = r.get(wh.hash_column)
            data = [key + (has, h) for key, (has, h) in state.items()]
        else:
            raise AssertionError(f"unexpected fetch_frame kind {statement.kind}")
        if not data:
            return pl.DataFrame(schema={c: pl.Utf8 for c in columns})
        return pl.DataFrame(data, schema=columns, orient="row", infer_schema_length=None)

    def execute_many(self, statement: Statement, rows) -> int:
        self._record(statement)
        if statement.kind != "insert_versions":
            raise AssertionError(f"unexpected execute_many kind {statement.kind}")
        assert self.wh.surrogate_key not in statement.columns
        for values in rows:
            row = dict(zip(statement.columns, values))
            row[self.wh.surrogate_key] = self.wh._next_key
            self.wh._next_key += 1
            self.wh.target_rows.append(row)
        return len(rows)

    @contextmanager
    def transaction(self):
        snapshot = copy.deepcopy(self.wh.target_rows)
        try:
            yield self
            self.wh.commits += 1
        except BaseException:
            self.wh.target_rows = snapshot
            self.wh.rollbacks += 1
            raise

    def _close(self, statement: Statement) -> list[tuple]:
        wh = self.wh
        s = wh.settings
        width = len(statement.columns)
        closed_at = statement.params[0]
        flat = statement.params[2:]
        keys = {tuple(flat[i:i + width]) for i in range(0, len(flat), width)}
        out = []
        for r in wh.target_rows:
            if r[s.current_flag_column] == 1 and wh._key(r) in keys:
                r[s.current_flag_column] = 0
                r[s.effective_end_column] = closed_at
                r[s.updated_column] = closed_at
                out.append(wh._key(r))
        return out


class FakeRegistry:
    """Dict-backed stand-in for DimensionConfigRegistry."""

    def __init__(self, *configs) -> None:
        self.configs = {c.table_name: c for c in configs}
        self.get_calls: list[str] = []

    @property
    def table_ref(self) -> str:
        return "[metadata].[scd_type2_config]"

    def get(self, table_name):
        self.get_calls.append(table_name)
        try:
            return self.configs[table_name]
        except KeyError:
            raise ConfigNotFound(table_name) from None

    def list_all(self):
        return sorted(self.configs.values(), key=lambda c: c.table_name)

    def list_loadable(self):
        return [c for c in self.list_all() if c.enabled and c.active]

    def loadable_table_names(self):
        return [c.table_name for c in self.list_loadable()]

    def get_known_tables(self):
        return set(self.configs)


@contextmanager
def no_lock(settings, schema, table):
    yield True


@contextmanager
def busy_lock(settings, schema, table):
    yield False


@pytest.fixture
def settings() -> WarehouseSettings:
    return WarehouseSettings(database="TEST_DW")
