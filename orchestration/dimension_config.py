"""DimensionConfig + DimensionConfigRegistry from the metadata.scd_type2_config table.

One row per loadable dimension drives the generic SCD2 loader: target and
source tables, business key, change hash column, surrogate key, and the
enabled/active switches. Rows are written by operators; the loader only
reads them and re-validates every name before use.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable

import connectorx as cx

import config
import connections
from config import WarehouseSettings
from connections import quote_identifier, quote_table, validate_identifier
from scd2.errors import ConfigNotFound, InvalidConfig, InvalidIdentifier
from scd2.statements import Statement

logger = logging.getLogger(__name__)

_REGISTRY_COLUMNS = (
    "table_name",
    "target_schema",
    "source_schema",
    "source_table",
    "business_key_columns",
    "change_hash_column",
    "surrogate_key_column",
    "enabled",
    "active",
    "exclude_columns",
    "tracked_columns",
)


@dataclass(frozen=True)
class DimensionConfig:
    """Configuration for one SCD2 dimension.

    business_key_columns keeps operator order; it is the GROUP BY / join key
    of every statement the loader builds.
    """

    table_name: str
    target_schema: str
    source_schema: str
    source_table: str
    business_key_columns: tuple[str, ...]
    surrogate_key_column: str
    change_hash_column: str = config.SCD2_DEFAULT_HASH_COLUMN
    enabled: bool = True
    active: bool = True
    # Source columns never copied into the dimension.
    exclude_columns: tuple[str, ...] = ()
    # Columns hashed when a staging row arrives without a hash. Empty means
    # every copied column except the business key, batch and hash columns.
    tracked_columns: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        for name in ("business_key_columns", "exclude_columns", "tracked_columns"):
            value = getattr(self, name)
            if not isinstance(value, tuple):
                object.__setattr__(self, name, tuple(value or ()))

    @property
    def target_full_table_name(self) -> str:
        return f"{self.target_schema}.{self.table_name}"

    @property
    def source_full_table_name(self) -> str:
        return f"{self.source_schema}.{self.source_table}"

    def validate(self) -> None:
        """Re-validate every identifier this config contributes to SQL.

        Raises:
            InvalidIdentifier: On the first name that fails the allow-list,
                or when no business key column is configured.
        """
        validate_identifier(self.table_name, "table name")
        validate_identifier(self.target_schema, "target schema")
        validate_identifier(self.source_schema, "source schema")
        validate_identifier(self.source_table, "source table")
        validate_identifier(self.change_hash_column, "change hash column")
        validate_identifier(self.surrogate_key_column, "surrogate key column")
        if not self.business_key_columns:
            raise InvalidIdentifier(
                self.business_key_columns, "business key columns", "at least one column is required",
            )
        connections.validate_identifiers(self.business_key_columns, "business key column")
        connections.validate_identifiers(self.exclude_columns, "excluded column")
        connections.validate_identifiers(self.tracked_columns, "tracked column")


def _parse_column_list(value: Any) -> tuple[str, ...]:
    """Column lists are stored as JSON arrays; comma-separated text is accepted."""
    if value is None:
        return ()
    if isinstance(value, (list, tuple)):
        return tuple(str(v).strip() for v in value)
    text = str(value).strip()
    if not text:
        return ()
    if text.startswith("["):
        parsed = json.loads(text)
        return tuple(str(v).strip() for v in parsed)
    return tuple(part.strip() for part in text.split(",") if part.strip())


def _as_flag(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip().upper() in ("1", "TRUE", "Y", "YES")
    return bool(value)


def config_from_row(row: dict) -> DimensionConfig:
    """Build a DimensionConfig from one registry row.

    Raises:
        InvalidConfig: A required field is missing or NULL, or a column list
            is not valid JSON.
    """
    table_name = row.get("table_name")
    if not isinstance(table_name, str) or not table_name.strip():
        raise InvalidConfig(table_name, "table_name is missing")
    try:
        return _config_from_row(row)
    except (KeyError, TypeError, ValueError) as e:
        raise InvalidConfig(table_name, f"{type(e).__name__}: {e}") from e


def _config_from_row(row: dict) -> DimensionConfig:
    return DimensionConfig(
        table_name=row["table_name"],
        target_schema=row["target_schema"],
        source_schema=row["source_schema"],
        source_table=row["source_table"],
        business_key_columns=_parse_column_list(row["business_key_columns"]),
        change_hash_column=row.get("change_hash_column") or config.SCD2_DEFAULT_HASH_COLUMN,
        surrogate_key_column=row["surrogate_key_column"],
        enabled=_as_flag(row.get("enabled")),
        active=_as_flag(row.get("active")),
        exclude_columns=_parse_column_list(row.get("exclude_columns")),
        tracked_columns=_parse_column_list(row.get("tracked_columns")),
    )


class DimensionConfigRegistry:
    """Reads and maintains dimension configs.

    Uses ConnectorX for unfiltered bulk reads and pyodbc for filtered
    queries (H-3: parameterized queries for user-supplied values).
    """

    def __init__(
        self,
        settings: WarehouseSettings,
        executor_factory: Callable | None = None,
    ) -> None:
        self._settings = settings
        self._executor_factory = executor_factory or connections.executor_for

    @property
    def table_ref(self) -> str:
        return quote_table(f"{self._settings.metadata_schema}.{self._settings.config_table}")

    def _select(self) -> str:
        columns = ", ".join(quote_identifier(c) for c in _REGISTRY_COLUMNS)
        return f"SELECT {columns} FROM {self.table_ref}"

    def get(self, table_name: str) -> DimensionConfig:
        """Look up one dimension by table name.

        Returns disabled and inactive configs as-is; callers decide what
        those mean.

        Raises:
            InvalidIdentifier: If table_name fails the allow-list.
            ConfigNotFound: If no row exists.
        """
        validate_identifier(table_name, "table name")
        stmt = Statement(
            f"{self._select()} WHERE {quote_identifier('table_name')} = ?",
            (table_name,),
            kind="registry_get",
        )
        with self._executor_factory(self._settings.database, self._settings.statement_timeout_seconds) as ex:
            rows = ex.fetch_all(stmt)
        if not rows:
            raise ConfigNotFound(table_name)
        if len(rows) > 1:
            logger.warning("Registry has %d rows for %s; using the first", len(rows), table_name)
        return config_from_row(dict(zip(_REGISTRY_COLUMNS, rows[0])))

    def _read_rows(self) -> list[dict]:
        df = cx.read_sql(
            connections.connectorx_uri(self._settings.database),
            f"{self._select()} ORDER BY {quote_identifier('table_name')}",
            return_type="polars",
        )
        return list(df.iter_rows(named=True))

    def list_all(self) -> list[DimensionConfig]:
        """All parseable dimensions ordered by table name (ConnectorX bulk read).

        Rows that fail to parse are logged and left out.
        """
        configs = []
        for row in self._read_rows():
            try:
                configs.append(config_from_row(row))
            except InvalidConfig as e:
                logger.error("H-4: Skipping registry row: %s", e)
        return sorted(configs, key=lambda c: c.table_name)

    def list_loadable(self) -> list[DimensionConfig]:
        """Enabled and active dimensions, lexicographic by table name."""
        configs = [c for c in self.list_all() if c.enabled and c.active]
        logger.info("Loaded %d loadable dimension configs", len(configs))
        return configs

    def loadable_table_names(self) -> list[str]:
        """Enabled and active table names, lexicographic.

        Reads only the name and the switches, so a row with malformed column
        lists still gets its own load (and its own INVALID_CONFIG result).
        """
        names = set()
        for row in self._read_rows():
            name = row.get("table_name")
            if not isinstance(name, str) or not name.strip():
                logger.error("H-4: Ignoring registry row without a table_name: %s", row)
                continue
            if _as_flag(row.get("enabled")) and _as_flag(row.get("active")):
                names.add(name)
        logger.info("Found %d loadable dimensions in %s", len(names), self.table_ref)
        return sorted(names)

    def get_known_tables(self) -> set[str]:
        """H-4: All configured table names, for CLI validation."""
        return {
            row["table_name"] for row in self._read_rows()
            if isinstance(row.get("table_name"), str)
        }

    def save(self, dimension: DimensionConfig) -> None:
        """Insert or update one config row, validating every name first."""
        dimension.validate()
        values = (
            dimension.table_name,
            dimension.target_schema,
            dimension.source_schema,
            dimension.source_table,
            json.dumps(list(dimension.business_key_columns)),
            dimension.change_hash_column,
            dimension.surrogate_key_column,
            1 if dimension.enabled else 0,
            1 if dimension.active else 0,
            json.dumps(list(dimension.exclude_columns)),
            json.dumps(list(dimension.tracked_columns)),
        )
        src_columns = ", ".join(f"? AS {quote_identifier(c)}" for c in _REGISTRY_COLUMNS)
        updates = ", ".join(
            f"tgt.{quote_identifier(c)} = src.{quote_identifier(c)}" for c in _REGISTRY_COLUMNS[1:]
        )
        insert_columns = ", ".join(quote_identifier(c) for c in _REGISTRY_COLUMNS)
        insert_values = ", ".join(f"src.{quote_identifier(c)}" for c in _REGISTRY_COLUMNS)
        stmt = Statement(
            f"MERGE {self.table_ref} WITH (HOLDLOCK) AS tgt "
            f"USING (SELECT {src_columns}) AS src "
            f"ON tgt.{quote_identifier('table_name')} = src.{quote_identifier('table_name')} "
            f"WHEN MATCHED THEN UPDATE SET {updates}, tgt.{quote_identifier('updated_timestamp')} = SYSUTCDATETIME() "
            f"WHEN NOT MATCHED THEN INSERT ({insert_columns}) VALUES ({insert_values});",
            values,
            kind="registry_save",
        )
        with self._executor_factory(self._settings.database, self._settings.statement_timeout_seconds) as ex:
            ex.execute(stmt)
        logger.info("Saved dimension config %s", dimension.table_name)

    def ensure_registry_table(self) -> None:
        """Create the config table if it doesn't exist. Idempotent."""
        schema = validate_identifier(self._settings.metadata_schema, "metadata schema")
        table = validate_identifier(self._settings.config_table, "config table")
        default_hash = validate_identifier(self._settings.default_hash_column, "hash column")
        stmt = Statement(
            "IF NOT EXISTS (SELECT 1 FROM INFORMATION_SCHEMA.TABLES "
            "WHERE TABLE_SCHEMA = ? AND TABLE_NAME = ?) "
            f"CREATE TABLE {self.table_ref} ("
            "table_name NVARCHAR(128) NOT NULL PRIMARY KEY, "
            "target_schema NVARCHAR(128) NOT NULL, "
            "source_schema NVARCHAR(128) NOT NULL, "
            "source_table NVARCHAR(128) NOT NULL, "
            "business_key_columns NVARCHAR(MAX) NOT NULL, "
            f"change_hash_column NVARCHAR(128) NOT NULL DEFAULT '{default_hash}', "
            "surrogate_key_column NVARCHAR(128) NOT NULL, "
            "enabled BIT NOT NULL DEFAULT 1, "
            "active BIT NOT NULL DEFAULT 1, "
            "exclude_columns NVARCHAR(MAX) NULL, "
            "tracked_columns NVARCHAR(MAX) NULL, "
            "created_timestamp DATETIME2 NOT NULL DEFAULT SYSUTCDATETIME(), "
            "updated_timestamp DATETIME2 NOT NULL DEFAULT SYSUTCDATETIME())",
            (schema, table),
            kind="registry_ddl",
        )
        with self._executor_factory(self._settings.database, self._settings.statement_timeout_seconds) as ex:
            ex.execute(stmt)
