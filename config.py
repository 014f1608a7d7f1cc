"""Environment variables, warehouse names, SCD2 constants, and injected settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime

from dotenv import load_dotenv

# Load .env from the deployment directory (NOT project root)
load_dotenv(os.getenv("DW_ENV_FILE", "/opt/veteran_dw/.env"))

# --- Database Connection Vars ---
SQL_SERVER_HOST = os.getenv("SQL_SERVER_HOST", "")
SQL_SERVER_PORT = int(os.getenv("SQL_SERVER_PORT", "1433"))
SQL_SERVER_USER = os.getenv("SQL_SERVER_USER", "")
SQL_SERVER_PASSWORD = os.getenv("SQL_SERVER_PASSWORD", "")

# --- ODBC Driver ---
ODBC_DRIVER = os.getenv("ODBC_DRIVER", "ODBC Driver 18 for SQL Server")

# Warehouse database. Every statement runs against this database; schema
# names below are resolved relative to it.
DW_DB = os.getenv("DW_DB", "VETERAN_EVALUATION_DW")

# --- Schemas ---
METADATA_SCHEMA = os.getenv("METADATA_SCHEMA", "metadata")
CONFIG_TABLE = os.getenv("CONFIG_TABLE", "scd_type2_config")
ODS_SCHEMA = os.getenv("ODS_SCHEMA", "ods_raw")
STAGING_SCHEMA = os.getenv("STAGING_SCHEMA", "staging")
WAREHOUSE_SCHEMA = os.getenv("WAREHOUSE_SCHEMA", "warehouse")
REFERENCE_SCHEMA = os.getenv("REFERENCE_SCHEMA", "reference")
OPS_SCHEMA = os.getenv("OPS_SCHEMA", "ops")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# ---------------------------------------------------------------------------
# SCD2 column contract (shared by every dimension table)
# ---------------------------------------------------------------------------
SCD2_EFFECTIVE_START_COLUMN = os.getenv("SCD2_EFFECTIVE_START_COLUMN", "effective_start_date")
SCD2_EFFECTIVE_END_COLUMN = os.getenv("SCD2_EFFECTIVE_END_COLUMN", "effective_end_date")
SCD2_CURRENT_FLAG_COLUMN = os.getenv("SCD2_CURRENT_FLAG_COLUMN", "is_current")
SCD2_CREATED_COLUMN = os.getenv("SCD2_CREATED_COLUMN", "created_timestamp")
SCD2_UPDATED_COLUMN = os.getenv("SCD2_UPDATED_COLUMN", "updated_timestamp")
# Staging tables carry the batch token in this column; only rows tagged with
# the requested batch are considered by a load.
SCD2_BATCH_COLUMN = os.getenv("SCD2_BATCH_COLUMN", "batch_id")
SCD2_DEFAULT_HASH_COLUMN = os.getenv("SCD2_DEFAULT_HASH_COLUMN", "source_record_hash")

# Open-ended effective_end_date for current rows.
SCD2_OPEN_END_DATE = datetime.strptime(
    os.getenv("SCD2_OPEN_END_DATE", "9999-12-31 23:59:59"), "%Y-%m-%d %H:%M:%S",
)

# B-2: Keys per close UPDATE. Each key binds len(business_key) parameters and
# SQL Server caps a request at 2,100 parameters, so the effective chunk is
# min(SCD2_CLOSE_BATCH_SIZE, 2000 // key_width). Staying below ~5,000 rows
# also avoids lock escalation to a table-level X lock.
SCD2_CLOSE_BATCH_SIZE = int(os.getenv("SCD2_CLOSE_BATCH_SIZE", "1000"))

# Rows per fast_executemany call in the insert phase.
SCD2_INSERT_BATCH_SIZE = int(os.getenv("SCD2_INSERT_BATCH_SIZE", "5000"))

# P1-2: sp_getapplock wait in milliseconds. 0 = no wait (skip if held).
LOCK_TIMEOUT_MS = int(os.getenv("LOCK_TIMEOUT_MS", "0"))

# Per-statement timeout delegated to the ODBC driver (0 = no timeout).
STATEMENT_TIMEOUT_SECONDS = int(os.getenv("STATEMENT_TIMEOUT_SECONDS", "600"))

# Parallel dimension loads (threads). Each load opens its own connection.
LOAD_WORKERS = int(os.getenv("LOAD_WORKERS", "1"))

# B-8: RSS memory ceiling in GB, checked between tables by the CLI.
MAX_RSS_GB = float(os.getenv("MAX_RSS_GB", "16.0"))

# Crosswalk entries scoring below this are logged for data-steward review
# (system_configuration.match_confidence_threshold in the warehouse).
MATCH_CONFIDENCE_THRESHOLD = float(os.getenv("MATCH_CONFIDENCE_THRESHOLD", "85"))


@dataclass(frozen=True)
class WarehouseSettings:
    """Explicit configuration handed to every engine object at construction.

    Nothing in the load algorithms reads module globals or resolves the
    database name on its own; tests build this directly.
    """

    database: str = DW_DB
    metadata_schema: str = METADATA_SCHEMA
    config_table: str = CONFIG_TABLE
    ods_schema: str = ODS_SCHEMA
    staging_schema: str = STAGING_SCHEMA
    warehouse_schema: str = WAREHOUSE_SCHEMA
    reference_schema: str = REFERENCE_SCHEMA
    ops_schema: str = OPS_SCHEMA
    effective_start_column: str = SCD2_EFFECTIVE_START_COLUMN
    effective_end_column: str = SCD2_EFFECTIVE_END_COLUMN
    current_flag_column: str = SCD2_CURRENT_FLAG_COLUMN
    created_column: str = SCD2_CREATED_COLUMN
    updated_column: str = SCD2_UPDATED_COLUMN
    batch_column: str = SCD2_BATCH_COLUMN
    default_hash_column: str = SCD2_DEFAULT_HASH_COLUMN
    open_end_date: datetime = SCD2_OPEN_END_DATE
    close_batch_size: int = SCD2_CLOSE_BATCH_SIZE
    insert_batch_size: int = SCD2_INSERT_BATCH_SIZE
    lock_timeout_ms: int = LOCK_TIMEOUT_MS
    statement_timeout_seconds: int = STATEMENT_TIMEOUT_SECONDS
    match_confidence_threshold: float = MATCH_CONFIDENCE_THRESHOLD

    @classmethod
    def from_env(cls) -> WarehouseSettings:
        return cls()

    @property
    def scd_columns(self) -> tuple[str, ...]:
        """SCD bookkeeping columns, in INSERT order."""
        return (
            self.effective_start_column,
            self.effective_end_column,
            self.current_flag_column,
            self.created_column,
            self.updated_column,
        )

    @property
    def identifier_fields(self) -> dict[str, str]:
        """Every settings value that ends up interpolated into SQL."""
        return {
            "database": self.database,
            "metadata_schema": self.metadata_schema,
            "config_table": self.config_table,
            "ods_schema": self.ods_schema,
            "staging_schema": self.staging_schema,
            "warehouse_schema": self.warehouse_schema,
            "reference_schema": self.reference_schema,
            "ops_schema": self.ops_schema,
            "effective_start_column": self.effective_start_column,
            "effective_end_column": self.effective_end_column,
            "current_flag_column": self.current_flag_column,
            "created_column": self.created_column,
            "updated_column": self.updated_column,
            "batch_column": self.batch_column,
        }
