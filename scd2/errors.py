"""Error taxonomy for dimension loads.

Every error raised inside Scd2Loader.load() is one of these (or is wrapped
into StatementExecutionError by the executor). load() converts them into a
BatchResult; error_code is what lands in BatchResult.error_code.
"""

from __future__ import annotations


class DimensionLoadError(Exception):
    """Base class for failures that end a dimension load."""

    error_code = "DIMENSION_LOAD_ERROR"


class ConfigNotFound(DimensionLoadError):
    error_code = "CONFIG_NOT_FOUND"

    def __init__(self, table_name: str) -> None:
        super().__init__(f"No SCD2 configuration for table '{table_name}'")
        self.table_name = table_name


class ConfigDisabled(DimensionLoadError):
    error_code = "CONFIG_DISABLED"

    def __init__(self, table_name: str) -> None:
        super().__init__(f"SCD2 configuration for '{table_name}' is disabled")
        self.table_name = table_name


class ConfigInactive(DimensionLoadError):
    error_code = "CONFIG_INACTIVE"

    def __init__(self, table_name: str) -> None:
        super().__init__(f"SCD2 configuration for '{table_name}' is inactive")
        self.table_name = table_name


class InvalidIdentifier(DimensionLoadError, ValueError):
    """An identifier failed the allow-list. Security relevant: never downgrade."""

    error_code = "INVALID_IDENTIFIER"

    def __init__(self, value: object, kind: str = "identifier", reason: str | None = None) -> None:
        shown = repr(value)
        if len(shown) > 80:
            shown = shown[:77] + "..."
        message = f"Invalid {kind}: {shown}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.value = value
        self.kind = kind


class ColumnDiscoveryEmpty(DimensionLoadError):
    """The source table's shape could not be determined from the catalog."""

    error_code = "COLUMN_DISCOVERY_EMPTY"


class StatementExecutionError(DimensionLoadError):
    """Wraps a driver error with the statement that produced it."""

    error_code = "STATEMENT_EXECUTION_ERROR"

    def __init__(self, kind: str, sql: str, cause: BaseException) -> None:
        super().__init__(f"{kind} failed: {cause}")
        self.kind = kind
        self.sql = sql
        self.cause = cause


class InvalidConfig(DimensionLoadError):
    """A registry row could not be parsed (missing field, malformed column list)."""

    error_code = "INVALID_CONFIG"

    def __init__(self, table_name: object, reason: str) -> None:
        super().__init__(f"Invalid SCD2 configuration for '{table_name}': {reason}")
        self.table_name = table_name
