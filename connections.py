"""SQL Server warehouse connections, identifier validation, and the statement executor.

Provides pyodbc connections (for DML/DDL and parameterized reads), a ConnectorX
URI (for unfiltered bulk reads), and identifier helpers (H-1) for safe
dynamic SQL construction. Every identifier that reaches a statement goes
through validate_identifier(); every literal is bound as a ``?`` parameter.
"""

from __future__ import annotations

import logging
import re
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterable, Sequence
from urllib.parse import quote_plus

import polars as pl
import pyodbc

import config
from scd2.errors import InvalidIdentifier, StatementExecutionError

if TYPE_CHECKING:
    from scd2.statements import Statement

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# H-1: Identifier allow-list and bracket escaping
# ---------------------------------------------------------------------------

_MAX_IDENTIFIER_LENGTH = 128  # SQL Server sysname limit (matches QUOTENAME())
_MAX_BATCH_ID_LENGTH = 64

# fullmatch, not match with ^...$: "$" also matches before a trailing newline.
_IDENTIFIER_PATTERN = re.compile(r"[A-Za-z0-9_]+")
_BATCH_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]+")


def validate_identifier(name: object, kind: str = "identifier") -> str:
    """H-1: Allow-list a table, schema, or column name before interpolation.

    Configuration values come from a writable metadata table, so they are
    re-validated every time they are used, not only when written.

    Args:
        name: Candidate identifier.
        kind: Label used in the error message (e.g. ``"business key column"``).

    Returns:
        The identifier unchanged.

    Raises:
        InvalidIdentifier: If name is not a non-empty string of
            ``[A-Za-z0-9_]`` characters no longer than 128.
    """
    if not isinstance(name, str) or not name:
        raise InvalidIdentifier(name, kind, "empty or not a string")
    if len(name) > _MAX_IDENTIFIER_LENGTH:
        raise InvalidIdentifier(name, kind, f"longer than {_MAX_IDENTIFIER_LENGTH} characters")
    if _IDENTIFIER_PATTERN.fullmatch(name) is None:
        raise InvalidIdentifier(name, kind, "allowed characters are A-Z, a-z, 0-9 and _")
    return name


def validate_identifiers(names: Iterable[object], kind: str = "identifier") -> list[str]:
    return [validate_identifier(n, kind) for n in names]


def validate_batch_id(batch_id: object) -> str:
    """Validate an externally supplied batch token (e.g. ``BATCH_20250101_020000``).

    Batch ids are always bound as parameters, never interpolated, but they
    are untrusted input and are rejected early when malformed.
    """
    if not isinstance(batch_id, str) or not batch_id:
        raise InvalidIdentifier(batch_id, "batch id", "empty or not a string")
    if len(batch_id) > _MAX_BATCH_ID_LENGTH:
        raise InvalidIdentifier(batch_id, "batch id", f"longer than {_MAX_BATCH_ID_LENGTH} characters")
    if _BATCH_ID_PATTERN.fullmatch(batch_id) is None:
        raise InvalidIdentifier(batch_id, "batch id", "allowed characters are A-Z, a-z, 0-9, _ and -")
    return batch_id


def quote_identifier(name: str) -> str:
    """H-1: Validate and bracket-quote one identifier (``col`` -> ``[col]``).

    The allow-list already excludes ``]``; the doubling matches QUOTENAME().
    """
    validate_identifier(name)
    return f"[{name.replace(']', ']]')}]"


def quote_table(full_table_name: str) -> str:
    """H-1: Validate and quote a 2-part (schema.table) or 3-part name.

    Args:
        full_table_name: e.g. ``warehouse.dim_veteran``

    Returns:
        e.g. ``[warehouse].[dim_veteran]``

    Raises:
        InvalidIdentifier: If the name does not have 2 or 3 valid parts.
    """
    parts = full_table_name.split(".") if isinstance(full_table_name, str) else []
    if len(parts) not in (2, 3):
        raise InvalidIdentifier(full_table_name, "table name", "expected schema.table or db.schema.table")
    return ".".join(quote_identifier(p) for p in parts)


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------

def _pyodbc_connection_string(database: str) -> str:
    return (
        f"DRIVER={{{config.ODBC_DRIVER}}};"
        f"SERVER={config.SQL_SERVER_HOST},{config.SQL_SERVER_PORT};"
        f"DATABASE={database};"
        f"UID={config.SQL_SERVER_USER};"
        f"PWD={config.SQL_SERVER_PASSWORD};"
        "TrustServerCertificate=yes;"
    )


def connectorx_uri(database: str) -> str:
    usr = quote_plus(config.SQL_SERVER_USER)
    pwd = quote_plus(config.SQL_SERVER_PASSWORD)
    return (
        f"mssql://{usr}:{pwd}@{config.SQL_SERVER_HOST}:{config.SQL_SERVER_PORT}"
        f"/{database}?TrustServerCertificate=true"
    )


def get_connection(database: str, timeout_seconds: int = 0) -> pyodbc.Connection:
    """Create a fresh autocommit pyodbc connection (not pooled).

    Loads run on worker threads, so every caller gets its own connection.
    """
    conn = pyodbc.connect(_pyodbc_connection_string(database), autocommit=True)
    if timeout_seconds:
        conn.timeout = timeout_seconds
    return conn


class SqlExecutor:
    """Executes Statement objects on one pyodbc connection.

    Driver errors are re-raised as StatementExecutionError carrying the
    statement kind and text, so load() can report which step failed.
    """

    def __init__(self, conn: pyodbc.Connection) -> None:
        self._conn = conn
        self._in_transaction = False

    @property
    def in_transaction(self) -> bool:
        return self._in_transaction

    def execute(self, statement: Statement) -> int:
        """Run a statement and return the driver's rows-affected count."""
        cursor = self._run(statement)
        try:
            return cursor.rowcount
        finally:
            cursor.close()

    def fetch_all(self, statement: Statement) -> list[tuple]:
        cursor = self._run(statement)
        try:
            return [tuple(row) for row in cursor.fetchall()]
        except pyodbc.Error as e:
            raise StatementExecutionError(statement.kind, statement.sql, e) from e
        finally:
            cursor.close()

    def fetch_frame(self, statement: Statement) -> pl.DataFrame:
        """Run a SELECT and return a polars DataFrame (H-3 parameterized read)."""
        cursor = self._run(statement)
        try:
            columns = [desc[0] for desc in cursor.description]
            rows = cursor.fetchall()
        except pyodbc.Error as e:
            raise StatementExecutionError(statement.kind, statement.sql, e) from e
        finally:
            cursor.close()
        if not rows:
            return pl.DataFrame(schema={c: pl.Utf8 for c in columns})
        return pl.DataFrame(
            [tuple(r) for r in rows], schema=columns, orient="row", infer_schema_length=None,
        )

    def execute_many(self, statement: Statement, rows: Sequence[Sequence]) -> int:
        """Bind each row to the statement with fast_executemany.

        cursor.rowcount is -1 after executemany, so the number of parameter
        rows submitted is returned instead.
        """
        if not rows:
            return 0
        cursor = self._conn.cursor()
        cursor.fast_executemany = True
        try:
            cursor.executemany(statement.sql, [tuple(r) for r in rows])
        except pyodbc.Error as e:
            raise StatementExecutionError(statement.kind, statement.sql, e) from e
        finally:
            cursor.close()
        return len(rows)

    @contextmanager
    def transaction(self):
        """Run the enclosed statements as one transaction.

        Commits on normal exit; rolls back and re-raises on any exception.
        """
        if self._in_transaction:
            raise RuntimeError("Nested transactions are not supported")
        self._conn.autocommit = False
        self._in_transaction = True
        try:
            yield self
            self._conn.commit()
        except BaseException:
            try:
                self._conn.rollback()
            except pyodbc.Error:
                logger.exception("Rollback failed")
            raise
        finally:
            self._in_transaction = False
            self._conn.autocommit = True

    def _run(self, statement: Statement) -> pyodbc.Cursor:
        cursor = self._conn.cursor()
        try:
            cursor.execute(statement.sql, *statement.params)
        except pyodbc.Error as e:
            cursor.close()
            raise StatementExecutionError(statement.kind, statement.sql, e) from e
        logger.debug("Executed %s (%d params)", statement.kind, len(statement.params))
        return cursor

    def close(self) -> None:
        self._conn.close()


@contextmanager
def executor_for(database: str, timeout_seconds: int = 0):
    """X-1: Context manager yielding a SqlExecutor on a fresh connection.

    Usage::

        with executor_for(settings.database) as ex:
            with ex.transaction():
                ex.execute(stmt)
    """
    executor = SqlExecutor(get_connection(database, timeout_seconds))
    try:
        yield executor
    finally:
        try:
            executor.close()
        except pyodbc.Error:
            logger.debug("Error closing connection to %s", database, exc_info=True)


# --- Startup Validation ---

def verify_rcsi_enabled(database: str) -> None:
    """E-9: Verify READ_COMMITTED_SNAPSHOT is enabled on the warehouse.

    Close and insert run in one transaction. Without RCSI, readers of the
    dimension block on the row locks for the duration of that transaction;
    with RCSI they read the pre-load snapshot.

    Logs WARNING if RCSI is not enabled. Never raises.
    """
    from scd2.statements import Statement

    try:
        with executor_for(database) as ex:
            rows = ex.fetch_all(Statement(
                "SELECT is_read_committed_snapshot_on FROM sys.databases WHERE name = ?",
                (database,),
                kind="verify_rcsi",
            ))
        if not rows:
            logger.warning(
                "E-9: Could not find database %s in sys.databases; "
                "unable to verify RCSI status", database,
            )
        elif not rows[0][0]:
            logger.warning(
                "E-9: READ_COMMITTED_SNAPSHOT is NOT enabled on %s. Dimension "
                "readers will block while a load transaction is open. Enable with: "
                "ALTER DATABASE [%s] SET READ_COMMITTED_SNAPSHOT ON",
                database, database,
            )
        else:
            logger.info("E-9: RCSI verified enabled on %s", database)
    except Exception:
        logger.warning(
            "E-9: Could not verify RCSI on %s; continuing without verification",
            database, exc_info=True,
        )
