"""Dimension-level locking to prevent concurrent loads of one table (P1-2).

Two loads of the same dimension would race on the close and insert phases
and could double-close or double-insert. Loads are serialized with:
  - an in-process threading.Lock per table (BatchLoader worker threads), and
  - SQL Server sp_getapplock/sp_releaseapplock across processes and hosts.

N-1: Lock-holding connections use ODBC connection resiliency
(ConnectRetryCount/ConnectRetryInterval) to survive transient network
failures.

W-8: Session-owned locks (@LockOwner='Session') on a dedicated autocommit
connection. The load's own transaction runs on a different connection, so
the lock outlives its COMMIT and is released explicitly afterwards. Session
close also releases the lock (crash-safe).

Usage:
    with table_lock(settings, "warehouse", "dim_veteran") as acquired:
        if not acquired:
            return  # another load owns this dimension
        load(...)
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager

import pyodbc

import config
from config import WarehouseSettings
from connections import validate_identifier

logger = logging.getLogger(__name__)

# Lock resource name pattern
_LOCK_RESOURCE = "DW_SCD2_{schema}_{table}"

_process_locks: dict[str, threading.Lock] = {}
_process_locks_guard = threading.Lock()


def lock_resource(schema: str, table: str) -> str:
    return _LOCK_RESOURCE.format(
        schema=validate_identifier(schema, "schema"),
        table=validate_identifier(table, "table name"),
    )


def _process_lock(resource: str) -> threading.Lock:
    with _process_locks_guard:
        lock = _process_locks.get(resource)
        if lock is None:
            lock = threading.Lock()
            _process_locks[resource] = lock
        return lock


def _get_resilient_lock_connection(database: str) -> pyodbc.Connection:
    """N-1: Create a lock-holding connection with ODBC resiliency settings."""
    conn_str = (
        f"DRIVER={{{config.ODBC_DRIVER}}};"
        f"SERVER={config.SQL_SERVER_HOST},{config.SQL_SERVER_PORT};"
        f"DATABASE={database};"
        f"UID={config.SQL_SERVER_USER};"
        f"PWD={config.SQL_SERVER_PASSWORD};"
        "TrustServerCertificate=yes;"
        "ConnectRetryCount=3;"
        "ConnectRetryInterval=10;"
        "Connection Timeout=30;"
    )
    return pyodbc.connect(conn_str, autocommit=True)


def acquire_table_lock(
    database: str,
    schema: str,
    table: str,
    timeout_ms: int = 0,
) -> pyodbc.Connection | None:
    """Acquire an exclusive application lock for a dimension table.

    Returns the connection holding the lock, or None if another load
    already holds it. The connection MUST be kept open for the lock to
    persist; pass it to release_table_lock() when done.

    Args:
        database: Warehouse database the lock is scoped to.
        schema: Dimension schema, e.g. 'warehouse'.
        table: Dimension table, e.g. 'dim_veteran'.
        timeout_ms: Lock wait timeout in milliseconds. 0 = no wait.
    """
    resource = lock_resource(schema, table)

    conn = _get_resilient_lock_connection(database)
    try:
        cursor = conn.cursor()
        cursor.execute(
            "DECLARE @result INT; "
            "EXEC @result = sp_getapplock "
            "  @Resource = ?, "
            "  @LockMode = 'Exclusive', "
            "  @LockOwner = 'Session', "
            "  @LockTimeout = ?; "
            "SELECT @result;",
            resource, timeout_ms,
        )
        result = cursor.fetchone()[0]
        cursor.close()

        # sp_getapplock return codes:
        #  0 = lock granted synchronously
        #  1 = lock granted after waiting
        # -1 = lock request timed out
        # -2 = lock request was cancelled
        # -3 = lock request was chosen as deadlock victim
        # -999 = parameter error

        if result >= 0:
            logger.info("Acquired table lock: %s (result=%d)", resource, result)
            return conn
        logger.warning(
            "Could not acquire table lock: %s (result=%d); "
            "another load is processing this dimension. Skipping.",
            resource, result,
        )
        conn.close()
        return None

    except Exception:
        conn.close()
        raise


def release_table_lock(conn: pyodbc.Connection, schema: str, table: str) -> None:
    """Release the application lock and close the connection.

    Never raises: closing the session releases the lock anyway.
    """
    resource = lock_resource(schema, table)
    try:
        cursor = conn.cursor()
        cursor.execute(
            "EXEC sp_releaseapplock @Resource = ?, @LockOwner = 'Session';",
            resource,
        )
        cursor.close()
        logger.debug("Released table lock: %s", resource)
    except Exception:
        logger.exception("Failed to release table lock: %s", resource)
    finally:
        try:
            conn.close()
        except Exception:
            logger.debug("Error closing lock connection for %s", resource, exc_info=True)


@contextmanager
def table_lock(settings: WarehouseSettings, schema: str, table: str):
    """Hold both the in-process and the server-side lock for one dimension.

    Yields True when both were acquired, False when sp_getapplock reported
    the dimension busy. Loads of the same table within this process wait
    for each other instead of skipping.
    """
    resource = lock_resource(schema, table)
    local = _process_lock(resource)
    with local:
        conn = acquire_table_lock(settings.database, schema, table, settings.lock_timeout_ms)
        if conn is None:
            yield False
            return
        try:
            yield True
        finally:
            release_table_lock(conn, schema, table)
