"""SqlServerLogHandler: custom logging.Handler -> ops.PipelineLog.

Every module uses standard logger = logging.getLogger(__name__) calls.
The handler holds the batch id and current table in thread-local context,
so parallel dimension loads tag their own records.
"""

from __future__ import annotations

import logging
import sys
import threading
import traceback
from datetime import datetime, timezone
from typing import Callable

import connections
from config import WarehouseSettings
from connections import quote_table


class SqlServerLogHandler(logging.Handler):
    """Custom logging handler that writes log records to ops.PipelineLog.

    Usage:
        handler = SqlServerLogHandler(settings)
        handler.set_context(batch_id="BATCH_20250101_020000", table_name="dim_veteran")
        logging.getLogger().addHandler(handler)
    """

    def __init__(
        self,
        settings: WarehouseSettings,
        level: int = logging.INFO,
        connection_factory: Callable | None = None,
    ) -> None:
        super().__init__(level)
        self._settings = settings
        self._connection_factory = connection_factory or connections.get_connection
        self._context = threading.local()
        self._default_batch_id: str | None = None
        self._buffer: list[tuple] = []
        self._buffer_lock = threading.Lock()
        # OBS-4: Small buffer narrows the crash-loss window.
        self._buffer_size = 10

    def set_context(
        self,
        batch_id: str | None = None,
        table_name: str | None = None,
    ) -> None:
        if batch_id is not None:
            self._context.batch_id = batch_id
            # Worker threads inherit the run's batch id.
            self._default_batch_id = self._default_batch_id or batch_id
        self._context.table_name = table_name

    def _get_context(self) -> tuple[str | None, str | None]:
        return (
            getattr(self._context, "batch_id", self._default_batch_id),
            getattr(self._context, "table_name", None),
        )

    def emit(self, record: logging.LogRecord) -> None:
        try:
            batch_id, table_name = self._get_context()
            if batch_id is None:
                return

            error_type = None
            stack_trace = None
            if record.exc_info and record.exc_info[1]:
                error_type = type(record.exc_info[1]).__name__
                stack_trace = "".join(
                    traceback.format_exception(*record.exc_info)
                )[:4000]

            row = (
                batch_id,
                table_name,
                record.levelname,
                record.name,
                record.funcName,
                self.format(record)[:4000],
                error_type,
                stack_trace,
                datetime.now(timezone.utc),
            )

            with self._buffer_lock:
                self._buffer.append(row)
                # OBS-4: Flush immediately on WARNING+.
                if len(self._buffer) >= self._buffer_size or record.levelno >= logging.WARNING:
                    self._flush_buffer()
        except Exception:
            self.handleError(record)

    def _flush_buffer(self) -> None:
        if not self._buffer:
            return
        rows = self._buffer[:]
        self._buffer.clear()

        try:
            table = quote_table(f"{self._settings.ops_schema}.PipelineLog")
            conn = self._connection_factory(self._settings.database)
            try:
                cursor = conn.cursor()
                cursor.executemany(
                    f"""
                    INSERT INTO {table} (
                        BatchId, TableName, LogLevel, Module, FunctionName,
                        Message, ErrorType, StackTrace, CreatedAt
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
                cursor.close()
                # OBS-5: Explicit commit, autocommit default not assumed.
                conn.commit()
            finally:
                conn.close()
        except Exception as flush_err:
            # OBS-4: Logging through logging here would recurse into this
            # handler; stderr reaches the journal.
            print(
                f"[SqlServerLogHandler] FLUSH FAILED ({len(rows)} entries lost): "
                f"{flush_err}",
                file=sys.stderr,
            )

    def flush(self) -> None:
        with self._buffer_lock:
            self._flush_buffer()

    def close(self) -> None:
        self.flush()
        super().close()
