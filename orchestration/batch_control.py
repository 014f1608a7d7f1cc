"""Batch control rows in ods_raw.ods_batch_control.

One row per pipeline batch: RUNNING when the run starts, then COMPLETED or
FAILED with an end timestamp and the error message. ODS loaders may have
registered the batch already, so start() upserts.

Writes are best-effort, the same as the event tracker: a failure is logged
and reported through the return value, never raised into the run.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable

import connections
from config import WarehouseSettings
from connections import quote_table, validate_batch_id

logger = logging.getLogger(__name__)

BATCH_CONTROL_TABLE = "ods_batch_control"

STATUS_RUNNING = "RUNNING"
STATUS_COMPLETED = "COMPLETED"
STATUS_FAILED = "FAILED"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BatchControl:
    """Records the lifecycle of one pipeline batch."""

    def __init__(
        self,
        settings: WarehouseSettings,
        connection_factory: Callable | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._settings = settings
        self._connection_factory = connection_factory or connections.get_connection
        self._clock = clock or _utcnow

    @property
    def table_ref(self) -> str:
        return quote_table(f"{self._settings.ods_schema}.{BATCH_CONTROL_TABLE}")

    def start(
        self,
        batch_id: str,
        batch_name: str,
        source_system: str = "OMS_VEMS_MERGED",
        extraction_type: str = "INCREMENTAL",
    ) -> bool:
        validate_batch_id(batch_id)
        return self._write(
            batch_id,
            f"""
            MERGE {self.table_ref} AS tgt
            USING (SELECT ? AS batch_id) AS src
            ON tgt.batch_id = src.batch_id
            WHEN MATCHED THEN
                UPDATE SET batch_status = ?, batch_start_timestamp = ?,
                           batch_end_timestamp = NULL, error_message = NULL
            WHEN NOT MATCHED THEN
                INSERT (batch_id, batch_name, source_system, extraction_type,
                        batch_status, batch_start_timestamp)
                VALUES (src.batch_id, ?, ?, ?, ?, ?);
            """,
            (
                batch_id,
                STATUS_RUNNING, self._clock(),
                batch_name, source_system, extraction_type, STATUS_RUNNING, self._clock(),
            ),
        )

    def complete(self, batch_id: str, records_loaded: int = 0) -> bool:
        return self._write(
            batch_id,
            f"""
            UPDATE {self.table_ref}
            SET batch_status = ?, batch_end_timestamp = ?, records_loaded = ?, error_message = NULL
            WHERE batch_id = ?
            """,
            (STATUS_COMPLETED, self._clock(), records_loaded, batch_id),
        )

    def fail(self, batch_id: str, error_message: str) -> bool:
        return self._write(
            batch_id,
            f"""
            UPDATE {self.table_ref}
            SET batch_status = ?, batch_end_timestamp = ?, error_message = ?
            WHERE batch_id = ?
            """,
            (STATUS_FAILED, self._clock(), (error_message or "")[:4000], batch_id),
        )

    def _write(self, batch_id: str, sql: str, params: tuple) -> bool:
        try:
            conn = self._connection_factory(self._settings.database)
            try:
                cursor = conn.cursor()
                cursor.execute(sql, *params)
                cursor.close()
                # OBS-5: Explicit commit, autocommit default not assumed.
                conn.commit()
            finally:
                conn.close()
        except Exception:
            logger.warning("Failed to update batch control for %s", batch_id, exc_info=True)
            return False
        return True
