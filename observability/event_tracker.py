"""PipelineEventTracker -> ops.PipelineEventLog (the pipeline logging sink).

Writes exactly one row per step per table. Failures to write are logged and
swallowed: the sink must never fail, mask, or replace the outcome of the
load it describes.

Usage:
    tracker = PipelineEventTracker(settings)
    tracker.log_execution("SCD2_LOAD:dim_veteran", "SUCCESS", 1.2,
                          {"rows_inserted": 10}, None, batch_id)

    with tracker.track("CROSSWALK", "VETERAN", batch_id) as event:
        entries = builder.build_crosswalk("VETERAN", batch_id)
        event.rows_processed = len(entries)
"""

from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

import connections
from config import WarehouseSettings
from connections import quote_table

logger = logging.getLogger(__name__)


@dataclass
class PipelineEvent:
    """Mutable event; pipeline code sets row counts inside the with block."""

    event_type: str
    table_name: str
    batch_id: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: float = 0.0
    status: str = "SUCCESS"
    error_message: str | None = None
    rows_processed: int = 0
    rows_inserted: int = 0
    rows_updated: int = 0
    rows_unchanged: int = 0
    metadata: str | None = None


class PipelineEventTracker:
    """Tracks pipeline events and writes them to ops.PipelineEventLog."""

    def __init__(
        self,
        settings: WarehouseSettings,
        connection_factory: Callable | None = None,
    ) -> None:
        self._settings = settings
        self._connection_factory = connection_factory or connections.get_connection

    def log_execution(
        self,
        name: str,
        status: str,
        duration_seconds: float,
        counts: dict[str, int] | None,
        error: str | None,
        batch_id: str | None,
    ) -> None:
        """Record one finished step. Never raises."""
        try:
            counts = counts or {}
            completed = datetime.now(timezone.utc)
            event = PipelineEvent(
                event_type=name.split(":", 1)[0],
                table_name=name.split(":", 1)[-1],
                batch_id=batch_id,
                started_at=completed - timedelta(seconds=duration_seconds),
                completed_at=completed,
                duration_ms=duration_seconds * 1000,
                status=status,
                error_message=error[:4000] if error else None,
                rows_inserted=counts.get("rows_inserted", 0),
                rows_updated=counts.get("rows_closed", 0),
                rows_unchanged=counts.get("rows_unchanged", 0),
                rows_processed=sum(counts.values()),
                metadata=json.dumps(counts, default=str) if counts else None,
            )
        except Exception:
            logger.exception("Failed to build pipeline event for %s", name)
            return
        self._write_event(event)

    @contextmanager
    def track(self, event_type: str, table_name: str, batch_id: str | None = None):
        """Context manager that yields a PipelineEvent for the caller to populate."""
        event = PipelineEvent(event_type=event_type, table_name=table_name, batch_id=batch_id)
        event.started_at = datetime.now(timezone.utc)
        try:
            yield event
            # OBS-3: Preserve explicitly-set statuses (SKIPPED, etc.)
            if event.status not in ("FAILED", "SKIPPED", "ERROR"):
                event.status = "SUCCESS"
        except Exception as e:
            event.status = "FAILED"
            event.error_message = str(e)[:4000]
            raise
        finally:
            event.completed_at = datetime.now(timezone.utc)
            event.duration_ms = (
                (event.completed_at - event.started_at).total_seconds() * 1000
            )
            self._write_event(event)

    def _write_event(self, event: PipelineEvent) -> None:
        try:
            table = quote_table(f"{self._settings.ops_schema}.PipelineEventLog")
            conn = self._connection_factory(self._settings.database)
            try:
                cursor = conn.cursor()
                cursor.execute(
                    f"""
                    INSERT INTO {table} (
                        BatchId, TableName, EventType, StartedAt, CompletedAt,
                        DurationMs, Status, ErrorMessage, RowsProcessed,
                        RowsInserted, RowsUpdated, RowsUnchanged, Metadata
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    event.batch_id,
                    event.table_name,
                    event.event_type,
                    event.started_at,
                    event.completed_at,
                    int(event.duration_ms),
                    event.status,
                    event.error_message,
                    event.rows_processed,
                    event.rows_inserted,
                    event.rows_updated,
                    event.rows_unchanged,
                    event.metadata,
                )
                cursor.close()
                # OBS-5: Explicit commit, autocommit default not assumed.
                conn.commit()
            finally:
                conn.close()
        except Exception:
            logger.exception("Failed to write event to PipelineEventLog")
