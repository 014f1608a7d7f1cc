"""ConflictReconciler: resolve one attribute that both source systems supply.

Rules, per (master_id, field):
  - Both absent            -> None, nothing logged.
  - Exactly one present    -> that value, nothing logged.
  - Both present and equal -> the value, nothing logged.
  - Both present, differ   -> the system-of-record's value; one
                              ReconciliationLogEntry is buffered.

"Absent" is NULL or a blank string. "Equal" uses the same canonical text
the change hash uses, so a difference that would not create a new SCD2
version is not a conflict either.

Entries are buffered in memory and written inside the caller's transaction
by flush(), so a failed staging transform leaves no audit rows behind.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from config import WarehouseSettings
from crosswalk.models import ReconciliationLogEntry
from crosswalk.persistence import write_reconciliation_log
from data_load.row_hash import canonical_text

logger = logging.getLogger(__name__)


def _is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str) and not value.strip():
        return False
    return True


class ConflictReconciler:
    def __init__(
        self,
        entity_type: str,
        batch_id: str,
        source_a_system: str,
        source_b_system: str,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.entity_type = entity_type
        self.batch_id = batch_id
        self.source_a_system = source_a_system
        self.source_b_system = source_b_system
        self._clock = clock or (lambda: datetime.now(timezone.utc).replace(tzinfo=None))
        self._entries: list[ReconciliationLogEntry] = []

    @property
    def entries(self) -> list[ReconciliationLogEntry]:
        return list(self._entries)

    def reconcile(
        self,
        master_id: str,
        field: str,
        value_a: Any,
        value_b: Any,
        primary_source: str,
    ) -> tuple[Any, bool]:
        """Resolve one field.

        Returns:
            (resolved value, whether a conflict was logged)

        Raises:
            ValueError: primary_source is neither configured system.
        """
        if primary_source not in (self.source_a_system, self.source_b_system):
            raise ValueError(
                f"Unknown primary source {primary_source!r} for {self.entity_type}; "
                f"expected {self.source_a_system} or {self.source_b_system}"
            )

        a_present = _is_present(value_a)
        b_present = _is_present(value_b)
        if not a_present and not b_present:
            return None, False
        if not b_present:
            return value_a, False
        if not a_present:
            return value_b, False

        prefer_a = primary_source == self.source_a_system
        resolved = value_a if prefer_a else value_b
        if canonical_text(value_a) == canonical_text(value_b):
            return resolved, False

        self._entries.append(ReconciliationLogEntry(
            batch_id=self.batch_id,
            entity_type=self.entity_type,
            master_id=master_id,
            conflict_field=field,
            source_a_value=value_a,
            source_b_value=value_b,
            resolved_value=resolved,
            resolution_rule=f"PREFER_{primary_source}",
            timestamp=self._clock(),
        ))
        logger.debug(
            "Conflict on %s.%s for %s resolved to %s",
            self.entity_type, field, master_id, primary_source,
        )
        return resolved, True

    def flush(self, executor, settings: WarehouseSettings) -> int:
        """Append buffered entries to the reconciliation log on executor.

        Runs inside the caller's transaction; the buffer is cleared only
        after the write is submitted.
        """
        written = write_reconciliation_log(executor, settings, self._entries)
        self._entries = []
        return written
