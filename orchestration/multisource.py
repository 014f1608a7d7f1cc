"""Multi-source pipeline: OMS + VEMS -> crosswalk -> staging -> dimension.

Per entity type, in dependency order (VETERAN, EVALUATOR, FACILITY):

  1. CrosswalkBuilder.build_crosswalk   (own transaction, committed)
  2. StagingMaterializer.materialize    (own transaction, committed)
  3. Scd2Loader.load                    (lock + own transaction)
  4. IntegrityValidator.check           (read-only)

Step 2 reads what step 1 committed and step 3 reads what step 2
committed, so the steps run strictly in sequence for one entity. One
entity's failure is recorded and the next entity still runs; the batch
control row ends FAILED if any entity failed.
"""

from __future__ import annotations

import logging
from contextlib import nullcontext
from dataclasses import dataclass, field

from config import WarehouseSettings
from connections import validate_batch_id
from crosswalk.builder import CrosswalkBuilder
from crosswalk.profiles import ENTITY_PROFILES, EntityProfile, get_profile
from crosswalk.staging import StagingMaterializer
from integrity.models import CheckResult, CheckStatus
from integrity.scd2_integrity import IntegrityValidator
from observability.event_tracker import PipelineEvent, PipelineEventTracker
from orchestration.batch_control import BatchControl
from scd2.engine import Scd2Loader
from scd2.models import BatchResult, LoadStatus

logger = logging.getLogger(__name__)

ENTITY_ORDER = ("VETERAN", "EVALUATOR", "FACILITY")

PIPELINE_NAME = "Master ETL Pipeline - Multi-Source (OMS + VEMS)"


@dataclass
class EntityRunResult:
    entity_type: str
    crosswalk_entries: int = 0
    low_confidence_entries: int = 0
    staged_rows: int = 0
    conflicts_logged: int = 0
    load: BatchResult | None = None
    checks: list[CheckResult] = field(default_factory=list)
    error: str | None = None

    @property
    def failed_checks(self) -> list[str]:
        return [c.check_name for c in self.checks if c.status == CheckStatus.FAIL]

    @property
    def succeeded(self) -> bool:
        if self.error is not None or self.load is None:
            return False
        return self.load.status != LoadStatus.ERROR and not self.failed_checks

    @property
    def summary(self) -> str:
        if self.error is not None:
            return f"{self.entity_type}: {self.error}"
        if self.load is not None and self.load.status == LoadStatus.ERROR:
            return f"{self.entity_type}: load {self.load.error_code}: {self.load.error_detail}"
        if self.failed_checks:
            return f"{self.entity_type}: integrity {self.failed_checks}"
        return f"{self.entity_type}: ok"


def order_entity_types(
    entity_types: list[str] | None,
    profiles: dict[str, EntityProfile] | None = None,
) -> list[str]:
    """Requested entity types (default: all) in dependency order.

    Raises:
        ValueError: An entity type has no profile.
    """
    profiles = ENTITY_PROFILES if profiles is None else profiles
    if entity_types is None:
        requested = list(profiles)
    else:
        requested = [get_profile(e, profiles).entity_type for e in entity_types]
    rank = {name: i for i, name in enumerate(ENTITY_ORDER)}
    return sorted(dict.fromkeys(requested), key=lambda e: (rank.get(e, len(rank)), e))


class MultiSourcePipeline:
    """Runs the multi-source flow for one batch.

    Every collaborator is injectable; defaults are built from settings.
    """

    def __init__(
        self,
        settings: WarehouseSettings,
        builder: CrosswalkBuilder | None = None,
        materializer: StagingMaterializer | None = None,
        loader: Scd2Loader | None = None,
        validator: IntegrityValidator | None = None,
        batch_control: BatchControl | None = None,
        tracker: PipelineEventTracker | None = None,
        profiles: dict[str, EntityProfile] | None = None,
    ) -> None:
        self._settings = settings
        self._profiles = profiles if profiles is not None else ENTITY_PROFILES
        self._builder = builder or CrosswalkBuilder(settings, profiles=self._profiles)
        self._materializer = materializer or StagingMaterializer(settings, profiles=self._profiles)
        self._loader = loader or Scd2Loader(settings, sink=tracker)
        self._validator = validator or IntegrityValidator(settings, registry=self._loader.registry)
        self._batch_control = batch_control or BatchControl(settings)
        self._tracker = tracker

    def run(self, batch_id: str, entity_types: list[str] | None = None) -> list[EntityRunResult]:
        """Run every requested entity type; never stops at the first failure.

        Raises:
            InvalidIdentifier: Malformed batch id (nothing is recorded).
            ValueError: Unknown entity type (nothing is recorded).
        """
        validate_batch_id(batch_id)
        order = order_entity_types(entity_types, self._profiles)
        logger.info("Multi-source batch %s: entities %s", batch_id, order)
        self._batch_control.start(batch_id, PIPELINE_NAME)

        results = [self._run_entity(entity_type, batch_id) for entity_type in order]

        failed = [r for r in results if not r.succeeded]
        if failed:
            message = "; ".join(r.summary for r in failed)
            logger.error("Multi-source batch %s FAILED: %s", batch_id, message)
            self._batch_control.fail(batch_id, message)
        else:
            loaded = sum(r.load.rows_inserted for r in results if r.load is not None)
            logger.info("Multi-source batch %s COMPLETED (%d dimension rows inserted)", batch_id, loaded)
            self._batch_control.complete(batch_id, loaded)
        return results

    def _step(self, event_type: str, entity_type: str, batch_id: str):
        if self._tracker is None:
            return nullcontext(PipelineEvent(event_type=event_type, table_name=entity_type, batch_id=batch_id))
        return self._tracker.track(event_type, entity_type, batch_id)

    def _run_entity(self, entity_type: str, batch_id: str) -> EntityRunResult:
        result = EntityRunResult(entity_type=entity_type)
        profile = self._profiles[entity_type]
        threshold = self._settings.match_confidence_threshold
        try:
            with self._step("CROSSWALK", entity_type, batch_id) as event:
                entries = self._builder.build_crosswalk(entity_type, batch_id)
                event.rows_processed = len(entries)
            result.crosswalk_entries = len(entries)
            result.low_confidence_entries = sum(1 for e in entries if e.match_confidence < threshold)

            with self._step("STAGING", entity_type, batch_id) as event:
                staged = self._materializer.materialize(entity_type, batch_id)
                event.rows_processed = staged.rows_written
                event.rows_inserted = staged.rows_written
            result.staged_rows = staged.rows_written
            result.conflicts_logged = staged.conflicts_logged

            result.load = self._loader.load(profile.dimension_table, batch_id)
            if result.load.status == LoadStatus.SUCCESS:
                result.checks = self._validator.check(profile.dimension_table)
        except Exception as e:
            result.error = f"{type(e).__name__}: {e}"
            logger.exception("Multi-source %s failed for batch %s", entity_type, batch_id)

        logger.info(
            "%s batch %s: crosswalk=%d (review=%d), staged=%d, conflicts=%d, load=%s",
            entity_type, batch_id, result.crosswalk_entries, result.low_confidence_entries,
            result.staged_rows, result.conflicts_logged,
            result.load.status.value if result.load is not None else "n/a",
        )
        return result
