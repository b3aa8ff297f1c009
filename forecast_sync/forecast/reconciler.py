"""
Forecast Reconciler.

Brings the forecast records of one billable item in line with the dates
its billing configuration currently calls for:

1. Compute the desired keys from the schedule.
2. Fetch every record referencing the item (any stage).
3. Canonicalize duplicate keys, then split editable (forecast stage)
   from protected (ready, invoiced, cancelled, ...) records.
4. Desired keys held by a protected record are never recreated; only a
   stale item reference on that record is repaired.
5. Desired keys held by an editable record get stage/pipeline/pause
   patches only. Content written at creation is never rewritten.
6. Missing keys are created, after a fresh exact-key recheck.
7. Editable records whose key is no longer desired are archived.

Running twice with unchanged inputs performs no writes the second time.
"""
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, Dict, List, Optional

from forecast_sync.billing.schedule import BillingScheduleCalculator, ScheduleResult
from forecast_sync.billing.schemas import BillableItem, ParentRecord
from forecast_sync.config import ForecastStages
from forecast_sync.dates import utc_now_iso
from forecast_sync.errors import (
    ActionableStoreError,
    InvariantViolation,
    SchemaDriftError,
    TransientStoreError,
    ValidationError,
)
from forecast_sync.forecast.canonical import CanonicalizationService
from forecast_sync.forecast.keys import build_key, key_or_derived, parse_key
from forecast_sync.forecast.models import ForecastProps, ForecastRecord, ItemProps
from forecast_sync.reporting import ErrorReporter, report_if_actionable
from forecast_sync.store.base import Collection, RecordStore

logger = logging.getLogger(__name__)


@dataclass
class ItemFailure:
    """Why an item could not be reconciled in this pass."""
    item_id: str
    reason: str
    message: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"item_id": self.item_id, "reason": self.reason, "message": self.message}


@dataclass
class ItemOutcome:
    """Writes performed for one item, kept even when the item fails midway."""
    item_id: str
    created: int = 0
    updated: int = 0
    deleted: int = 0
    deprecated: int = 0
    skipped: bool = False
    reason: Optional[str] = None
    degraded: bool = False
    desired_count: int = 0
    failure: Optional[ItemFailure] = None

    @property
    def writes(self) -> int:
        return self.created + self.updated + self.deleted + self.deprecated


class ForecastReconciler:
    """Reconciles the forecast records of one item per call."""

    def __init__(
        self,
        store: RecordStore,
        stages: ForecastStages,
        calculator: BillingScheduleCalculator,
        canonicalizer: CanonicalizationService,
        today: Callable[[], date],
        reporter: Optional[ErrorReporter] = None,
        now: Callable[[], str] = utc_now_iso,
    ):
        self.store = store
        self.stages = stages
        self.calculator = calculator
        self.canonicalizer = canonicalizer
        self.today = today
        self.reporter = reporter
        self.now = now

    # =========================================================================
    # Entry points
    # =========================================================================

    async def reconcile_item_safe(self, parent: ParentRecord, item: BillableItem) -> ItemOutcome:
        """
        Reconcile one item, turning every failure into an ItemFailure.

        Counts of writes already committed are kept on the outcome.
        """
        outcome = ItemOutcome(item_id=item.id)
        try:
            await self.reconcile_item(parent, item, outcome)
        except ValidationError as e:
            outcome.skipped = True
            outcome.reason = e.reason
            logger.info(f"Skipping item {item.id} on parent {parent.id}: {e.reason}")
        except TransientStoreError as e:
            logger.warning(f"Transient store error on item {item.id}, retrying next pass: {e}")
            outcome.failure = ItemFailure(item.id, "transient_store_error", str(e))
        except SchemaDriftError as e:
            logger.error(f"Schema drift on item {item.id}: {e}")
            outcome.failure = ItemFailure(item.id, "schema_drift", str(e))
            await self._report(e, item, "schema negotiation failed")
        except ActionableStoreError as e:
            logger.error(f"Store rejected a write for item {item.id}: {e}")
            outcome.failure = ItemFailure(item.id, "store_error", str(e))
            await self._report(e, item, "forecast reconciliation failed")
        except InvariantViolation as e:
            logger.error(f"Invariant violation on item {item.id}: {e}")
            outcome.failure = ItemFailure(item.id, "invariant_violation", str(e))
            await self._report(e, item, "invalid forecast key")
        except Exception as e:
            logger.error(f"Forecast reconciliation failed for item {item.id}: {e}")
            outcome.failure = ItemFailure(item.id, "unexpected_error", str(e))
            await self._report(e, item, "forecast reconciliation failed")
        return outcome

    async def reconcile_item(
        self,
        parent: ParentRecord,
        item: BillableItem,
        outcome: Optional[ItemOutcome] = None,
    ) -> ItemOutcome:
        """Reconcile one item; errors propagate to the caller."""
        outcome = outcome or ItemOutcome(item_id=item.id)

        if not parent.id:
            raise ValidationError("missing_parent_id")
        if not item.stable_id:
            raise ValidationError("missing_item_key")

        config = item.config
        target_stage = self.stages.target_stage(parent.progress, config.automated)
        if target_stage is None:
            outcome.skipped = True
            outcome.reason = "progress_not_in_forecast_buckets"
            logger.debug(
                f"Item {item.id} skipped: progress {parent.progress!r} has no forecast bucket"
            )
            return outcome

        pipeline_id = self.stages.pipeline(config.automated).pipeline_id
        schedule = self.desired_schedule(item)
        outcome.degraded = schedule.degraded
        desired: Dict[str, str] = {}
        for d in schedule.dates:
            desired[build_key(parent.id, item.stable_id, d)] = d.isoformat()
        outcome.desired_count = len(desired)

        logger.debug(
            f"Item {item.id} ({item.stable_id}): {len(desired)} desired dates "
            f"from {schedule.generation_start}, target stage {target_stage}"
        )

        by_key = await self._existing_by_key(parent, item, outcome)

        if not desired:
            for key, record in list(by_key.items()):
                if record.is_editable(self.stages):
                    await self._archive(record)
                    outcome.deleted += 1
            await self._stamp(item, outcome)
            return outcome

        pause_reason = (config.pause_reason or "") if config.paused else ""

        for key, ymd in desired.items():
            record = by_key.get(key)

            if record is None:
                recheck = await self.canonicalizer.archive_exact_key_collisions(key)
                outcome.deprecated += len(recheck.deprecated)
                record = recheck.canonical
                if record is None:
                    await self._create(parent, item, key, ymd, pipeline_id, target_stage, pause_reason)
                    outcome.created += 1
                    continue

            if record.is_protected(self.stages):
                if record.item_key != item.stable_id:
                    await self.store.update(
                        Collection.FORECASTS, record.id, {ForecastProps.ITEM_KEY: item.stable_id}
                    )
                    outcome.updated += 1
                    logger.info(
                        f"Repaired item reference on protected record {record.id} "
                        f"({record.item_key!r} -> {item.stable_id!r})"
                    )
                continue

            patch = self._stage_patch(record, key, item.stable_id, pipeline_id, target_stage, pause_reason)
            if patch:
                await self.store.update(Collection.FORECASTS, record.id, patch)
                outcome.updated += 1
                logger.info(f"Patched forecast record {record.id} ({key}): {sorted(patch)}")

        for key, record in by_key.items():
            if key in desired or not record.is_editable(self.stages):
                continue
            await self._archive(record)
            outcome.deleted += 1

        await self._stamp(item, outcome)
        logger.info(
            f"Reconciled item {item.id} on parent {parent.id}: created={outcome.created} "
            f"updated={outcome.updated} deleted={outcome.deleted} deprecated={outcome.deprecated}"
        )
        return outcome

    def desired_schedule(self, item: BillableItem) -> ScheduleResult:
        """Desired dates for an item; cancelled items want none."""
        if item.config.cancelled:
            return ScheduleResult()
        return self.calculator.compute(item.config, self.today())

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _existing_by_key(
        self, parent: ParentRecord, item: BillableItem, outcome: ItemOutcome
    ) -> Dict[str, ForecastRecord]:
        """
        Existing records of this item on this parent, one per comparison key.

        Deprecated records never take part. Records without an explicit
        key are compared through a key derived from their expected date.
        """
        found = await self.store.search(
            Collection.FORECASTS, {ForecastProps.ITEM_KEY: item.stable_id}
        )
        groups: Dict[str, List[ForecastRecord]] = {}
        for raw in found:
            record = ForecastRecord(raw)
            if record.is_deprecated or not self._belongs_to(record, parent.id):
                continue
            key = key_or_derived(raw.properties, parent.id, item.stable_id)
            if key is None:
                logger.debug(f"Forecast record {record.id} has neither key nor expected date")
                continue
            groups.setdefault(key, []).append(record)

        by_key: Dict[str, ForecastRecord] = {}
        for key, records in groups.items():
            if len(records) == 1:
                by_key[key] = records[0]
                continue
            result = await self.canonicalizer.canonicalize(records, key)
            outcome.deprecated += len(result.deprecated)
            if result.canonical is not None:
                by_key[key] = result.canonical
        return by_key

    @staticmethod
    def _belongs_to(record: ForecastRecord, parent_id: str) -> bool:
        parsed = parse_key(record.key)
        if parsed is not None:
            return parsed.parent_id == parent_id
        return record.parent_id == parent_id

    def _stage_patch(
        self,
        record: ForecastRecord,
        key: str,
        stable_id: str,
        pipeline_id: str,
        target_stage: str,
        pause_reason: str,
    ) -> Dict[str, str]:
        """Fields of an editable record that drifted from their targets."""
        patch: Dict[str, str] = {}
        if record.pipeline != pipeline_id:
            patch[ForecastProps.PIPELINE] = pipeline_id
        if record.stage != target_stage:
            patch[ForecastProps.STAGE] = target_stage
        if not record.key:
            patch[ForecastProps.KEY] = key
        if record.item_key != stable_id:
            patch[ForecastProps.ITEM_KEY] = stable_id
        if record.pause_reason != pause_reason:
            patch[ForecastProps.PAUSE_REASON] = pause_reason
        return patch

    async def _create(
        self,
        parent: ParentRecord,
        item: BillableItem,
        key: str,
        ymd: str,
        pipeline_id: str,
        target_stage: str,
        pause_reason: str,
    ) -> None:
        label = item.name or item.stable_id
        properties = {
            ForecastProps.KEY: key,
            ForecastProps.PARENT_ID: parent.id,
            ForecastProps.ITEM_KEY: item.stable_id,
            ForecastProps.ITEM_ID: item.id,
            ForecastProps.EXPECTED_DATE: ymd,
            ForecastProps.PIPELINE: pipeline_id,
            ForecastProps.STAGE: target_stage,
            ForecastProps.SUBJECT: f"{parent.name or parent.id} | {label} | {ymd}",
            ForecastProps.PAUSE_REASON: pause_reason,
        }
        record = await self.store.create(Collection.FORECASTS, properties)
        logger.info(f"Created forecast record {record.id} for {key} in stage {target_stage}")

    async def _archive(self, record: ForecastRecord) -> None:
        await self.store.archive(Collection.FORECASTS, record.id)
        logger.info(f"Archived forecast record {record.id} ({record.key or record.expected_ymd})")

    async def _stamp(self, item: BillableItem, outcome: ItemOutcome) -> None:
        if outcome.writes == 0:
            return
        await self.store.update(
            Collection.ITEMS, item.id, {ItemProps.LAST_RECONCILED_AT: self.now()}
        )

    async def _report(self, err: Exception, item: BillableItem, context: str) -> None:
        await report_if_actionable(self.reporter, err, "item", item.id, context)
