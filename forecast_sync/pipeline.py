"""
Forecast Sync Pipeline.

Orchestrates one reconciliation pass for a parent record:
1. Parent cancelled: move editable forecast records to cancelled, stop
2. Sweep orphaned forecast records (items no longer on the parent)
3. Reconcile each billable item's forecast records
4. Recompute remaining installments where applicable
5. Flush queued error reports

Parents are independent and can be processed concurrently with
``run_forecast_batch``; work within a parent is sequential.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from forecast_sync.billing.installments import RemainingInstallmentsCalculator
from forecast_sync.billing.schedule import BillingScheduleCalculator, billing_today
from forecast_sync.billing.schemas import (
    BillableItem,
    ParentRecord,
    resolve_billing_item,
    resolve_parent,
)
from forecast_sync.config import ForecastStages, Settings
from forecast_sync.errors import ValidationError
from forecast_sync.forecast.cancellation import ParentCancellationService
from forecast_sync.forecast.canonical import CanonicalizationService
from forecast_sync.forecast.models import ItemProps
from forecast_sync.forecast.orphans import OrphanSweeper
from forecast_sync.forecast.promotion import PromotionStateMachine
from forecast_sync.forecast.reconciler import ForecastReconciler, ItemFailure
from forecast_sync.reporting import ErrorReporter, report_if_actionable
from forecast_sync.store.base import Collection, RecordStore

logger = logging.getLogger(__name__)


@dataclass
class PassResult:
    """Result of one reconciliation pass over a parent."""
    parent_id: str
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    success: bool = True
    reason: Optional[str] = None

    # Forecast record writes
    created: int = 0
    updated: int = 0
    deleted: int = 0
    deprecated: int = 0
    skipped: int = 0

    # Side results
    orphans_deprecated: int = 0
    installments_updated: int = 0
    degraded_items: List[str] = field(default_factory=list)

    # Errors
    failures: List[ItemFailure] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging / CLI output."""
        out: Dict[str, Any] = {
            "parent_id": self.parent_id,
            "run_at": self.run_at.isoformat(),
            "success": self.success,
            "created": self.created,
            "updated": self.updated,
            "deleted": self.deleted,
            "deprecated": self.deprecated,
            "skipped": self.skipped,
            "orphans_deprecated": self.orphans_deprecated,
            "installments_updated": self.installments_updated,
            "degraded_items": self.degraded_items,
            "failures": [f.to_dict() for f in self.failures],
        }
        if self.reason:
            out["reason"] = self.reason
        return out


class ForecastSyncEngine:
    """Wires the forecast components around one store."""

    def __init__(
        self,
        store: RecordStore,
        stages: ForecastStages,
        hard_cap: int = 24,
        horizon_years: int = 2,
        billing_tz: str = "America/Montevideo",
        reporter: Optional[ErrorReporter] = None,
        today: Optional[Callable[[], date]] = None,
        invoice_cancelled_stages: Iterable[str] = ("cancelled",),
    ):
        self.store = store
        self.stages = stages
        self.reporter = reporter
        self.today = today or (lambda: billing_today(billing_tz))

        self.calculator = BillingScheduleCalculator(hard_cap=hard_cap, horizon_years=horizon_years)
        self.canonicalizer = CanonicalizationService(store, stages)
        self.sweeper = OrphanSweeper(store, stages, self.canonicalizer, reporter)
        self.reconciler = ForecastReconciler(
            store,
            stages,
            self.calculator,
            self.canonicalizer,
            today=self.today,
            reporter=reporter,
        )
        self.installments = RemainingInstallmentsCalculator(store, invoice_cancelled_stages)
        self.cancellation = ParentCancellationService(store, stages, reporter)
        self.promotion = PromotionStateMachine(store, stages)

    @classmethod
    def from_settings(
        cls,
        store: RecordStore,
        settings: Settings,
        reporter: Optional[ErrorReporter] = None,
    ) -> "ForecastSyncEngine":
        return cls(
            store,
            ForecastStages.from_settings(settings),
            hard_cap=settings.FORECAST_HARD_CAP,
            horizon_years=settings.FORECAST_HORIZON_YEARS,
            billing_tz=settings.BILLING_TZ,
            reporter=reporter,
            invoice_cancelled_stages=settings.INVOICE_CANCELLED_STAGES,
        )

    # =========================================================================
    # Loading
    # =========================================================================

    async def load_parent(
        self, parent_id: str
    ) -> Tuple[Optional[ParentRecord], List[BillableItem], List[ItemFailure]]:
        """
        Read a parent and its billable items from the store.

        Items that cannot be resolved are returned as failures instead
        of aborting the load.
        """
        raw_parent = await self.store.get(Collection.PARENTS, parent_id)
        if raw_parent is None:
            return None, [], []
        parent = resolve_parent(
            raw_parent.id, raw_parent.properties, lost_stages=self.stages.lost_progress
        )

        raw_items = await self.store.search(Collection.ITEMS, {ItemProps.PARENT_ID: parent.id})
        items: List[BillableItem] = []
        failures: List[ItemFailure] = []
        for raw in raw_items:
            try:
                items.append(resolve_billing_item(raw.id, raw.properties))
            except ValidationError as e:
                failures.append(ItemFailure(str(raw.id), e.reason, str(e)))
        return parent, items, failures

    # =========================================================================
    # Passes
    # =========================================================================

    async def run_forecast_pass(
        self, parent: ParentRecord, items: Sequence[BillableItem]
    ) -> PassResult:
        """
        Run one reconciliation pass for a parent.

        Args:
            parent: Parent record (identity, progress, cancellation)
            items: The parent's current billable items

        Returns:
            PassResult with write counts and per-item failures
        """
        result = PassResult(parent_id=parent.id if parent else "")

        if parent is None or not parent.id:
            result.success = False
            result.reason = "missing_parent_id"
            return result

        logger.info(f"Forecast pass for parent {parent.id}: {len(items)} items, progress={parent.progress}")

        try:
            if parent.cancelled:
                cancelled = await self.cancellation.cancel_parent(parent, items)
                result.deleted = len(cancelled.cancelled)
                result.reason = "parent_cancelled"
                for failed_id in cancelled.failed:
                    result.failures.append(ItemFailure(failed_id, "cancellation_failed"))
                return result

            await self._sweep(parent, items, result)

            for item in items:
                outcome = await self.reconciler.reconcile_item_safe(parent, item)
                result.created += outcome.created
                result.updated += outcome.updated
                result.deleted += outcome.deleted
                result.deprecated += outcome.deprecated
                if outcome.skipped:
                    result.skipped += 1
                if outcome.degraded:
                    result.degraded_items.append(item.id)
                if outcome.failure:
                    result.failures.append(outcome.failure)
                    continue

                if self.installments.applies_to(item):
                    await self._recalculate_installments(parent, item, result)

            logger.info(f"Forecast pass for parent {parent.id} done: {result.to_dict()}")
            return result
        finally:
            if self.reporter is not None:
                await self.reporter.flush()

    async def run_for_parent_id(self, parent_id: str) -> PassResult:
        """Load a parent from the store and run a pass over it."""
        parent, items, load_failures = await self.load_parent(parent_id)
        if parent is None:
            return PassResult(parent_id=str(parent_id), success=False, reason="parent_not_found")

        result = await self.run_forecast_pass(parent, items)
        result.failures = load_failures + result.failures
        result.skipped += len(load_failures)
        return result

    async def _sweep(
        self, parent: ParentRecord, items: Sequence[BillableItem], result: PassResult
    ) -> None:
        try:
            sweep = await self.sweeper.sweep(parent.id, [i.stable_id for i in items])
        except Exception as e:
            logger.error(f"Orphan sweep failed for parent {parent.id}: {e}")
            result.failures.append(ItemFailure(parent.id, "orphan_sweep_failed", str(e)))
            await report_if_actionable(self.reporter, e, "parent", parent.id, "orphan sweep failed")
            return
        result.orphans_deprecated = len(sweep.deprecated)
        for failed_id in sweep.failed:
            result.failures.append(ItemFailure(failed_id, "orphan_deprecation_failed"))

    async def _recalculate_installments(
        self, parent: ParentRecord, item: BillableItem, result: PassResult
    ) -> None:
        try:
            installments = await self.installments.recalculate(parent.id, item)
        except Exception as e:
            logger.error(f"Remaining installments failed for item {item.id}: {e}")
            result.failures.append(ItemFailure(item.id, "installments_failed", str(e)))
            await report_if_actionable(self.reporter, e, "item", item.id, "remaining installments failed")
            return
        if installments.changed:
            result.installments_updated += 1


async def run_forecast_batch(
    engine: ForecastSyncEngine,
    parent_ids: Sequence[str],
    concurrency: int = 4,
) -> List[PassResult]:
    """
    Run passes for several parents concurrently.

    One parent failing never affects the others; its result carries
    success=False and the error as reason.
    """
    semaphore = asyncio.Semaphore(max(1, concurrency))

    async def run_one(parent_id: str) -> PassResult:
        async with semaphore:
            try:
                return await engine.run_for_parent_id(parent_id)
            except Exception as e:
                logger.error(f"Forecast pass failed for parent {parent_id}: {e}")
                return PassResult(parent_id=str(parent_id), success=False, reason=f"error: {e}")

    return list(await asyncio.gather(*(run_one(pid) for pid in parent_ids)))
