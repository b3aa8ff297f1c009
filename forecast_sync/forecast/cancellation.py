"""Parent cancellation: forecast state is cleared instead of recomputed."""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from forecast_sync.billing.schemas import BillableItem, ParentRecord
from forecast_sync.config import ForecastStages
from forecast_sync.forecast.models import ForecastProps, ForecastRecord, ItemProps
from forecast_sync.reporting import ErrorReporter, report_if_actionable
from forecast_sync.store.base import Collection, RecordStore

logger = logging.getLogger(__name__)

DEFAULT_CANCELLATION_REASON = "Parent cancelled"


@dataclass
class CancellationResult:
    cancelled: List[str] = field(default_factory=list)
    hints_cleared: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class ParentCancellationService:
    """Moves every editable forecast record of a cancelled parent to cancelled."""

    def __init__(
        self,
        store: RecordStore,
        stages: ForecastStages,
        reporter: Optional[ErrorReporter] = None,
    ):
        self.store = store
        self.stages = stages
        self.reporter = reporter

    async def cancel_parent(
        self, parent: ParentRecord, items: Sequence[BillableItem]
    ) -> CancellationResult:
        result = CancellationResult()
        reason = parent.cancellation_reason or DEFAULT_CANCELLATION_REASON

        found = await self.store.search(
            Collection.FORECASTS, {ForecastProps.PARENT_ID: parent.id}
        )
        for record in (ForecastRecord(r) for r in found):
            if record.is_deprecated or not record.is_editable(self.stages):
                continue
            try:
                await self.store.update(
                    Collection.FORECASTS,
                    record.id,
                    {
                        ForecastProps.STAGE: self.stages.cancelled_stage(record.pipeline),
                        ForecastProps.CANCELLATION_REASON: reason,
                    },
                )
                result.cancelled.append(record.id)
            except Exception as e:
                logger.error(f"Failed to cancel forecast record {record.id}: {e}")
                result.failed.append(record.id)
                await report_if_actionable(
                    self.reporter, e, "forecast", record.id, "cancellation failed"
                )

        for item in items:
            if item.config.next_billing_date is None:
                continue
            try:
                await self.store.update(
                    Collection.ITEMS, item.id, {ItemProps.NEXT_BILLING_DATE: ""}
                )
                result.hints_cleared.append(item.id)
            except Exception as e:
                logger.error(f"Failed to clear next billing date on item {item.id}: {e}")
                result.failed.append(item.id)
                await report_if_actionable(
                    self.reporter, e, "item", item.id, "cancellation failed"
                )

        logger.info(
            f"Parent {parent.id} cancelled: {len(result.cancelled)} forecast records "
            f"moved to cancelled, {len(result.hints_cleared)} billing hints cleared"
        )
        return result
