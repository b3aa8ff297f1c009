"""
Promotion State Machine.

    ForecastBucket(bucket x automated) --promote--> Ready
    Ready, Invoiced, Cancelled: terminal for this engine

Promotion is triggered from outside the reconciliation pass, either by
an explicit "bill now" override or by the occurrence date arriving for
an automated record. It never creates or deletes records.

After a successful promotion the owning item's bookkeeping moves
forward: last ticketed date becomes the promoted date (never moving
backwards) and the next billing hint becomes the earliest forecast date
still ahead.
"""
import logging
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional

from forecast_sync.config import ForecastStages
from forecast_sync.dates import to_ymd
from forecast_sync.forecast.canonical import elect_canonical
from forecast_sync.forecast.models import ForecastProps, ForecastRecord, ItemProps
from forecast_sync.store.base import Collection, RecordStore

logger = logging.getLogger(__name__)


class PromotionTrigger(str, Enum):
    """What asked for the promotion."""
    OVERRIDE = "override"           # explicit bill-now
    DATE_ARRIVED = "date_arrived"   # occurrence date reached (automated only)


class ForecastState(str, Enum):
    FORECAST = "forecast"
    READY = "ready"
    INVOICED = "invoiced"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


@dataclass
class PromotionResult:
    key: str
    promoted: bool = False
    reason: str = ""
    record_id: Optional[str] = None
    stage: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "promoted": self.promoted,
            "reason": self.reason,
            "record_id": self.record_id,
            "stage": self.stage,
        }


class PromotionStateMachine:
    """Moves forecast records to their pipeline's ready stage."""

    def __init__(self, store: RecordStore, stages: ForecastStages):
        self.store = store
        self.stages = stages

    def state_of(self, record: ForecastRecord) -> ForecastState:
        stage = record.stage
        if self.stages.is_forecast_stage(stage):
            return ForecastState.FORECAST
        if self.stages.is_ready_stage(stage):
            return ForecastState.READY
        for pipeline in (self.stages.manual, self.stages.automated):
            if stage == pipeline.invoiced:
                return ForecastState.INVOICED
            if stage == pipeline.cancelled:
                return ForecastState.CANCELLED
        return ForecastState.UNKNOWN

    def is_automated(self, record: ForecastRecord) -> bool:
        return record.pipeline == self.stages.automated.pipeline_id or (
            record.stage in self.stages.automated.forecast.values()
        )

    async def promote(
        self,
        key: str,
        trigger: PromotionTrigger = PromotionTrigger.OVERRIDE,
        today: Optional[date] = None,
    ) -> PromotionResult:
        """Promote the canonical record for ``key`` to ready."""
        result = PromotionResult(key=key)

        found = await self.store.search(Collection.FORECASTS, {ForecastProps.KEY: key})
        records = [
            r for r in (ForecastRecord(rec) for rec in found)
            if r.key == key and not r.is_deprecated
        ]
        record = elect_canonical(records, key, self.stages)
        if record is None:
            result.reason = "missing_forecast_record"
            return result

        result.record_id = record.id
        result.stage = record.stage
        state = self.state_of(record)

        if state == ForecastState.READY:
            result.reason = "already_ready"
            return result
        if state != ForecastState.FORECAST:
            result.reason = f"not_forecast_stage:{record.stage}"
            return result

        if trigger == PromotionTrigger.DATE_ARRIVED:
            if not self.is_automated(record):
                result.reason = "not_automated"
                return result
            expected = record.expected_ymd
            if today is None or expected is None or expected > today.isoformat():
                result.reason = "not_due"
                return result

        ready = self.stages.ready_stage(record.pipeline or None)
        await self.store.update(Collection.FORECASTS, record.id, {ForecastProps.STAGE: ready})
        logger.info(f"Promoted forecast record {record.id} ({key}) to {ready} via {trigger.value}")

        result.promoted = True
        result.reason = "promoted"
        result.stage = ready

        await self.advance_item_bookkeeping(record)
        return result

    async def promote_due(self, parent_id: str, today: date) -> List[PromotionResult]:
        """Promote every automated forecast record of a parent that is due."""
        found = await self.store.search(
            Collection.FORECASTS, {ForecastProps.PARENT_ID: str(parent_id)}
        )
        due = sorted(
            {
                r.key
                for r in (ForecastRecord(rec) for rec in found)
                if r.key
                and not r.is_deprecated
                and r.is_editable(self.stages)
                and self.is_automated(r)
                and r.expected_ymd is not None
                and r.expected_ymd <= today.isoformat()
            }
        )
        results = []
        for key in due:
            results.append(await self.promote(key, PromotionTrigger.DATE_ARRIVED, today))
        return results

    async def advance_item_bookkeeping(self, record: ForecastRecord) -> bool:
        """
        Move the item's last ticketed date and next billing hint past a
        promoted occurrence. Returns True when the item was written.
        """
        item_id = record.record.text(ForecastProps.ITEM_ID)
        promoted_ymd = record.expected_ymd
        if not item_id or not promoted_ymd:
            return False

        item = await self.store.get(Collection.ITEMS, item_id)
        if item is None:
            logger.warning(f"Item {item_id} for promoted record {record.id} not found")
            return False

        current_last = to_ymd(item.get(ItemProps.LAST_TICKETED_DATE))
        new_last = max(filter(None, [current_last, promoted_ymd]))

        siblings = await self.store.search(
            Collection.FORECASTS, {ForecastProps.ITEM_KEY: record.item_key}
        )
        upcoming = sorted(
            ymd
            for ymd in (
                s.expected_ymd
                for s in (ForecastRecord(rec) for rec in siblings)
                if s.id != record.id
                and not s.is_deprecated
                and s.is_editable(self.stages)
                and s.parent_id == record.parent_id
            )
            if ymd and ymd > new_last
        )
        next_hint = upcoming[0] if upcoming else ""

        patch: Dict[str, str] = {}
        if current_last != new_last:
            patch[ItemProps.LAST_TICKETED_DATE] = new_last
        if (to_ymd(item.get(ItemProps.NEXT_BILLING_DATE)) or "") != next_hint:
            patch[ItemProps.NEXT_BILLING_DATE] = next_hint
        if not patch:
            return False

        await self.store.update(Collection.ITEMS, item_id, patch)
        logger.info(f"Advanced bookkeeping for item {item_id}: {patch}")
        return True
