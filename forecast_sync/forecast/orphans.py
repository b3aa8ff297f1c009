"""Orphan sweeping: forecast records whose billable item no longer exists."""
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from forecast_sync.config import ForecastStages
from forecast_sync.forecast.canonical import CanonicalizationService
from forecast_sync.forecast.keys import item_identity_from_key
from forecast_sync.forecast.models import ForecastProps, ForecastRecord
from forecast_sync.reporting import ErrorReporter, report_if_actionable
from forecast_sync.store.base import Collection, RecordStore

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    scanned: int = 0
    deprecated: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class OrphanSweeper:
    """
    Deprecates forecast-stage records of a parent whose key points at an
    item that is not in the parent's current item list.
    """

    def __init__(
        self,
        store: RecordStore,
        stages: ForecastStages,
        canonicalizer: CanonicalizationService,
        reporter: Optional[ErrorReporter] = None,
    ):
        self.store = store
        self.stages = stages
        self.canonicalizer = canonicalizer
        self.reporter = reporter

    async def sweep(self, parent_id: str, valid_item_ids: Iterable[str]) -> SweepResult:
        valid = {str(i).strip() for i in valid_item_ids if i}
        result = SweepResult()

        found = await self.store.search(
            Collection.FORECASTS, {ForecastProps.PARENT_ID: str(parent_id)}
        )
        records = [
            r for r in (ForecastRecord(rec) for rec in found)
            if r.is_editable(self.stages) and not r.is_deprecated
        ]
        result.scanned = len(records)

        for record in records:
            identity = item_identity_from_key(record.key)
            if not identity or identity in valid:
                continue
            try:
                await self.canonicalizer.deprecate(record, f"orphan_item:{identity}")
                result.deprecated.append(record.id)
            except Exception as e:
                logger.error(f"Failed to deprecate orphan forecast {record.id} for parent {parent_id}: {e}")
                result.failed.append(record.id)
                await report_if_actionable(
                    self.reporter, e, "forecast", record.id, "orphan sweep failed"
                )

        logger.info(
            f"Orphan sweep for parent {parent_id}: scanned={result.scanned} "
            f"deprecated={len(result.deprecated)} failed={len(result.failed)}"
        )
        return result
