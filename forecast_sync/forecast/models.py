"""
Forecast record model.

Property names used on store records, and a thin read-only view over a
forecast StoreRecord.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from forecast_sync.config import ForecastStages
from forecast_sync.dates import to_ymd
from forecast_sync.store.base import StoreRecord

CLONE_SOURCE_TYPE = "CLONE_OBJECTS"


class ForecastProps:
    """Forecast record properties."""
    KEY = "forecast_key"
    PARENT_ID = "parent_id"
    ITEM_KEY = "item_key"
    ITEM_ID = "item_id"
    EXPECTED_DATE = "expected_date"
    ORDERED_DATE = "ordered_date"
    PIPELINE = "pipeline"
    STAGE = "stage"
    SUBJECT = "subject"
    PAUSE_REASON = "pause_reason"
    SOURCE_TYPE = "source_type"
    DEPRECATED_REASON = "deprecated_reason"
    DEPRECATED_AT = "deprecated_at"
    CANCELLATION_REASON = "cancellation_reason"


class ItemProps:
    """Bookkeeping properties written on billable items."""
    PARENT_ID = "parent_id"
    LAST_RECONCILED_AT = "forecast_last_reconciled_at"
    REMAINING_INSTALLMENTS = "remaining_installments"
    NEXT_BILLING_DATE = "next_billing_date"
    LAST_TICKETED_DATE = "last_ticketed_date"


class InvoiceProps:
    """Invoice record properties."""
    KEY = "invoice_key"
    PARENT_ID = "parent_id"
    STAGE = "stage"


@dataclass(frozen=True)
class ForecastRecord:
    """Read-only view over a forecast StoreRecord."""
    record: StoreRecord

    @property
    def id(self) -> str:
        return self.record.id

    @property
    def key(self) -> str:
        return self.record.text(ForecastProps.KEY)

    @property
    def stage(self) -> str:
        return self.record.text(ForecastProps.STAGE)

    @property
    def pipeline(self) -> str:
        return self.record.text(ForecastProps.PIPELINE)

    @property
    def item_key(self) -> str:
        return self.record.text(ForecastProps.ITEM_KEY)

    @property
    def parent_id(self) -> str:
        return self.record.text(ForecastProps.PARENT_ID)

    @property
    def expected_ymd(self) -> Optional[str]:
        return to_ymd(self.record.get(ForecastProps.EXPECTED_DATE))

    @property
    def pause_reason(self) -> str:
        return self.record.text(ForecastProps.PAUSE_REASON)

    @property
    def created_at(self) -> Optional[datetime]:
        return self.record.created_at

    @property
    def is_clone(self) -> bool:
        return self.record.text(ForecastProps.SOURCE_TYPE).upper() == CLONE_SOURCE_TYPE

    @property
    def is_deprecated(self) -> bool:
        return bool(self.record.text(ForecastProps.DEPRECATED_REASON))

    def is_editable(self, stages: ForecastStages) -> bool:
        return stages.is_forecast_stage(self.stage)

    def is_protected(self, stages: ForecastStages) -> bool:
        return not stages.is_forecast_stage(self.stage)
