# Forecast Module
# Keeps forecast records in line with each billable item's schedule
#
# Components:
# - keys.py: identity key build/parse
# - models.py: record property names, ForecastRecord view
# - canonical.py: CanonicalizationService (one record per key)
# - orphans.py: OrphanSweeper
# - reconciler.py: ForecastReconciler
# - promotion.py: PromotionStateMachine
# - cancellation.py: ParentCancellationService

from .keys import build_key, parse_key, item_identity_from_key, key_or_derived, ParsedKey
from .models import ForecastProps, ForecastRecord, InvoiceProps, ItemProps
from .canonical import (
    CanonicalizationService,
    CanonicalResult,
    canonical_sort_key,
    elect_canonical,
)
from .orphans import OrphanSweeper, SweepResult
from .reconciler import ForecastReconciler, ItemFailure, ItemOutcome
from .promotion import (
    PromotionStateMachine,
    PromotionResult,
    PromotionTrigger,
    ForecastState,
)
from .cancellation import ParentCancellationService, CancellationResult

__all__ = [
    "build_key",
    "parse_key",
    "item_identity_from_key",
    "key_or_derived",
    "ParsedKey",
    "ForecastProps",
    "ForecastRecord",
    "InvoiceProps",
    "ItemProps",
    "CanonicalizationService",
    "CanonicalResult",
    "canonical_sort_key",
    "elect_canonical",
    "OrphanSweeper",
    "SweepResult",
    "ForecastReconciler",
    "ItemFailure",
    "ItemOutcome",
    "PromotionStateMachine",
    "PromotionResult",
    "PromotionTrigger",
    "ForecastState",
    "ParentCancellationService",
    "CancellationResult",
]
