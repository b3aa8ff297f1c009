"""Remaining installment counts derived from real invoice records."""
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from forecast_sync.billing.schemas import BillableItem
from forecast_sync.forecast.keys import LEGACY_ITEM_MARKERS, SEPARATOR
from forecast_sync.forecast.models import InvoiceProps, ItemProps
from forecast_sync.store.base import Collection, RecordStore

logger = logging.getLogger(__name__)


@dataclass
class InstallmentsResult:
    item_id: str
    remaining: Optional[int] = None
    matched_invoices: int = 0
    changed: bool = False
    reason: str = "ok"


def _strip_item_markers(segment: str) -> str:
    stripped = True
    while stripped:
        stripped = False
        for marker in LEGACY_ITEM_MARKERS:
            if segment.startswith(marker):
                segment = segment[len(marker):]
                stripped = True
    return segment


def invoice_matches_item(invoice_key: Optional[str], stable_id: str) -> bool:
    """
    Whether an invoice's composite key refers to an item.

    Keys are ``::``-separated; a segment matches when it equals the
    stable id once any item markers (including doubled ones written by
    older passes) are removed. Matching whole segments keeps item ``12``
    from matching an invoice for item ``123``.
    """
    if not invoice_key or not stable_id:
        return False
    for segment in str(invoice_key).split(SEPARATOR):
        if _strip_item_markers(segment.strip()) == stable_id:
            return True
    return False


class RemainingInstallmentsCalculator:
    """remaining = max(0, total payments - matching invoices)."""

    def __init__(self, store: RecordStore, cancelled_stages: Iterable[str] = ("cancelled",)):
        self.store = store
        self.cancelled_stages = {str(s) for s in cancelled_stages}

    @staticmethod
    def applies_to(item: BillableItem) -> bool:
        """Fixed-term items, and auto-renew items still carrying a stale value."""
        return item.config.has_term or item.remaining_installments is not None

    async def count_matching_invoices(self, parent_id: str, stable_id: str) -> int:
        invoices = await self.store.search(
            Collection.INVOICES, {InvoiceProps.PARENT_ID: str(parent_id)}
        )
        return sum(
            1
            for inv in invoices
            if inv.text(InvoiceProps.STAGE) not in self.cancelled_stages
            and invoice_matches_item(inv.text(InvoiceProps.KEY), stable_id)
        )

    async def recalculate(self, parent_id: str, item: BillableItem) -> InstallmentsResult:
        result = InstallmentsResult(item_id=item.id)
        config = item.config

        if config.auto_renew:
            result.reason = "auto_renew"
        elif not item.stable_id:
            result.reason = "missing_item_key"
        elif not config.has_term:
            result.reason = "no_total_payments"
        else:
            result.matched_invoices = await self.count_matching_invoices(parent_id, item.stable_id)
            result.remaining = max(0, config.term - result.matched_invoices)

        if result.remaining == item.remaining_installments:
            return result

        value = "" if result.remaining is None else str(result.remaining)
        await self.store.update(
            Collection.ITEMS, item.id, {ItemProps.REMAINING_INSTALLMENTS: value}
        )
        result.changed = True
        logger.info(
            f"Remaining installments for item {item.id}: "
            f"{item.remaining_installments} -> {result.remaining} ({result.reason})"
        )
        return result
