"""
Tests for remaining installment counts.
"""

import pytest

from forecast_sync.billing.installments import (
    RemainingInstallmentsCalculator,
    invoice_matches_item,
)
from forecast_sync.billing.schemas import resolve_billing_item
from forecast_sync.store.base import Collection


@pytest.fixture
def calculator(store):
    return RemainingInstallmentsCalculator(store, cancelled_stages=["cancelled"])


def add_invoice(store, key, stage="paid", parent_id="P1"):
    store.add(Collection.INVOICES, {"invoice_key": key, "parent_id": parent_id, "stage": stage})


def item_with(store, **props):
    store.add(Collection.ITEMS, {"parent_id": "P1", **props}, record_id="501")
    return resolve_billing_item("501", props)


# =============================================================================
# Invoice matching
# =============================================================================

class TestInvoiceMatching:
    """Tests for invoice_matches_item."""

    def test_matches_marked_segment(self):
        assert invoice_matches_item("P1::LI:501::2024-01-15", "501") is True

    def test_matches_legacy_and_bare_segments(self):
        assert invoice_matches_item("P1::LIK:501::2024-01-15", "501") is True
        assert invoice_matches_item("P1::501::2024-01-15", "501") is True

    def test_matches_doubled_markers(self):
        assert invoice_matches_item("P1::LI:LI:987::2024-01-15", "987") is True
        assert invoice_matches_item("P1::LIK:LI:987::2024-01-15", "987") is True

    def test_prefix_is_not_a_match(self):
        assert invoice_matches_item("P1::LI:5012::2024-01-15", "501") is False
        assert invoice_matches_item("P1::LI:50::2024-01-15", "501") is False

    def test_empty_inputs(self):
        assert invoice_matches_item(None, "501") is False
        assert invoice_matches_item("P1::LI:501::2024-01-15", "") is False


# =============================================================================
# Recalculation
# =============================================================================

class TestRecalculate:
    """Tests for RemainingInstallmentsCalculator.recalculate."""

    @pytest.mark.asyncio
    async def test_total_minus_matching_invoices(self, calculator, store):
        item = item_with(store, term="6")
        add_invoice(store, "P1::LI:501::2024-01-15")
        add_invoice(store, "P1::LI:501::2024-02-15")
        add_invoice(store, "P1::LI:501::2024-03-15", stage="cancelled")
        add_invoice(store, "P1::LI:502::2024-01-15")
        add_invoice(store, "P2::LI:501::2024-01-15", parent_id="P2")

        result = await calculator.recalculate("P1", item)

        assert result.matched_invoices == 2
        assert result.remaining == 4
        assert result.changed is True
        assert store.records[Collection.ITEMS]["501"].properties["remaining_installments"] == "4"

    @pytest.mark.asyncio
    async def test_doubled_marker_invoice_counts(self, calculator, store):
        store.add(Collection.ITEMS, {"parent_id": "P1"}, record_id="987")
        item = resolve_billing_item("987", {"term": "6"})
        add_invoice(store, "P1::LI:LI:987::2024-01-15")

        result = await calculator.recalculate("P1", item)

        assert result.matched_invoices == 1
        assert result.remaining == 5

    @pytest.mark.asyncio
    async def test_each_new_invoice_lowers_the_count(self, calculator, store):
        item = item_with(store, term="6", remaining_installments="4")
        for month in (1, 2, 3):
            add_invoice(store, f"P1::LI:501::2024-0{month}-15")

        result = await calculator.recalculate("P1", item)

        assert result.remaining == 3

    @pytest.mark.asyncio
    async def test_never_negative(self, calculator, store):
        item = item_with(store, term="2")
        for month in (1, 2, 3, 4):
            add_invoice(store, f"P1::LI:501::2024-0{month}-15")

        result = await calculator.recalculate("P1", item)

        assert result.remaining == 0

    @pytest.mark.asyncio
    async def test_unchanged_value_is_not_written(self, calculator, store):
        item = item_with(store, term="6", remaining_installments="4")
        add_invoice(store, "P1::LI:501::2024-01-15")
        add_invoice(store, "P1::LI:501::2024-02-15")

        result = await calculator.recalculate("P1", item)

        assert result.remaining == 4
        assert result.changed is False
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_auto_renew_clears_stale_value(self, calculator, store):
        item = item_with(store, term="6", auto_renew="true", remaining_installments="3")

        result = await calculator.recalculate("P1", item)

        assert result.reason == "auto_renew"
        assert result.remaining is None
        assert store.records[Collection.ITEMS]["501"].properties["remaining_installments"] == ""

    @pytest.mark.asyncio
    async def test_no_term_clears_stale_value(self, calculator, store):
        item = item_with(store, frequency="monthly", remaining_installments="3")

        result = await calculator.recalculate("P1", item)

        assert result.reason == "no_total_payments"
        assert result.changed is True

    @pytest.mark.asyncio
    async def test_matches_on_stable_identity(self, calculator, store):
        item = item_with(store, term="6", item_key="abc-1")
        add_invoice(store, "P1::LI:abc-1::2024-01-15")
        add_invoice(store, "P1::LI:501::2024-01-15")

        result = await calculator.recalculate("P1", item)

        assert result.matched_invoices == 1
        assert result.remaining == 5


class TestAppliesTo:
    """Tests for RemainingInstallmentsCalculator.applies_to."""

    def test_fixed_term(self):
        assert RemainingInstallmentsCalculator.applies_to(resolve_billing_item("1", {"term": "3"}))

    def test_auto_renew_with_stale_value(self):
        item = resolve_billing_item("1", {"remaining_installments": "2"})
        assert RemainingInstallmentsCalculator.applies_to(item)

    def test_auto_renew_without_value(self):
        item = resolve_billing_item("1", {"frequency": "monthly"})
        assert not RemainingInstallmentsCalculator.applies_to(item)
