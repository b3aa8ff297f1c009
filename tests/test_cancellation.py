"""Tests for parent cancellation."""

import pytest

from forecast_sync.billing.schemas import ParentRecord, resolve_billing_item
from forecast_sync.errors import ActionableStoreError
from forecast_sync.forecast.cancellation import ParentCancellationService
from forecast_sync.store.base import Collection


@pytest.fixture
def service(store, stages, reporter):
    return ParentCancellationService(store, stages, reporter)


def add(store, key, stage="manual_forecast_95", pipeline="billing_manual", **props):
    return store.add(
        Collection.FORECASTS,
        {"forecast_key": key, "parent_id": "P1", "stage": stage, "pipeline": pipeline, **props},
    )


class TestParentCancellation:
    """Tests for ParentCancellationService.cancel_parent."""

    @pytest.mark.asyncio
    async def test_editable_records_move_to_cancelled(self, service, store):
        manual = add(store, "P1::LI:501::2024-01-15")
        automated = add(
            store, "P1::LI:502::2024-01-15", stage="automated_forecast_50", pipeline="billing_automated"
        )
        invoiced = add(store, "P1::LI:501::2023-12-15", stage="manual_invoiced")

        result = await service.cancel_parent(
            ParentRecord(id="P1", cancelled=True, cancellation_reason="Customer churned"), []
        )

        assert sorted(result.cancelled) == sorted([manual.id, automated.id])
        records = store.records[Collection.FORECASTS]
        assert records[manual.id].properties["stage"] == "manual_cancelled"
        assert records[manual.id].properties["cancellation_reason"] == "Customer churned"
        assert records[automated.id].properties["stage"] == "automated_cancelled"
        assert records[invoiced.id].properties["stage"] == "manual_invoiced"

    @pytest.mark.asyncio
    async def test_default_reason(self, service, store):
        record = add(store, "P1::LI:501::2024-01-15")

        await service.cancel_parent(ParentRecord(id="P1", cancelled=True), [])

        props = store.records[Collection.FORECASTS][record.id].properties
        assert props["cancellation_reason"] == "Parent cancelled"

    @pytest.mark.asyncio
    async def test_next_billing_hints_are_cleared(self, service, store):
        store.add(Collection.ITEMS, {"next_billing_date": "2024-02-01"}, record_id="501")
        store.add(Collection.ITEMS, {}, record_id="502")
        items = [
            resolve_billing_item("501", {"next_billing_date": "2024-02-01"}),
            resolve_billing_item("502", {}),
        ]

        result = await service.cancel_parent(ParentRecord(id="P1", cancelled=True), items)

        assert result.hints_cleared == ["501"]
        assert store.records[Collection.ITEMS]["501"].properties["next_billing_date"] == ""

    @pytest.mark.asyncio
    async def test_failures_are_collected(self, service, store, reporter):
        bad = add(store, "P1::LI:501::2024-01-15")
        good = add(store, "P1::LI:501::2024-02-15")
        store.update_errors[bad.id] = ActionableStoreError("rejected", status=400)

        result = await service.cancel_parent(ParentRecord(id="P1", cancelled=True), [])

        assert result.failed == [bad.id]
        assert result.cancelled == [good.id]
        reporter.report.assert_awaited_once()


class TestCancelledParentPass:
    """Tests for a full pass over a cancelled parent."""

    @pytest.mark.asyncio
    async def test_lost_parent_cancels_instead_of_recomputing(self, engine, store, seed_parent):
        seed_parent(items={"501": {"start_date": "2024-01-15", "frequency": "monthly", "term": "3"}})
        await engine.run_for_parent_id("P1")

        store.records[Collection.PARENTS]["P1"].properties["progress"] = "closedlost"
        result = await engine.run_for_parent_id("P1")

        assert result.reason == "parent_cancelled"
        assert result.deleted == 3
        assert result.created == 0
        stages = {r.properties["stage"] for r in store.all(Collection.FORECASTS)}
        assert stages == {"manual_cancelled"}
