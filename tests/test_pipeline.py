"""
Tests for the forecast sync pipeline.

Covers pass results, parent loading, orphan sweeping inside a pass,
batch runs and settings-driven wiring.
"""

import pytest
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, MagicMock

from forecast_sync.config import ForecastStages, Settings
from forecast_sync.forecast.reconciler import ItemFailure
from forecast_sync.pipeline import ForecastSyncEngine, PassResult, run_forecast_batch
from forecast_sync.store import DryRunStore
from forecast_sync.store.base import Collection

from tests.fakes import InMemoryStore


MONTHLY_3 = {"start_date": "2024-01-15", "frequency": "monthly", "term": "3"}


# =============================================================================
# PassResult
# =============================================================================

class TestPassResult:
    """Tests for PassResult serialisation."""

    def test_to_dict(self):
        result = PassResult(
            parent_id="P1",
            run_at=datetime(2024, 1, 10, tzinfo=timezone.utc),
            created=2,
            failures=[ItemFailure("501", "store_error", "boom")],
        )

        data = result.to_dict()

        assert data["parent_id"] == "P1"
        assert data["run_at"] == "2024-01-10T00:00:00+00:00"
        assert data["created"] == 2
        assert data["failures"] == [{"item_id": "501", "reason": "store_error", "message": "boom"}]
        assert "reason" not in data

    def test_reason_included_when_set(self):
        assert PassResult(parent_id="P1", reason="parent_cancelled").to_dict()["reason"] == (
            "parent_cancelled"
        )


# =============================================================================
# Passes
# =============================================================================

class TestForecastPass:
    """Tests for ForecastSyncEngine passes."""

    @pytest.mark.asyncio
    async def test_missing_parent_identity(self, engine, reporter):
        result = await engine.run_forecast_pass(None, [])

        assert result.success is False
        assert result.reason == "missing_parent_id"

    @pytest.mark.asyncio
    async def test_unknown_parent(self, engine):
        result = await engine.run_for_parent_id("P404")

        assert result.success is False
        assert result.reason == "parent_not_found"

    @pytest.mark.asyncio
    async def test_full_pass_counts(self, engine, store, reporter, seed_parent):
        seed_parent(items={"501": MONTHLY_3, "502": {**MONTHLY_3, "term": "2"}})

        result = await engine.run_for_parent_id("P1")

        assert result.success is True
        assert result.created == 5
        assert result.installments_updated == 2
        assert result.failures == []
        reporter.flush.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_removed_item_records_are_swept(self, engine, store, seed_parent):
        seed_parent(items={"501": MONTHLY_3, "502": MONTHLY_3})
        await engine.run_for_parent_id("P1")

        del store.records[Collection.ITEMS]["502"]
        result = await engine.run_for_parent_id("P1")

        assert result.orphans_deprecated == 3
        live = [
            r for r in store.all(Collection.FORECASTS)
            if r.properties.get("forecast_key", "").startswith("P1::LI:502")
        ]
        assert live == []

    @pytest.mark.asyncio
    async def test_load_parent_resolves_items(self, engine, seed_parent):
        seed_parent(items={"501": MONTHLY_3, "502": {"start_date": "2024-02-01"}})

        parent, items, failures = await engine.load_parent("P1")

        assert parent.id == "P1"
        assert parent.progress == "closedwon"
        assert sorted(i.id for i in items) == ["501", "502"]
        assert failures == []

    @pytest.mark.asyncio
    async def test_dry_run_leaves_store_untouched(self, stages, seed_parent, store):
        seed_parent(items={"501": MONTHLY_3})
        dry = DryRunStore(store)
        engine = ForecastSyncEngine(dry, stages, today=lambda: date(2024, 1, 10))

        result = await engine.run_for_parent_id("P1")

        assert result.created == 3
        assert store.writes == []
        assert [w[0] for w in dry.writes].count("create") == 3


# =============================================================================
# Batch
# =============================================================================

class TestBatch:
    """Tests for run_forecast_batch."""

    @pytest.mark.asyncio
    async def test_results_follow_input_order(self, engine, seed_parent):
        seed_parent(parent_id="P1", items={"501": MONTHLY_3})
        seed_parent(parent_id="P2", items={"601": MONTHLY_3})

        results = await run_forecast_batch(engine, ["P2", "P404", "P1"], concurrency=2)

        assert [r.parent_id for r in results] == ["P2", "P404", "P1"]
        assert [r.success for r in results] == [True, False, True]

    @pytest.mark.asyncio
    async def test_one_parent_failing_does_not_stop_others(self):
        engine = MagicMock()
        engine.run_for_parent_id = AsyncMock(
            side_effect=[PassResult(parent_id="P1"), RuntimeError("boom")]
        )

        results = await run_forecast_batch(engine, ["P1", "P2"], concurrency=1)

        assert results[0].success is True
        assert results[1].success is False
        assert results[1].reason == "error: boom"


# =============================================================================
# Configuration
# =============================================================================

class TestConfiguration:
    """Tests for settings-driven stage resolution."""

    def test_target_stage(self, stages):
        assert stages.target_stage("closedwon", automated=False) == "manual_forecast_95"
        assert stages.target_stage("QualifiedToBuy", automated=True) == "automated_forecast_25"
        assert stages.target_stage("closedlost", automated=False) is None
        assert stages.target_stage(None, automated=False) is None

    def test_stage_classification(self, stages):
        assert stages.is_forecast_stage("automated_forecast_50") is True
        assert stages.is_forecast_stage("manual_ready") is False
        assert stages.is_ready_stage("automated_ready") is True

    def test_unknown_pipeline_falls_back_to_manual(self, stages):
        assert stages.cancelled_stage("billing_automated") == "automated_cancelled"
        assert stages.cancelled_stage("legacy_pipeline") == "manual_cancelled"
        assert stages.ready_stage(None) == "manual_ready"

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("MANUAL_FORECAST_95_STAGE", "won_forecast")
        monkeypatch.setenv("PROGRESS_BUCKETS", '{"won": "95"}')

        stages = ForecastStages.from_settings(Settings(_env_file=None))

        assert stages.target_stage("won", automated=False) == "won_forecast"
        assert stages.target_stage("closedwon", automated=False) is None

    def test_engine_from_settings(self, settings):
        engine = ForecastSyncEngine.from_settings(InMemoryStore(), settings)

        assert engine.calculator.hard_cap == settings.FORECAST_HARD_CAP
        assert engine.calculator.horizon_years == settings.FORECAST_HORIZON_YEARS
        assert engine.installments.cancelled_stages == set(settings.INVOICE_CANCELLED_STAGES)

    @pytest.mark.asyncio
    async def test_lost_progress_override(self, monkeypatch, store, seed_parent):
        monkeypatch.setenv("LOST_PROGRESS_STAGES", '["abandoned"]')
        engine = ForecastSyncEngine.from_settings(store, Settings(_env_file=None))
        seed_parent(parent_id="P1", progress="abandoned")
        seed_parent(parent_id="P2", progress="closedlost")

        abandoned, _, _ = await engine.load_parent("P1")
        closedlost, _, _ = await engine.load_parent("P2")

        assert engine.stages.lost_progress == frozenset({"abandoned"})
        assert abandoned.cancelled is True
        assert closedlost.cancelled is False
