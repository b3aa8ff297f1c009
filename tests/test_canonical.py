"""
Tests for canonical record election and deprecation.
"""

import pytest
from datetime import datetime, timezone

from forecast_sync.forecast.canonical import (
    CanonicalizationService,
    canonical_sort_key,
    elect_canonical,
)
from forecast_sync.forecast.models import ForecastRecord
from forecast_sync.store.base import Collection, StoreRecord


KEY = "P1::LI:501::2024-01-15"
NOW = "2024-01-10T12:00:00Z"


def record(record_id, created_at=None, stage="manual_forecast_95", **props):
    properties = {
        "forecast_key": KEY,
        "parent_id": "P1",
        "item_key": "501",
        "expected_date": "2024-01-15",
        "pipeline": "billing_manual",
        "stage": stage,
    }
    properties.update(props)
    return ForecastRecord(StoreRecord(str(record_id), properties, created_at))


def at(minute):
    return datetime(2024, 1, 1, 0, minute, tzinfo=timezone.utc)


@pytest.fixture
def service(store, stages):
    return CanonicalizationService(store, stages, now=lambda: NOW)


# =============================================================================
# Ordering
# =============================================================================

class TestCanonicalSortKey:
    """Tests for the election ordering."""

    def test_oldest_first(self):
        records = [record(3, at(3)), record(1, at(1)), record(2, at(2))]
        assert [r.id for r in sorted(records, key=canonical_sort_key)] == ["1", "2", "3"]

    def test_missing_timestamp_sorts_last(self):
        records = [record(1, None), record(2, at(30))]
        assert [r.id for r in sorted(records, key=canonical_sort_key)] == ["2", "1"]

    def test_id_breaks_ties_numerically(self):
        records = [record(10, at(1)), record(9, at(1))]
        assert [r.id for r in sorted(records, key=canonical_sort_key)] == ["9", "10"]

    def test_naive_timestamps_are_treated_as_utc(self):
        naive = record(1, datetime(2024, 1, 1, 0, 5))
        aware = record(2, at(1))
        assert [r.id for r in sorted([naive, aware], key=canonical_sort_key)] == ["2", "1"]


# =============================================================================
# Election
# =============================================================================

class TestElectCanonical:
    """Tests for elect_canonical."""

    def test_empty(self, stages):
        assert elect_canonical([], KEY, stages) is None

    def test_protected_wins_over_older_editable(self, stages):
        editable = record(1, at(1))
        invoiced = record(2, at(5), stage="manual_invoiced")
        assert elect_canonical([editable, invoiced], KEY, stages).id == "2"

    def test_clone_loses_to_original(self, stages):
        clone = record(1, at(1), source_type="CLONE_OBJECTS")
        original = record(2, at(5))
        assert elect_canonical([clone, original], KEY, stages).id == "2"

    def test_exact_key_beats_legacy(self, stages):
        legacy = record(1, at(1), forecast_key="")
        exact = record(2, at(5))
        assert elect_canonical([legacy, exact], KEY, stages).id == "2"

    def test_only_clones_falls_back_to_oldest(self, stages):
        a = record(1, at(2), source_type="CLONE_OBJECTS")
        b = record(2, at(1), source_type="CLONE_OBJECTS")
        assert elect_canonical([a, b], KEY, stages).id == "2"


# =============================================================================
# Canonicalization service
# =============================================================================

class TestCanonicalizationService:
    """Tests for CanonicalizationService."""

    @pytest.mark.asyncio
    async def test_three_duplicates(self, service, store):
        """The oldest is kept; the two newer copies lose their key."""
        t1 = store.add(Collection.FORECASTS, record(0).record.properties, created_at=at(1))
        t2 = store.add(Collection.FORECASTS, record(0).record.properties, created_at=at(2))
        t3 = store.add(Collection.FORECASTS, record(0).record.properties, created_at=at(3))
        records = [ForecastRecord(r) for r in (t3, t1, t2)]

        result = await service.canonicalize(records, KEY)

        assert result.canonical.id == t1.id
        assert sorted(result.deprecated) == sorted([t2.id, t3.id])
        for loser in (t2, t3):
            props = store.records[Collection.FORECASTS][loser.id].properties
            assert props["forecast_key"] == ""
            assert props["stage"] == "manual_cancelled"
            assert props["deprecated_reason"] == f"duplicate_of:{t1.id}"
            assert props["deprecated_at"] == NOW
        assert store.records[Collection.FORECASTS][t1.id].properties["forecast_key"] == KEY

    @pytest.mark.asyncio
    async def test_protected_loser_is_left_alone(self, service, store):
        first = store.add(
            Collection.FORECASTS, record(0, stage="manual_ready").record.properties, created_at=at(1)
        )
        second = store.add(
            Collection.FORECASTS, record(0, stage="manual_invoiced").record.properties, created_at=at(2)
        )

        result = await service.canonicalize([ForecastRecord(first), ForecastRecord(second)], KEY)

        assert result.canonical.id == first.id
        assert result.protected_duplicates == [second.id]
        assert result.deprecated == []
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_single_candidate_needs_no_writes(self, service, store):
        only = store.add(Collection.FORECASTS, record(0).record.properties)

        result = await service.canonicalize([ForecastRecord(only)], KEY)

        assert result.canonical.id == only.id
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_automated_loser_goes_to_automated_cancelled(self, service, store):
        props = record(0, stage="automated_forecast_95", pipeline="billing_automated").record.properties
        keep = store.add(Collection.FORECASTS, props, created_at=at(1))
        lose = store.add(Collection.FORECASTS, props, created_at=at(2))

        await service.canonicalize([ForecastRecord(keep), ForecastRecord(lose)], KEY)

        assert store.records[Collection.FORECASTS][lose.id].properties["stage"] == "automated_cancelled"

    def test_candidates_include_legacy_same_item_and_date(self, service):
        exact = record(1)
        legacy = record(2, forecast_key="P1::LIK:501::2024-01-15")
        other_date = record(3, forecast_key="", expected_date="2024-02-15")
        deprecated = record(4, deprecated_reason="duplicate_of:1")

        candidates = service.candidates_for([exact, legacy, other_date, deprecated], KEY)

        assert [c.id for c in candidates] == ["1", "2"]

    @pytest.mark.asyncio
    async def test_exact_key_collisions_from_fresh_read(self, service, store):
        store.add(Collection.FORECASTS, record(0).record.properties, created_at=at(1))
        store.add(Collection.FORECASTS, record(0).record.properties, created_at=at(2))

        result = await service.archive_exact_key_collisions(KEY)

        assert result.canonical is not None
        assert len(result.deprecated) == 1

    @pytest.mark.asyncio
    async def test_exact_key_collisions_nothing_found(self, service):
        result = await service.archive_exact_key_collisions(KEY)
        assert result.canonical is None
        assert result.deprecated == []
