"""Shared test fixtures and configuration for forecast sync tests."""
from datetime import date
from unittest.mock import AsyncMock

import pytest

from forecast_sync.config import ForecastStages, Settings
from forecast_sync.pipeline import ForecastSyncEngine
from forecast_sync.reporting import ErrorReporter
from forecast_sync.store.base import Collection

from tests.fakes import InMemoryStore

# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)

TODAY = date(2024, 1, 10)


@pytest.fixture
def settings():
    """Settings built from defaults only, ignoring any local .env."""
    return Settings(_env_file=None)


@pytest.fixture
def stages(settings):
    """Resolved pipeline/stage configuration."""
    return ForecastStages.from_settings(settings)


@pytest.fixture
def store():
    """Empty in-memory store with small pages to exercise pagination."""
    return InMemoryStore(page_size=2)


@pytest.fixture
def reporter():
    """Mock error reporter."""
    return AsyncMock(spec=ErrorReporter)


@pytest.fixture
def engine(store, stages, reporter):
    """Engine wired to the in-memory store with a fixed 'today'."""
    return ForecastSyncEngine(store, stages, reporter=reporter, today=lambda: TODAY)


@pytest.fixture
def seed_parent(store):
    """Factory adding a parent and its items to the store."""

    def _seed(parent_id="P1", progress="closedwon", items=None, **parent_props):
        store.add(
            Collection.PARENTS,
            {"progress": progress, "name": "Acme renewal", **parent_props},
            record_id=parent_id,
        )
        for item_id, props in (items or {}).items():
            store.add(Collection.ITEMS, {"parent_id": parent_id, **props}, record_id=item_id)

    return _seed
