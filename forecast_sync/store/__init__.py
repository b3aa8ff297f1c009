"""
Record store access.

    from forecast_sync.store import RecordStore, HttpStoreClient, DryRunStore
"""

from forecast_sync.store.base import Collection, RecordStore, StoreRecord
from forecast_sync.store.client import HttpStoreClient
from forecast_sync.store.dry_run import DryRunStore
from forecast_sync.store.schema import (
    extract_unknown_property,
    submit_with_schema_negotiation,
)

__all__ = [
    "Collection",
    "RecordStore",
    "StoreRecord",
    "HttpStoreClient",
    "DryRunStore",
    "extract_unknown_property",
    "submit_with_schema_negotiation",
]
