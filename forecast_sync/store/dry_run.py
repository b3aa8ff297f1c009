"""Dry-run store wrapper: reads pass through, writes are only logged."""
import itertools
import logging
from typing import Any, Dict, List, Optional, Tuple

from forecast_sync.store.base import Collection, RecordStore, StoreRecord

logger = logging.getLogger(__name__)


class DryRunStore(RecordStore):
    """Wraps a real store and suppresses every write."""

    def __init__(self, inner: RecordStore):
        super().__init__(page_size=inner.page_size, schema_attempts=inner.schema_attempts)
        self.inner = inner
        self._ids = itertools.count(1)
        self.writes: List[Tuple[str, str, Optional[str], Dict[str, Any]]] = []

    async def get(self, collection: Collection, record_id: str) -> Optional[StoreRecord]:
        return await self.inner.get(collection, record_id)

    async def search_page(
        self,
        collection: Collection,
        filters: Dict[str, Any],
        after: Optional[str] = None,
        limit: int = 100,
    ) -> Tuple[List[StoreRecord], Optional[str]]:
        return await self.inner.search_page(collection, filters, after, limit)

    async def _create(self, collection: Collection, properties: Dict[str, Any]) -> StoreRecord:
        record_id = f"dry-run-{next(self._ids)}"
        self.writes.append(("create", collection.value, None, dict(properties)))
        logger.info(f"[DRY RUN] create {collection.value}: {properties}")
        return StoreRecord(id=record_id, properties=dict(properties))

    async def _update(
        self, collection: Collection, record_id: str, properties: Dict[str, Any]
    ) -> StoreRecord:
        self.writes.append(("update", collection.value, record_id, dict(properties)))
        logger.info(f"[DRY RUN] update {collection.value}/{record_id}: {properties}")
        return StoreRecord(id=record_id, properties=dict(properties))

    async def archive(self, collection: Collection, record_id: str) -> None:
        self.writes.append(("archive", collection.value, record_id, {}))
        logger.info(f"[DRY RUN] archive {collection.value}/{record_id}")

    async def close(self) -> None:
        await self.inner.close()
