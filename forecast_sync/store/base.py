"""
Record store interface.

Every backend the engine talks to (HTTP API, dry-run wrapper, test fakes)
implements this interface. Backends provide the raw primitives; writes
go through schema negotiation and searches through cursor pagination
here, so all backends behave the same way.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from forecast_sync.store.schema import submit_with_schema_negotiation


class Collection(str, Enum):
    """Record collections used by the engine."""
    FORECASTS = "forecasts"
    INVOICES = "invoices"
    ITEMS = "items"
    PARENTS = "parents"


@dataclass
class StoreRecord:
    """A record as returned by the store."""
    id: str
    properties: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def get(self, name: str, default: Any = None) -> Any:
        value = self.properties.get(name)
        return default if value is None else value

    def text(self, name: str) -> str:
        """Property as a stripped string, '' when absent."""
        value = self.properties.get(name)
        return "" if value is None else str(value).strip()


class RecordStore(ABC):
    """
    CRUD + paginated search over store collections.

    Subclasses implement the underscore primitives and ``get``,
    ``search_page`` and ``archive``.
    """

    def __init__(self, page_size: int = 100, schema_attempts: int = 5):
        self.page_size = page_size
        self.schema_attempts = schema_attempts

    # =========================================================================
    # Backend primitives
    # =========================================================================

    @abstractmethod
    async def get(self, collection: Collection, record_id: str) -> Optional[StoreRecord]:
        """Fetch one record, None when it does not exist."""
        pass

    @abstractmethod
    async def search_page(
        self,
        collection: Collection,
        filters: Dict[str, Any],
        after: Optional[str] = None,
        limit: int = 100,
    ) -> Tuple[List[StoreRecord], Optional[str]]:
        """One page of equality-filtered results and the next cursor."""
        pass

    @abstractmethod
    async def _create(self, collection: Collection, properties: Dict[str, Any]) -> StoreRecord:
        pass

    @abstractmethod
    async def _update(
        self, collection: Collection, record_id: str, properties: Dict[str, Any]
    ) -> StoreRecord:
        pass

    @abstractmethod
    async def archive(self, collection: Collection, record_id: str) -> None:
        """Soft-delete a record."""
        pass

    # =========================================================================
    # Shared behaviour
    # =========================================================================

    async def search(self, collection: Collection, filters: Dict[str, Any]) -> List[StoreRecord]:
        """All records matching the filters, following every page."""
        results: List[StoreRecord] = []
        after: Optional[str] = None
        seen_cursors = set()

        while True:
            page, after = await self.search_page(collection, filters, after, self.page_size)
            results.extend(page)
            if not after or after in seen_cursors:
                break
            seen_cursors.add(after)

        return results

    async def find(self, collection: Collection, filters: Dict[str, Any]) -> Optional[StoreRecord]:
        """First record matching the filters, None when there is none."""
        page, _ = await self.search_page(collection, filters, None, 1)
        return page[0] if page else None

    async def create(self, collection: Collection, properties: Dict[str, Any]) -> StoreRecord:
        async def submit(props: Dict[str, Any]) -> StoreRecord:
            return await self._create(collection, props)

        record, _ = await submit_with_schema_negotiation(
            submit, properties, self.schema_attempts
        )
        return record

    async def update(
        self, collection: Collection, record_id: str, properties: Dict[str, Any]
    ) -> StoreRecord:
        async def submit(props: Dict[str, Any]) -> StoreRecord:
            return await self._update(collection, record_id, props)

        record, _ = await submit_with_schema_negotiation(
            submit, properties, self.schema_attempts
        )
        return record

    async def close(self) -> None:
        """Release backend resources."""
        return None
