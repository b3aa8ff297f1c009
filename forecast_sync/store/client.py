"""Record store API client.

This module provides an httpx-based client for the record store's REST
API with bounded read retries and status-to-exception mapping.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import httpx

from forecast_sync.config import Settings
from forecast_sync.errors import (
    SchemaDriftError,
    TransientStoreError,
    classify_status,
)
from forecast_sync.store.base import Collection, RecordStore, StoreRecord
from forecast_sync.store.schema import extract_unknown_property

logger = logging.getLogger(__name__)


def _parse_created_at(data: Dict[str, Any]) -> Optional[datetime]:
    raw = data.get("createdAt") or (data.get("properties") or {}).get("createdate")
    if not raw:
        return None
    try:
        return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None


def to_record(data: Dict[str, Any]) -> StoreRecord:
    """Convert an API object into a StoreRecord."""
    return StoreRecord(
        id=str(data.get("id")),
        properties=dict(data.get("properties") or {}),
        created_at=_parse_created_at(data),
    )


class HttpStoreClient(RecordStore):
    """High-level record store client."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 30.0,
        read_retries: int = 3,
        retry_interval: float = 1.0,
        page_size: int = 100,
        schema_attempts: int = 5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(page_size=page_size, schema_attempts=schema_attempts)
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.read_retries = read_retries
        self.retry_interval = retry_interval
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self._get_headers(),
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, s: Settings) -> "HttpStoreClient":
        return cls(
            base_url=s.STORE_BASE_URL,
            token=s.STORE_API_TOKEN,
            timeout=s.STORE_TIMEOUT_SECONDS,
            read_retries=s.STORE_READ_RETRIES,
            retry_interval=s.STORE_RETRY_INTERVAL_SECONDS,
            page_size=s.STORE_PAGE_SIZE,
            schema_attempts=s.SCHEMA_NEGOTIATION_MAX_ATTEMPTS,
        )

    def _get_headers(self) -> Dict[str, str]:
        """Get headers for API requests."""
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _get_url(self, collection: Collection, suffix: str = "") -> str:
        """Build API path for a collection."""
        path = f"/objects/{collection.value}"
        return f"{path}/{suffix}" if suffix else path

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        url: str,
        collection: Collection,
        record_id: Optional[str] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, url, json=json)
        except httpx.TransportError as e:
            raise TransientStoreError(
                f"Store transport error on {method} {url}: {e}",
                object_type=collection.value,
                object_id=record_id,
            ) from e

        if response.status_code in (200, 201, 204):
            return response
        if response.status_code == 404 and method == "GET":
            return response

        self._raise_for_status(response, collection, record_id)
        return response

    def _raise_for_status(
        self, response: httpx.Response, collection: Collection, record_id: Optional[str]
    ) -> None:
        try:
            body = response.json()
        except ValueError:
            body = {"message": response.text}

        status = response.status_code
        message = f"Store API error: {status} - {body.get('message') if isinstance(body, dict) else body}"

        if status == 400:
            unknown = extract_unknown_property(body)
            if unknown:
                raise SchemaDriftError(
                    unknown,
                    message,
                    object_type=collection.value,
                    object_id=record_id,
                    body=body if isinstance(body, dict) else None,
                )

        error_cls = classify_status(status)
        raise error_cls(
            message,
            status=status,
            object_type=collection.value,
            object_id=record_id,
            body=body if isinstance(body, dict) else None,
        )

    async def _read(
        self,
        method: str,
        url: str,
        collection: Collection,
        record_id: Optional[str] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send a read request, retrying transient failures at a fixed interval."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._send(method, url, collection, record_id, json)
            except TransientStoreError as e:
                if attempt > self.read_retries:
                    raise
                logger.warning(
                    f"Transient store error on {method} {url} "
                    f"(attempt {attempt}/{self.read_retries + 1}): {e}"
                )
                await asyncio.sleep(self.retry_interval)

    # -------------------------------------------------------------------------
    # RecordStore primitives
    # -------------------------------------------------------------------------

    async def get(self, collection: Collection, record_id: str) -> Optional[StoreRecord]:
        response = await self._read(
            "GET", self._get_url(collection, str(record_id)), collection, str(record_id)
        )
        if response.status_code == 404:
            return None
        return to_record(response.json())

    async def search_page(
        self,
        collection: Collection,
        filters: Dict[str, Any],
        after: Optional[str] = None,
        limit: int = 100,
    ) -> Tuple[List[StoreRecord], Optional[str]]:
        body: Dict[str, Any] = {"filters": filters, "limit": limit}
        if after:
            body["after"] = after

        response = await self._read("POST", self._get_url(collection, "search"), collection, json=body)
        result = response.json()
        records = [to_record(r) for r in result.get("results") or []]
        next_after = ((result.get("paging") or {}).get("next") or {}).get("after")
        return records, (str(next_after) if next_after else None)

    async def _create(self, collection: Collection, properties: Dict[str, Any]) -> StoreRecord:
        response = await self._send(
            "POST", self._get_url(collection), collection, json={"properties": properties}
        )
        if response.status_code == 204:
            return StoreRecord(id="", properties=dict(properties))
        return to_record(response.json())

    async def _update(
        self, collection: Collection, record_id: str, properties: Dict[str, Any]
    ) -> StoreRecord:
        response = await self._send(
            "PATCH",
            self._get_url(collection, str(record_id)),
            collection,
            str(record_id),
            json={"properties": properties},
        )
        if response.status_code == 204:
            return StoreRecord(id=str(record_id), properties=dict(properties))
        return to_record(response.json())

    async def archive(self, collection: Collection, record_id: str) -> None:
        await self._send("DELETE", self._get_url(collection, str(record_id)), collection, str(record_id))

    async def close(self) -> None:
        await self._client.aclose()

