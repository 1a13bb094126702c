"""
Lookup collaborators: query-by-identifier capability over the upstream
record services.

`HttpRecordLookup` talks to the platform REST APIs with CQL queries and maps
transport failures onto `UpstreamError` (with the `transient` flag set for
timeouts, connection failures and 5xx answers). `InMemoryRecordLookup` serves
fixed records for tests and dry runs.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import httpx

from core.config import settings
from core.exceptions import UpstreamError
from models.base import EntityType
import logging

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Endpoint:
    path: str
    collection_key: str


ENDPOINTS: Dict[EntityType, Endpoint] = {
    EntityType.USER: Endpoint("/users", "users"),
    EntityType.HOLDINGS_RECORD: Endpoint("/holdings-storage/holdings", "holdingsRecords"),
    EntityType.ITEM: Endpoint("/inventory/items", "items"),
    EntityType.PURCHASE_ORDER: Endpoint("/orders/composite-orders", "purchaseOrders"),
}


class RecordLookup(ABC):
    """Read-only access to upstream records. Must be safe for concurrent use."""

    @abstractmethod
    async def find(self, entity_type: EntityType, field: str, value: str) -> List[Dict[str, Any]]:
        """Return every record whose `field` equals `value`."""
        pass

    @abstractmethod
    async def find_many(
        self, entity_type: EntityType, field: str, values: List[str]
    ) -> List[Dict[str, Any]]:
        """Batch variant of `find` used for per-chunk prefetch."""
        pass


def _cql_quote(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def build_query(field: str, values: List[str]) -> str:
    """Build a CQL exact-match query for one or more values."""
    if len(values) == 1:
        return f"{field}=={_cql_quote(values[0])}"
    return f"{field}==(" + " or ".join(_cql_quote(v) for v in values) + ")"


class HttpRecordLookup(RecordLookup):
    """
    Lookup over the platform REST APIs.

    Status handling:
    - 2xx: records from the entity's collection key
    - 5xx, timeouts, network errors: transient UpstreamError
    - other non-2xx: non-transient UpstreamError
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        tenant: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = (base_url or settings.LOOKUP_BASE_URL).rstrip("/")
        self.tenant = tenant or settings.LOOKUP_TENANT
        self.token = token or settings.LOOKUP_TOKEN
        self.timeout = timeout or settings.LOOKUP_TIMEOUT
        self._client = client
        self._owns_client = client is None

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "x-okapi-tenant": self.tenant,
        }
        if self.token:
            headers["x-okapi-token"] = self.token
        return headers

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._headers(),
                timeout=self.timeout
            )
        return self._client

    async def close(self):
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    async def find(self, entity_type: EntityType, field: str, value: str) -> List[Dict[str, Any]]:
        return await self._query(entity_type, build_query(field, [value]), limit=2)

    async def find_many(
        self, entity_type: EntityType, field: str, values: List[str]
    ) -> List[Dict[str, Any]]:
        if not values:
            return []
        return await self._query(entity_type, build_query(field, values), limit=len(values) * 2)

    async def _query(self, entity_type: EntityType, query: str, limit: int) -> List[Dict[str, Any]]:
        endpoint = ENDPOINTS[entity_type]
        context = {
            "entity_type": entity_type.value,
            "path": endpoint.path,
            "query": query,
        }
        logger.debug(f"GET {endpoint.path} query={query}")

        try:
            response = await self.client.get(
                endpoint.path,
                params={"query": query, "limit": limit},
                headers=self._headers()
            )
        except httpx.TimeoutException as e:
            raise UpstreamError("Lookup request timed out", context, e, transient=True)
        except httpx.TransportError as e:
            raise UpstreamError("Lookup service unreachable", context, e, transient=True)

        if response.status_code >= 500:
            context["status_code"] = response.status_code
            context["response_body"] = response.text[:500]
            raise UpstreamError(
                f"Lookup service error {response.status_code}", context, transient=True
            )

        if response.status_code >= 400:
            context["status_code"] = response.status_code
            context["response_body"] = response.text[:500]
            raise UpstreamError(
                f"Lookup rejected with {response.status_code}", context, transient=False
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamError("Failed to parse lookup response", context, e)

        records = payload.get(endpoint.collection_key, []) if isinstance(payload, dict) else []
        return list(records)


class InMemoryRecordLookup(RecordLookup):
    """
    Deterministic lookup over fixed records.

    `failures` maps identifier values to an exception that is raised when the
    value is looked up, for exercising upstream failure paths.
    """

    def __init__(
        self,
        records: Dict[EntityType, Iterable[Dict[str, Any]]],
        failures: Optional[Dict[str, Exception]] = None,
        latency: float = 0.0
    ):
        self.records = {k: list(v) for k, v in records.items()}
        self.failures = dict(failures or {})
        self.latency = latency
        self.calls: List[tuple] = []

    @staticmethod
    def _field_value(record: Dict[str, Any], field: str) -> Any:
        value: Any = record
        for part in field.split("."):
            if not isinstance(value, dict):
                return None
            value = value.get(part)
        return value

    def _matches(self, record: Dict[str, Any], field: str, value: str) -> bool:
        found = self._field_value(record, field)
        if isinstance(found, list):
            return value in [str(v) for v in found]
        return found is not None and str(found) == value

    async def find(self, entity_type: EntityType, field: str, value: str) -> List[Dict[str, Any]]:
        self.calls.append(("find", entity_type, field, value))
        if self.latency:
            await asyncio.sleep(self.latency)
        if value in self.failures:
            raise self.failures[value]
        return [r for r in self.records.get(entity_type, []) if self._matches(r, field, value)]

    async def find_many(
        self, entity_type: EntityType, field: str, values: List[str]
    ) -> List[Dict[str, Any]]:
        self.calls.append(("find_many", entity_type, field, tuple(values)))
        for value in values:
            if value in self.failures:
                raise self.failures[value]
        wanted = set(values)
        return [
            r for r in self.records.get(entity_type, [])
            if any(self._matches(r, field, v) for v in wanted)
        ]
