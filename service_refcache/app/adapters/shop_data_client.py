"""
REST client for the hosted paint-shop data store.

Reads are exposed as zero-argument fetchers for the cache; writes report the
confirmed change to the invalidation trigger.
"""

from typing import Any, Dict, List, Optional, TYPE_CHECKING

import httpx

from shop_shared.errors import ConfigurationError, ExternalServiceError
from shop_shared.logging import get_logger
from shop_shared.retry import RetryConfig, retry_on_exception
from ..caching.keys import BACKING_TABLES, CacheKey, EntityClass, EntityRef, KeyRegistry
from ..changes.models import ChangeOperation

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from ..caching.coordinator import Fetcher
    from ..caching.invalidation import InvalidationTrigger


# Entity classes backed directly by a table, with their default ordering.
_ORDER_BY_NAME = {EntityClass.PRODUCTS, EntityClass.SUPPLIERS, EntityClass.CUSTOMERS}

TABLES: Dict[EntityClass, Dict[str, str]] = {
    entity: {"table": table, "order": "name" if entity in _ORDER_BY_NAME else "created_at.desc"}
    for entity, table in BACKING_TABLES.items()
}

DEFAULT_BRANDS = ["Dulux", "Indigo", "Asian Paints", "Berger", "Nerolac", "Kansai Nerolac"]
DEFAULT_PAINT_TYPES = ["Emulsion", "Enamel", "Primer", "Distemper", "Texture", "Wood Finish"]
DEFAULT_COLORS = ["White", "Off White", "Cream", "Beige", "Yellow", "Red", "Blue", "Green", "Black"]
UNITS = ["Litre", "Kg", "Piece", "Box", "Gallon", "Quart"]
CUSTOMER_TYPES = ["Regular", "Dealer", "Contractor", "New"]
PAYMENT_METHODS = ["Cash", "Card", "UPI", "Bank Transfer", "Cheque"]

READ_RETRY = RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, ExternalServiceError):
        return exc.details.get("status_code", 0) >= 500
    return True


class ShopDataClient:
    """Client for the data store's REST interface (``/rest/v1/<table>``)."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        *,
        trigger: Optional["InvalidationTrigger"] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip('/')
        self.api_key = api_key
        self.trigger = trigger
        self.timeout = timeout
        self.transport = transport
        self.logger = get_logger("refcache.data_client")

    # Fetchers

    def fetcher(self, key: CacheKey) -> "Fetcher[List[Dict[str, Any]]]":
        """Zero-argument fetcher for a table-backed key; key params become filters."""
        if key.entity is EntityClass.REFERENCE_DATA:
            return self.fetch_reference_data
        table = self._table(key.entity)

        async def _fetch() -> List[Dict[str, Any]]:
            return await self.list_rows(table["table"], filters=dict(key.params), order=table["order"])

        return _fetch

    @retry_on_exception(
        (httpx.TransportError, ExternalServiceError),
        config=READ_RETRY,
        retry_if=_is_transient,
    )
    async def list_rows(
        self,
        table: str,
        filters: Optional[Dict[str, str]] = None,
        order: Optional[str] = None,
        select: str = "*",
    ) -> List[Dict[str, Any]]:
        """Fetch rows of ``table``, with equality filters."""
        params: Dict[str, str] = {"select": select}
        if order:
            params["order"] = order
        for column, value in (filters or {}).items():
            params[column] = f"eq.{value}"

        response = await self._request("GET", f"/rest/v1/{table}", params=params)
        return response.json() or []

    async def fetch_reference_data(self) -> Dict[str, List[str]]:
        """Brands, paint types and colours in use, merged with the stock lists."""
        rows = await self.list_rows("products", select="brand,type,color")
        return {
            "brands": _merge_values(rows, "brand", DEFAULT_BRANDS),
            "paint_types": _merge_values(rows, "type", DEFAULT_PAINT_TYPES),
            "colors": _merge_values(rows, "color", DEFAULT_COLORS),
            "units": list(UNITS),
            "customer_types": list(CUSTOMER_TYPES),
            "payment_methods": list(PAYMENT_METHODS),
        }

    # Writes

    async def insert(self, entity: EntityRef, row: Dict[str, Any]) -> Dict[str, Any]:
        entity_cls = KeyRegistry.coerce(entity)
        response = await self._request(
            "POST",
            f"/rest/v1/{self._table(entity_cls)['table']}",
            json=row,
            headers={"Prefer": "return=representation"},
        )
        created = _first(response.json())
        self._confirm_write(entity_cls, ChangeOperation.INSERT, created)
        return created

    async def update(self, entity: EntityRef, row_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        entity_cls = KeyRegistry.coerce(entity)
        response = await self._request(
            "PATCH",
            f"/rest/v1/{self._table(entity_cls)['table']}",
            params={"id": f"eq.{row_id}"},
            json=changes,
            headers={"Prefer": "return=representation"},
        )
        updated = _first(response.json())
        self._confirm_write(entity_cls, ChangeOperation.UPDATE, updated)
        return updated

    async def delete(self, entity: EntityRef, row_id: str) -> None:
        entity_cls = KeyRegistry.coerce(entity)
        await self._request(
            "DELETE",
            f"/rest/v1/{self._table(entity_cls)['table']}",
            params={"id": f"eq.{row_id}"},
        )
        self._confirm_write(entity_cls, ChangeOperation.DELETE, {"id": row_id})

    # Internals

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self.base_url}{path}"
        headers = {**self._auth_headers(), **kwargs.pop("headers", {})}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.request(method, url, headers=headers, **kwargs)

        if response.is_success:
            self.logger.debug("Data store request succeeded", method=method, url=url)
            return response

        self.logger.error(
            "Data store request failed",
            method=method,
            url=url,
            status_code=response.status_code,
            response=response.text
        )
        raise ExternalServiceError(
            service="data_store",
            message=f"Unexpected status {response.status_code}",
            details={"status_code": response.status_code, "body": response.text, "path": path}
        )

    def _auth_headers(self) -> Dict[str, str]:
        if not self.api_key:
            return {}
        return {"apikey": self.api_key, "Authorization": f"Bearer {self.api_key}"}

    def _confirm_write(self, entity: EntityClass, operation: ChangeOperation, payload: Any) -> None:
        if self.trigger is not None:
            self.trigger.notify_write(entity, operation, payload)

    @staticmethod
    def _table(entity: EntityClass) -> Dict[str, str]:
        table = TABLES.get(entity)
        if table is None:
            raise ConfigurationError(
                f"Entity class {entity.value!r} is not backed by a table",
                details={"entity": entity.value},
            )
        return table


def _first(body: Any) -> Dict[str, Any]:
    if isinstance(body, list):
        return body[0] if body else {}
    return body or {}


def _merge_values(rows: List[Dict[str, Any]], column: str, defaults: List[str]) -> List[str]:
    values = {row.get(column) for row in rows if row.get(column)}
    return sorted(values | set(defaults))
