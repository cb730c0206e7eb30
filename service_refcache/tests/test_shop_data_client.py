"""
Unit tests for the data-store REST client.
"""

import json
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from shop_shared.errors import ConfigurationError, ExternalServiceError
from shop_shared.retry import RetryError
from service_refcache.app.adapters.shop_data_client import DEFAULT_BRANDS, UNITS, ShopDataClient
from service_refcache.app.caching.keys import EntityClass


class RecordingTransport:
    """Builds an httpx.MockTransport that records requests and replays canned responses."""

    def __init__(self, status_code: int = 200, body=None):
        self.status_code = status_code
        self.body = body if body is not None else []
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def recorder():
    return RecordingTransport(body=[{"id": "S1", "name": "Acme"}])


@pytest.fixture
def client(recorder, trigger):
    return ShopDataClient(
        "http://data.local/",
        "anon-key",
        trigger=trigger,
        transport=recorder.transport,
    )


class TestShopDataClient:
    """Test cases for ShopDataClient."""

    @pytest.mark.asyncio
    async def test_fetcher_lists_table(self, client, recorder):
        """Test a plain key lists its table with the default order."""
        rows = await client.fetcher(EntityClass.SUPPLIERS.key())()

        assert rows == [{"id": "S1", "name": "Acme"}]
        request = recorder.requests[0]
        assert request.method == "GET"
        assert request.url.path == "/rest/v1/suppliers"
        assert request.url.params["select"] == "*"
        assert request.url.params["order"] == "name"
        assert request.headers["apikey"] == "anon-key"
        assert request.headers["authorization"] == "Bearer anon-key"

    @pytest.mark.asyncio
    async def test_fetcher_filters_by_key_params(self, client, recorder):
        """Test key parameters become equality filters."""
        await client.fetcher(EntityClass.CUSTOMER_INVOICES.key(customer_id="c1"))()

        request = recorder.requests[0]
        assert request.url.path == "/rest/v1/regular_customer_invoices"
        assert request.url.params["customer_id"] == "eq.c1"

    def test_fetcher_for_derived_entity(self, client):
        """Test entity classes with no table of their own have no default fetcher."""
        with pytest.raises(ConfigurationError):
            client.fetcher(EntityClass.DASHBOARD.key())

    @pytest.mark.asyncio
    async def test_reference_data_merges_defaults(self):
        """Test values in use are merged with the stock lists."""
        recorder = RecordingTransport(body=[
            {"brand": "Jotun", "type": "Emulsion", "color": "Teal"},
            {"brand": None, "type": "Enamel", "color": "White"},
        ])
        client = ShopDataClient("http://data.local", transport=recorder.transport)

        data = await client.fetcher(EntityClass.REFERENCE_DATA.key())()

        assert "Jotun" in data["brands"]
        assert set(DEFAULT_BRANDS) <= set(data["brands"])
        assert data["brands"] == sorted(data["brands"])
        assert "Teal" in data["colors"]
        assert data["units"] == UNITS
        assert recorder.requests[0].url.params["select"] == "brand,type,color"
        assert "apikey" not in recorder.requests[0].headers

    @pytest.mark.asyncio
    async def test_insert_invalidates(self, client, recorder, store):
        """Test a confirmed insert evicts the entity class and what derives from it."""
        recorder.body = [{"id": "p9", "name": "Primer"}]
        store.set(EntityClass.PRODUCTS.key(), [], 60_000)
        store.set(EntityClass.BRANDS.key(), [], 60_000)
        store.set(EntityClass.SUPPLIERS.key(), [], 60_000)

        created = await client.insert("products", {"name": "Primer"})

        assert created == {"id": "p9", "name": "Primer"}
        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.headers["prefer"] == "return=representation"
        assert json.loads(request.content) == {"name": "Primer"}
        assert EntityClass.PRODUCTS.key() not in store
        assert EntityClass.BRANDS.key() not in store
        assert EntityClass.SUPPLIERS.key() in store

    @pytest.mark.asyncio
    async def test_insert_through_alias_invalidates_shared_table(self, client, recorder, store):
        """Test a payment recorded for a customer evicts the payments list too."""
        recorder.body = [{"id": "pay-1", "customer_id": "c1", "amount": 500}]
        payments = EntityClass.PAYMENTS.key(customer_id="c1")
        store.set(payments, [], 60_000)

        await client.insert(EntityClass.CUSTOMER_PAYMENTS, {"customer_id": "c1", "amount": 500})

        assert recorder.requests[0].url.path == "/rest/v1/customer_payments"
        assert payments not in store

    @pytest.mark.asyncio
    async def test_update_and_delete(self, client, recorder, store):
        """Test update and delete target the row id and invalidate."""
        recorder.body = [{"id": "S1", "name": "Acme Coatings"}]
        store.set(EntityClass.SUPPLIERS.key(), [], 60_000)

        updated = await client.update(EntityClass.SUPPLIERS, "S1", {"name": "Acme Coatings"})
        assert updated["name"] == "Acme Coatings"
        assert EntityClass.SUPPLIERS.key() not in store

        store.set(EntityClass.SUPPLIERS.key(), [], 60_000)
        await client.delete(EntityClass.SUPPLIERS, "S1")

        assert [r.method for r in recorder.requests] == ["PATCH", "DELETE"]
        assert recorder.requests[1].url.params["id"] == "eq.S1"
        assert EntityClass.SUPPLIERS.key() not in store

    @pytest.mark.asyncio
    async def test_failed_read_leaves_cache_untouched(self, coordinator, store, trigger):
        """Test a non-success response is an external service error and writes nothing."""
        recorder = RecordingTransport(status_code=404, body={"message": "relation does not exist"})
        client = ShopDataClient("http://data.local", trigger=trigger, transport=recorder.transport)
        key = EntityClass.CUSTOMERS.key()

        with pytest.raises(ExternalServiceError) as exc_info:
            await coordinator.resolve(key, client.fetcher(key), 60_000)

        assert exc_info.value.code == "EXTERNAL_SERVICE_ERROR"
        assert exc_info.value.details["status_code"] == 404
        assert key not in store
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self, coordinator, store):
        """Test 5xx reads are retried and surface as RetryError once exhausted."""
        recorder = RecordingTransport(status_code=503, body={"message": "unavailable"})
        client = ShopDataClient("http://data.local", transport=recorder.transport)
        key = EntityClass.CUSTOMERS.key()

        with patch("shop_shared.retry.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(RetryError) as exc_info:
                await coordinator.resolve(key, client.fetcher(key), 60_000)

        assert isinstance(exc_info.value.last_exception, ExternalServiceError)
        assert len(recorder.requests) == 3
        assert key not in store

    @pytest.mark.asyncio
    async def test_failed_write_does_not_invalidate(self, trigger, store):
        """Test nothing is evicted when the write was not confirmed."""
        recorder = RecordingTransport(status_code=409, body={"message": "conflict"})
        client = ShopDataClient("http://data.local", trigger=trigger, transport=recorder.transport)
        store.set(EntityClass.INVOICES.key(), [], 60_000)

        with pytest.raises(ExternalServiceError):
            await client.insert(EntityClass.INVOICES, {"total": 100})

        assert EntityClass.INVOICES.key() in store
