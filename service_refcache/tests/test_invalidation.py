"""
Unit tests for the invalidation trigger.
"""

import asyncio

import pytest

from shop_shared.errors import ConfigurationError
from service_refcache.app.caching.keys import EntityClass
from service_refcache.app.changes.models import ChangeEvent, ChangeOperation


def change(entity_class: str, operation: str = "update", payload=None) -> ChangeEvent:
    return ChangeEvent(entity_class=entity_class, operation=operation, payload=payload)


class TestExplicitInvalidation:
    """Test cases for invalidate() and notify_write()."""

    @pytest.mark.asyncio
    async def test_invalidated_key_is_refetched(self, coordinator, trigger, make_fetcher):
        """Test the next resolve after invalidate(key) fetches again."""
        key = EntityClass.SUPPLIERS.key()
        fetcher = make_fetcher(result=["Acme"])
        await coordinator.resolve(key, fetcher, 60_000)

        assert trigger.invalidate(key) == 1
        await coordinator.resolve(key, fetcher, 60_000)

        assert fetcher.calls == 2

    def test_invalidate_absent_key_is_noop(self, trigger):
        """Test invalidating a key that was never cached."""
        assert trigger.invalidate(EntityClass.SUPPLIERS.key()) == 0

    def test_entity_class_evicts_parameterized_and_derived_keys(self, store, trigger):
        """Test a products change evicts product keys and keys computed from products."""
        affected = [
            EntityClass.PRODUCTS.key(),
            EntityClass.PRODUCTS.key(brand="Dulux"),
            EntityClass.BRANDS.key(),
            EntityClass.DASHBOARD.key(),
            EntityClass.REGULAR_CUSTOMER_PRODUCTS.key(customer_id="c1"),
        ]
        untouched = [EntityClass.SUPPLIERS.key(), EntityClass.INVOICES.key()]
        for key in affected + untouched:
            store.set(key, [], 60_000)

        evicted = trigger.invalidate(EntityClass.PRODUCTS)

        assert evicted == len(affected)
        assert all(key not in store for key in affected)
        assert all(key in store for key in untouched)

    def test_entity_class_by_name(self, store, trigger):
        """Test entity classes may be named by their string value."""
        store.set(EntityClass.CUSTOMERS.key(), [], 60_000)

        assert trigger.invalidate("customers") == 1

    def test_glob_pattern(self, store, trigger):
        """Test glob targets match rendered keys."""
        c1 = EntityClass.CUSTOMER_INVOICES.key(customer_id="c1")
        c2 = EntityClass.CUSTOMER_INVOICES.key(customer_id="c2")
        unscoped = EntityClass.CUSTOMER_INVOICES.key()
        for key in (c1, c2, unscoped):
            store.set(key, [], 60_000)

        assert trigger.invalidate("customer_invoices:*") == 2
        assert unscoped in store

    def test_unknown_entity_class(self, trigger):
        """Test naming an unknown entity class is a configuration error."""
        with pytest.raises(ConfigurationError) as exc_info:
            trigger.invalidate("widgets")

        assert exc_info.value.details["entity"] == "widgets"

    def test_notify_write_ignores_subscriptions(self, store, trigger, metrics):
        """Test confirmed local writes always evict, subscribed or not."""
        store.set(EntityClass.INVOICES.key(), [], 60_000)
        store.set(EntityClass.CUSTOMER_INVOICES.key(customer_id="c1"), [], 60_000)

        assert trigger.subscriptions() == []
        assert trigger.notify_write(EntityClass.INVOICES, "INSERT", {"id": "inv-1"}) == 2
        assert len(store) == 0
        assert metrics.sample(
            "refcache_evictions_total", entity="invoices", reason="local_write"
        ) == 1

    @pytest.mark.parametrize("written,cached", [
        (EntityClass.CUSTOMER_PAYMENTS, EntityClass.PAYMENTS),
        (EntityClass.PAYMENTS, EntityClass.CUSTOMER_PAYMENTS),
        (EntityClass.CUSTOMER_PROJECTS, EntityClass.PROJECTS),
        (EntityClass.PROJECTS, EntityClass.CUSTOMER_PROJECTS),
    ])
    def test_notify_write_evicts_classes_sharing_a_table(self, store, trigger, written, cached):
        """Test a write through one entity class evicts every class read from the same table."""
        key = cached.key(customer_id="c1")
        store.set(key, [], 60_000)
        store.set(EntityClass.INVOICES.key(), [], 60_000)

        assert trigger.notify_write(written, "insert") == 1
        assert key not in store
        assert EntityClass.INVOICES.key() in store

    def test_notify_write_rejects_unknown_operation(self, trigger):
        """Test operations outside insert/update/delete are rejected."""
        with pytest.raises(ValueError):
            trigger.notify_write(EntityClass.INVOICES, "upsert")

    def test_invalidate_all(self, store, trigger):
        """Test every entry is dropped."""
        store.set(EntityClass.SUPPLIERS.key(), [], 60_000)
        store.set(EntityClass.PRODUCTS.key(), [], 60_000)

        assert trigger.invalidate_all() == 2
        assert len(store) == 0

    def test_eviction_listeners(self, store, trigger):
        """Test listeners receive the evicted keys and can be removed."""
        seen = []
        listener = seen.append
        key = EntityClass.SUPPLIERS.key()
        trigger.add_listener(listener)

        store.set(key, [], 60_000)
        trigger.invalidate(key)
        trigger.remove_listener(listener)
        store.set(key, [], 60_000)
        trigger.invalidate(key)

        assert seen == [[key]]


class TestChangeEvents:
    """Test cases for the change-notification path."""

    def test_subscribe_unknown_entity(self, trigger):
        """Test subscribing to an unknown entity class fails."""
        with pytest.raises(ConfigurationError):
            trigger.subscribe("widgets")

    def test_subscriptions(self, trigger):
        """Test subscribe and unsubscribe."""
        trigger.subscribe(EntityClass.SUPPLIERS, "products")
        trigger.unsubscribe("suppliers")

        assert trigger.subscriptions() == [EntityClass.PRODUCTS]

    def test_unsubscribed_events_are_skipped(self, store, trigger, metrics):
        """Test events for entity classes nobody subscribed to have no effect."""
        key = EntityClass.SUPPLIERS.key()
        store.set(key, [], 60_000)

        assert trigger.handle(change("suppliers")) == 0
        assert trigger.handle(change("audit_log")) == 0

        assert key in store
        assert trigger.event_counts["skipped"] == 2
        assert metrics.sample(
            "refcache_change_events_total", entity="suppliers", operation="update", result="skipped"
        ) == 1

    def test_table_name_events_evict_backed_entity_classes(self, store, trigger):
        """Test realtime events naming a table evict the entity classes read from it."""
        trigger.subscribe(EntityClass.PAYMENTS)
        payments = EntityClass.PAYMENTS.key(customer_id="c1")
        by_customer = EntityClass.CUSTOMER_PAYMENTS.key(customer_id="c1")
        store.set(payments, [], 60_000)
        store.set(by_customer, [], 60_000)

        event = ChangeEvent.from_message({"table": "customer_payments", "eventType": "INSERT"})

        assert trigger.handle(event) == 2
        assert payments not in store
        assert by_customer not in store
        assert trigger.event_counts["handled"] == 1

    def test_table_name_differing_from_entity_class(self, store, trigger):
        """Test a table whose name matches no entity class still resolves."""
        trigger.subscribe(*EntityClass)
        key = EntityClass.CUSTOMER_INVOICES.key(customer_id="c1")
        store.set(key, [], 60_000)

        assert trigger.handle(change("regular_customer_invoices", "delete")) == 1
        assert key not in store

    def test_table_name_event_for_unsubscribed_classes_is_skipped(self, store, trigger):
        """Test table-name events are skipped unless a class read from the table is subscribed."""
        trigger.subscribe(EntityClass.INVOICES)
        key = EntityClass.PROJECTS.key()
        store.set(key, [], 60_000)

        assert trigger.handle(change("customer_projects")) == 0
        assert key in store
        assert trigger.event_counts["skipped"] == 1

    def test_duplicate_events_are_idempotent(self, store, trigger):
        """Test a repeated event evicts nothing more."""
        trigger.subscribe(EntityClass.SUPPLIERS)
        store.set(EntityClass.SUPPLIERS.key(), [], 60_000)

        assert trigger.handle(change("suppliers", "delete")) == 1
        assert trigger.handle(change("suppliers", "delete")) == 0
        assert trigger.event_counts["handled"] == 2

    def test_process_pending_in_arrival_order(self, store, trigger):
        """Test queued events are applied together by process_pending."""
        trigger.subscribe(EntityClass.SUPPLIERS, EntityClass.PRODUCTS)
        store.set(EntityClass.SUPPLIERS.key(), [], 60_000)
        store.set(EntityClass.PRODUCTS.key(), [], 60_000)
        store.set(EntityClass.BRANDS.key(), [], 60_000)

        trigger.publish(change("suppliers", "insert"))
        trigger.publish(change("products", "update"))
        assert trigger.pending == 2
        # publishing alone does not evict
        assert len(store) == 3

        assert trigger.process_pending() == 3
        assert trigger.pending == 0
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_background_processing(self, store, trigger):
        """Test the background task drains published events."""
        trigger.subscribe(EntityClass.CUSTOMERS)
        store.set(EntityClass.CUSTOMERS.key(), [], 60_000)
        store.set(EntityClass.DASHBOARD.key(), [], 60_000)

        await trigger.start()
        assert trigger.is_running()

        trigger.publish(change("customers", "insert", {"id": "c9"}))
        await asyncio.wait_for(trigger.join(), timeout=1)

        assert len(store) == 0
        await trigger.stop()
        assert not trigger.is_running()

    @pytest.mark.asyncio
    async def test_failed_listener_does_not_stop_processing(self, store, trigger):
        """Test an exception while handling one event is counted and processing continues."""
        def broken_listener(keys):
            raise RuntimeError("listener failed")

        trigger.subscribe(EntityClass.SUPPLIERS, EntityClass.PRODUCTS)
        trigger.add_listener(broken_listener)
        store.set(EntityClass.SUPPLIERS.key(), [], 60_000)
        await trigger.start()

        trigger.publish(change("suppliers"))
        await asyncio.wait_for(trigger.join(), timeout=1)
        trigger.remove_listener(broken_listener)

        store.set(EntityClass.PRODUCTS.key(), [], 60_000)
        trigger.publish(change("products"))
        await asyncio.wait_for(trigger.join(), timeout=1)

        assert trigger.event_counts["failed"] == 1
        assert EntityClass.PRODUCTS.key() not in store
        await trigger.stop()

    def test_event_operation_is_recorded(self, trigger, metrics):
        """Test handled events are counted per operation."""
        trigger.subscribe(EntityClass.INVOICES)
        trigger.handle(change("invoices", ChangeOperation.INSERT.value))

        assert metrics.sample(
            "refcache_change_events_total", entity="invoices", operation="insert", result="handled"
        ) == 1
