"""
Cache session: owns the store, coordinator, trigger and change listeners.

One session lives for one signed-in application session. Nothing in the
cache layer is module-global; everything a consumer needs is reached through
the session it was handed.
"""

from typing import Any, List, Optional, Protocol, TypeVar, Union

from shop_shared.config import CacheSettings, get_settings
from shop_shared.logging import clear_context, get_logger, set_session_id, set_user_context
from shop_shared.metrics import MetricsCollector, get_metrics_collector
from .caching.coordinator import FetchCoordinator, Fetcher
from .caching.invalidation import InvalidationTrigger
from .caching.keys import CacheKey, EntityRef, KeyRegistry
from .caching.policy import PolicyTable, build_policy_table
from .caching.query import CachedQuery
from .caching.store import CacheStore, Clock

T = TypeVar("T")


class ChangeListener(Protocol):
    """A change-notification binding feeding the session's trigger."""

    async def start(self) -> None: ...

    async def stop(self) -> None: ...


class CacheSession:
    """Explicitly constructed cache state for one application session."""

    def __init__(
        self,
        settings: Optional[CacheSettings] = None,
        *,
        clock: Optional[Clock] = None,
        registry: Optional[KeyRegistry] = None,
        policies: Optional[PolicyTable] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.settings = settings or get_settings()
        self.logger = get_logger("refcache.session")
        self.metrics = metrics or get_metrics_collector(self.settings.session_name)
        self.registry = registry or KeyRegistry()
        self.policies = policies or build_policy_table(self.settings)

        self.store = CacheStore(clock=clock, metrics=self.metrics)
        self.coordinator = FetchCoordinator(self.store, metrics=self.metrics)
        self.trigger = InvalidationTrigger(self.store, self.registry, metrics=self.metrics)

        self.session_id: Optional[str] = None
        self._listeners: List[ChangeListener] = []
        self._queries: List[CachedQuery[Any]] = []
        self._started = False

    # Lifecycle

    async def start(self, session_id: Optional[str] = None, user_id: Optional[str] = None) -> None:
        """Bind logging context, start the trigger and every change listener."""
        if self._started:
            return
        self.session_id = set_session_id(session_id)
        set_user_context(user_id)
        await self.trigger.start()
        for listener in self._listeners:
            await listener.start()
        self._started = True
        self.logger.info("Cache session started", listeners=len(self._listeners))

    async def close(self) -> None:
        """Tear the session down: stop listeners, drop every entry (sign-out)."""
        for listener in reversed(self._listeners):
            await listener.stop()
        await self.trigger.stop()
        await self.coordinator.drain()
        for query in list(self._queries):
            query.close()
        self._queries.clear()
        dropped = self.store.clear()
        self._started = False
        self.logger.info("Cache session closed", dropped=dropped)
        clear_context()

    async def __aenter__(self) -> "CacheSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_value, traceback) -> None:
        await self.close()

    def reset(self) -> int:
        """Drop every cached entry without ending the session."""
        return self.trigger.invalidate_all()

    # Wiring

    def attach_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def subscribe(self, *entities: EntityRef) -> None:
        self.trigger.subscribe(*entities)

    # Consumer entry points

    def key(self, entity: EntityRef, **params) -> CacheKey:
        return self.registry.coerce(entity).key(**params)

    def ttl_for(self, key: CacheKey) -> int:
        return self.policies.ttl_ms(key.entity)

    async def resolve(
        self,
        target: Union[CacheKey, EntityRef],
        fetcher: Fetcher[T],
        force_refresh: bool = False,
    ) -> T:
        """Resolve through the coordinator using the entity's configured TTL."""
        key = target if isinstance(target, CacheKey) else self.key(target)
        return await self.coordinator.resolve(key, fetcher, self.ttl_for(key), force_refresh=force_refresh)

    def query(self, target: Union[CacheKey, EntityRef], fetcher: Fetcher[T], **params) -> CachedQuery[T]:
        """Bind a consumer to one key with the entity's configured TTL."""
        key = target if isinstance(target, CacheKey) else self.key(target, **params)
        query: CachedQuery[T] = CachedQuery(
            self.coordinator, self.trigger, key, fetcher, self.ttl_for(key), on_close=self._forget_query,
        )
        self._queries.append(query)
        return query

    def _forget_query(self, query: CachedQuery[Any]) -> None:
        if query in self._queries:
            self._queries.remove(query)

    def stats(self) -> dict:
        return {
            **self.store.stats().to_dict(),
            "in_flight": len(self.coordinator.in_flight_keys()),
            "pending_events": self.trigger.pending,
            "events": dict(self.trigger.event_counts),
            "subscriptions": [entity.value for entity in self.trigger.subscriptions()],
        }
