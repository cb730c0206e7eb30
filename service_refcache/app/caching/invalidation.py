"""
Invalidation trigger: maps writes and change notifications to evictions.
"""

import asyncio
import fnmatch
from typing import Callable, Dict, Iterable, List, Optional, Set, TYPE_CHECKING, Union

from shop_shared.logging import get_logger
from ..changes.models import ChangeEvent, ChangeOperation
from .keys import CacheKey, EntityClass, EntityRef, KeyRegistry
from .store import CacheStore

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shop_shared.metrics import MetricsCollector


EvictionListener = Callable[[List[CacheKey]], None]
InvalidationTarget = Union[CacheKey, EntityClass, str]

_GLOB_CHARS = frozenset("*?[")


class InvalidationTrigger:
    """Evicts keys after confirmed local writes and external change events.

    External events are message-passed through a queue owned by the trigger
    and handled in arrival order, either by ``process_pending()`` or by the
    background task started with ``start()``. Eviction never refetches and
    never cancels an in-flight fetch.
    """

    def __init__(
        self,
        store: CacheStore,
        registry: Optional[KeyRegistry] = None,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.store = store
        self.registry = registry or KeyRegistry()
        self.metrics = metrics
        self.logger = get_logger("refcache.invalidation")

        self._queue: "asyncio.Queue[ChangeEvent]" = asyncio.Queue()
        self._subscriptions: Set[EntityClass] = set()
        self._listeners: List[EvictionListener] = []
        self._task: Optional["asyncio.Task[None]"] = None
        self.event_counts: Dict[str, int] = {"handled": 0, "skipped": 0, "failed": 0}

    # Subscriptions

    def subscribe(self, *entities: EntityRef) -> None:
        """Declare interest in change events for ``entities``."""
        for entity in entities:
            self._subscriptions.add(self.registry.coerce(entity))

    def unsubscribe(self, entity: EntityRef) -> None:
        self._subscriptions.discard(self.registry.coerce(entity))

    def subscriptions(self) -> List[EntityClass]:
        return sorted(self._subscriptions, key=lambda entity: entity.value)

    def add_listener(self, listener: EvictionListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: EvictionListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    # Eviction

    def invalidate(self, target: InvalidationTarget, reason: str = "explicit") -> int:
        """Evict a key, every key derived from an entity class, or a glob of keys.

        Strings containing ``*``, ``?`` or ``[`` match rendered keys; other
        strings name an entity class. Returns the number of entries evicted.
        """
        if isinstance(target, CacheKey):
            keys = [target] if target in self.store else []
        elif isinstance(target, str) and not isinstance(target, EntityClass) and _GLOB_CHARS & set(target):
            keys = [key for key in self.store.keys() if fnmatch.fnmatchcase(str(key), target)]
        else:
            keys = self._keys_affected_by(target)
        return self._evict(keys, reason)

    def invalidate_all(self, reason: str = "reset") -> int:
        return self._evict(self.store.keys(), reason)

    def notify_write(
        self,
        entity: EntityRef,
        operation: Union[ChangeOperation, str],
        payload: object = None,
    ) -> int:
        """Evict after a confirmed local create/update/delete of ``entity``.

        Every entity class read from the same table is evicted too.
        """
        entity_cls = self.registry.coerce(entity)
        operation = ChangeOperation(operation.lower() if isinstance(operation, str) else operation)
        evicted = self._evict(
            self._keys_affected_by(*self.registry.affected_by_write(entity_cls)),
            reason="local_write",
        )
        self.logger.info(
            "Local write invalidated cache",
            entity=entity_cls.value,
            operation=operation.value,
            evicted=evicted,
        )
        return evicted

    # Change-notification channel

    def publish(self, event: ChangeEvent) -> None:
        """Enqueue an external change event; never blocks."""
        self._queue.put_nowait(event)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def handle(self, event: ChangeEvent) -> int:
        """Apply one change event. Unsubscribed entity classes are skipped.

        The event may name an entity class or a backing table; every class
        read from that table is evicted once any of them is subscribed.
        """
        entities = self.registry.resolve_change(event.entity_class)
        if not entities & self._subscriptions:
            self.event_counts["skipped"] += 1
            self._record_event(event, "skipped")
            self.logger.debug("Ignoring change for unsubscribed entity", entity=event.entity_class)
            return 0

        evicted = self._evict(self._keys_affected_by(*entities), reason="change_event")
        self.event_counts["handled"] += 1
        self._record_event(event, "handled")
        self.logger.info(
            "Change event invalidated cache",
            entity=event.entity_class,
            resolved=sorted(e.value for e in entities),
            operation=event.operation.value,
            evicted=evicted,
        )
        return evicted

    def process_pending(self) -> int:
        """Handle every queued event now, in arrival order."""
        evicted = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return evicted
            try:
                evicted += self.handle(event)
            finally:
                self._queue.task_done()

    async def join(self) -> None:
        """Wait until every published event has been handled."""
        await self._queue.join()

    async def start(self) -> None:
        """Consume the event queue in the background."""
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run())
        self.logger.info("Invalidation trigger started", subscriptions=[e.value for e in self.subscriptions()])

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.logger.info("Invalidation trigger stopped")

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                self.handle(event)
            except Exception as exc:
                self.event_counts["failed"] += 1
                self._record_event(event, "failed")
                self.logger.error(
                    "Error handling change event",
                    entity=event.entity_class,
                    operation=event.operation.value,
                    error=str(exc),
                )
            finally:
                self._queue.task_done()

    # Helpers

    def _keys_affected_by(self, *entities: EntityRef) -> List[CacheKey]:
        affected: Set[EntityClass] = set()
        for entity in entities:
            affected |= self.registry.affected_by(entity)
        keys: List[CacheKey] = []
        for entity_cls in sorted(affected, key=lambda e: e.value):
            keys.extend(self.store.keys_for(entity_cls))
        return keys

    def _evict(self, keys: Iterable[CacheKey], reason: str) -> int:
        evicted = [key for key in keys if self.store.delete(key, reason=reason)]
        if evicted:
            self.logger.debug("Evicted keys", keys=[str(key) for key in evicted], reason=reason)
            for listener in list(self._listeners):
                listener(evicted)
        return len(evicted)

    def _record_event(self, event: ChangeEvent, result: str) -> None:
        if self.metrics:
            self.metrics.increment_counter(
                "refcache_change_events_total",
                entity=event.entity_class,
                operation=event.operation.value,
                result=result,
            )
