"""
Fetch coordinator: serve fresh entries, otherwise run one fetch per key.
"""

import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING, TypeVar

from shop_shared.logging import get_logger
from .keys import CacheKey
from .store import CacheStore, validate_ttl

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shop_shared.metrics import MetricsCollector


T = TypeVar("T")
Fetcher = Callable[[], Awaitable[T]]


class FetchCoordinator:
    """Resolves keys through the store with per-key fetch de-duplication.

    At most one fetch per key is outstanding; concurrent callers join it and
    all of them see its result or its exception. A failed fetch never writes
    to the store. Fetches run as their own tasks, so a caller giving up does
    not cancel the fetch for everyone else.
    """

    def __init__(self, store: CacheStore, metrics: Optional["MetricsCollector"] = None):
        self.store = store
        self.metrics = metrics
        self.logger = get_logger("refcache.coordinator")
        self._in_flight: Dict[CacheKey, "asyncio.Task[Any]"] = {}

    async def resolve(
        self,
        key: CacheKey,
        fetcher: Fetcher[T],
        ttl_ms: float,
        force_refresh: bool = False,
    ) -> T:
        """Return data for ``key``, fetching at most once across concurrent callers."""
        validate_ttl(ttl_ms, key)

        if not force_refresh:
            entry = self.store.get_fresh(key)
            if entry is not None:
                self._record(key, "hit")
                return entry.data

        pending = self._in_flight.get(key)
        if pending is not None:
            self._record(key, "wait")
            return await asyncio.shield(pending)

        pending = self._start_fetch(key, fetcher, ttl_ms)
        self._record(key, "miss")
        return await asyncio.shield(pending)

    async def prefetch(self, key: CacheKey, fetcher: Fetcher[T], ttl_ms: float) -> T:
        """Warm ``key`` ahead of any consumer asking for it."""
        try:
            return await self.resolve(key, fetcher, ttl_ms)
        except Exception as exc:
            self.logger.warning("Prefetch failed", key=str(key), error=str(exc))
            raise

    def set_data(self, key: CacheKey, data: Any, ttl_ms: float) -> None:
        """Write a value obtained outside a fetch, e.g. a row echoed by an insert."""
        self.store.set(key, data, ttl_ms)

    def has_fresh(self, key: CacheKey) -> bool:
        return self.store.has_fresh(key)

    def is_in_flight(self, key: CacheKey) -> bool:
        return key in self._in_flight

    def in_flight_keys(self) -> List[CacheKey]:
        return list(self._in_flight)

    async def drain(self) -> None:
        """Wait for every outstanding fetch to settle, ignoring their outcomes."""
        pending = list(self._in_flight.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _start_fetch(self, key: CacheKey, fetcher: Fetcher[Any], ttl_ms: float) -> "asyncio.Task[Any]":
        task = asyncio.ensure_future(self._run_fetch(key, fetcher, ttl_ms))
        task.add_done_callback(_consume_exception)
        self._in_flight[key] = task
        self.logger.debug("Fetch started", key=str(key))
        return task

    async def _run_fetch(self, key: CacheKey, fetcher: Fetcher[Any], ttl_ms: float) -> Any:
        start = time.perf_counter()
        try:
            result = await fetcher()
        except Exception as exc:
            self._record(key, "error")
            if self.metrics:
                self.metrics.record_error(type(exc).__name__)
            self.logger.error("Fetch failed", key=str(key), error=str(exc))
            raise
        else:
            # Written even if the key was invalidated mid-flight (last writer wins).
            self.store.set(key, result, ttl_ms)
            return result
        finally:
            if self._in_flight.get(key) is asyncio.current_task():
                del self._in_flight[key]
            if self.metrics:
                self.metrics.observe_histogram(
                    "refcache_fetch_duration_seconds",
                    time.perf_counter() - start,
                    entity=key.entity.value,
                )

    def _record(self, key: CacheKey, outcome: str) -> None:
        if self.metrics:
            self.metrics.increment_counter("refcache_resolve_total", entity=key.entity.value, outcome=outcome)


def _consume_exception(task: "asyncio.Task[Any]") -> None:
    # Callers receive the exception through shield(); this only marks it
    # retrieved when every caller has already gone away.
    if not task.cancelled():
        task.exception()
