"""
Consumer-facing binding of one cache key: data, loading, error and controls.
"""

from typing import Callable, Generic, List, Optional, TypeVar

from shop_shared.logging import get_logger
from .coordinator import FetchCoordinator, Fetcher
from .invalidation import InvalidationTrigger
from .keys import CacheKey

T = TypeVar("T")


class CachedQuery(Generic[T]):
    """State a screen renders for one key.

    ``data`` keeps the last value seen, even after the key is evicted
    (``stale`` then turns true until the next successful load).
    ``loading`` is true only while a real fetch is outstanding for this
    query, never during a cache hit.
    """

    def __init__(
        self,
        coordinator: FetchCoordinator,
        trigger: InvalidationTrigger,
        key: CacheKey,
        fetcher: Fetcher[T],
        ttl_ms: float,
        on_close: Optional[Callable[["CachedQuery[T]"], None]] = None,
    ):
        self.key = key
        self.ttl_ms = ttl_ms
        self.data: Optional[T] = None
        self.loading = False
        self.error: Optional[BaseException] = None
        self.stale = False

        self._coordinator = coordinator
        self._trigger = trigger
        self._fetcher = fetcher
        self._on_close = on_close
        self.logger = get_logger("refcache.query")
        trigger.add_listener(self._on_evicted)

    async def load(self) -> T:
        """Serve from cache when fresh, otherwise fetch."""
        return await self._resolve(force_refresh=False)

    async def refetch(self) -> T:
        """Fetch regardless of any fresh cache entry."""
        return await self._resolve(force_refresh=True)

    async def invalidate(self) -> T:
        """Evict this key, then refetch it."""
        self._trigger.invalidate(self.key)
        return await self.refetch()

    async def prefetch(self) -> T:
        return await self._coordinator.prefetch(self.key, self._fetcher, self.ttl_ms)

    def remove(self) -> bool:
        """Evict this key without refetching."""
        return self._trigger.invalidate(self.key) > 0

    def set_data(self, data: T) -> None:
        """Replace the cached value, e.g. with the row a write returned."""
        self._coordinator.set_data(self.key, data, self.ttl_ms)
        self.data = data
        self.stale = False

    def close(self) -> None:
        """Stop tracking evictions and detach from the owning session."""
        self._trigger.remove_listener(self._on_evicted)
        if self._on_close is not None:
            on_close, self._on_close = self._on_close, None
            on_close(self)

    def snapshot(self) -> dict:
        return {
            "key": str(self.key),
            "data": self.data,
            "loading": self.loading,
            "error": str(self.error) if self.error is not None else None,
            "stale": self.stale,
        }

    async def _resolve(self, force_refresh: bool) -> T:
        self.loading = force_refresh or not self._coordinator.has_fresh(self.key)
        try:
            result = await self._coordinator.resolve(
                self.key, self._fetcher, self.ttl_ms, force_refresh=force_refresh
            )
        except Exception as exc:
            self.error = exc
            self.logger.warning("Query failed", key=str(self.key), error=str(exc))
            raise
        else:
            self.data = result
            self.error = None
            self.stale = False
            return result
        finally:
            self.loading = False

    def _on_evicted(self, keys: List[CacheKey]) -> None:
        if self.key in keys:
            self.stale = True
