"""
In-process cache store with TTL expiry.
"""

import copy
import math
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Generic, List, Optional, TYPE_CHECKING, TypeVar

from shop_shared.errors import ConfigurationError
from shop_shared.logging import get_logger
from .keys import CacheKey, EntityClass

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shop_shared.metrics import MetricsCollector


T = TypeVar("T")
Clock = Callable[[], float]


def monotonic_ms() -> float:
    """Default clock: milliseconds from the monotonic timer."""
    return time.monotonic() * 1000.0


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A cached value with its storage and expiry instants (milliseconds)."""

    data: T
    stored_at: float
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        # Expiry is exclusive: an entry is stale at exactly expires_at.
        return now < self.expires_at


@dataclass(frozen=True)
class CacheStats:
    """Point-in-time counts of store contents."""

    total: int
    fresh: int
    stale: int

    def to_dict(self) -> Dict[str, int]:
        return {"total": self.total, "fresh": self.fresh, "stale": self.stale}


class CacheStore:
    """Mapping from ``CacheKey`` to ``CacheEntry``, owned by one session.

    Values are deep-copied on the way in and on the way out, so nothing
    outside the store holds a reference to stored data.
    """

    def __init__(self, clock: Optional[Clock] = None, metrics: Optional["MetricsCollector"] = None):
        self.clock: Clock = clock or monotonic_ms
        self.metrics = metrics
        self.logger = get_logger("refcache.store")
        self._entries: Dict[CacheKey, CacheEntry[Any]] = {}

    def now(self) -> float:
        return self.clock()

    def get(self, key: CacheKey) -> Optional[CacheEntry[Any]]:
        """Return the entry for ``key`` regardless of freshness."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        return replace(entry, data=copy.deepcopy(entry.data))

    def get_fresh(self, key: CacheKey) -> Optional[CacheEntry[Any]]:
        """Return the entry only if fresh; an expired entry is evicted."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if not entry.is_fresh(self.now()):
            self._evict(key, reason="expired")
            return None
        return replace(entry, data=copy.deepcopy(entry.data))

    def has_fresh(self, key: CacheKey) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.is_fresh(self.now())

    def set(self, key: CacheKey, data: Any, ttl_ms: float) -> CacheEntry[Any]:
        """Store ``data`` under ``key`` until ``now + ttl_ms``, replacing any entry."""
        validate_ttl(ttl_ms, key)
        now = self.now()
        entry = CacheEntry(data=copy.deepcopy(data), stored_at=now, expires_at=now + ttl_ms)
        self._entries[key] = entry
        self.logger.debug("Cached value", key=str(key), ttl_ms=ttl_ms)
        self._update_size()
        return replace(entry, data=copy.deepcopy(entry.data))

    def delete(self, key: CacheKey, reason: str = "invalidated") -> bool:
        """Remove ``key``; returns whether an entry was present."""
        return self._evict(key, reason=reason)

    def clear(self) -> int:
        """Remove every entry; returns how many were dropped."""
        count = len(self._entries)
        self._entries.clear()
        self._update_size()
        if count:
            self.logger.info("Cache cleared", entries=count)
        return count

    def is_fresh(self, entry: CacheEntry[Any]) -> bool:
        return entry.is_fresh(self.now())

    def keys(self) -> List[CacheKey]:
        return list(self._entries)

    def keys_for(self, entity: EntityClass) -> List[CacheKey]:
        """Every stored key belonging to ``entity``, parameterized or not."""
        return [key for key in self._entries if key.entity is entity]

    def stats(self) -> CacheStats:
        now = self.now()
        fresh = sum(1 for entry in self._entries.values() if entry.is_fresh(now))
        return CacheStats(total=len(self._entries), fresh=fresh, stale=len(self._entries) - fresh)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def _evict(self, key: CacheKey, reason: str) -> bool:
        if self._entries.pop(key, None) is None:
            return False
        self.logger.debug("Evicted cache entry", key=str(key), reason=reason)
        if self.metrics:
            self.metrics.increment_counter("refcache_evictions_total", entity=key.entity.value, reason=reason)
        self._update_size()
        return True

    def _update_size(self) -> None:
        if self.metrics:
            self.metrics.set_gauge("refcache_entries", len(self._entries))


def validate_ttl(ttl_ms: float, key: Optional[CacheKey] = None) -> None:
    """Reject non-positive or non-finite TTLs as a configuration error."""
    numeric = isinstance(ttl_ms, (int, float)) and not isinstance(ttl_ms, bool)
    if not numeric or not math.isfinite(ttl_ms) or ttl_ms <= 0:
        raise ConfigurationError(
            "TTL must be a positive number of milliseconds",
            details={"ttl_ms": ttl_ms, "key": str(key) if key is not None else None},
        )
