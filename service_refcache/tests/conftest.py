"""
Shared fixtures for reference-data cache tests.
"""

import asyncio
from typing import Any, Optional

import pytest

from shop_shared.metrics import MetricsCollector
from service_refcache.app.caching.coordinator import FetchCoordinator
from service_refcache.app.caching.invalidation import InvalidationTrigger
from service_refcache.app.caching.keys import KeyRegistry
from service_refcache.app.caching.store import CacheStore


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


class CountingFetcher:
    """Fetcher that counts calls, optionally waiting on a gate or failing."""

    def __init__(self, result: Any = None, error: Optional[Exception] = None, gate: Optional[asyncio.Event] = None):
        self.result = result
        self.error = error
        self.gate = gate
        self.calls = 0

    async def __call__(self) -> Any:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def metrics():
    return MetricsCollector("refcache-test")


@pytest.fixture
def store(clock, metrics):
    return CacheStore(clock=clock, metrics=metrics)


@pytest.fixture
def coordinator(store, metrics):
    return FetchCoordinator(store, metrics=metrics)


@pytest.fixture
def trigger(store, metrics):
    return InvalidationTrigger(store, KeyRegistry(), metrics=metrics)


@pytest.fixture
def make_fetcher():
    """Factory for counting fetchers."""
    def _make(result: Any = None, error: Optional[Exception] = None, gate: Optional[asyncio.Event] = None):
        return CountingFetcher(result=result, error=error, gate=gate)
    return _make
