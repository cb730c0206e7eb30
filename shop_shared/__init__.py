"""
Shared utilities for the paint-shop reference-data cache.

This package aggregates common building blocks consumed by the cache service:

- config: Settings and TTL policy inputs via pydantic-settings
- logging: Structured logging with trace and session correlation
- metrics: Prometheus metrics helpers
- errors: Canonical error types and responses
- retry: Retry decorator for resilient data-store calls

Do not import from service_* packages into shop_shared/.
"""
