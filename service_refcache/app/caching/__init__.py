"""
Reference-data caching package.

Provides the cache primitives consumers resolve through. Prefer per-entity
TTLs from the policy table and explicit invalidation after writes.
"""
