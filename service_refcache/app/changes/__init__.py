"""
Change-notification channel bindings.

Listeners decode feed messages into ChangeEvent and hand them to the
invalidation trigger's queue; they never touch the cache store directly.
"""
