"""
Reference-data cache package for the paint-shop tool.

Keeps suppliers, products, brands, customers and other read-mostly data in
memory for bounded windows, and evicts it when the data changes locally or
in another session. Key modules include:

- app.main: Session factory wiring settings, change feed and data client
- app.session: CacheSession, the owner of all cache state
- app.caching: Store, fetch coordinator, invalidation trigger, consumer binding
- app.changes: Change event model and Kafka / Redis feed bindings
- app.adapters: REST client for the hosted data store
"""
