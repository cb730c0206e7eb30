"""
Cache session factory.

Wires settings, the change-notification feed and the data-store client into
one CacheSession for an application session.
"""

from typing import Iterable, Optional, Tuple

from shop_shared.config import CacheSettings, get_settings
from shop_shared.errors import ConfigurationError
from shop_shared.logging import configure_logging, get_logger
from .adapters.shop_data_client import ShopDataClient
from .caching.keys import EntityClass, EntityRef
from .caching.store import Clock
from .changes.kafka_listener import KafkaChangeListener
from .changes.redis_listener import RedisChangeListener
from .session import CacheSession

logger = get_logger("refcache.main")

# Tables whose changes the dashboard and selectors react to.
DEFAULT_SUBSCRIPTIONS = (
    EntityClass.PRODUCTS,
    EntityClass.SUPPLIERS,
    EntityClass.CUSTOMERS,
    EntityClass.REGULAR_CUSTOMERS,
    EntityClass.INVOICES,
    EntityClass.INVOICE_ITEMS,
    EntityClass.INVENTORY_RECEIPTS,
    EntityClass.INVENTORY_MOVEMENTS,
)

FEEDS = ("kafka", "redis", "none")


def create_session(
    settings: Optional[CacheSettings] = None,
    *,
    feed: str = "kafka",
    subscriptions: Iterable[EntityRef] = DEFAULT_SUBSCRIPTIONS,
    clock: Optional[Clock] = None,
) -> Tuple[CacheSession, ShopDataClient]:
    """Build a session and a data client whose writes invalidate it."""
    settings = settings or get_settings()
    if feed not in FEEDS:
        raise ConfigurationError(f"Unknown change feed {feed!r}", details={"known": list(FEEDS)})

    configure_logging(settings.session_name, settings.log_level)
    session = CacheSession(settings, clock=clock)
    session.subscribe(*subscriptions)

    if feed == "kafka":
        session.attach_listener(KafkaChangeListener(
            session.trigger,
            settings.kafka_bootstrap,
            settings.kafka_group_id,
            settings.change_topic_list(),
            metrics=session.metrics,
        ))
    elif feed == "redis":
        session.attach_listener(RedisChangeListener(
            session.trigger,
            settings.redis_url,
            [settings.change_channel],
            metrics=session.metrics,
        ))

    client = ShopDataClient(
        settings.data_url,
        settings.data_api_key,
        trigger=session.trigger,
        timeout=settings.data_timeout_seconds,
    )
    logger.info(
        "Cache session created",
        feed=feed,
        subscriptions=[entity.value for entity in session.trigger.subscriptions()],
    )
    return session, client
