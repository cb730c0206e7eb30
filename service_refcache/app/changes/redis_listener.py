"""
Redis pub/sub binding for the change-notification channel.
"""

import asyncio
from typing import Any, Dict, List, Optional, TYPE_CHECKING

import redis.asyncio as redis

from shop_shared.errors import ChangeFeedError
from shop_shared.logging import get_logger
from .models import ChangeEvent

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shop_shared.metrics import MetricsCollector
    from ..caching.invalidation import InvalidationTrigger


class RedisChangeListener:
    """Listens on Redis channels and publishes decoded changes to the trigger."""

    def __init__(
        self,
        trigger: "InvalidationTrigger",
        redis_url: str,
        channels: List[str],
        *,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.trigger = trigger
        self.redis_url = redis_url
        self.channels = list(channels)
        self.metrics = metrics
        self.logger = get_logger("refcache.changes.redis")
        self.redis: Optional[redis.Redis] = None
        self.pubsub = None
        self._task: Optional[asyncio.Task] = None

    async def start(self, start_loop: bool = True):
        """Connect, subscribe and optionally start listening."""
        if not self.channels:
            raise ChangeFeedError("No change channels configured")

        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                health_check_interval=30
            )
            await self.redis.ping()
            self.pubsub = self.redis.pubsub()
            await self.pubsub.subscribe(*self.channels)
        except Exception as e:
            self.logger.error("Failed to start Redis change listener", error=str(e))
            raise ChangeFeedError(str(e), details={"channels": self.channels}) from e

        if start_loop:
            self._task = asyncio.create_task(self._listen_loop())
        self.logger.info("Redis change listener started", channels=self.channels)

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self.pubsub is not None:
            await self.pubsub.unsubscribe(*self.channels)
            await self.pubsub.aclose()
            self.pubsub = None
        if self.redis is not None:
            await self.redis.aclose()
            self.redis = None
            self.logger.info("Redis change listener stopped")

    def handle_message(self, message: Dict[str, Any]) -> bool:
        """Publish one pub/sub message; subscribe confirmations are ignored."""
        if message.get("type") != "message":
            return False

        try:
            event = ChangeEvent.from_message(message.get("data"))
        except ValueError as e:
            self.logger.warning(
                "Dropping malformed change message",
                channel=message.get("channel"),
                error=str(e)
            )
            if self.metrics:
                self.metrics.record_error("malformed_change_message")
            return False

        self.trigger.publish(event)
        return True

    async def _listen_loop(self):
        while True:
            try:
                message = await self.pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if message:
                    self.handle_message(message)
                else:
                    await asyncio.sleep(0)

            except asyncio.CancelledError:
                break

            except Exception as e:
                self.logger.error("Unexpected error in change listener", error=str(e))
                await asyncio.sleep(1)

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()
