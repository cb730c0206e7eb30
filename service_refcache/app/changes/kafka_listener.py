"""
Kafka binding for the change-notification channel.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, List, Optional, TYPE_CHECKING

import kafka
from kafka.errors import KafkaError

from shop_shared.errors import ChangeFeedError
from shop_shared.logging import get_logger
from .models import ChangeEvent

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shop_shared.metrics import MetricsCollector
    from ..caching.invalidation import InvalidationTrigger


@dataclass
class KafkaMessage:
    """Kafka message wrapper."""
    topic: str
    partition: int
    offset: int
    key: Optional[bytes]
    value: bytes
    timestamp: Optional[int]
    headers: Optional[Dict[str, bytes]]


class KafkaChangeListener:
    """Decodes change messages from Kafka topics and publishes them to the trigger."""

    def __init__(
        self,
        trigger: "InvalidationTrigger",
        bootstrap_servers: str,
        group_id: str,
        topics: List[str],
        *,
        poll_timeout_ms: int = 1000,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.trigger = trigger
        self.bootstrap_servers = bootstrap_servers
        self.group_id = group_id
        self.topics = list(topics)
        self.poll_timeout_ms = poll_timeout_ms
        self.metrics = metrics
        self.logger = get_logger("refcache.changes.kafka")
        self.consumer: Optional[kafka.KafkaConsumer] = None
        self.running = False
        self._consumer_task: Optional[asyncio.Task] = None
        self._poll: Optional[asyncio.Future] = None

    async def start(self, start_loop: bool = True):
        """Create the consumer, subscribe, and optionally start polling."""
        if not self.topics:
            raise ChangeFeedError("No change topics configured", details={"group_id": self.group_id})

        try:
            self.consumer = kafka.KafkaConsumer(
                bootstrap_servers=self.bootstrap_servers,
                group_id=self.group_id,
                value_deserializer=lambda x: x,
                key_deserializer=lambda x: x,
                auto_offset_reset='latest',
                enable_auto_commit=True,
                max_poll_records=100,
                session_timeout_ms=30000,
                heartbeat_interval_ms=10000
            )
            self.consumer.subscribe(self.topics)
        except Exception as e:
            self.logger.error("Failed to start Kafka change listener", error=str(e))
            raise ChangeFeedError(str(e), details={"topics": self.topics}) from e

        self.running = True
        if start_loop:
            self._consumer_task = asyncio.create_task(self._consume_loop())
        self.logger.info("Kafka change listener started", group_id=self.group_id, topics=self.topics)

    async def stop(self):
        """Stop polling and close the consumer."""
        self.running = False
        if self._consumer_task:
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                pass
            self._consumer_task = None

        if self._poll is not None:
            # poll() keeps running in its worker thread after cancellation;
            # the consumer must not be closed underneath it.
            results = await asyncio.gather(self._poll, return_exceptions=True)
            self._poll = None
            if isinstance(results[0], dict) and results[0]:
                self.handle_batch(results[0])

        if self.consumer:
            self.consumer.close()
            self.consumer = None
            self.logger.info("Kafka change listener stopped")

    def handle_batch(self, message_batch) -> int:
        """Publish every decodable message of a poll batch; returns how many."""
        published = 0
        for topic_partition, messages in message_batch.items():
            for message in messages:
                kafka_message = KafkaMessage(
                    topic=message.topic,
                    partition=message.partition,
                    offset=message.offset,
                    key=message.key,
                    value=message.value,
                    timestamp=message.timestamp,
                    headers=dict(message.headers) if message.headers else None
                )
                if self.handle_message(kafka_message):
                    published += 1
        return published

    def handle_message(self, message: KafkaMessage) -> bool:
        try:
            event = ChangeEvent.from_message(message.value)
        except ValueError as e:
            self.logger.warning(
                "Dropping malformed change message",
                topic=message.topic,
                offset=message.offset,
                error=str(e)
            )
            if self.metrics:
                self.metrics.record_error("malformed_change_message")
            return False

        self.trigger.publish(event)
        return True

    async def _consume_loop(self):
        """Main consumption loop."""
        while self.running:
            try:
                # KafkaConsumer.poll blocks; keep it off the event loop.
                self._poll = asyncio.ensure_future(
                    asyncio.to_thread(self.consumer.poll, timeout_ms=self.poll_timeout_ms)
                )
                message_batch = await asyncio.shield(self._poll)
                self._poll = None
                if message_batch:
                    self.handle_batch(message_batch)
                else:
                    await asyncio.sleep(0)

            except KafkaError as e:
                self.logger.error("Kafka error in change listener", error=str(e))
                await asyncio.sleep(5)

            except asyncio.CancelledError:
                break

            except Exception as e:
                self.logger.error("Unexpected error in change listener", error=str(e))
                await asyncio.sleep(1)

    def is_running(self) -> bool:
        return self.running
