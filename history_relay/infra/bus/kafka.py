"""Kafka subscription used by the event consumer.

The consumer only depends on the `Subscription` protocol, so tests can drive
it with an in-memory implementation.
"""

from __future__ import annotations

from typing import AsyncIterator, Callable, Protocol

from aiokafka import AIOKafkaConsumer
from loguru import logger

from history_relay.config import Settings


class Subscription(Protocol):
    async def start(self) -> None: ...

    def messages(self) -> AsyncIterator[bytes | None]: ...

    async def commit(self) -> None: ...

    async def stop(self) -> None: ...


SubscriptionFactory = Callable[[], Subscription]


class KafkaSubscription:
    """Manual-commit consumer: offsets are committed after a message is handled."""

    def __init__(
        self,
        *,
        bootstrap_servers: str,
        topics: tuple[str, ...],
        group_id: str,
        from_beginning: bool = False,
    ):
        self.bootstrap_servers = bootstrap_servers
        self.topics = topics
        self.group_id = group_id
        self.from_beginning = from_beginning
        self._consumer: AIOKafkaConsumer | None = None

    async def start(self) -> None:
        consumer = AIOKafkaConsumer(
            *self.topics,
            bootstrap_servers=self.bootstrap_servers,
            group_id=self.group_id,
            enable_auto_commit=False,
            auto_offset_reset="earliest" if self.from_beginning else "latest",
        )
        try:
            await consumer.start()
        except BaseException:
            # start() may have opened the client and coordinator before failing.
            try:
                await consumer.stop()
            except Exception as exc:
                logger.warning("kafka cleanup after failed start raised: {}", exc)
            raise
        self._consumer = consumer
        logger.info("kafka subscribed topics={} group={}", ",".join(self.topics), self.group_id)

    async def messages(self) -> AsyncIterator[bytes | None]:
        if self._consumer is None:
            raise RuntimeError("subscription not started")
        async for record in self._consumer:
            yield record.value

    async def commit(self) -> None:
        if self._consumer is not None:
            await self._consumer.commit()

    async def stop(self) -> None:
        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            await consumer.stop()


def kafka_subscription_factory(settings: Settings) -> SubscriptionFactory:
    def _factory() -> Subscription:
        return KafkaSubscription(
            bootstrap_servers=settings.message_broker_url,
            topics=settings.kafka_topics,
            group_id=settings.kafka_group_id,
            from_beginning=settings.kafka_from_beginning,
        )

    return _factory
