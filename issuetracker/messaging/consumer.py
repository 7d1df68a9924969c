"""
Consumer service: one processor per subscribed topic.
"""

from __future__ import annotations

import logging

from issuetracker.config import BusSettings
from issuetracker.messaging.base import BusClient, Processor
from issuetracker.messaging.processing import MessageProcessor, ProcessorFactory
from issuetracker.messaging.subscriptions import SubscriptionManager
from issuetracker.messaging.topics import TopicRegistry

logger = logging.getLogger(__name__)


class ConsumerService:
    """
    Provisions subscriptions and runs a processor for each consumed topic.

    Each topic is set up independently: a failure on one topic is logged
    and the remaining topics still start.

    Example:
        service = ConsumerService(client, registry, factory, settings)
        await service.start_listening()
        ...
        await service.stop()
    """

    def __init__(
        self,
        client: BusClient,
        topics: TopicRegistry,
        factory: ProcessorFactory,
        settings: BusSettings,
    ) -> None:
        self._client = client
        self._topics = topics
        self._factory = factory
        self._settings = settings
        self._subscriptions = SubscriptionManager(client.admin(), settings)
        self._processors: list[Processor] = []
        self._message_processors: list[MessageProcessor] = []
        self._failed: dict[str, BaseException] = {}

    @property
    def subscription_name(self) -> str:
        return self._settings.subscription_name

    @property
    def processors(self) -> list[Processor]:
        return list(self._processors)

    @property
    def failed_topics(self) -> dict[str, BaseException]:
        """Topics whose setup failed during the last start, with the error."""
        return dict(self._failed)

    def consumed_topics(self) -> list[str]:
        return self._topics.select(self._settings.consume_topics)

    async def ensure_subscriptions(self) -> list[str]:
        """
        Ensure the well-known subscription exists on every consumed topic.

        Returns:
            Topics on which the subscription was created
        """
        created = []
        for topic in self.consumed_topics():
            if await self._subscriptions.ensure_subscription_exists(topic, self.subscription_name):
                created.append(topic)
        return created

    async def start_listening(self) -> list[str]:
        """
        Start a processor for every consumed topic.

        Returns:
            Topics whose processor started
        """
        self._failed.clear()
        started = []
        for topic in self.consumed_topics():
            try:
                await self._start_topic(topic)
            except Exception as exc:
                self._failed[topic] = exc
                logger.error("Failed to start processor for topic %s", topic, exc_info=True)
                continue
            started.append(topic)

        logger.info(
            "Listening on %d/%d topic(s) with subscription %s",
            len(started),
            len(started) + len(self._failed),
            self.subscription_name,
        )
        return started

    async def _start_topic(self, topic: str) -> None:
        await self._subscriptions.ensure_subscription_exists(topic, self.subscription_name)

        handlers = self._factory.create_message_processor(topic)
        processor = self._client.create_processor(
            topic,
            self.subscription_name,
            on_message=handlers.handle_message,
            on_error=handlers.handle_error,
            max_concurrent_calls=self._settings.max_concurrent_calls,
        )
        try:
            await processor.start()
        except Exception:
            await processor.close()
            raise
        self._processors.append(processor)
        self._message_processors.append(handlers)
        logger.info("Processor started for %s", processor.entity_path)

    async def stop(self) -> None:
        """
        Stop every processor, then close each one.

        A processor's pending retry delays are cut short as it stops. All
        processors stop accepting messages and drain before any is closed.
        """
        processors = list(self._processors)
        message_processors = list(self._message_processors)
        self._processors.clear()
        self._message_processors.clear()

        for processor, handlers in zip(processors, message_processors):
            handlers.stop()
            try:
                await processor.stop()
            except Exception:
                logger.error("Failed to stop processor %s", processor.entity_path, exc_info=True)

        for processor in processors:
            try:
                await processor.close()
            except Exception:
                logger.error("Failed to close processor %s", processor.entity_path, exc_info=True)

        if processors:
            logger.info("Stopped %d processor(s)", len(processors))
