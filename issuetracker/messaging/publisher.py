"""Publisher with a per-topic sender cache."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from issuetracker.exceptions import PublisherClosedError
from issuetracker.messaging.base import (
    BusClient,
    EVENT_TYPE_PROPERTY,
    JSON_CONTENT_TYPE,
    OutgoingMessage,
    Sender,
    TIMESTAMP_PROPERTY,
)
from issuetracker.messaging.envelopes import (
    Envelope,
    EventType,
    IssueAssignedMessage,
    IssueCommentCreatedMessage,
    IssueCreatedMessage,
    IssueLabelAssignedMessage,
    IssueUpdatedMessage,
    LabelCreatedMessage,
    UserCreatedMessage,
)
from issuetracker.messaging.topics import TopicRegistry

logger = logging.getLogger(__name__)


class Publisher:
    """
    Publishes envelopes to their topics.

    Senders are created lazily per topic, cached, and recreated when the
    sender or the client reports closed. The client itself is not owned:
    `close()` releases the senders only.

    Example:
        async with Publisher(client, registry) as publisher:
            await publisher.publish_issue_created(
                IssueCreatedMessage(issue_id=1, title="T", creator_id=1)
            )
    """

    def __init__(self, client: BusClient, topics: TopicRegistry) -> None:
        self._client = client
        self._topics = topics
        self._senders: dict[str, Sender] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._closed = False

    @property
    def topics(self) -> TopicRegistry:
        return self._topics

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> "Publisher":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # =========================================================================
    # Publishing
    # =========================================================================

    async def publish(
        self,
        envelope: Envelope,
        topic_name: str,
        timeout: float | None = None,
    ) -> None:
        """
        Send an envelope to a topic.

        `topic_name` is not checked against the topic registry: callers may
        pass any topic name, configured or not. Use `publish_event` or the
        typed wrappers to publish to the configured topic.

        Args:
            envelope: Event to send
            topic_name: Physical topic name
            timeout: Optional send timeout in seconds

        Raises:
            ValueError: If the envelope has no event type
            PublisherClosedError: If the publisher was closed
            Exception: Any transport error, after it is logged
        """
        if not envelope.event_type:
            raise ValueError(f"{type(envelope).__name__} has no event_type")
        if self._closed:
            raise PublisherClosedError()

        message_type = type(envelope).__name__
        try:
            sender = await self.get_or_create_sender(topic_name)
            message = self.build_message(envelope)
            if timeout is None:
                await sender.send(message)
            else:
                await asyncio.wait_for(sender.send(message), timeout)
        except Exception:
            logger.error(
                "Failed to publish message of type %s to topic %s",
                message_type,
                topic_name,
                exc_info=True,
            )
            raise

        logger.info(
            "Published message of type %s to topic %s with correlation ID %s",
            message_type,
            topic_name,
            envelope.correlation_id,
        )

    async def publish_event(self, envelope: Envelope, timeout: float | None = None) -> None:
        """Send an envelope to the topic configured for its event type."""
        await self.publish(envelope, self._topics.topic_for(envelope.event_type), timeout)

    @staticmethod
    def build_message(envelope: Envelope) -> OutgoingMessage:
        """
        Wrap an envelope in a wire message.

        The event type is carried three times: in the subject, in the
        `EventType` property (subscription filters) and in the body
        (consumers dispatching on the parsed payload).
        """
        return OutgoingMessage(
            body=envelope.to_json().encode("utf-8"),
            content_type=JSON_CONTENT_TYPE,
            correlation_id=envelope.correlation_id,
            subject=envelope.event_type,
            application_properties={
                EVENT_TYPE_PROPERTY: envelope.event_type,
                TIMESTAMP_PROPERTY: envelope.timestamp.isoformat(),
            },
        )

    # =========================================================================
    # Typed wrappers
    # =========================================================================

    async def publish_user_created(self, message: UserCreatedMessage, timeout: float | None = None) -> None:
        await self.publish(message, self._topics[EventType.USER_CREATE], timeout)

    async def publish_label_created(self, message: LabelCreatedMessage, timeout: float | None = None) -> None:
        await self.publish(message, self._topics[EventType.LABEL_CREATE], timeout)

    async def publish_issue_created(self, message: IssueCreatedMessage, timeout: float | None = None) -> None:
        await self.publish(message, self._topics[EventType.ISSUE_CREATE], timeout)

    async def publish_issue_updated(self, message: IssueUpdatedMessage, timeout: float | None = None) -> None:
        await self.publish(message, self._topics[EventType.ISSUE_UPDATE], timeout)

    async def publish_issue_assigned(self, message: IssueAssignedMessage, timeout: float | None = None) -> None:
        await self.publish(message, self._topics[EventType.ISSUE_USER_ASSIGN], timeout)

    async def publish_issue_comment_created(
        self,
        message: IssueCommentCreatedMessage,
        timeout: float | None = None,
    ) -> None:
        await self.publish(message, self._topics[EventType.ISSUE_COMMENT_CREATE], timeout)

    async def publish_issue_label_assigned(
        self,
        message: IssueLabelAssignedMessage,
        timeout: float | None = None,
    ) -> None:
        await self.publish(message, self._topics[EventType.ISSUE_LABEL_ASSIGN], timeout)

    # =========================================================================
    # Sender cache
    # =========================================================================

    async def get_or_create_sender(self, topic: str) -> Sender:
        """
        Get the cached sender for a topic, creating it if needed.

        Creation holds a per-topic lock; publishing to other topics is
        never blocked by it.
        """
        sender = self._senders.get(topic)
        if sender is not None and self._is_usable(sender):
            return sender

        lock = self._locks.setdefault(topic, asyncio.Lock())
        async with lock:
            sender = self._senders.get(topic)
            if sender is not None and self._is_usable(sender):
                return sender

            if sender is not None:
                logger.warning(
                    "Sender for topic %s was disposed or closed; recreating sender.",
                    topic,
                )

            sender = await self._client.create_sender(topic)
            if self._closed:
                # close() ran while the sender was being created
                await sender.close()
                raise PublisherClosedError()
            self._senders[topic] = sender
            return sender

    def _is_usable(self, sender: Sender) -> bool:
        return not sender.is_closed and not self._client.is_closed

    def cached_topics(self) -> list[str]:
        """Topics that currently have a cached sender."""
        return list(self._senders)

    async def close(self) -> None:
        """
        Close every cached sender exactly once and clear the cache.

        The bus client is left open; it outlives any one publisher.
        """
        self._closed = True
        senders = list(self._senders.values())
        self._senders.clear()
        self._locks.clear()

        for sender in senders:
            try:
                await sender.close()
            except Exception:
                logger.error("Failed to close sender for topic %s", sender.topic, exc_info=True)
