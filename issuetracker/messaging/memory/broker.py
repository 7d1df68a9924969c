"""
In-process bus client, sender and subscription admin.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from dataclasses import dataclass, field

from issuetracker.messaging.base import (
    BusClient,
    ErrorCallback,
    MessageCallback,
    OutgoingMessage,
    Processor,
    Sender,
    SubscriptionAdmin,
    SubscriptionOptions,
)

logger = logging.getLogger(__name__)


@dataclass
class StoredMessage:
    """A message waiting in (or delivered from) one subscription."""

    message: OutgoingMessage
    expires_at: float
    delivery_count: int = 0


@dataclass
class DeadLetteredMessage:
    """Entry of a subscription's dead-letter queue."""

    message: OutgoingMessage
    reason: str
    description: str | None
    delivery_count: int


@dataclass
class MemorySubscription:
    """
    One durable subscription: a queue, its dead-letter list and its policy.

    `queue.join()` returns once every enqueued message reached a terminal
    state (completed, dead-lettered or expired).
    """

    topic: str
    name: str
    options: SubscriptionOptions
    queue: asyncio.Queue[StoredMessage] = field(default_factory=asyncio.Queue)
    completed: list[OutgoingMessage] = field(default_factory=list)
    dead_letters: list[DeadLetteredMessage] = field(default_factory=list)

    @property
    def entity_path(self) -> str:
        return f"{self.topic}/subscriptions/{self.name}"

    def enqueue(self, message: OutgoingMessage) -> None:
        ttl = self.options.default_message_ttl.total_seconds()
        self.queue.put_nowait(StoredMessage(message=copy.deepcopy(message), expires_at=time.monotonic() + ttl))

    def requeue(self, stored: StoredMessage) -> None:
        self.queue.put_nowait(stored)
        self.queue.task_done()

    def settle_complete(self, stored: StoredMessage) -> None:
        self.completed.append(stored.message)
        self.queue.task_done()

    def settle_dead_letter(self, stored: StoredMessage, reason: str, description: str | None) -> None:
        self.dead_letters.append(
            DeadLetteredMessage(
                message=stored.message,
                reason=reason,
                description=description,
                delivery_count=stored.delivery_count,
            )
        )
        self.queue.task_done()
        logger.debug("Dead-lettered message %s on %s: %s", stored.message.message_id, self.entity_path, reason)

    def settle_expired(self, stored: StoredMessage) -> None:
        if self.options.dead_letter_on_expiration:
            self.settle_dead_letter(stored, "TTLExpiredException", "Message expired before delivery")
        else:
            self.queue.task_done()


class MemorySender(Sender):
    """Fans a message out to every subscription of its topic."""

    def __init__(self, client: "InMemoryBusClient", topic: str) -> None:
        self._client = client
        self.topic = topic
        self._closed = False

    async def send(self, message: OutgoingMessage) -> None:
        if self._closed or self._client.is_closed:
            raise ConnectionError(f"Sender for topic {self.topic} is closed")
        self._client.record_sent(self.topic, message)
        for subscription in self._client.subscriptions(self.topic):
            subscription.enqueue(message)

    async def close(self) -> None:
        self._closed = True

    @property
    def is_closed(self) -> bool:
        return self._closed


class MemoryAdmin(SubscriptionAdmin):
    def __init__(self, client: "InMemoryBusClient") -> None:
        self._client = client

    async def subscription_exists(self, topic: str, subscription: str) -> bool:
        return self._client.get_subscription(topic, subscription) is not None

    async def create_subscription(
        self,
        topic: str,
        subscription: str,
        options: SubscriptionOptions,
    ) -> None:
        self._client.add_subscription(MemorySubscription(topic=topic, name=subscription, options=options))


class InMemoryBusClient(BusClient):
    """
    Single-process bus with the settlement semantics of a broker.

    - Topics fan out: each subscription receives its own copy
    - Messages published to a topic without subscriptions are dropped
    - Abandoned messages are redelivered with delivery_count + 1
    - Past max_delivery_count the bus dead-letters on its own

    Example:
        client = InMemoryBusClient()
        await client.connect()
        await client.admin().create_subscription("issue.create", "import", options)
        ...
        await client.drain()
        client.get_subscription("issue.create", "import").dead_letters
    """

    name = "memory"

    def __init__(self) -> None:
        self._closed = False
        self._subscriptions: dict[str, dict[str, MemorySubscription]] = {}
        self._sent: dict[str, list[OutgoingMessage]] = {}
        self._admin = MemoryAdmin(self)

    async def connect(self) -> None:
        self._closed = False

    async def close(self) -> None:
        self._closed = True

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def create_sender(self, topic: str) -> Sender:
        if self._closed:
            raise ConnectionError("Bus client is closed")
        return MemorySender(self, topic)

    def create_processor(
        self,
        topic: str,
        subscription: str,
        on_message: MessageCallback,
        on_error: ErrorCallback,
        max_concurrent_calls: int = 1,
    ) -> Processor:
        from issuetracker.messaging.memory.processor import MemoryProcessor

        return MemoryProcessor(
            self,
            topic,
            subscription,
            on_message=on_message,
            on_error=on_error,
            max_concurrent_calls=max_concurrent_calls,
        )

    def admin(self) -> SubscriptionAdmin:
        return self._admin

    # =========================================================================
    # Introspection
    # =========================================================================

    def add_subscription(self, subscription: MemorySubscription) -> None:
        topic_subscriptions = self._subscriptions.setdefault(subscription.topic, {})
        if subscription.name in topic_subscriptions:
            raise ValueError(f"Subscription {subscription.entity_path} already exists")
        topic_subscriptions[subscription.name] = subscription

    def get_subscription(self, topic: str, name: str) -> MemorySubscription | None:
        return self._subscriptions.get(topic, {}).get(name)

    def subscriptions(self, topic: str) -> list[MemorySubscription]:
        return list(self._subscriptions.get(topic, {}).values())

    def record_sent(self, topic: str, message: OutgoingMessage) -> None:
        self._sent.setdefault(topic, []).append(message)

    def sent_messages(self, topic: str) -> list[OutgoingMessage]:
        """Every message sent to a topic, in send order."""
        return list(self._sent.get(topic, []))

    async def drain(self, timeout: float | None = 5.0) -> None:
        """Wait until every subscription queue has no unsettled message."""
        waits = [
            subscription.queue.join()
            for topic_subscriptions in self._subscriptions.values()
            for subscription in topic_subscriptions.values()
        ]
        await asyncio.wait_for(asyncio.gather(*waits), timeout)
