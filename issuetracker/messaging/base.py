"""
Base interfaces for the service bus.

Every transport (RabbitMQ, in-memory) implements these interfaces, so the
publisher, the consumer and the settlement state machine never depend on a
concrete broker library.

Resource ownership:
    BusClient (root, process-wide)
    ├── Sender     (one per topic, owned by a Publisher)
    └── Processor  (one per subscription, owned by a ConsumerService)

Leaf resources are closed before the client.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from enum import StrEnum
from typing import Any, Awaitable, Callable, TYPE_CHECKING

if TYPE_CHECKING:
    from issuetracker.config import BusSettings


# Application property names carried on every message
EVENT_TYPE_PROPERTY = "EventType"
TIMESTAMP_PROPERTY = "Timestamp"

JSON_CONTENT_TYPE = "application/json"


class Disposition(StrEnum):
    """Settlement outcome of one delivery."""

    UNDECIDED = "undecided"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    DEAD_LETTERED = "dead_lettered"


class ErrorSource(StrEnum):
    """Where a transport-level error was raised."""

    USER_CALLBACK = "user_callback"
    SETTLE = "settle"
    CONNECTION = "connection"


@dataclass
class OutgoingMessage:
    """
    Wire message handed to a Sender.

    Attributes:
        body: Serialized payload
        content_type: MIME type of the body
        correlation_id: Correlation id for tracing
        subject: Message label (the event type)
        application_properties: Properties subscriptions may filter on
        message_id: Unique id of this wire message
    """

    body: bytes
    content_type: str = JSON_CONTENT_TYPE
    correlation_id: str | None = None
    subject: str | None = None
    application_properties: dict[str, Any] = field(default_factory=dict)
    message_id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass(frozen=True)
class SubscriptionOptions:
    """
    Policy applied when a subscription is created.

    Attributes:
        max_delivery_count: Deliveries (initial attempt included) before the
            broker dead-letters on its own
        dead_letter_on_expiration: Dead-letter expired messages
        default_message_ttl: Message time-to-live
    """

    max_delivery_count: int
    dead_letter_on_expiration: bool = True
    default_message_ttl: timedelta = timedelta(days=14)

    @classmethod
    def from_settings(cls, settings: "BusSettings") -> "SubscriptionOptions":
        return cls(
            max_delivery_count=settings.max_delivery_count,
            dead_letter_on_expiration=settings.dead_letter_on_expiration,
            default_message_ttl=settings.message_ttl,
        )


@dataclass
class ErrorContext:
    """Transport error reported to a processor's error handler."""

    exception: BaseException
    error_source: ErrorSource
    entity_path: str


class ReceivedMessage(ABC):
    """
    One delivery of a message, as handed to a processor callback.

    Exactly one settlement method should be awaited per delivery.
    """

    body: bytes
    message_id: str | None
    correlation_id: str | None
    subject: str | None
    content_type: str | None
    application_properties: dict[str, Any]

    @property
    @abstractmethod
    def delivery_count(self) -> int:
        """Times this message was delivered, the current attempt included."""
        ...

    @property
    @abstractmethod
    def is_settled(self) -> bool:
        """True once a settlement was accepted by the bus."""
        ...

    @abstractmethod
    async def complete(self) -> None:
        """Remove the message from the subscription."""
        ...

    @abstractmethod
    async def abandon(self) -> None:
        """Release the message for redelivery."""
        ...

    @abstractmethod
    async def dead_letter(self, reason: str, description: str | None = None) -> None:
        """Move the message to the dead-letter queue."""
        ...


MessageCallback = Callable[[ReceivedMessage], Awaitable[None]]
ErrorCallback = Callable[[ErrorContext], Awaitable[None]]


class Sender(ABC):
    """
    Sends messages to one topic.

    Example:
        sender = await client.create_sender("issue.create")
        await sender.send(OutgoingMessage(body=b"{}"))
        await sender.close()
    """

    topic: str

    @abstractmethod
    async def send(self, message: OutgoingMessage) -> None:
        """Send one message to the topic."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the sender."""
        ...

    @property
    @abstractmethod
    def is_closed(self) -> bool:
        ...


class Processor(ABC):
    """
    Receives messages from one subscription and dispatches them to a callback.

    The callback settles each message itself; there is no auto-complete.
    """

    topic: str
    subscription: str

    @abstractmethod
    async def start(self) -> None:
        """Start receiving messages."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop accepting new messages and wait for in-flight callbacks."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release transport resources. Call after stop()."""
        ...

    @property
    @abstractmethod
    def is_running(self) -> bool:
        ...

    @property
    def entity_path(self) -> str:
        return f"{self.topic}/subscriptions/{self.subscription}"


class SubscriptionAdmin(ABC):
    """Management operations for subscriptions."""

    @abstractmethod
    async def subscription_exists(self, topic: str, subscription: str) -> bool:
        ...

    @abstractmethod
    async def create_subscription(
        self,
        topic: str,
        subscription: str,
        options: SubscriptionOptions,
    ) -> None:
        ...


class BusClient(ABC):
    """
    Process-wide connection to the bus.

    Shared by the publisher and every processor. Only the host closes it,
    after all senders and processors are closed.

    Example:
        client = create_bus_client(settings)
        await client.connect()
        sender = await client.create_sender("user.create")
        ...
        await client.close()
    """

    name: str = "base"

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection. Idempotent."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Idempotent."""
        ...

    @property
    @abstractmethod
    def is_closed(self) -> bool:
        ...

    @abstractmethod
    async def create_sender(self, topic: str) -> Sender:
        """Create a sender bound to one topic."""
        ...

    @abstractmethod
    def create_processor(
        self,
        topic: str,
        subscription: str,
        on_message: MessageCallback,
        on_error: ErrorCallback,
        max_concurrent_calls: int = 1,
    ) -> Processor:
        """Create a (not yet started) processor for one subscription."""
        ...

    @abstractmethod
    def admin(self) -> SubscriptionAdmin:
        """Get the subscription management client."""
        ...
