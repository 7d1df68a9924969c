"""
In-process subscription processor.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, TYPE_CHECKING

from issuetracker.exceptions import MessageAlreadySettledError
from issuetracker.messaging.base import (
    ErrorCallback,
    ErrorContext,
    ErrorSource,
    MessageCallback,
    Processor,
    ReceivedMessage,
)

if TYPE_CHECKING:
    from issuetracker.messaging.memory.broker import (
        InMemoryBusClient,
        MemorySubscription,
        StoredMessage,
    )

logger = logging.getLogger(__name__)

MAX_DELIVERY_COUNT_REASON = "MaxDeliveryCountExceeded"


class MemoryReceivedMessage(ReceivedMessage):
    """One delivery from a MemorySubscription."""

    def __init__(self, stored: "StoredMessage", subscription: "MemorySubscription") -> None:
        self._stored = stored
        self._subscription = subscription
        self._settled = False

        message = stored.message
        self.body = message.body
        self.message_id = message.message_id
        self.correlation_id = message.correlation_id
        self.subject = message.subject
        self.content_type = message.content_type
        self.application_properties: dict[str, Any] = dict(message.application_properties)

    @property
    def delivery_count(self) -> int:
        return self._stored.delivery_count

    @property
    def is_settled(self) -> bool:
        return self._settled

    async def complete(self) -> None:
        self._check_unsettled()
        self._subscription.settle_complete(self._stored)
        self._settled = True

    async def abandon(self) -> None:
        self._check_unsettled()
        if self._stored.delivery_count >= self._subscription.options.max_delivery_count:
            self._subscription.settle_dead_letter(
                self._stored,
                MAX_DELIVERY_COUNT_REASON,
                f"Message could not be consumed after {self._stored.delivery_count} delivery attempts",
            )
        else:
            self._subscription.requeue(self._stored)
        self._settled = True

    async def dead_letter(self, reason: str, description: str | None = None) -> None:
        self._check_unsettled()
        self._subscription.settle_dead_letter(self._stored, reason, description)
        self._settled = True

    def _check_unsettled(self) -> None:
        if self._settled:
            raise MessageAlreadySettledError(f"Message {self.message_id} was already settled")


class MemoryProcessor(Processor):
    """
    Pulls messages from a MemorySubscription and runs the callback.

    At most `max_concurrent_calls` callbacks run at once. A callback that
    raises is reported to the error callback; a delivery the callback left
    unsettled is abandoned, as if its lock had expired.
    """

    def __init__(
        self,
        client: "InMemoryBusClient",
        topic: str,
        subscription: str,
        on_message: MessageCallback,
        on_error: ErrorCallback,
        max_concurrent_calls: int = 1,
    ) -> None:
        self._client = client
        self.topic = topic
        self.subscription = subscription
        self._on_message = on_message
        self._on_error = on_error
        self._semaphore = asyncio.Semaphore(max(1, max_concurrent_calls))
        self._receive_task: asyncio.Task | None = None
        self._in_flight: set[asyncio.Task] = set()
        self._closed = False

    @property
    def is_running(self) -> bool:
        return self._receive_task is not None and not self._receive_task.done()

    async def start(self) -> None:
        if self._closed:
            raise RuntimeError(f"Processor for {self.entity_path} is closed")
        if self.is_running:
            return

        subscription = self._client.get_subscription(self.topic, self.subscription)
        if subscription is None:
            raise LookupError(f"Subscription {self.entity_path} does not exist")

        self._receive_task = asyncio.create_task(self._receive_loop(subscription))
        logger.debug("Memory processor started for %s", self.entity_path)

    async def stop(self) -> None:
        if self._receive_task is not None:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None

        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)

    async def close(self) -> None:
        self._closed = True

    async def _receive_loop(self, subscription: "MemorySubscription") -> None:
        while True:
            await self._semaphore.acquire()
            try:
                stored = await subscription.queue.get()
            except asyncio.CancelledError:
                self._semaphore.release()
                raise

            stored.delivery_count += 1
            if time.monotonic() >= stored.expires_at:
                self._semaphore.release()
                subscription.settle_expired(stored)
                continue

            task = asyncio.create_task(self._deliver(MemoryReceivedMessage(stored, subscription)))
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)

    async def _deliver(self, message: MemoryReceivedMessage) -> None:
        try:
            await self._on_message(message)
        except Exception as exc:
            await self._on_error(ErrorContext(exc, ErrorSource.USER_CALLBACK, self.entity_path))
        finally:
            try:
                if not message.is_settled:
                    await message.abandon()
            finally:
                self._semaphore.release()
