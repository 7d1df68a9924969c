"""RabbitMQ subscription processor using aio-pika."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, TYPE_CHECKING

import aio_pika

from issuetracker.exceptions import MessageAlreadySettledError
from issuetracker.messaging.base import (
    ErrorCallback,
    ErrorContext,
    ErrorSource,
    MessageCallback,
    Processor,
    ReceivedMessage,
)
from issuetracker.messaging.rabbitmq.admin import queue_name

if TYPE_CHECKING:
    from issuetracker.messaging.rabbitmq.client import RabbitMQClient

logger = logging.getLogger(__name__)

DELIVERY_COUNT_HEADER = "x-delivery-count"
DEAD_LETTER_REASON_HEADER = "DeadLetterReason"
DEAD_LETTER_DESCRIPTION_HEADER = "DeadLetterErrorDescription"


class RabbitMQReceivedMessage(ReceivedMessage):
    """
    One AMQP delivery.

    Quorum queues stamp `x-delivery-count` on redeliveries; it is absent on
    the first delivery.
    """

    def __init__(
        self,
        message: aio_pika.abc.AbstractIncomingMessage,
        dead_letter_exchange: aio_pika.abc.AbstractExchange,
        routing_key: str,
    ) -> None:
        self._message = message
        self._dead_letter_exchange = dead_letter_exchange
        self._routing_key = routing_key
        self._settled = False
        self.settle_failed = False

        headers = dict(message.headers or {})
        self._delivery_count = int(headers.pop(DELIVERY_COUNT_HEADER, 0) or 0) + 1

        self.body = message.body
        self.message_id = message.message_id
        self.correlation_id = message.correlation_id
        self.subject = message.type
        self.content_type = message.content_type
        self.application_properties: dict[str, Any] = {
            key: value.decode("utf-8") if isinstance(value, bytes) else value
            for key, value in headers.items()
        }

    @property
    def delivery_count(self) -> int:
        return self._delivery_count

    @property
    def is_settled(self) -> bool:
        return self._settled

    async def complete(self) -> None:
        self._check_unsettled()
        await self._settle(self._message.ack())
        self._settled = True

    async def abandon(self) -> None:
        self._check_unsettled()
        await self._settle(self._message.nack(requeue=True))
        self._settled = True

    async def dead_letter(self, reason: str, description: str | None = None) -> None:
        """
        Republish a copy to the dead-letter exchange, then ack the original.

        If the republish fails the delivery is requeued instead and the
        publish error is raised.
        """
        self._check_unsettled()

        headers = dict(self._message.headers or {})
        headers[DEAD_LETTER_REASON_HEADER] = reason
        if description is not None:
            headers[DEAD_LETTER_DESCRIPTION_HEADER] = description

        copy = aio_pika.Message(
            body=self._message.body,
            content_type=self._message.content_type,
            correlation_id=self._message.correlation_id,
            message_id=self._message.message_id,
            type=self._message.type,
            headers=headers,
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
        )
        try:
            await self._settle(self._dead_letter_exchange.publish(copy, routing_key=self._routing_key))
        except Exception:
            logger.warning(
                "Dead-letter publish failed for message %s; requeueing it",
                self.message_id,
            )
            await self._message.nack(requeue=True)
            self._settled = True
            raise

        await self._settle(self._message.ack())
        self._settled = True

    def _check_unsettled(self) -> None:
        if self._settled:
            raise MessageAlreadySettledError(f"Message {self.message_id} was already settled")

    async def _settle(self, operation) -> None:
        try:
            await operation
        except Exception:
            self.settle_failed = True
            raise


class RabbitMQProcessor(Processor):
    """
    Consumes one subscription queue.

    Prefetch bounds how many callbacks run at once; aio-pika runs each
    delivery's callback in its own task.
    """

    def __init__(
        self,
        client: "RabbitMQClient",
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
        self._prefetch_count = max(1, max_concurrent_calls)
        self._channel: aio_pika.abc.AbstractChannel | None = None
        self._queue: aio_pika.abc.AbstractQueue | None = None
        self._dead_letter_exchange: aio_pika.abc.AbstractExchange | None = None
        self._consumer_tag: str | None = None
        self._in_flight: set[asyncio.Task] = set()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return

        connection = await self._client.get_connection()
        self._channel = await connection.channel()
        self._channel.close_callbacks.add(self._on_channel_close)
        await self._channel.set_qos(prefetch_count=self._prefetch_count)

        self._dead_letter_exchange = await self._channel.declare_exchange(
            self._client.dead_letter_exchange,
            aio_pika.ExchangeType.DIRECT,
            durable=True,
        )
        self._queue = await self._channel.declare_queue(
            queue_name(self.topic, self.subscription),
            passive=True,
        )
        self._consumer_tag = await self._queue.consume(self._on_amqp_message)
        self._running = True
        logger.debug("RabbitMQ processor started for %s", self.entity_path)

    async def stop(self) -> None:
        self._running = False
        if self._queue is not None and self._consumer_tag is not None:
            await self._queue.cancel(self._consumer_tag)
            self._consumer_tag = None

        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)

    async def close(self) -> None:
        if self._channel is not None and not self._channel.is_closed:
            await self._channel.close()
        self._channel = None
        self._queue = None

    async def _on_amqp_message(self, amqp_message: aio_pika.abc.AbstractIncomingMessage) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._in_flight.add(task)

        message = RabbitMQReceivedMessage(
            amqp_message,
            self._dead_letter_exchange,
            queue_name(self.topic, self.subscription),
        )
        try:
            await self._on_message(message)
        except Exception as exc:
            source = ErrorSource.SETTLE if message.settle_failed else ErrorSource.USER_CALLBACK
            await self._on_error(ErrorContext(exc, source, self.entity_path))
        finally:
            try:
                if not message.is_settled:
                    await message.abandon()
            except Exception as exc:
                await self._on_error(ErrorContext(exc, ErrorSource.SETTLE, self.entity_path))
            finally:
                if task is not None:
                    self._in_flight.discard(task)

    def _on_channel_close(self, channel: Any, exc: BaseException | None = None) -> None:
        if exc is None or not self._running:
            return
        asyncio.ensure_future(self._on_error(ErrorContext(exc, ErrorSource.CONNECTION, self.entity_path)))
