"""RabbitMQ topic sender using aio-pika."""

from __future__ import annotations

import aio_pika

from issuetracker.messaging.base import OutgoingMessage, Sender


def to_amqp_message(message: OutgoingMessage) -> aio_pika.Message:
    """Map a wire message onto AMQP properties. The subject travels as `type`."""
    return aio_pika.Message(
        body=message.body,
        content_type=message.content_type,
        correlation_id=message.correlation_id,
        message_id=message.message_id,
        type=message.subject,
        headers=dict(message.application_properties),
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
    )


class RabbitMQSender(Sender):
    """
    Publishes to one topic exchange on a dedicated channel.

    The exchange is a fanout: every subscription queue bound to it gets a copy.
    """

    def __init__(self, topic: str, channel: aio_pika.abc.AbstractChannel, exchange: aio_pika.abc.AbstractExchange):
        self.topic = topic
        self._channel = channel
        self._exchange = exchange

    async def send(self, message: OutgoingMessage) -> None:
        await self._exchange.publish(to_amqp_message(message), routing_key="")

    async def close(self) -> None:
        if not self._channel.is_closed:
            await self._channel.close()

    @property
    def is_closed(self) -> bool:
        return self._channel.is_closed
