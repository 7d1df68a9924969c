"""
Subscription provisioning on RabbitMQ.

    topic exchange (fanout) ──► queue "{topic}.{subscription}" (quorum)
                                   │ x-dead-letter-exchange
                                   ▼
    dead-letter exchange (direct) ──► queue "{topic}.{subscription}.dead-letter"
"""

from __future__ import annotations

import logging
from typing import Any, TYPE_CHECKING

import aio_pika
from aio_pika.exceptions import ChannelNotFoundEntity

from issuetracker.messaging.base import SubscriptionAdmin, SubscriptionOptions

if TYPE_CHECKING:
    from issuetracker.messaging.rabbitmq.client import RabbitMQClient

logger = logging.getLogger(__name__)


def queue_name(topic: str, subscription: str) -> str:
    return f"{topic}.{subscription}"


def dead_letter_queue_name(topic: str, subscription: str) -> str:
    return f"{queue_name(topic, subscription)}.dead-letter"


def queue_arguments(
    topic: str,
    subscription: str,
    options: SubscriptionOptions,
    dead_letter_exchange: str,
) -> dict[str, Any]:
    """
    Arguments of a subscription queue.

    Quorum queues count redeliveries only, so the delivery limit is one
    less than the number of deliveries allowed.
    """
    arguments: dict[str, Any] = {
        "x-queue-type": "quorum",
        "x-delivery-limit": max(0, options.max_delivery_count - 1),
        "x-message-ttl": int(options.default_message_ttl.total_seconds() * 1000),
        "x-dead-letter-exchange": dead_letter_exchange,
        "x-dead-letter-routing-key": queue_name(topic, subscription),
    }
    if not options.dead_letter_on_expiration:
        # Broker drops expired messages; explicit dead-letters still republish
        arguments.pop("x-dead-letter-exchange")
        arguments.pop("x-dead-letter-routing-key")
    return arguments


class RabbitMQAdmin(SubscriptionAdmin):
    """Declares exchanges, queues and bindings for subscriptions."""

    def __init__(self, client: "RabbitMQClient") -> None:
        self._client = client

    async def subscription_exists(self, topic: str, subscription: str) -> bool:
        connection = await self._client.get_connection()
        # A failed passive declare closes the channel, so use a throwaway one
        channel = await connection.channel()
        try:
            await channel.declare_queue(queue_name(topic, subscription), passive=True)
        except ChannelNotFoundEntity:
            return False
        finally:
            if not channel.is_closed:
                await channel.close()
        return True

    async def create_subscription(
        self,
        topic: str,
        subscription: str,
        options: SubscriptionOptions,
    ) -> None:
        connection = await self._client.get_connection()
        channel = await connection.channel()
        try:
            exchange = await channel.declare_exchange(topic, aio_pika.ExchangeType.FANOUT, durable=True)
            dead_letter_exchange = await channel.declare_exchange(
                self._client.dead_letter_exchange,
                aio_pika.ExchangeType.DIRECT,
                durable=True,
            )

            name = queue_name(topic, subscription)
            queue = await channel.declare_queue(
                name,
                durable=True,
                arguments=queue_arguments(topic, subscription, options, self._client.dead_letter_exchange),
            )
            await queue.bind(exchange)

            dead_letter_queue = await channel.declare_queue(
                dead_letter_queue_name(topic, subscription),
                durable=True,
                arguments={"x-queue-type": "quorum"},
            )
            await dead_letter_queue.bind(dead_letter_exchange, routing_key=name)
        finally:
            await channel.close()

        logger.debug("Declared queue %s bound to exchange %s", name, topic)
