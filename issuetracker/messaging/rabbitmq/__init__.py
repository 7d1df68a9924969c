"""
RabbitMQ transport.

Requirements:
    pip install aio-pika

Topics are durable fanout exchanges; each subscription is a durable quorum
queue bound to its topic, with its own dead-letter queue.
"""

from issuetracker.messaging.rabbitmq.admin import RabbitMQAdmin
from issuetracker.messaging.rabbitmq.client import RabbitMQClient
from issuetracker.messaging.rabbitmq.processor import RabbitMQProcessor, RabbitMQReceivedMessage
from issuetracker.messaging.rabbitmq.sender import RabbitMQSender

__all__ = [
    "RabbitMQClient",
    "RabbitMQSender",
    "RabbitMQProcessor",
    "RabbitMQReceivedMessage",
    "RabbitMQAdmin",
]
