"""
Transport selection.

Builds the BusClient for the configured `message_broker`:
- rabbitmq -> RabbitMQClient (aio-pika)
- memory   -> InMemoryBusClient (single process, for tests and local runs)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from issuetracker.exceptions import ConfigurationError

if TYPE_CHECKING:
    from issuetracker.config import BusSettings
    from issuetracker.messaging.base import BusClient


def create_bus_client(settings: "BusSettings") -> "BusClient":
    """
    Create (but do not connect) the bus client for the settings.

    Raises:
        ConfigurationError: If the broker is not supported
    """
    if settings.message_broker == "rabbitmq":
        from issuetracker.messaging.rabbitmq import RabbitMQClient
        return RabbitMQClient(
            url=settings.connection_string,
            dead_letter_exchange=settings.dead_letter_exchange,
        )

    if settings.message_broker == "memory":
        from issuetracker.messaging.memory import InMemoryBusClient
        return InMemoryBusClient()

    raise ConfigurationError(
        f"Unsupported message broker '{settings.message_broker}'",
        details={"message_broker": settings.message_broker},
    )
