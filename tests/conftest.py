"""
Shared test configuration.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from issuetracker.config import BusSettings, reset_settings
from issuetracker.messaging.base import BusClient, ReceivedMessage, Sender, SubscriptionAdmin
from issuetracker.messaging.envelopes import Envelope
from issuetracker.messaging.memory import InMemoryBusClient
from issuetracker.messaging.publisher import Publisher
from issuetracker.messaging.topics import TopicRegistry


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    """Each test starts without a global settings instance or bus env vars."""
    import os

    for key in list(os.environ):
        if key.startswith("SERVICE_BUS_"):
            monkeypatch.delenv(key)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def settings() -> BusSettings:
    """Memory-broker settings without retry delay."""
    return BusSettings(
        connection_string="memory://",
        message_broker="memory",
        retry_delay_seconds=0,
        _env_file=None,
    )


@pytest.fixture
def registry(settings) -> TopicRegistry:
    return TopicRegistry.from_settings(settings)


@pytest.fixture
async def memory_client():
    client = InMemoryBusClient()
    await client.connect()
    yield client
    await client.close()


def make_sender(topic: str = "issue.create") -> MagicMock:
    """Open sender double."""
    sender = MagicMock(spec=Sender)
    sender.topic = topic
    sender.is_closed = False
    sender.send = AsyncMock()
    sender.close = AsyncMock()
    return sender


def make_client() -> MagicMock:
    """Open bus client double creating a fresh sender per call."""
    client = MagicMock(spec=BusClient)
    client.name = "mock"
    client.is_closed = False
    client.create_sender = AsyncMock(side_effect=lambda topic: make_sender(topic))
    client.admin.return_value = MagicMock(spec=SubscriptionAdmin)
    client.close = AsyncMock()
    client.connect = AsyncMock()
    return client


def make_received(
    envelope: Envelope | None = None,
    *,
    delivery_count: int = 1,
    body: bytes | None = None,
    properties: dict | None = None,
) -> MagicMock:
    """Received message double for an envelope (or a raw body/properties pair)."""
    if envelope is not None:
        wire = Publisher.build_message(envelope)
        body = wire.body if body is None else body
        properties = wire.application_properties if properties is None else properties

    message = MagicMock(spec=ReceivedMessage)
    message.body = body or b""
    message.message_id = "msg-1"
    message.correlation_id = envelope.correlation_id if envelope is not None else None
    message.subject = envelope.event_type if envelope is not None else None
    message.content_type = "application/json"
    message.application_properties = properties or {}
    message.delivery_count = delivery_count
    message.is_settled = False
    message.complete = AsyncMock()
    message.abandon = AsyncMock()
    message.dead_letter = AsyncMock()
    return message


@pytest.fixture
def mock_client() -> MagicMock:
    return make_client()


@pytest.fixture
def received_factory():
    """Factory building received message doubles."""
    return make_received
