"""
Tests for subscription provisioning and the consumer service.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from issuetracker.config import BusSettings
from issuetracker.messaging.base import Processor, SubscriptionAdmin
from issuetracker.messaging.consumer import ConsumerService
from issuetracker.messaging.handlers import MessageHandlers
from issuetracker.messaging.processing import ProcessorFactory
from issuetracker.messaging.subscriptions import SubscriptionManager


def make_admin(existing: set[tuple[str, str]] | None = None) -> MagicMock:
    existing = existing if existing is not None else set()
    admin = MagicMock(spec=SubscriptionAdmin)
    admin.subscription_exists = AsyncMock(side_effect=lambda topic, sub: (topic, sub) in existing)

    async def create(topic, sub, options):
        existing.add((topic, sub))

    admin.create_subscription = AsyncMock(side_effect=create)
    return admin


def make_processor(topic: str, calls: list) -> MagicMock:
    processor = MagicMock(spec=Processor)
    processor.topic = topic
    processor.subscription = "import"
    processor.entity_path = f"{topic}/subscriptions/import"
    processor.start = AsyncMock()
    processor.stop = AsyncMock(side_effect=lambda: calls.append(("stop", topic)))
    processor.close = AsyncMock(side_effect=lambda: calls.append(("close", topic)))
    return processor


class TestSubscriptionManager:
    """Idempotent provisioning."""

    async def test_creates_missing_subscription(self, settings):
        admin = make_admin()
        manager = SubscriptionManager(admin, settings)

        created = await manager.ensure_subscription_exists("issue.create", "import")

        assert created is True
        admin.create_subscription.assert_awaited_once()

    async def test_second_call_does_not_create(self, settings):
        admin = make_admin()
        manager = SubscriptionManager(admin, settings)

        await manager.ensure_subscription_exists("issue.create", "import")
        created = await manager.ensure_subscription_exists("issue.create", "import")

        assert created is False
        assert admin.create_subscription.await_count == 1

    async def test_options_follow_retry_policy(self):
        settings = BusSettings(connection_string="memory://", max_retry_attempts=3, _env_file=None)
        admin = make_admin()
        manager = SubscriptionManager(admin, settings)

        await manager.ensure_subscription_exists("issue.create", "import")

        options = admin.create_subscription.await_args.args[2]
        assert options.max_delivery_count == 4
        assert options.dead_letter_on_expiration is True
        assert options.default_message_ttl == timedelta(days=14)


@pytest.fixture
def consumer_parts(mock_client, settings):
    calls: list = []
    processors: dict[str, MagicMock] = {}

    def create_processor(topic, subscription, on_message, on_error, max_concurrent_calls=1):
        processors[topic] = make_processor(topic, calls)
        return processors[topic]

    mock_client.admin.return_value = make_admin()
    mock_client.create_processor = MagicMock(side_effect=create_processor)
    return mock_client, processors, calls


class TestConsumerService:
    """One processor per consumed topic."""

    async def test_starts_processor_for_every_topic(self, consumer_parts, registry, settings):
        client, processors, _ = consumer_parts
        service = ConsumerService(client, registry, ProcessorFactory(MessageHandlers(), settings), settings)

        started = await service.start_listening()

        assert started == registry.names()
        assert len(service.processors) == 7
        for processor in processors.values():
            processor.start.assert_awaited_once()

    async def test_processor_wired_with_handlers_and_concurrency(self, consumer_parts, registry, settings):
        client, _, _ = consumer_parts
        service = ConsumerService(client, registry, ProcessorFactory(MessageHandlers(), settings), settings)

        await service.start_listening()

        kwargs = client.create_processor.call_args_list[0].kwargs
        assert kwargs["max_concurrent_calls"] == settings.max_concurrent_calls
        assert kwargs["on_message"].__name__ == "handle_message"
        assert kwargs["on_error"].__name__ == "handle_error"

    async def test_one_failing_topic_does_not_stop_others(self, consumer_parts, registry, settings):
        client, processors, _ = consumer_parts
        admin = client.admin.return_value
        original = admin.subscription_exists.side_effect

        def flaky(topic, sub):
            if topic == "issue.update":
                raise ConnectionError("management endpoint down")
            return original(topic, sub)

        admin.subscription_exists.side_effect = flaky
        service = ConsumerService(client, registry, ProcessorFactory(MessageHandlers(), settings), settings)

        started = await service.start_listening()

        assert "issue.update" not in started
        assert len(started) == 6
        assert isinstance(service.failed_topics["issue.update"], ConnectionError)

    async def test_failed_start_closes_processor(self, consumer_parts, registry, settings):
        client, processors, _ = consumer_parts

        def create_processor(topic, subscription, on_message, on_error, max_concurrent_calls=1):
            processor = make_processor(topic, [])
            if topic == "user.create":
                processor.start.side_effect = RuntimeError("queue missing")
            processors[topic] = processor
            return processor

        client.create_processor.side_effect = create_processor
        service = ConsumerService(client, registry, ProcessorFactory(MessageHandlers(), settings), settings)

        started = await service.start_listening()

        assert "user.create" not in started
        processors["user.create"].close.assert_awaited_once()

    async def test_consume_topics_subset(self, consumer_parts, registry):
        client, _, _ = consumer_parts
        settings = BusSettings(
            connection_string="memory://",
            consume_topics=["issue.create", "issue.comment.create"],
            _env_file=None,
        )
        service = ConsumerService(client, registry, ProcessorFactory(MessageHandlers(), settings), settings)

        started = await service.start_listening()

        assert started == ["issue.create", "issue.comment.create"]

    async def test_stop_stops_all_before_closing(self, consumer_parts, registry, settings):
        client, _, calls = consumer_parts
        service = ConsumerService(client, registry, ProcessorFactory(MessageHandlers(), settings), settings)
        await service.start_listening()

        await service.stop()

        actions = [action for action, _ in calls]
        assert actions == ["stop"] * 7 + ["close"] * 7
        assert service.processors == []

    async def test_stop_without_start(self, consumer_parts, registry, settings):
        client, _, calls = consumer_parts
        service = ConsumerService(client, registry, ProcessorFactory(MessageHandlers(), settings), settings)

        await service.stop()
        await service.stop()

        assert calls == []

    async def test_ensure_subscriptions_reports_created(self, consumer_parts, registry, settings):
        client, _, _ = consumer_parts
        service = ConsumerService(client, registry, ProcessorFactory(MessageHandlers(), settings), settings)

        first = await service.ensure_subscriptions()
        second = await service.ensure_subscriptions()

        assert first == registry.names()
        assert second == []
