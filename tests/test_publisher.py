"""
Tests for issuetracker.messaging.publisher.
"""

import asyncio
import json
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from issuetracker.exceptions import PublisherClosedError
from issuetracker.messaging.base import EVENT_TYPE_PROPERTY, TIMESTAMP_PROPERTY
from issuetracker.messaging.envelopes import (
    IssueAssignedMessage,
    IssueCommentCreatedMessage,
    IssueCreatedMessage,
    IssueLabelAssignedMessage,
    IssueUpdatedMessage,
    LabelCreatedMessage,
    UserCreatedMessage,
)
from issuetracker.messaging.publisher import Publisher


class TestPublish:
    """Publishing builds one wire message and sends it once."""

    async def test_sends_once_with_metadata(self, mock_client, registry):
        publisher = Publisher(mock_client, registry)
        message = IssueCreatedMessage(issue_id=42, title="T", body="B", creator_id=7, label_ids=[1, 2])

        await publisher.publish_issue_created(message)

        sender = publisher._senders["issue.create"]
        sender.send.assert_awaited_once()
        wire = sender.send.await_args.args[0]
        assert wire.subject == "issue.create"
        assert wire.correlation_id == message.correlation_id
        assert wire.content_type == "application/json"
        assert wire.application_properties[EVENT_TYPE_PROPERTY] == "issue.create"
        assert wire.application_properties[TIMESTAMP_PROPERTY] == message.timestamp.isoformat()
        assert json.loads(wire.body)["issue_id"] == 42

    @pytest.mark.parametrize(
        "method, envelope, topic",
        [
            ("publish_user_created", UserCreatedMessage(user_id=1), "user.create"),
            ("publish_label_created", LabelCreatedMessage(label_id=1), "label.create"),
            ("publish_issue_updated", IssueUpdatedMessage(issue_id=1), "issue.update"),
            ("publish_issue_assigned", IssueAssignedMessage(issue_id=1), "issue.user.assign"),
            ("publish_issue_comment_created", IssueCommentCreatedMessage(comment_id=1), "issue.comment.create"),
            ("publish_issue_label_assigned", IssueLabelAssignedMessage(label_id=1), "issue.label.assign"),
        ],
    )
    async def test_typed_wrappers_use_their_topic(self, mock_client, registry, method, envelope, topic):
        publisher = Publisher(mock_client, registry)

        await getattr(publisher, method)(envelope)

        mock_client.create_sender.assert_awaited_once_with(topic)

    async def test_publish_event_resolves_topic(self, mock_client, registry):
        publisher = Publisher(mock_client, registry)

        await publisher.publish_event(LabelCreatedMessage(label_id=3))

        assert publisher.cached_topics() == ["label.create"]

    async def test_explicit_topic_name(self, mock_client, registry):
        publisher = Publisher(mock_client, registry)

        await publisher.publish(UserCreatedMessage(user_id=1), "audit.users")

        mock_client.create_sender.assert_awaited_once_with("audit.users")

    async def test_failure_is_logged_and_reraised(self, mock_client, registry, caplog):
        publisher = Publisher(mock_client, registry)
        sender = await publisher.get_or_create_sender("user.create")
        boom = ConnectionError("broker unreachable")
        sender.send.side_effect = boom

        with pytest.raises(ConnectionError) as exc_info:
            await publisher.publish_user_created(UserCreatedMessage(user_id=1))

        assert exc_info.value is boom
        assert "Failed to publish message of type UserCreatedMessage to topic user.create" in caplog.text

    async def test_success_is_logged_at_info(self, mock_client, registry, caplog):
        caplog.set_level(logging.INFO, logger="issuetracker.messaging.publisher")
        publisher = Publisher(mock_client, registry)
        message = UserCreatedMessage(user_id=1)

        await publisher.publish_user_created(message)

        assert message.correlation_id in caplog.text

    async def test_timeout_bounds_the_send(self, mock_client, registry):
        publisher = Publisher(mock_client, registry)
        sender = await publisher.get_or_create_sender("user.create")

        async def hang(message):
            await asyncio.sleep(10)

        sender.send.side_effect = hang

        with pytest.raises(asyncio.TimeoutError):
            await publisher.publish_user_created(UserCreatedMessage(user_id=1), timeout=0.01)


class TestSenderCache:
    """Per-topic sender cache."""

    async def test_sender_is_reused(self, mock_client, registry):
        publisher = Publisher(mock_client, registry)

        await publisher.publish_user_created(UserCreatedMessage(user_id=1))
        await publisher.publish_user_created(UserCreatedMessage(user_id=2))

        assert mock_client.create_sender.await_count == 1
        assert publisher._senders["user.create"].send.await_count == 2

    async def test_two_topics_two_senders(self, mock_client, registry):
        publisher = Publisher(mock_client, registry)

        await publisher.publish_user_created(UserCreatedMessage(user_id=1))
        await publisher.publish_label_created(LabelCreatedMessage(label_id=1))

        assert mock_client.create_sender.await_count == 2
        assert sorted(publisher.cached_topics()) == ["label.create", "user.create"]

    async def test_closed_sender_is_recreated(self, mock_client, registry, caplog):
        publisher = Publisher(mock_client, registry)
        first = await publisher.get_or_create_sender("user.create")
        first.is_closed = True

        second = await publisher.get_or_create_sender("user.create")

        assert second is not first
        assert publisher._senders["user.create"] is second
        assert "recreating sender" in caplog.text

    async def test_closed_client_forces_recreation(self, mock_client, registry):
        publisher = Publisher(mock_client, registry)
        first = await publisher.get_or_create_sender("user.create")
        mock_client.is_closed = True

        second = await publisher.get_or_create_sender("user.create")

        assert second is not first

    async def test_concurrent_first_publish_creates_one_sender(self, mock_client, registry):
        publisher = Publisher(mock_client, registry)

        await asyncio.gather(*[
            publisher.publish_user_created(UserCreatedMessage(user_id=i)) for i in range(10)
        ])

        assert mock_client.create_sender.await_count == 1


class TestPublisherClose:
    """Publisher shutdown."""

    async def test_close_disposes_each_sender_once(self, mock_client, registry):
        publisher = Publisher(mock_client, registry)
        await publisher.publish_user_created(UserCreatedMessage(user_id=1))
        await publisher.publish_label_created(LabelCreatedMessage(label_id=1))
        senders = list(publisher._senders.values())

        await publisher.close()
        await publisher.close()

        for sender in senders:
            sender.close.assert_awaited_once()
        assert publisher.cached_topics() == []

    async def test_close_leaves_client_open(self, mock_client, registry):
        publisher = Publisher(mock_client, registry)
        await publisher.publish_user_created(UserCreatedMessage(user_id=1))

        await publisher.close()

        mock_client.close.assert_not_awaited()

    async def test_publish_after_close_raises(self, mock_client, registry):
        publisher = Publisher(mock_client, registry)
        await publisher.close()

        with pytest.raises(PublisherClosedError):
            await publisher.publish_user_created(UserCreatedMessage(user_id=1))

    async def test_context_manager_closes(self, mock_client, registry):
        async with Publisher(mock_client, registry) as publisher:
            await publisher.publish_user_created(UserCreatedMessage(user_id=1))
            sender = publisher._senders["user.create"]

        sender.close.assert_awaited_once()
        assert publisher.is_closed

    async def test_sender_created_during_close_is_closed(self, mock_client, registry):
        publisher = Publisher(mock_client, registry)
        release = asyncio.Event()
        sender = MagicMock(topic="user.create", is_closed=False, close=AsyncMock())

        async def slow_create(topic):
            await release.wait()
            return sender

        mock_client.create_sender = AsyncMock(side_effect=slow_create)
        pending = asyncio.create_task(publisher.get_or_create_sender("user.create"))
        await asyncio.sleep(0)

        await publisher.close()
        release.set()

        with pytest.raises(PublisherClosedError):
            await pending
        sender.close.assert_awaited_once()
        assert publisher.cached_topics() == []

    async def test_sender_close_failure_does_not_stop_others(self, mock_client, registry):
        publisher = Publisher(mock_client, registry)
        await publisher.publish_user_created(UserCreatedMessage(user_id=1))
        await publisher.publish_label_created(LabelCreatedMessage(label_id=1))
        failing = publisher._senders["user.create"]
        other = publisher._senders["label.create"]
        failing.close = AsyncMock(side_effect=RuntimeError("already gone"))

        await publisher.close()

        other.close.assert_awaited_once()
