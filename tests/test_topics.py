"""
Tests for issuetracker.messaging.topics.
"""

import pytest

from issuetracker.config import TopicSettings
from issuetracker.exceptions import UnknownTopicError
from issuetracker.messaging.envelopes import EventType
from issuetracker.messaging.topics import TopicRegistry


class TestTopicRegistry:
    """Logical event names -> physical topics."""

    def test_defaults_equal_logical_names(self, registry):
        for event_type in EventType:
            assert registry.topic_for(event_type) == event_type.value

    def test_lookup_by_string(self, registry):
        assert registry.topic_for("issue.comment.create") == "issue.comment.create"

    def test_overridden_topic(self):
        registry = TopicRegistry.from_topic_settings(TopicSettings(issue_create="tracker.issues"))
        assert registry[EventType.ISSUE_CREATE] == "tracker.issues"
        assert registry.event_type_for("tracker.issues") is EventType.ISSUE_CREATE

    def test_names_lists_seven_topics(self, registry):
        assert len(registry) == 7
        assert registry.names()[0] == "user.create"

    def test_unknown_logical_name(self, registry):
        with pytest.raises(UnknownTopicError) as exc_info:
            registry.topic_for("issue.delete")
        assert exc_info.value.name == "issue.delete"

    def test_unknown_physical_topic(self, registry):
        with pytest.raises(UnknownTopicError):
            registry.event_type_for("nope")

    def test_missing_event_type_rejected(self):
        with pytest.raises(UnknownTopicError):
            TopicRegistry({EventType.USER_CREATE: "user.create"})

    def test_registry_is_read_only(self, registry):
        with pytest.raises(TypeError):
            registry[EventType.USER_CREATE] = "other"

    def test_select_subset(self, registry):
        assert registry.select(["issue.create", "issue.update"]) == ["issue.create", "issue.update"]

    def test_select_all(self, registry):
        assert registry.select(None) == registry.names()
