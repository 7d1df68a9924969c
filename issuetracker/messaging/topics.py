"""
Topic registry: logical event names -> physical topic names.

Built once from `BusSettings.topics` at process start and never mutated.

Example:
    registry = TopicRegistry.from_settings(get_settings())
    registry.topic_for(EventType.ISSUE_CREATE)   # "issue.create"
    registry.topic_for("issue.create")            # same
    list(registry)                                # all seven event types
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from types import MappingProxyType
from typing import TYPE_CHECKING

from issuetracker.exceptions import UnknownTopicError
from issuetracker.messaging.envelopes import EventType

if TYPE_CHECKING:
    from issuetracker.config import BusSettings, TopicSettings


# Which TopicSettings field configures each event type
TOPIC_FIELDS: Mapping[EventType, str] = MappingProxyType({
    EventType.USER_CREATE: "user_create",
    EventType.LABEL_CREATE: "label_create",
    EventType.ISSUE_CREATE: "issue_create",
    EventType.ISSUE_UPDATE: "issue_update",
    EventType.ISSUE_USER_ASSIGN: "issue_user_assign",
    EventType.ISSUE_COMMENT_CREATE: "issue_comment_create",
    EventType.ISSUE_LABEL_ASSIGN: "issue_label_assign",
})


class TopicRegistry(Mapping[EventType, str]):
    """Immutable mapping from event type to physical topic name."""

    __slots__ = ("_topics", "_event_types")

    def __init__(self, topics: Mapping[EventType, str]) -> None:
        missing = [event_type for event_type in EventType if event_type not in topics]
        if missing:
            raise UnknownTopicError(
                ", ".join(missing),
                message=f"No topic configured for: {', '.join(missing)}",
            )
        self._topics = MappingProxyType(dict(topics))
        self._event_types = MappingProxyType({name: event_type for event_type, name in topics.items()})

    @classmethod
    def from_topic_settings(cls, topics: "TopicSettings") -> "TopicRegistry":
        return cls({event_type: getattr(topics, field) for event_type, field in TOPIC_FIELDS.items()})

    @classmethod
    def from_settings(cls, settings: "BusSettings") -> "TopicRegistry":
        return cls.from_topic_settings(settings.topics)

    def __getitem__(self, event_type: EventType) -> str:
        return self._topics[event_type]

    def __iter__(self) -> Iterator[EventType]:
        return iter(self._topics)

    def __len__(self) -> int:
        return len(self._topics)

    def topic_for(self, event_type: EventType | str) -> str:
        """
        Get the physical topic for a logical event name.

        Raises:
            UnknownTopicError: If the name is not a known event type
        """
        try:
            return self._topics[EventType(event_type)]
        except ValueError:
            raise UnknownTopicError(str(event_type)) from None

    def event_type_for(self, topic: str) -> EventType:
        """Reverse lookup: physical topic -> event type."""
        try:
            return self._event_types[topic]
        except KeyError:
            raise UnknownTopicError(topic, message=f"Topic '{topic}' is not configured") from None

    def names(self) -> list[str]:
        """Physical topic names in declaration order."""
        return list(self._topics.values())

    def select(self, event_types: list[str] | None) -> list[str]:
        """
        Physical topics for a subset of event types (all when None).

        Raises:
            UnknownTopicError: If any name is not a known event type
        """
        if event_types is None:
            return self.names()
        return [self.topic_for(event_type) for event_type in event_types]

    def __repr__(self) -> str:
        return f"TopicRegistry({dict(self._topics)!r})"
