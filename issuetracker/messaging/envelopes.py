"""
Event envelopes published to and consumed from the bus.

Every envelope carries `event_type`, `timestamp` and `correlation_id` plus
the payload fields of its event kind. Concrete classes fix `event_type`
themselves, so a caller cannot build a mismatched envelope:

    message = IssueCreatedMessage(issue_id=1, title="T", creator_id=1, label_ids=[1, 2])
    message.event_type       # "issue.create"
    message.to_json()        # '{"event_type":"issue.create","timestamp":...}'

Consumers resolve the class from the `EventType` application property:

    envelope = parse_envelope("issue.create", body)
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from issuetracker.exceptions import InvalidMessageBodyError, UnknownEventTypeError


class EventType(StrEnum):
    """Logical event names. Also the default physical topic names."""

    USER_CREATE = "user.create"
    LABEL_CREATE = "label.create"
    ISSUE_CREATE = "issue.create"
    ISSUE_UPDATE = "issue.update"
    ISSUE_USER_ASSIGN = "issue.user.assign"
    ISSUE_COMMENT_CREATE = "issue.comment.create"
    ISSUE_LABEL_ASSIGN = "issue.label.assign"


# event type -> concrete envelope class
_envelope_types: dict[EventType, type["Envelope"]] = {}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_correlation_id() -> str:
    return str(uuid.uuid4())


class Envelope(BaseModel):
    """
    Base class for every bus event.

    Subclasses declare `event_kind`; the base class is abstract and cannot
    be instantiated. Instances are frozen.

    Attributes:
        event_type: Event name, equal to the subclass `event_kind`
        timestamp: UTC creation instant (origin clock)
        correlation_id: Unique id, used as the wire correlation id
    """

    model_config = ConfigDict(frozen=True)

    event_kind: ClassVar[EventType | None] = None

    event_type: str = ""
    timestamp: datetime = Field(default_factory=_utcnow)
    correlation_id: str = Field(default_factory=_new_correlation_id)

    @classmethod
    def __pydantic_init_subclass__(cls, **kwargs: Any) -> None:
        super().__pydantic_init_subclass__(**kwargs)
        if cls.event_kind is not None:
            _envelope_types[cls.event_kind] = cls

    @model_validator(mode="before")
    @classmethod
    def _fix_event_type(cls, data: Any) -> Any:
        if cls.event_kind is None:
            raise TypeError(f"{cls.__name__} is abstract; instantiate a concrete envelope")
        if isinstance(data, dict):
            declared = data.get("event_type")
            if declared and declared != cls.event_kind:
                raise ValueError(
                    f"event_type {declared!r} does not match {cls.__name__} ({cls.event_kind})"
                )
            data = {**data, "event_type": cls.event_kind.value}
        return data

    def to_json(self) -> str:
        """Serialize to the JSON body sent on the wire."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, body: str | bytes) -> "Envelope":
        """
        Parse a wire body into this envelope class.

        Raises:
            InvalidMessageBodyError: If the body is not valid JSON for this class
        """
        try:
            return cls.model_validate_json(body)
        except ValidationError as exc:
            raise InvalidMessageBodyError(
                f"Cannot parse {cls.__name__}: {exc.error_count()} validation error(s)",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc


class UserCreatedMessage(Envelope):
    event_kind: ClassVar[EventType] = EventType.USER_CREATE

    user_id: int = 0
    username: str = ""
    email: str = ""


class LabelCreatedMessage(Envelope):
    event_kind: ClassVar[EventType] = EventType.LABEL_CREATE

    label_id: int = 0
    name: str = ""
    color: str = ""


class IssueCreatedMessage(Envelope):
    event_kind: ClassVar[EventType] = EventType.ISSUE_CREATE

    issue_id: int = 0
    title: str = ""
    body: str = ""
    creator_id: int = 0
    label_ids: list[int] = Field(default_factory=list)


class IssueUpdatedMessage(Envelope):
    """Partial update: `None` means the field did not change."""

    event_kind: ClassVar[EventType] = EventType.ISSUE_UPDATE

    issue_id: int = 0
    title: str | None = None
    body: str | None = None
    status: str | None = None
    assignee_id: int | None = None
    label_ids: list[int] | None = None


class IssueAssignedMessage(Envelope):
    event_kind: ClassVar[EventType] = EventType.ISSUE_USER_ASSIGN

    issue_id: int = 0
    assignee_id: int = 0
    assigned_by_user_id: int = 0


class IssueCommentCreatedMessage(Envelope):
    event_kind: ClassVar[EventType] = EventType.ISSUE_COMMENT_CREATE

    comment_id: int = 0
    issue_id: int = 0
    user_id: int = 0
    content: str = ""


class IssueLabelAssignedMessage(Envelope):
    event_kind: ClassVar[EventType] = EventType.ISSUE_LABEL_ASSIGN

    issue_id: int = 0
    label_id: int = 0
    assigned_by_user_id: int = 0


def envelope_class_for(event_type: str) -> type[Envelope]:
    """
    Get the envelope class for an event type.

    Raises:
        UnknownEventTypeError: If no envelope is registered for it
    """
    try:
        return _envelope_types[EventType(event_type)]
    except (ValueError, KeyError):
        raise UnknownEventTypeError(str(event_type)) from None


def parse_envelope(event_type: str, body: str | bytes) -> Envelope:
    """Resolve the class for `event_type` and parse `body` into it."""
    return envelope_class_for(event_type).from_json(body)


def get_envelope_types() -> dict[EventType, type[Envelope]]:
    """Get all registered envelope classes."""
    return _envelope_types.copy()
