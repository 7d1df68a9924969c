"""
Centralized exception classes for the issue tracker event bus.

Exception Hierarchy:
    BusException (base)
    ├── ConfigurationError
    ├── UnknownTopicError
    ├── PublisherClosedError
    ├── MessageAlreadySettledError
    ├── MessageStructureError          (dead-lettered immediately)
    │   ├── MissingEventTypeError
    │   ├── UnknownEventTypeError
    │   └── InvalidMessageBodyError
    └── MessageHandlingError           (retried via abandon)
        ├── PoisonMessageError
        └── EntityNotFoundError

Transport errors raised by the broker library are not wrapped: publish
failures reach the caller unchanged.

Example:
    from issuetracker.exceptions import UnknownEventTypeError

    raise UnknownEventTypeError(event_type="issue.delete")
"""

from __future__ import annotations

from typing import Any


# =============================================================================
# Base Exception
# =============================================================================

class BusException(Exception):
    """
    Base exception for all event bus exceptions.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional error details
    """

    message: str = "An error occurred"
    code: str = "error"

    def __init__(
        self,
        message: str | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.message
        self.code = code or self.code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging or JSON responses."""
        result = {
            "message": self.message,
            "code": self.code,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r}, code={self.code!r})"


# =============================================================================
# Configuration / lifecycle
# =============================================================================

class ConfigurationError(BusException):
    """Bus configuration is missing or invalid. Fatal at startup."""

    message = "Service bus is not configured"
    code = "configuration_error"


class UnknownTopicError(BusException):
    """A logical event name has no configured topic."""

    message = "Unknown topic"
    code = "unknown_topic"

    def __init__(self, name: str, message: str | None = None) -> None:
        super().__init__(
            message or f"No topic configured for '{name}'",
            details={"name": name},
        )
        self.name = name


class PublisherClosedError(BusException):
    """Publish attempted after the publisher was closed."""

    message = "Publisher is closed"
    code = "publisher_closed"


class MessageAlreadySettledError(BusException):
    """A received message was settled more than once."""

    message = "Message already settled"
    code = "already_settled"


# =============================================================================
# Message structure errors (never retried)
# =============================================================================

class MessageStructureError(BusException):
    """
    The message itself is malformed.

    Retrying cannot fix it, so the consumer dead-letters it right away.
    `reason` is the dead-letter reason written to the bus.
    """

    message = "Invalid message structure"
    code = "message_structure_error"
    reason: str = "Invalid message"


class MissingEventTypeError(MessageStructureError):
    """The EventType application property is absent."""

    message = "Message missing EventType property"
    code = "missing_event_type"
    reason = "Missing EventType property"


class UnknownEventTypeError(MessageStructureError):
    """The EventType application property names no known envelope."""

    message = "Unknown event type"
    code = "unknown_event_type"
    reason = "Unknown event type"

    def __init__(self, event_type: str, message: str | None = None) -> None:
        super().__init__(
            message or f"Unknown event type: {event_type}",
            details={"event_type": event_type},
        )
        self.event_type = event_type


class InvalidMessageBodyError(MessageStructureError):
    """The body could not be parsed into the expected envelope."""

    message = "Invalid message body"
    code = "invalid_message_body"
    reason = "Invalid message body"


# =============================================================================
# Handling errors (retried)
# =============================================================================

class MessageHandlingError(BusException):
    """Business handling of a well-formed message failed."""

    message = "Message handling failed"
    code = "message_handling_error"


class PoisonMessageError(MessageHandlingError):
    """Deliberately poisoned message used for failure-injection testing."""

    message = "Simulated poison message"
    code = "poison_message"


class EntityNotFoundError(MessageHandlingError):
    """An entity referenced by the message does not exist (yet)."""

    message = "Entity not found"
    code = "entity_not_found"

    def __init__(self, entity: str, entity_id: int) -> None:
        super().__init__(
            f"{entity} {entity_id} not found",
            details={"entity": entity, "id": entity_id},
        )
        self.entity = entity
        self.entity_id = entity_id
