"""
Decorators for declaring message handlers.

Example:
    class AuditHandlers:
        @on_event(EventType.ISSUE_CREATE)
        async def handle_issue_created(self, message: IssueCreatedMessage) -> None:
            ...

    handlers = collect_event_handlers(AuditHandlers())
    await handlers[EventType.ISSUE_CREATE](message)
"""

from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, TypeVar

from issuetracker.messaging.envelopes import EventType

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

EnvelopeHandler = Callable[[Any], Awaitable[None]]


def on_event(event_type: EventType | str) -> Callable[[F], F]:
    """
    Mark a method as the handler for one event type.

    Args:
        event_type: Event handled by the method (e.g., "issue.create")
    """
    resolved = EventType(event_type)

    def decorator(func: F) -> F:
        func._event_type = resolved  # type: ignore
        return func

    return decorator


def collect_event_handlers(instance: object) -> dict[EventType, EnvelopeHandler]:
    """
    Find every @on_event method of an object.

    Returns:
        Dictionary of event type -> bound handler

    Raises:
        ValueError: If two methods handle the same event type
    """
    handlers: dict[EventType, EnvelopeHandler] = {}
    for name, method in inspect.getmembers(instance, predicate=inspect.ismethod):
        event_type = getattr(method, "_event_type", None)
        if event_type is None:
            continue
        if event_type in handlers:
            raise ValueError(
                f"Duplicate handler for {event_type}: {handlers[event_type].__name__} and {name}"
            )
        handlers[event_type] = method
    return handlers
