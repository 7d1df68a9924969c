"""
Per-message settlement state machine.

    RECEIVED ──► COMPLETED
        │
        ├──► ABANDONED ──(redelivery, delivery_count + 1)──► RECEIVED
        │
        └──► DEAD_LETTERED

Structural problems (missing or unknown EventType, unparsable body) are
dead-lettered at once. Handler failures are abandoned and retried until the
delivery count reaches max_retry_attempts + 1, then dead-lettered.
"""

from __future__ import annotations

import asyncio
import logging

from issuetracker.config import BusSettings
from issuetracker.exceptions import (
    MessageAlreadySettledError,
    MessageStructureError,
    MissingEventTypeError,
    UnknownEventTypeError,
)
from issuetracker.messaging.base import (
    Disposition,
    ErrorContext,
    EVENT_TYPE_PROPERTY,
    ReceivedMessage,
)
from issuetracker.messaging.envelopes import Envelope, EventType, parse_envelope
from issuetracker.messaging.handlers import MessageHandlers

logger = logging.getLogger(__name__)

MAX_RETRIES_REASON = "Max retries exceeded"


class MessageContext:
    """
    One in-flight delivery and its settlement.

    Created when the bus hands a message to the processor; settled exactly
    once. The disposition is recorded only after the bus accepted it.
    """

    def __init__(self, message: ReceivedMessage) -> None:
        self.message = message
        self.disposition = Disposition.UNDECIDED
        self.dead_letter_reason: str | None = None
        self.dead_letter_description: str | None = None

    @property
    def delivery_count(self) -> int:
        return self.message.delivery_count

    @property
    def is_settled(self) -> bool:
        return self.disposition is not Disposition.UNDECIDED

    async def complete(self) -> None:
        self._check_unsettled()
        await self.message.complete()
        self.disposition = Disposition.COMPLETED

    async def abandon(self) -> None:
        self._check_unsettled()
        await self.message.abandon()
        self.disposition = Disposition.ABANDONED

    async def dead_letter(self, reason: str, description: str | None = None) -> None:
        self._check_unsettled()
        await self.message.dead_letter(reason, description)
        self.disposition = Disposition.DEAD_LETTERED
        self.dead_letter_reason = reason
        self.dead_letter_description = description

    def _check_unsettled(self) -> None:
        if self.is_settled:
            raise MessageAlreadySettledError(
                f"Message {self.message.message_id} already {self.disposition}",
            )


class MessageProcessor:
    """
    Message and error handlers for one topic subscription.

    Routes on the `EventType` application property, never on the body,
    so a message can be rejected before any parsing happens.

    Example:
        processor = MessageProcessor("issue.create", MessageHandlers(), settings)
        bus_processor = client.create_processor(
            "issue.create", "import",
            on_message=processor.handle_message,
            on_error=processor.handle_error,
        )
    """

    def __init__(self, topic: str, handlers: MessageHandlers, settings: BusSettings) -> None:
        self.topic = topic
        self._handlers = handlers
        self._max_delivery_count = settings.max_delivery_count
        self._retry_delay = settings.retry_delay.total_seconds()
        self._backoffs: set[asyncio.Future] = set()
        self._stopping = False

    def stop(self) -> None:
        """
        Cut pending retry delays short.

        Abandoned messages are already back on the bus, so only the wait
        is lost. Deliveries failing after this are still abandoned but
        skip the delay.
        """
        self._stopping = True
        for backoff in list(self._backoffs):
            backoff.cancel()

    async def handle_message(self, message: ReceivedMessage) -> MessageContext:
        """
        Process one delivery and settle it.

        Returns:
            The settled MessageContext
        """
        context = MessageContext(message)
        try:
            await self._dispatch(context)
        except Exception:
            logger.error(
                "Unexpected error processing message %s from topic %s",
                message.message_id,
                self.topic,
                exc_info=True,
            )
            if not context.is_settled and not message.is_settled:
                try:
                    await context.abandon()
                except Exception:
                    logger.error(
                        "Failed to abandon message %s from topic %s",
                        message.message_id,
                        self.topic,
                        exc_info=True,
                    )
        return context

    async def handle_error(self, error: ErrorContext) -> None:
        """Log a transport error. Never raises."""
        logger.error(
            "Service bus error (Source: %s, Entity: %s): %s",
            error.error_source,
            error.entity_path,
            error.exception,
            exc_info=error.exception,
        )

    def parse(self, message: ReceivedMessage) -> Envelope:
        """
        Parse a delivery into its envelope.

        Raises:
            MissingEventTypeError: No EventType property
            UnknownEventTypeError: EventType names no envelope
            InvalidMessageBodyError: Body does not parse
        """
        event_type = message.application_properties.get(EVENT_TYPE_PROPERTY)
        if not event_type:
            raise MissingEventTypeError()
        return parse_envelope(str(event_type), message.body)

    async def _dispatch(self, context: MessageContext) -> None:
        message = context.message

        try:
            envelope = self.parse(message)
        except MessageStructureError as exc:
            logger.warning(
                "Dead-lettering message %s from topic %s: %s",
                message.message_id,
                self.topic,
                exc.message,
            )
            await context.dead_letter(exc.reason, exc.message)
            return

        handler = self._handlers.handler_for(EventType(envelope.event_type))
        if handler is None:
            logger.warning("No handler for event type %s on topic %s", envelope.event_type, self.topic)
            await context.dead_letter(
                UnknownEventTypeError.reason,
                f"No handler registered for {envelope.event_type}",
            )
            return

        try:
            await handler(envelope)
        except Exception as exc:
            await self._handle_failure(context, exc)
            return

        await context.complete()

    async def _handle_failure(self, context: MessageContext, exc: Exception) -> None:
        attempt = context.delivery_count
        logger.error(
            "Failed to process message %s from topic %s (Attempt: %d)",
            context.message.message_id,
            self.topic,
            attempt,
            exc_info=exc,
        )

        if attempt >= self._max_delivery_count:
            await context.dead_letter(
                MAX_RETRIES_REASON,
                f"Failed after {attempt} attempts: {exc}",
            )
            return

        await context.abandon()
        await self._retry_backoff()

    async def _retry_backoff(self) -> None:
        # Blocks only this message's handler task
        if self._stopping:
            return
        backoff = asyncio.ensure_future(asyncio.sleep(self._retry_delay))
        self._backoffs.add(backoff)
        try:
            await asyncio.wait({backoff})
        finally:
            self._backoffs.discard(backoff)
            backoff.cancel()


class ProcessorFactory:
    """Creates one MessageProcessor per topic, sharing handlers and retry policy."""

    def __init__(self, handlers: MessageHandlers, settings: BusSettings) -> None:
        self._handlers = handlers
        self._settings = settings

    def create_message_processor(self, topic: str) -> MessageProcessor:
        return MessageProcessor(topic, self._handlers, self._settings)
