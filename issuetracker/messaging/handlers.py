"""
Business handling of consumed events.

Each handler receives a parsed envelope. A handler that raises makes the
processor abandon the message for redelivery (or dead-letter it once the
retries are used up), so handlers should be idempotent.
"""

from __future__ import annotations

import logging

from issuetracker.exceptions import EntityNotFoundError, PoisonMessageError
from issuetracker.messaging.decorators import EnvelopeHandler, collect_event_handlers, on_event
from issuetracker.messaging.envelopes import (
    EventType,
    IssueAssignedMessage,
    IssueCommentCreatedMessage,
    IssueCreatedMessage,
    IssueLabelAssignedMessage,
    IssueUpdatedMessage,
    LabelCreatedMessage,
    UserCreatedMessage,
)
from issuetracker.repositories import Repositories, Repository

logger = logging.getLogger(__name__)

# Comments containing this marker are rejected when failure injection is on
POISON_MARKER = "FAIL"


class MessageHandlers:
    """
    Default handlers for the seven tracker events.

    When repositories are wired, every handler checks that the entities the
    message refers to exist; a missing one raises EntityNotFoundError so
    the message is retried (the referencing write may not be visible yet).

    Args:
        repositories: Persistence collaborators (optional)
        enable_failure_injection: Reject comments containing "FAIL"
    """

    def __init__(
        self,
        repositories: Repositories | None = None,
        enable_failure_injection: bool = False,
    ) -> None:
        self.repositories = repositories or Repositories()
        self.enable_failure_injection = enable_failure_injection
        self._handlers = collect_event_handlers(self)

    def handler_for(self, event_type: EventType) -> EnvelopeHandler | None:
        return self._handlers.get(event_type)

    def event_types(self) -> list[EventType]:
        return list(self._handlers)

    @on_event(EventType.USER_CREATE)
    async def handle_user_created(self, message: UserCreatedMessage) -> None:
        logger.info("Processing new user %d", message.user_id)

    @on_event(EventType.LABEL_CREATE)
    async def handle_label_created(self, message: LabelCreatedMessage) -> None:
        logger.info("Processing new label %d", message.label_id)

    @on_event(EventType.ISSUE_CREATE)
    async def handle_issue_created(self, message: IssueCreatedMessage) -> None:
        logger.info("Processing new issue %d", message.issue_id)
        await self._require(self.repositories.users, "User", message.creator_id)
        for label_id in message.label_ids:
            await self._require(self.repositories.labels, "Label", label_id)

    @on_event(EventType.ISSUE_UPDATE)
    async def handle_issue_updated(self, message: IssueUpdatedMessage) -> None:
        logger.info("Processing update for issue %d", message.issue_id)
        await self._require(self.repositories.issues, "Issue", message.issue_id)
        if message.assignee_id is not None:
            await self._require(self.repositories.users, "User", message.assignee_id)

    @on_event(EventType.ISSUE_USER_ASSIGN)
    async def handle_issue_assigned(self, message: IssueAssignedMessage) -> None:
        logger.info(
            "Processing assignment for issue %d to user %d",
            message.issue_id,
            message.assignee_id,
        )
        await self._require(self.repositories.issues, "Issue", message.issue_id)
        await self._require(self.repositories.users, "User", message.assignee_id)

    @on_event(EventType.ISSUE_COMMENT_CREATE)
    async def handle_comment_created(self, message: IssueCommentCreatedMessage) -> None:
        if self.enable_failure_injection and POISON_MARKER in message.content:
            raise PoisonMessageError(details={"comment_id": message.comment_id})

        logger.info(
            "Processing new comment %d for issue %d",
            message.comment_id,
            message.issue_id,
        )
        await self._require(self.repositories.issues, "Issue", message.issue_id)
        await self._require(self.repositories.users, "User", message.user_id)

    @on_event(EventType.ISSUE_LABEL_ASSIGN)
    async def handle_label_assigned(self, message: IssueLabelAssignedMessage) -> None:
        logger.info(
            "Processing label %d assignment for issue %d",
            message.label_id,
            message.issue_id,
        )
        await self._require(self.repositories.issues, "Issue", message.issue_id)
        await self._require(self.repositories.labels, "Label", message.label_id)

    @staticmethod
    async def _require(repository: Repository | None, entity: str, entity_id: int) -> None:
        if repository is None:
            return
        if not await repository.exists(entity_id):
            raise EntityNotFoundError(entity, entity_id)
