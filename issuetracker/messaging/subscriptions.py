"""Idempotent subscription provisioning."""

from __future__ import annotations

import logging

from issuetracker.config import BusSettings
from issuetracker.messaging.base import SubscriptionAdmin, SubscriptionOptions

logger = logging.getLogger(__name__)


class SubscriptionManager:
    """
    Ensures durable subscriptions exist before processors attach to them.

    Creation policy comes from the shared retry configuration, the same
    values the message processor uses to decide when to dead-letter.
    """

    def __init__(self, admin: SubscriptionAdmin, settings: BusSettings) -> None:
        self._admin = admin
        self._options = SubscriptionOptions.from_settings(settings)

    @property
    def options(self) -> SubscriptionOptions:
        return self._options

    async def ensure_subscription_exists(self, topic: str, subscription: str) -> bool:
        """
        Create the subscription unless it already exists.

        Returns:
            True if it was created, False if it was already present
        """
        if await self._admin.subscription_exists(topic, subscription):
            logger.debug("Subscription %s on topic %s already exists", subscription, topic)
            return False

        await self._admin.create_subscription(topic, subscription, self._options)
        logger.info(
            "Created subscription %s on topic %s (max delivery count %d, ttl %s)",
            subscription,
            topic,
            self._options.max_delivery_count,
            self._options.default_message_ttl,
        )
        return True
