"""
Background host for the service bus.

Owns the bus client and composes the publisher and the consumer service.
Shutdown closes leaf resources before the root:

    processors (stop, then close) -> senders -> client
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any

from issuetracker.config import BusSettings, get_settings
from issuetracker.messaging.base import BusClient
from issuetracker.messaging.consumer import ConsumerService
from issuetracker.messaging.handlers import MessageHandlers
from issuetracker.messaging.processing import ProcessorFactory
from issuetracker.messaging.publisher import Publisher
from issuetracker.messaging.registry import create_bus_client
from issuetracker.messaging.topics import TopicRegistry
from issuetracker.repositories import Repositories

logger = logging.getLogger(__name__)


class BusHost:
    """
    Starts every consumer processor at startup and stops them at shutdown.

    Settings are resolved at construction, so a missing connection string
    fails here rather than on first publish.

    Example:
        host = BusHost()
        await host.start()
        await host.publisher.publish_event(UserCreatedMessage(user_id=1))
        await host.stop()

        # Or run until SIGINT/SIGTERM
        await BusHost().run_forever()
    """

    def __init__(
        self,
        settings: BusSettings | None = None,
        client: BusClient | None = None,
        handlers: MessageHandlers | None = None,
        repositories: Repositories | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.topics = TopicRegistry.from_settings(self.settings)
        self.client = client or create_bus_client(self.settings)
        self.handlers = handlers or MessageHandlers(
            repositories=repositories,
            enable_failure_injection=self.settings.enable_failure_injection,
        )
        self.publisher = Publisher(self.client, self.topics)
        self.consumer = ConsumerService(
            self.client,
            self.topics,
            ProcessorFactory(self.handlers, self.settings),
            self.settings,
        )
        self._running = False
        self._stopped = False
        self._shutdown_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._running

    async def __aenter__(self) -> "BusHost":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()

    async def start(self, consume: bool = True) -> None:
        """
        Connect the client and start the consumer processors.

        Args:
            consume: Start processors (False for publish-only processes)
        """
        if self._running:
            return

        await self.client.connect()
        self._running = True
        logger.info("Connected to %s bus", self.client.name)

        if consume:
            await self.consumer.start_listening()

    async def stop(self) -> None:
        """
        Stop processors, close senders, then close the client.

        Safe when start() never ran or failed half-way. Idempotent.
        """
        if self._stopped:
            return
        self._stopped = True

        logger.info("Stopping service bus host...")
        await self.consumer.stop()
        await self.publisher.close()
        await self.client.close()

        self._running = False
        self._shutdown_event.set()
        logger.info("Service bus host stopped")

    async def wait(self) -> None:
        """Wait for a shutdown request."""
        await self._shutdown_event.wait()

    def request_shutdown(self) -> None:
        """Ask run_forever() to stop."""
        self._shutdown_event.set()

    async def run_forever(self) -> None:
        """Run until SIGINT/SIGTERM or request_shutdown()."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._handle_signal)

        try:
            await self.start()
            await self.wait()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            await self.stop()

    def _handle_signal(self) -> None:
        logger.info("Received shutdown signal")
        self.request_shutdown()
