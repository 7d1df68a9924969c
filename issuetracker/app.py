"""
Application bootstrap.

Boot sequence:
1. Settings loaded (fail fast on a missing connection string)
2. Bus client connected
3. Subscriptions provisioned and processors started
4. Publisher exposed on app.state for the route layer

Shutdown runs in reverse: processors, senders, client.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request

from issuetracker import __version__
from issuetracker.config import BusSettings
from issuetracker.messaging.host import BusHost
from issuetracker.messaging.publisher import Publisher
from issuetracker.repositories import Repositories

app_logger = logging.getLogger("issuetracker.app")


def create_app(
    settings: BusSettings | None = None,
    repositories: Repositories | None = None,
    consume: bool = True,
) -> FastAPI:
    """
    Build the FastAPI application hosting the service bus.

    Args:
        settings: Bus settings (global settings if not provided)
        repositories: Persistence collaborators handed to the handlers
        consume: Start consumer processors alongside the publisher

    Example:
        app = create_app()
        # uvicorn issuetracker.app:app
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        host = BusHost(settings=settings, repositories=repositories)
        app.state.host = host
        app.state.publisher = host.publisher

        try:
            await host.start(consume=consume)
            app_logger.info("Application started successfully")
            yield
        finally:
            await host.stop()

    app = FastAPI(title="Issue Tracker Bus", version=__version__, lifespan=lifespan)
    _setup_health_checks(app)
    return app


def _setup_health_checks(app: FastAPI) -> None:
    @app.get("/healthz", include_in_schema=False)
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/readyz", include_in_schema=False)
    async def readyz(request: Request) -> dict[str, object]:
        host: BusHost = request.app.state.host
        return {
            "status": "ready" if host.is_running else "stopped",
            "broker": host.client.name,
            "processors": [processor.entity_path for processor in host.consumer.processors],
            "failed_topics": sorted(host.consumer.failed_topics),
        }


def get_publisher(request: Request) -> Publisher:
    """
    Dependency returning the application's publisher.

    Example:
        @router.post("/issues")
        async def create_issue(publisher: Publisher = Depends(get_publisher)):
            await publisher.publish_issue_created(...)
    """
    return request.app.state.publisher


app = create_app()
