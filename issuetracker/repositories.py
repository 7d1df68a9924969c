"""
Persistence collaborator interface.

The event bus core does not store entities. Message handlers receive an
object implementing `Repository` per entity kind and call it to act on a
validated message. Any store with these three coroutines fits.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Repository(Protocol):
    """Minimal async store for one entity kind."""

    async def get(self, entity_id: int) -> Any | None:
        ...

    async def exists(self, entity_id: int) -> bool:
        ...

    async def save(self, entity: Any) -> Any:
        ...


@dataclass
class Repositories:
    """Repositories handed to message handlers. Any may be absent."""

    users: Repository | None = None
    issues: Repository | None = None
    labels: Repository | None = None
    comments: Repository | None = None
