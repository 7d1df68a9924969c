"""
In-memory transport.

Single-process bus for tests and local runs. Select it with
`SERVICE_BUS_MESSAGE_BROKER=memory`.
"""

from issuetracker.messaging.memory.broker import (
    DeadLetteredMessage,
    InMemoryBusClient,
    MemoryAdmin,
    MemorySender,
    MemorySubscription,
)
from issuetracker.messaging.memory.processor import (
    MAX_DELIVERY_COUNT_REASON,
    MemoryProcessor,
    MemoryReceivedMessage,
)

__all__ = [
    "InMemoryBusClient",
    "MemorySender",
    "MemoryProcessor",
    "MemoryAdmin",
    "MemorySubscription",
    "MemoryReceivedMessage",
    "DeadLetteredMessage",
    "MAX_DELIVERY_COUNT_REASON",
]
