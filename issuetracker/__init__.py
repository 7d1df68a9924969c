"""
Issue Tracker event bus.

Notifies issue-tracker state changes (users, labels, issues, comments)
over a publish/subscribe message bus:
- Typed event envelopes, one topic per event type
- Publisher with a per-topic sender cache
- Consumers with retry, abandon and dead-letter handling
- RabbitMQ transport, plus an in-memory one for tests
"""

__version__ = "0.1.0"
