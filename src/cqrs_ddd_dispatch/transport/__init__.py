"""Message transports.

The in-memory broker is always available; the Kafka adapters live in
:mod:`cqrs_ddd_dispatch.transport.kafka` and need the ``kafka`` extra.
"""

from __future__ import annotations

from .memory import InMemoryBroker, InMemoryConsumer, InMemoryPublisher, partition_for

__all__ = ["InMemoryBroker", "InMemoryConsumer", "InMemoryPublisher", "partition_for"]
