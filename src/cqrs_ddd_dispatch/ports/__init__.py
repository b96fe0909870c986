"""Ports (protocols and abstract bases) consumed by the dispatch core."""

from __future__ import annotations

from .dead_letter import IDeadLetterStore
from .handler import CommandHandler, Handler, HandlerFunc, invoke_handler
from .messaging import IMessageConsumer, IMessagePublisher
from .tracking import IEventTrackingStore
from .unit_of_work import InMemoryUnitOfWork, UnitOfWork

__all__ = [
    "CommandHandler",
    "Handler",
    "HandlerFunc",
    "IDeadLetterStore",
    "IEventTrackingStore",
    "IMessageConsumer",
    "IMessagePublisher",
    "InMemoryUnitOfWork",
    "UnitOfWork",
    "invoke_handler",
]
