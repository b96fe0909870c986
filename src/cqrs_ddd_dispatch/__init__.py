"""Asynchronous command processing with a status ledger.

Commands are wrapped in :class:`CommandEnvelope`, tracked in an event
ledger, published to a partitioned log, executed by registered handlers
with at-least-once delivery, retried with exponential backoff, and
dead-lettered when they cannot complete.
"""

from __future__ import annotations

from .commands import (
    CommandEnvelope,
    CommandFamily,
    EnvelopeSerializer,
    EventStatus,
    InvoiceCommand,
    StockControlCommand,
    StockOrderCommand,
    UserRegistrationCommand,
)
from .config import (
    DispatchConfig,
    HealthSettings,
    KafkaSettings,
    ReaperSettings,
    RetrySettings,
)
from .correlation import (
    correlation_scope,
    generate_correlation_id,
    get_correlation_id,
    set_correlation_id,
)
from .dead_letter import (
    DeadLetterEntry,
    DeadLetterInbox,
    DeadLetterRouter,
    DeadLetterService,
    InMemoryDeadLetterStore,
)
from .dispatcher import CommandDispatcher
from .exceptions import (
    CommandError,
    CommandValidationError,
    ConfigurationError,
    DeadLetterError,
    DispatchError,
    EnqueueError,
    EventNotFoundError,
    FatalCommandError,
    HandlerRegistrationError,
    InvalidTransitionError,
    MessagingError,
    StatusConflictError,
    TrackingError,
    TransientCommandError,
    UnknownCommandTypeError,
)
from .instrumentation import HookRegistry, get_hook_registry, set_hook_registry
from .persistence import SQLAlchemyDeadLetterStore
from .ports import CommandHandler, InMemoryUnitOfWork, UnitOfWork
from .producer import CommandProducer
from .registry import HandlerRegistry
from .retry import DelayQueue, RetryController, RetryPolicy
from .runtime import DispatchRuntime
from .tracking import (
    EventStatistics,
    EventTrackingRecord,
    EventTrackingService,
    InMemoryEventTrackingStore,
    LedgerHealthMonitor,
    SQLAlchemyEventTrackingStore,
    StaleEventReaper,
)

__version__ = "0.1.0"

__all__ = [
    "CommandDispatcher",
    "CommandEnvelope",
    "CommandError",
    "CommandFamily",
    "CommandHandler",
    "CommandProducer",
    "CommandValidationError",
    "ConfigurationError",
    "DeadLetterEntry",
    "DeadLetterError",
    "DeadLetterInbox",
    "DeadLetterRouter",
    "DeadLetterService",
    "DelayQueue",
    "DispatchConfig",
    "DispatchError",
    "DispatchRuntime",
    "EnqueueError",
    "EnvelopeSerializer",
    "EventNotFoundError",
    "EventStatistics",
    "EventStatus",
    "EventTrackingRecord",
    "EventTrackingService",
    "FatalCommandError",
    "HandlerRegistrationError",
    "HandlerRegistry",
    "HealthSettings",
    "HookRegistry",
    "InMemoryDeadLetterStore",
    "InMemoryEventTrackingStore",
    "InMemoryUnitOfWork",
    "InvalidTransitionError",
    "InvoiceCommand",
    "KafkaSettings",
    "LedgerHealthMonitor",
    "MessagingError",
    "ReaperSettings",
    "RetryController",
    "RetryPolicy",
    "RetrySettings",
    "SQLAlchemyDeadLetterStore",
    "SQLAlchemyEventTrackingStore",
    "StaleEventReaper",
    "StatusConflictError",
    "StockControlCommand",
    "StockOrderCommand",
    "TrackingError",
    "TransientCommandError",
    "UnitOfWork",
    "UnknownCommandTypeError",
    "UserRegistrationCommand",
    "correlation_scope",
    "generate_correlation_id",
    "get_correlation_id",
    "get_hook_registry",
    "set_correlation_id",
    "set_hook_registry",
]
