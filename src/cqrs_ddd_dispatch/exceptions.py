"""Exceptions for cqrs-ddd-dispatch."""

from __future__ import annotations


class DispatchError(Exception):
    """Root exception for the command-processing subsystem."""


class ConfigurationError(DispatchError):
    """Raised when a configuration value is out of range."""


# ── Handler outcomes ─────────────────────────────────────────────────


class CommandError(DispatchError):
    """Base class for errors raised by command handlers.

    The dispatcher classifies the outcome of an attempt by the concrete
    subclass; anything outside this hierarchy is an unexpected error.
    """


class CommandValidationError(CommandError):
    """The payload fails a business precondition.

    Never retried: the record goes straight to ``FAILED``.
    """


class TransientCommandError(CommandError):
    """Infrastructure hiccup, lock contention or downstream timeout.

    Retried with exponential backoff up to ``max_retries``.
    """


class FatalCommandError(CommandError):
    """The handler declares the command unrecoverable.

    Skips the retry budget and is routed to the dead-letter sink.
    """


class UnknownCommandTypeError(CommandError):
    """No handler is registered for the ``(family, type)`` pair."""

    def __init__(self, family: str, command_type: str) -> None:
        self.family = family
        self.command_type = command_type
        super().__init__(f"unknown command type: {family}.{command_type}")


class HandlerRegistrationError(DispatchError):
    """Raised on duplicate or structurally invalid handler registration."""


# ── Producer ─────────────────────────────────────────────────────────


class EnqueueError(DispatchError):
    """Raised when a command could not be published to the broker."""

    def __init__(self, message: str, event_id: str | None = None) -> None:
        self.event_id = event_id
        super().__init__(message)


# ── Tracking ledger ──────────────────────────────────────────────────


class TrackingError(DispatchError):
    """Base class for event-tracking store errors."""


class EventNotFoundError(TrackingError):
    """Raised when no tracking record exists for an event id."""

    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"Event {event_id!r} not found")


class StatusConflictError(TrackingError):
    """Raised when a compare-and-set lost against a concurrent transition."""

    def __init__(self, event_id: str, expected: object, actual: object) -> None:
        self.event_id = event_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Event {event_id!r}: expected status in {expected}, found {actual}"
        )


class InvalidTransitionError(TrackingError):
    """Raised when a requested transition is not part of the state machine."""


# ── Persistence ──────────────────────────────────────────────────────


class PersistenceError(DispatchError):
    """Base class for storage-layer errors."""


class SessionManagementError(PersistenceError):
    """Raised when session creation or management fails."""


class UnitOfWorkError(PersistenceError):
    """Raised when Unit of Work operations fail."""


# ── Messaging ────────────────────────────────────────────────────────


class MessagingError(DispatchError):
    """Base class for all transport-related errors."""


class MessagingConnectionError(MessagingError):
    """Raised when connectivity to the message broker fails."""


class MessagingSerializationError(MessagingError):
    """Raised when envelope serialization or deserialization fails."""


class DeadLetterError(MessagingError):
    """Raised when a message cannot be delivered to the dead-letter sink."""

    def __init__(self, message: str, event_id: str | None = None) -> None:
        self.event_id = event_id
        super().__init__(message)


__all__ = [
    "CommandError",
    "CommandValidationError",
    "ConfigurationError",
    "DeadLetterError",
    "DispatchError",
    "EnqueueError",
    "EventNotFoundError",
    "FatalCommandError",
    "HandlerRegistrationError",
    "InvalidTransitionError",
    "MessagingConnectionError",
    "MessagingError",
    "MessagingSerializationError",
    "PersistenceError",
    "SessionManagementError",
    "StatusConflictError",
    "TrackingError",
    "TransientCommandError",
    "UnitOfWorkError",
    "UnknownCommandTypeError",
]
