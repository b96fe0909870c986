"""Command envelope model, families and wire format."""

from __future__ import annotations

from .envelope import (
    IN_FLIGHT_STATUSES,
    TERMINAL_STATUSES,
    CommandEnvelope,
    EventStatus,
    new_event_id,
)
from .families import (
    COMMAND_TYPES,
    CommandFamily,
    InvoiceCommand,
    StockControlCommand,
    StockOrderCommand,
    UserRegistrationCommand,
    command_types_for,
    validate_command_type,
)
from .serialization import EnvelopeSerializer

__all__ = [
    "COMMAND_TYPES",
    "IN_FLIGHT_STATUSES",
    "TERMINAL_STATUSES",
    "CommandEnvelope",
    "CommandFamily",
    "EnvelopeSerializer",
    "EventStatus",
    "InvoiceCommand",
    "StockControlCommand",
    "StockOrderCommand",
    "UserRegistrationCommand",
    "command_types_for",
    "new_event_id",
    "validate_command_type",
]
