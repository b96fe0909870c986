"""Command families and their command types.

A command is selected by the pair ``(family, type)``.  The set of valid
pairs is closed: every family owns an enum of its types, and
:func:`validate_command_type` rejects anything outside it.
"""

from __future__ import annotations

from enum import Enum

from ..exceptions import HandlerRegistrationError


class CommandFamily(str, Enum):
    """Logical command families; one consumer group and topic set per family."""

    USER_REGISTRATION = "user-registration"
    STOCK_CONTROL = "stock-control"
    STOCK_ORDER = "stock-order"
    INVOICE = "invoice"


class UserRegistrationCommand(str, Enum):
    CREATE = "CREATE"


class StockControlCommand(str, Enum):
    CHECK = "CHECK"
    DECREASE = "DECREASE"
    INCREASE = "INCREASE"
    RESTOCK_NEEDED = "RESTOCK_NEEDED"
    LOW_STOCK_ALERT = "LOW_STOCK_ALERT"
    OUT_OF_STOCK_ALERT = "OUT_OF_STOCK_ALERT"


class StockOrderCommand(str, Enum):
    CREATE = "CREATE"
    CONFIRM = "CONFIRM"
    SHIP = "SHIP"
    CANCEL = "CANCEL"
    RECEIVE = "RECEIVE"
    GENERATE_INVOICE = "GENERATE_INVOICE"


class InvoiceCommand(str, Enum):
    GENERATE = "GENERATE"
    MARK_PAID = "MARK_PAID"
    CANCEL = "CANCEL"
    UPDATE = "UPDATE"


COMMAND_TYPES: dict[CommandFamily, type[Enum]] = {
    CommandFamily.USER_REGISTRATION: UserRegistrationCommand,
    CommandFamily.STOCK_CONTROL: StockControlCommand,
    CommandFamily.STOCK_ORDER: StockOrderCommand,
    CommandFamily.INVOICE: InvoiceCommand,
}

EVENT_ID_PREFIXES: dict[CommandFamily, str] = {
    CommandFamily.USER_REGISTRATION: "USER_REG",
    CommandFamily.STOCK_CONTROL: "STOCK",
    CommandFamily.STOCK_ORDER: "ORDER",
    CommandFamily.INVOICE: "INVOICE",
}


def command_types_for(family: CommandFamily | str) -> list[str]:
    """Return the command type names owned by *family*."""
    return [member.value for member in COMMAND_TYPES[CommandFamily(family)]]


def validate_command_type(family: CommandFamily | str, command_type: str) -> str:
    """Return the canonical type name, or raise if the pair is not valid.

    Raises:
        HandlerRegistrationError: unknown family, or type not owned by family.
    """
    try:
        resolved = CommandFamily(family)
    except ValueError as e:
        raise HandlerRegistrationError(f"Unknown command family {family!r}") from e
    value = getattr(command_type, "value", command_type)
    if value not in command_types_for(resolved):
        raise HandlerRegistrationError(
            f"{value!r} is not a command type of family {resolved.value!r}"
        )
    return str(value)


def is_valid_command(family: CommandFamily | str, command_type: str) -> bool:
    try:
        validate_command_type(family, command_type)
    except HandlerRegistrationError:
        return False
    return True


__all__ = [
    "COMMAND_TYPES",
    "EVENT_ID_PREFIXES",
    "CommandFamily",
    "InvoiceCommand",
    "StockControlCommand",
    "StockOrderCommand",
    "UserRegistrationCommand",
    "command_types_for",
    "is_valid_command",
    "validate_command_type",
]
