"""Lookup table from ``(family, type)`` to command handler."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .commands.families import CommandFamily, command_types_for, validate_command_type
from .exceptions import HandlerRegistrationError

if TYPE_CHECKING:
    from collections.abc import Callable

    from .ports.handler import Handler

logger = logging.getLogger("cqrs_ddd.dispatch.registry")


def _describe(handler: Any) -> str:
    name = getattr(handler, "__qualname__", None)
    return str(name) if name else type(handler).__name__


class HandlerRegistry:
    """Closed lookup table mapping each command kind to exactly one handler.

    Keys are validated against the declared command families, so a handler
    can only be registered for a ``(family, type)`` pair that exists.
    Registering a second, different handler for the same pair raises
    :class:`HandlerRegistrationError`; re-registering the same object is a
    no-op.

    Example::

        registry = HandlerRegistry()
        registry.register("user-registration", "CREATE", CreateUserHandler())

        @registry.handles(CommandFamily.STOCK_ORDER, StockOrderCommand.CONFIRM)
        async def confirm_order(envelope, uow):
            ...
    """

    def __init__(self) -> None:
        self._handlers: dict[tuple[CommandFamily, str], Handler] = {}

    # ── Registration ─────────────────────────────────────────────

    def register(
        self, family: CommandFamily | str, command_type: str, handler: Handler
    ) -> None:
        type_name = validate_command_type(family, command_type)
        key = (CommandFamily(family), type_name)
        existing = self._handlers.get(key)
        if existing is not None and existing is not handler:
            msg = (
                f"Duplicate handler for {key[0].value}.{type_name}: "
                f"{_describe(existing)} already registered, "
                f"cannot register {_describe(handler)}"
            )
            raise HandlerRegistrationError(msg)
        self._handlers[key] = handler
        logger.debug(
            "Registered command handler %s.%s -> %s",
            key[0].value,
            type_name,
            _describe(handler),
        )

    def handles(
        self, family: CommandFamily | str, command_type: str
    ) -> Callable[[Handler], Handler]:
        """Decorator form of :meth:`register`."""

        def decorator(handler: Handler) -> Handler:
            self.register(family, command_type, handler)
            return handler

        return decorator

    # ── Lookup ───────────────────────────────────────────────────

    def get(self, family: CommandFamily | str, command_type: str) -> Handler | None:
        try:
            key = (CommandFamily(family), getattr(command_type, "value", command_type))
        except ValueError:
            return None
        return self._handlers.get(key)

    def registered_types(self, family: CommandFamily | str) -> list[str]:
        resolved = CommandFamily(family)
        return sorted(t for f, t in self._handlers if f is resolved)

    def missing_types(self, family: CommandFamily | str) -> list[str]:
        """Command types of *family* that have no handler yet."""
        registered = set(self.registered_types(family))
        return [t for t in command_types_for(family) if t not in registered]

    def families(self) -> list[CommandFamily]:
        return sorted({f for f, _ in self._handlers}, key=lambda f: f.value)

    # ── Introspection ────────────────────────────────────────────

    def get_registered_handlers(self) -> dict[str, dict[str, str]]:
        """Return a snapshot of all registered handlers (for debugging)."""
        snapshot: dict[str, dict[str, str]] = {}
        for (family, type_name), handler in sorted(
            self._handlers.items(), key=lambda item: (item[0][0].value, item[0][1])
        ):
            snapshot.setdefault(family.value, {})[type_name] = _describe(handler)
        return snapshot

    def clear(self) -> None:
        """Clear all registered handlers (testing utility)."""
        self._handlers.clear()


__all__ = ["HandlerRegistry"]
