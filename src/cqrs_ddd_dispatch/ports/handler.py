"""Handler contract: the narrow seam to domain services."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, TypeAlias

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ..commands.envelope import CommandEnvelope
    from .unit_of_work import UnitOfWork


class CommandHandler(ABC):
    """Base class for command handlers.

    A handler receives the envelope and the unit of work of the current
    attempt, performs its domain writes through that unit of work, and
    returns an optional human-readable outcome message.

    Delivery is at-least-once, so handlers must be idempotent keyed on
    ``event_id`` or on a natural key. Outcomes are signalled with exceptions:

    - :class:`~cqrs_ddd_dispatch.exceptions.CommandValidationError`:
      precondition failed, no retry.
    - :class:`~cqrs_ddd_dispatch.exceptions.TransientCommandError`:
      retry with backoff.
    - :class:`~cqrs_ddd_dispatch.exceptions.FatalCommandError`:
      dead-letter without retry.

    Usage::

        class CreateUserHandler(CommandHandler):
            async def handle(self, envelope, uow):
                if await users.exists(envelope.subject, uow):
                    raise CommandValidationError("username already exists")
                user = await users.create(envelope.payload, uow)
                return f"User successfully registered: ID={user.id}"
    """

    @abstractmethod
    async def handle(self, envelope: CommandEnvelope, uow: UnitOfWork) -> str | None:
        """Execute the command; return an outcome message or ``None``."""
        ...


HandlerFunc: TypeAlias = (
    "Callable[[CommandEnvelope, UnitOfWork], Awaitable[str | None]]"
)
Handler: TypeAlias = "CommandHandler | HandlerFunc"


async def invoke_handler(
    handler: Handler, envelope: CommandEnvelope, uow: UnitOfWork
) -> str | None:
    """Call either a :class:`CommandHandler` instance or a bare coroutine function."""
    if isinstance(handler, CommandHandler):
        return await handler.handle(envelope, uow)
    return await handler(envelope, uow)
