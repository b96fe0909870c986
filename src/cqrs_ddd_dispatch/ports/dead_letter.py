from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    import builtins

    from ..dead_letter import DeadLetterEntry


@runtime_checkable
class IDeadLetterStore(Protocol):
    """Holding area for dead-lettered commands, read by operator tooling.

    Entries are only added by the DLQ inbox and only removed by an explicit
    operator discard or replay; nothing consumes them automatically.
    """

    async def add(self, entry: DeadLetterEntry) -> None:
        """Store *entry*; an existing entry with the same event id is replaced."""
        ...

    async def get(self, event_id: str) -> DeadLetterEntry | None: ...

    async def list(
        self, family: str | None = None, limit: int | None = None
    ) -> builtins.list[DeadLetterEntry]:
        """Entries, newest first, optionally restricted to one family."""
        ...

    async def remove(self, event_id: str) -> bool:
        """Remove an entry; return whether one existed."""
        ...
