"""Transactional scope around a handler attempt."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    AfterCommit = Callable[[], Awaitable[Any]]

logger = logging.getLogger("cqrs_ddd.dispatch.uow")


class UnitOfWork(ABC):
    """One transaction per handler attempt.

    The dispatcher enters the unit of work, hands it to the handler and
    leaves it when the handler returns or raises. A handler that returns
    commits its domain writes; any exception rolls them back, so a failed
    attempt leaves nothing behind for the retry to trip over.

    Callbacks registered with :meth:`on_commit` run only once the commit
    has succeeded. They are dropped on rollback.
    """

    def __init__(self) -> None:
        self._after_commit: list[AfterCommit] = []

    def on_commit(self, callback: AfterCommit) -> None:
        self._after_commit.append(callback)

    async def _run_after_commit(self) -> None:
        pending, self._after_commit = self._after_commit, []
        for callback in pending:
            try:
                await callback()
            except Exception:
                # Commit is durable; the attempt still counts as completed.
                logger.exception("After-commit callback %r failed", callback)

    @abstractmethod
    async def commit(self) -> None: ...

    @abstractmethod
    async def rollback(self) -> None: ...

    async def __aenter__(self) -> UnitOfWork:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: Any,
    ) -> None:
        if exc_type is not None:
            self._after_commit.clear()
            await self.rollback()
            return
        await self.commit()
        await self._run_after_commit()


class InMemoryUnitOfWork(UnitOfWork):
    """Unit of work with no backing store.

    Default for dispatchers whose handlers keep their own state; tests use
    the ``committed`` / ``rolled_back`` flags to see how an attempt ended.
    """

    def __init__(self) -> None:
        super().__init__()
        self.committed = False
        self.rolled_back = False

    @property
    def finished(self) -> bool:
        return self.committed or self.rolled_back

    async def commit(self) -> None:
        if not self.finished:
            self.committed = True

    async def rollback(self) -> None:
        if not self.finished:
            self.rolled_back = True
