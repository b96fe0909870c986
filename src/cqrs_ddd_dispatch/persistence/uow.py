"""SQLAlchemy unit of work for handler attempts."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from ..exceptions import SessionManagementError, UnitOfWorkError
from ..ports.unit_of_work import UnitOfWork

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger("cqrs_ddd.dispatch.uow")


class SQLAlchemyUnitOfWork(UnitOfWork):
    """
    Handler transaction over an ``AsyncSession``.

    Pass ``session_factory`` to get a fresh session per attempt (closed on
    exit), or ``session`` to join a caller-managed one::

        sessions = async_sessionmaker(engine, expire_on_commit=False)
        dispatcher = CommandDispatcher(
            ...,
            uow_factory=lambda: SQLAlchemyUnitOfWork(session_factory=sessions),
        )

    Handlers write their domain rows through ``uow.session``.
    """

    def __init__(
        self,
        session: AsyncSession | None = None,
        session_factory: Callable[[], AsyncSession] | None = None,
    ) -> None:
        if (session is None) == (session_factory is None):
            raise SessionManagementError(
                "Exactly one of 'session' or 'session_factory' is required."
            )
        super().__init__()
        self._session = session
        self._session_factory = session_factory

    @property
    def session(self) -> AsyncSession:
        if self._session is None:
            raise UnitOfWorkError("No active session outside 'async with'.")
        return self._session

    async def __aenter__(self) -> SQLAlchemyUnitOfWork:
        if self._session_factory is not None:
            try:
                self._session = self._session_factory()
            except SQLAlchemyError as exc:
                raise SessionManagementError(f"Cannot open session: {exc}") from exc
        if not self.session.in_transaction():
            await self.session.begin()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        try:
            await super().__aexit__(exc_type, exc_val, exc_tb)
        finally:
            if self._session_factory is not None and self._session is not None:
                session, self._session = self._session, None
                await session.close()

    async def commit(self) -> None:
        try:
            await self.session.commit()
        except SQLAlchemyError as exc:
            logger.warning("Handler transaction commit failed: %s", exc)
            await self.rollback()
            raise UnitOfWorkError(f"Commit failed: {exc}") from exc

    async def rollback(self) -> None:
        if not self.session.in_transaction():
            return
        try:
            await self.session.rollback()
        except SQLAlchemyError as exc:
            raise UnitOfWorkError(f"Rollback failed: {exc}") from exc


__all__ = ["SQLAlchemyUnitOfWork"]
