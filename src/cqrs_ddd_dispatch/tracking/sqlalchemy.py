"""
SQLAlchemy implementation of the command status ledger.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError

from ..commands.envelope import TERMINAL_STATUSES, EventStatus
from ..exceptions import EventNotFoundError, StatusConflictError
from ..persistence.models import CommandEventModel
from ..ports.tracking import IEventTrackingStore
from .record import EventTrackingRecord

if TYPE_CHECKING:
    from collections.abc import Collection

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


def _utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _utc_or_none(ts: datetime | None) -> datetime | None:
    return _utc(ts) if ts is not None else None


class SQLAlchemyEventTrackingStore(IEventTrackingStore):
    """
    Ledger stored in the ``command_events`` table.

    Each call runs in its own short transaction, independent of any handler
    unit of work.  Status transitions are a single conditional ``UPDATE``::

        UPDATE command_events SET status = :new, ...
         WHERE event_id = :id AND status IN (:expected)

    A rowcount of zero means the record is missing or another writer moved
    it first.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ── Mapping ──────────────────────────────────────────────────

    @staticmethod
    def to_model(record: EventTrackingRecord) -> CommandEventModel:
        return CommandEventModel(
            event_id=record.event_id,
            command_family=record.command_family,
            command_type=record.command_type,
            subject=record.subject,
            status=record.status,
            message=record.message,
            retry_count=record.retry_count,
            max_retries=record.max_retries,
            payload=dict(record.payload),
            correlation_id=record.correlation_id,
            created_at=_utc(record.created_at),
            updated_at=_utc(record.updated_at),
            completed_at=_utc_or_none(record.completed_at),
        )

    @staticmethod
    def from_model(model: CommandEventModel) -> EventTrackingRecord:
        return EventTrackingRecord(
            id=model.id,
            event_id=model.event_id,
            command_family=model.command_family,
            command_type=model.command_type,
            subject=model.subject,
            status=model.status,
            message=model.message,
            retry_count=model.retry_count,
            max_retries=model.max_retries,
            payload=model.payload or {},
            correlation_id=model.correlation_id,
            created_at=_utc(model.created_at),
            updated_at=_utc(model.updated_at),
            completed_at=_utc_or_none(model.completed_at),
        )

    # ── Writes ───────────────────────────────────────────────────

    async def create(
        self, record: EventTrackingRecord
    ) -> tuple[EventTrackingRecord, bool]:
        try:
            async with self._session_factory() as session, session.begin():
                model = self.to_model(record)
                session.add(model)
                await session.flush()
                stored = self.from_model(model)
        except IntegrityError:
            existing = await self.get(record.event_id)
            if existing is None:
                raise
            return existing, False
        return stored, True

    async def _conditional_update(
        self,
        event_id: str,
        expected: Collection[EventStatus],
        values: dict[str, Any],
    ) -> EventTrackingRecord:
        expected_list = list(expected)
        async with self._session_factory() as session, session.begin():
            stmt = (
                update(CommandEventModel)
                .where(
                    CommandEventModel.event_id == event_id,
                    CommandEventModel.status.in_(expected_list),
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            # CursorResult.rowcount; Result type stubs may not expose it
            if int(getattr(result, "rowcount", 0) or 0) == 0:
                actual = await session.scalar(
                    select(CommandEventModel.status).where(
                        CommandEventModel.event_id == event_id
                    )
                )
                if actual is None:
                    raise EventNotFoundError(event_id)
                raise StatusConflictError(
                    event_id, sorted(s.value for s in expected_list), actual.value
                )
            model = await session.scalar(
                select(CommandEventModel).where(CommandEventModel.event_id == event_id)
            )
            if model is None:
                raise EventNotFoundError(event_id)
            return self.from_model(model)

    async def compare_and_set(
        self,
        event_id: str,
        expected: Collection[EventStatus],
        new_status: EventStatus,
        *,
        message: str | None = None,
        retry_count: int | None = None,
    ) -> EventTrackingRecord:
        now = datetime.now(timezone.utc)
        values: dict[str, Any] = {
            "status": new_status,
            "updated_at": now,
            "completed_at": now if new_status in TERMINAL_STATUSES else None,
        }
        if message is not None:
            values["message"] = message
        if retry_count is not None:
            values["retry_count"] = retry_count
        return await self._conditional_update(event_id, expected, values)

    async def set_retry_count(
        self,
        event_id: str,
        retry_count: int,
        expected: Collection[EventStatus],
    ) -> EventTrackingRecord:
        return await self._conditional_update(
            event_id,
            expected,
            {"retry_count": retry_count, "updated_at": datetime.now(timezone.utc)},
        )

    # ── Queries ──────────────────────────────────────────────────

    async def _select_many(self, stmt: Any) -> list[EventTrackingRecord]:
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [self.from_model(m) for m in result.scalars().all()]

    async def get(self, event_id: str) -> EventTrackingRecord | None:
        async with self._session_factory() as session:
            model = await session.scalar(
                select(CommandEventModel).where(CommandEventModel.event_id == event_id)
            )
            return self.from_model(model) if model is not None else None

    async def find_by_status(
        self, status: EventStatus, limit: int | None = None
    ) -> list[EventTrackingRecord]:
        stmt = (
            select(CommandEventModel)
            .where(CommandEventModel.status == status)
            .order_by(CommandEventModel.created_at.desc(), CommandEventModel.id.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return await self._select_many(stmt)

    async def find_by_subject(self, subject: str) -> list[EventTrackingRecord]:
        stmt = (
            select(CommandEventModel)
            .where(CommandEventModel.subject == subject)
            .order_by(CommandEventModel.created_at.desc(), CommandEventModel.id.desc())
        )
        return await self._select_many(stmt)

    async def find_recent(self, since: datetime) -> list[EventTrackingRecord]:
        stmt = (
            select(CommandEventModel)
            .where(CommandEventModel.created_at >= _utc(since))
            .order_by(CommandEventModel.created_at.desc(), CommandEventModel.id.desc())
        )
        return await self._select_many(stmt)

    async def find_stale(
        self, cutoff: datetime, statuses: Collection[EventStatus]
    ) -> list[EventTrackingRecord]:
        stmt = (
            select(CommandEventModel)
            .where(
                CommandEventModel.status.in_(list(statuses)),
                case(
                    (
                        CommandEventModel.status == EventStatus.RETRY,
                        CommandEventModel.updated_at,
                    ),
                    else_=CommandEventModel.created_at,
                )
                < _utc(cutoff),
            )
            .order_by(CommandEventModel.created_at)
        )
        return await self._select_many(stmt)

    async def count_by_status(self) -> dict[str, int]:
        stmt = select(
            CommandEventModel.status,
            func.count().label("cnt"),
        ).group_by(CommandEventModel.status)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return {row.status.value: row.cnt for row in result.all()}


__all__ = ["SQLAlchemyEventTrackingStore"]
