"""
SQLAlchemy implementation of the dead-letter store.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

from pydantic import ValidationError
from sqlalchemy import delete, select

from ..commands.envelope import CommandEnvelope
from ..dead_letter import DeadLetterEntry
from ..exceptions import DeadLetterError
from ..ports.dead_letter import IDeadLetterStore
from .models import DeadLetterModel

if TYPE_CHECKING:
    import builtins

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker


def _utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


class SQLAlchemyDeadLetterStore(IDeadLetterStore):
    """
    Dead letters kept in the ``command_dead_letters`` table.

    The whole envelope is stored as a JSON snapshot so a replay rebuilds
    exactly what the DLQ consumer received; family, type and subject are
    copied into columns for filtering.  Each call runs in its own short
    transaction.

    Usage::

        sessions = async_sessionmaker(engine, expire_on_commit=False)
        runtime = DispatchRuntime.kafka(
            config,
            registry,
            store=SQLAlchemyEventTrackingStore(sessions),
            dead_letter_store=SQLAlchemyDeadLetterStore(sessions),
        )
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @staticmethod
    def to_model(entry: DeadLetterEntry) -> DeadLetterModel:
        envelope = entry.envelope
        return DeadLetterModel(
            event_id=envelope.event_id,
            command_family=envelope.command_family.value,
            command_type=envelope.command_type,
            subject=envelope.subject,
            reason=entry.reason,
            envelope=envelope.model_dump(mode="json"),
            dead_lettered_at=_utc(entry.dead_lettered_at),
        )

    @staticmethod
    def from_model(model: DeadLetterModel) -> DeadLetterEntry:
        try:
            envelope = CommandEnvelope.model_validate(model.envelope)
        except ValidationError as exc:
            raise DeadLetterError(
                f"Stored dead letter {model.event_id} is not a valid envelope: {exc}",
                event_id=model.event_id,
            ) from exc
        return DeadLetterEntry(
            envelope=envelope,
            reason=model.reason,
            dead_lettered_at=_utc(model.dead_lettered_at),
        )

    async def add(self, entry: DeadLetterEntry) -> None:
        async with self._session_factory() as session, session.begin():
            await session.execute(
                delete(DeadLetterModel).where(
                    DeadLetterModel.event_id == entry.event_id
                )
            )
            session.add(self.to_model(entry))

    async def get(self, event_id: str) -> DeadLetterEntry | None:
        async with self._session_factory() as session:
            model = await session.scalar(
                select(DeadLetterModel).where(DeadLetterModel.event_id == event_id)
            )
            return self.from_model(model) if model is not None else None

    async def list(
        self, family: str | None = None, limit: int | None = None
    ) -> builtins.list[DeadLetterEntry]:
        stmt = select(DeadLetterModel).order_by(
            DeadLetterModel.dead_lettered_at.desc(), DeadLetterModel.id.desc()
        )
        if family is not None:
            stmt = stmt.where(DeadLetterModel.command_family == family)
        if limit is not None:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [self.from_model(m) for m in result.scalars().all()]

    async def remove(self, event_id: str) -> bool:
        async with self._session_factory() as session, session.begin():
            result = await session.execute(
                delete(DeadLetterModel).where(DeadLetterModel.event_id == event_id)
            )
            return int(getattr(result, "rowcount", 0) or 0) > 0


__all__ = ["SQLAlchemyDeadLetterStore"]
