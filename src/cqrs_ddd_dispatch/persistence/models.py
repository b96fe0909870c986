"""
SQLAlchemy models for the command status ledger and the dead-letter sink.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import BigInteger, DateTime, Enum, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..commands.envelope import EventStatus
from .types import JSONObject

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Declarative base for the dispatch tables."""


class CommandEventModel(Base):
    """
    One row per command lineage, keyed by unique ``event_id``.
    Rows are updated in place and never deleted.
    """

    __tablename__ = "command_events"

    id: Mapped[int] = mapped_column(
        Integer().with_variant(BigInteger, "postgresql"),
        primary_key=True,
        autoincrement=True,
    )
    event_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    command_family: Mapped[str] = mapped_column(String(64), index=True)
    command_type: Mapped[str] = mapped_column(String(64))
    subject: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    status: Mapped[EventStatus] = mapped_column(
        Enum(EventStatus), default=EventStatus.PENDING, index=True
    )
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    payload: Mapped[dict[str, Any]] = mapped_column(JSONObject, default=dict)
    correlation_id: Mapped[str | None] = mapped_column(
        String, nullable=True, index=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        Index("ix_command_events_status_created", "status", "created_at"),
    )


class DeadLetterModel(Base):
    """
    Dead-lettered command awaiting an operator decision.
    One row per ``event_id``; replay and discard delete it.
    """

    __tablename__ = "command_dead_letters"

    id: Mapped[int] = mapped_column(
        Integer().with_variant(BigInteger, "postgresql"),
        primary_key=True,
        autoincrement=True,
    )
    event_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    command_family: Mapped[str] = mapped_column(String(64), index=True)
    command_type: Mapped[str] = mapped_column(String(64))
    subject: Mapped[str | None] = mapped_column(String, nullable=True)
    reason: Mapped[str] = mapped_column(Text)
    envelope: Mapped[dict[str, Any]] = mapped_column(JSONObject)
    dead_lettered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, index=True
    )


async def create_all(engine: AsyncEngine) -> None:
    """Create the dispatch tables (tests and first-run bootstrap)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


__all__ = ["Base", "CommandEventModel", "DeadLetterModel", "create_all"]
