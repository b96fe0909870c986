"""Ledger value objects: tracking records and status statistics."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..commands.envelope import TERMINAL_STATUSES, EventStatus

if TYPE_CHECKING:
    from ..commands.envelope import CommandEnvelope


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EventTrackingRecord(BaseModel):
    """Durable mirror of an envelope's lifecycle.

    ``completed_at`` is set iff ``status`` is terminal.  Records are never
    deleted; stores replace them through compare-and-set transitions.
    """

    model_config = ConfigDict(frozen=True)

    id: int | None = None
    event_id: str
    command_family: str
    command_type: str
    subject: str | None = None
    status: EventStatus = EventStatus.PENDING
    message: str | None = None
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    payload: dict[str, Any] = Field(default_factory=dict)
    correlation_id: str | None = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    completed_at: datetime | None = None

    @model_validator(mode="after")
    def _check_completed_at(self) -> EventTrackingRecord:
        if (self.completed_at is not None) != (self.status in TERMINAL_STATUSES):
            raise ValueError(
                f"completed_at must be set iff status is terminal "
                f"(status={self.status.value})"
            )
        return self

    @classmethod
    def from_envelope(cls, envelope: CommandEnvelope) -> EventTrackingRecord:
        return cls(
            event_id=envelope.event_id,
            command_family=envelope.command_family.value,
            command_type=envelope.command_type,
            subject=envelope.subject,
            status=EventStatus.PENDING,
            message=envelope.message,
            retry_count=envelope.retry_count,
            max_retries=envelope.max_retries,
            payload=dict(envelope.payload),
            correlation_id=envelope.correlation_id,
            created_at=envelope.created_at,
            updated_at=_utcnow(),
        )

    @property
    def event_type(self) -> str:
        return f"{self.command_family}.{self.command_type}"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def stale_since(self) -> datetime:
        """Start of the staleness window the reaper measures.

        ``created_at`` for ``PENDING``/``PROCESSING``; for ``RETRY`` the last
        transition, since a retry chain legitimately outlives its creation.
        """
        if self.status is EventStatus.RETRY:
            return self.updated_at
        return self.created_at

    def transitioned(
        self,
        status: EventStatus,
        message: str | None = None,
        retry_count: int | None = None,
        now: datetime | None = None,
    ) -> EventTrackingRecord:
        """Copy with a new status; stamps ``updated_at`` and ``completed_at``."""
        now = now or _utcnow()
        update: dict[str, Any] = {
            "status": status,
            "updated_at": now,
            "completed_at": now if status in TERMINAL_STATUSES else None,
        }
        if message is not None:
            update["message"] = message
        if retry_count is not None:
            update["retry_count"] = retry_count
        return self.model_copy(update=update)

    def to_dict(self) -> dict[str, Any]:
        """camelCase view used by the admin surface."""
        return {
            "id": self.id,
            "eventId": self.event_id,
            "eventType": self.event_type,
            "commandFamily": self.command_family,
            "commandType": self.command_type,
            "subject": self.subject,
            "status": self.status.value,
            "message": self.message,
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "completedAt": (
                self.completed_at.isoformat() if self.completed_at else None
            ),
        }


@dataclass(frozen=True)
class EventStatistics:
    """Snapshot of ledger counts.

    Attributes:
        counts: Mapping of ``EventStatus`` value to record count.
        total: Sum of all counts.
    """

    counts: dict[str, int] = field(default_factory=dict)
    total: int = 0

    @classmethod
    def from_counts(cls, counts: dict[str, int]) -> EventStatistics:
        return cls(counts=dict(counts), total=sum(counts.values()))

    def count(self, status: EventStatus) -> int:
        return self.counts.get(status.value, 0)

    @property
    def in_flight(self) -> int:
        return self.count(EventStatus.PENDING) + self.count(EventStatus.PROCESSING)

    @property
    def success_rate(self) -> float:
        """``completed / total`` in ``[0, 1]``; ``0.0`` for an empty ledger."""
        if self.total == 0:
            return 0.0
        return self.count(EventStatus.COMPLETED) / self.total

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalEvents": self.total,
            "pendingEvents": self.count(EventStatus.PENDING),
            "processingEvents": self.count(EventStatus.PROCESSING),
            "completedEvents": self.count(EventStatus.COMPLETED),
            "failedEvents": self.count(EventStatus.FAILED),
            "retryEvents": self.count(EventStatus.RETRY),
            "successRate": self.success_rate,
        }
