"""The versioned command envelope flowing through the log."""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..correlation import get_correlation_id
from .families import EVENT_ID_PREFIXES, CommandFamily, is_valid_command

ENVELOPE_VERSION = 1


class EventStatus(str, Enum):
    """Lifecycle states shared by envelopes and tracking records.

    Transitions::

        PENDING    → PROCESSING (dispatcher claims it)
        PROCESSING → COMPLETED  (handler succeeded)
        PROCESSING → RETRY      (transient failure, retry scheduled)
        PROCESSING → FAILED     (validation error, fatal error, exhaustion)
        RETRY      → PROCESSING (redelivery)
        PENDING | PROCESSING → FAILED (reaper)
    """

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    RETRY = "RETRY"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({EventStatus.COMPLETED, EventStatus.FAILED})
IN_FLIGHT_STATUSES = frozenset(
    {EventStatus.PENDING, EventStatus.PROCESSING, EventStatus.RETRY}
)


def new_event_id(family: CommandFamily | str, command_type: str) -> str:
    """Return ``<PREFIX>_<TYPE>_<epoch millis>_<8 hex>``; never reused."""
    prefix = EVENT_ID_PREFIXES[CommandFamily(family)]
    millis = int(time.time() * 1000)
    return f"{prefix}_{command_type}_{millis}_{uuid.uuid4().hex[:8]}"


class CommandEnvelope(BaseModel):
    """Immutable command envelope carried by the broker.

    ``(command_family, command_type)`` is a closed tagged union: a pair that
    is not declared in :mod:`.families` fails validation.  ``payload`` is
    opaque to the dispatcher and interpreted only by the handler.
    """

    model_config = ConfigDict(frozen=True)

    version: int = ENVELOPE_VERSION
    event_id: str = ""
    command_family: CommandFamily
    command_type: str
    subject: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    status: EventStatus = EventStatus.PENDING
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=0)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    message: str | None = None
    correlation_id: str | None = Field(default_factory=get_correlation_id)
    not_before: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def _assign_event_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("event_id"):
            family = data.get("command_family")
            command_type = data.get("command_type")
            if family is not None and command_type is not None:
                command_type = getattr(command_type, "value", command_type)
                try:
                    data = {**data, "event_id": new_event_id(family, command_type)}
                except (KeyError, ValueError):
                    # Unknown family: left to field validation to report.
                    pass
        return data

    @model_validator(mode="after")
    def _check_command_pair(self) -> CommandEnvelope:
        if not is_valid_command(self.command_family, self.command_type):
            raise ValueError(
                f"{self.command_type!r} is not a command type of family "
                f"{self.command_family.value!r}"
            )
        return self

    # -- factory ----------------------------------------------------------

    @classmethod
    def create(
        cls,
        family: CommandFamily | str,
        command_type: str,
        payload: dict[str, Any] | None = None,
        *,
        subject: str | None = None,
        max_retries: int = 3,
        **extra: Any,
    ) -> CommandEnvelope:
        return cls(
            command_family=CommandFamily(family),
            command_type=getattr(command_type, "value", command_type),
            payload=payload or {},
            subject=subject,
            max_retries=max_retries,
            **extra,
        )

    # -- derived ----------------------------------------------------------

    @property
    def event_type(self) -> str:
        """Single discriminated name, e.g. ``stock-order.CONFIRM``."""
        return f"{self.command_family.value}.{self.command_type}"

    @property
    def partition_key(self) -> str:
        """Subject when present so commands on the same entity stay ordered."""
        return self.subject or self.event_id

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    # -- copies -----------------------------------------------------------

    def with_status(
        self, status: EventStatus, message: str | None = None
    ) -> CommandEnvelope:
        update: dict[str, Any] = {"status": status}
        if message is not None:
            update["message"] = message
        return self.model_copy(update=update)

    def next_retry(self, not_before: datetime, message: str) -> CommandEnvelope:
        """Copy for the retry channel: bumped counter, RETRY status, due time."""
        return self.model_copy(
            update={
                "retry_count": self.retry_count + 1,
                "status": EventStatus.RETRY,
                "message": message,
                "not_before": not_before,
            }
        )


__all__ = [
    "ENVELOPE_VERSION",
    "IN_FLIGHT_STATUSES",
    "TERMINAL_STATUSES",
    "CommandEnvelope",
    "EventStatus",
    "new_event_id",
]
