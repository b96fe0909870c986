"""Dead-letter sink: routing, the DLQ inbox and operator actions.

Commands that exhaust their retries, or that a handler declares fatal, are
published to ``<family>-topic.dlq``.  Nothing re-ingests them
automatically: the :class:`DeadLetterInbox` only records each one for
operators, who list, inspect, replay or discard entries through
:class:`DeadLetterService`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from .commands.envelope import CommandEnvelope, EventStatus
from .exceptions import DeadLetterError, EventNotFoundError
from .ports.dead_letter import IDeadLetterStore

if TYPE_CHECKING:
    import builtins

    from .config import DispatchConfig
    from .ports.messaging import IMessageConsumer, IMessagePublisher
    from .producer import CommandProducer
    from .tracking.service import EventTrackingService

logger = logging.getLogger("cqrs_ddd.dispatch.dead_letter")

DLQ_MESSAGE_PREFIX = "Sent to DLQ: "


@dataclass(frozen=True)
class DeadLetterEntry:
    """A dead-lettered envelope as seen by operators."""

    envelope: CommandEnvelope
    reason: str
    dead_lettered_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @classmethod
    def from_envelope(cls, envelope: CommandEnvelope) -> DeadLetterEntry:
        message = envelope.message or ""
        reason = message
        if message.startswith(DLQ_MESSAGE_PREFIX):
            reason = message[len(DLQ_MESSAGE_PREFIX) :]
        return cls(envelope=envelope, reason=reason or "unknown")

    @property
    def event_id(self) -> str:
        return self.envelope.event_id

    @property
    def command_family(self) -> str:
        return self.envelope.command_family.value

    def to_dict(self) -> dict[str, Any]:
        env = self.envelope
        return {
            "eventId": env.event_id,
            "eventType": env.event_type,
            "commandFamily": env.command_family.value,
            "commandType": env.command_type,
            "subject": env.subject,
            "payload": env.payload,
            "retryCount": env.retry_count,
            "maxRetries": env.max_retries,
            "reason": self.reason,
            "createdAt": env.created_at.isoformat(),
            "deadLetteredAt": self.dead_lettered_at.isoformat(),
        }


class InMemoryDeadLetterStore(IDeadLetterStore):
    """Dictionary-backed dead-letter store."""

    def __init__(self) -> None:
        self._entries: dict[str, DeadLetterEntry] = {}

    async def add(self, entry: DeadLetterEntry) -> None:
        self._entries[entry.event_id] = entry

    async def get(self, event_id: str) -> DeadLetterEntry | None:
        return self._entries.get(event_id)

    async def list(
        self, family: str | None = None, limit: int | None = None
    ) -> builtins.list[DeadLetterEntry]:
        entries = sorted(
            (
                e
                for e in self._entries.values()
                if family is None or e.command_family == family
            ),
            key=lambda e: e.dead_lettered_at,
            reverse=True,
        )
        return entries if limit is None else entries[:limit]

    async def remove(self, event_id: str) -> bool:
        return self._entries.pop(event_id, None) is not None

    def __len__(self) -> int:
        return len(self._entries)


class DeadLetterRouter:
    """Sends an envelope to its family's DLQ topic and fails its record.

    The DLQ write happens first: if it fails, :class:`DeadLetterError` is
    raised, the ledger is left untouched and the transport redelivers.
    """

    def __init__(
        self,
        tracking: EventTrackingService,
        publisher: IMessagePublisher,
        config: DispatchConfig,
    ) -> None:
        self._tracking = tracking
        self._publisher = publisher
        self._config = config

    async def route(self, envelope: CommandEnvelope, reason: str) -> None:
        message = f"{DLQ_MESSAGE_PREFIX}{reason}"
        dead = envelope.with_status(EventStatus.FAILED, message)
        topic = self._config.dlq_topic_for(envelope.command_family)
        try:
            await self._publisher.publish(topic, dead, key=dead.partition_key)
        except Exception as e:
            raise DeadLetterError(
                f"Failed to publish {envelope.event_id} to {topic}: {e}",
                event_id=envelope.event_id,
            ) from e
        await self._tracking.transition(envelope.event_id, EventStatus.FAILED, message)
        logger.error("Event %s sent to DLQ %s: %s", envelope.event_id, topic, reason)


class DeadLetterInbox:
    """Consumer of the DLQ topics: records entries and alerts operators."""

    def __init__(self, store: IDeadLetterStore) -> None:
        self._store = store

    async def receive(self, envelope: CommandEnvelope) -> None:
        entry = DeadLetterEntry.from_envelope(envelope)
        await self._store.add(entry)
        logger.error(
            "DLQ message received - manual intervention required: "
            "eventId=%s type=%s subject=%s reason=%s",
            envelope.event_id,
            envelope.event_type,
            envelope.subject,
            entry.reason,
        )

    async def subscribe(
        self, consumer: IMessageConsumer, config: DispatchConfig
    ) -> None:
        for family in config.families:
            await consumer.subscribe(
                config.dlq_topic_for(family),
                self.receive,
                queue_name=f"{config.kafka.group_id}.dlq",
            )


class DeadLetterService:
    """Operator actions over the dead-letter store.

    Replay re-enqueues the payload as a NEW command with a fresh event id;
    the original ledger record stays ``FAILED`` as the audit trail.  Discard
    removes the entry from the sink only.
    """

    def __init__(
        self, store: IDeadLetterStore, producer: CommandProducer | None = None
    ) -> None:
        self._store = store
        self._producer = producer

    async def list(
        self, family: str | None = None, limit: int | None = None
    ) -> builtins.list[DeadLetterEntry]:
        return await self._store.list(family=family, limit=limit)

    async def inspect(self, event_id: str) -> DeadLetterEntry:
        entry = await self._store.get(event_id)
        if entry is None:
            raise EventNotFoundError(event_id)
        return entry

    async def replay(self, event_id: str) -> str:
        """Re-enqueue a dead-lettered command; return the new event id."""
        if self._producer is None:
            raise DeadLetterError("Replay requires a command producer", event_id)
        entry = await self.inspect(event_id)
        original = entry.envelope
        replacement = CommandEnvelope.create(
            original.command_family,
            original.command_type,
            dict(original.payload),
            subject=original.subject,
            max_retries=original.max_retries,
            correlation_id=original.correlation_id,
        )
        new_event_id = await self._producer.enqueue(replacement)
        await self._store.remove(event_id)
        logger.info("Dead letter %s replayed as %s", event_id, new_event_id)
        return new_event_id

    async def discard(self, event_id: str) -> None:
        if not await self._store.remove(event_id):
            raise EventNotFoundError(event_id)
        logger.info("Dead letter %s discarded", event_id)


__all__ = [
    "DLQ_MESSAGE_PREFIX",
    "DeadLetterEntry",
    "DeadLetterInbox",
    "DeadLetterRouter",
    "DeadLetterService",
    "InMemoryDeadLetterStore",
]
