"""Turns commands into tracked envelopes on the log."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .commands.envelope import CommandEnvelope, EventStatus
from .correlation import get_correlation_id
from .exceptions import (
    CommandValidationError,
    EnqueueError,
    StatusConflictError,
)
from .instrumentation import get_hook_registry

if TYPE_CHECKING:
    from .commands.families import CommandFamily
    from .config import DispatchConfig
    from .ports.messaging import IMessagePublisher
    from .tracking.service import EventTrackingService

logger = logging.getLogger("cqrs_ddd.dispatch.producer")


class CommandProducer:
    """Enqueues commands for asynchronous processing.

    ``enqueue`` creates the ``PENDING`` ledger record first, so callers can
    query the status immediately, then publishes the envelope keyed by its
    subject.  If the broker does not acknowledge the write, the record is
    compensated to ``FAILED`` and :class:`EnqueueError` is raised: no record
    is left dangling in ``PENDING``.

    Example::

        producer = CommandProducer(publisher, tracking, config)
        event_id = await producer.send(
            CommandFamily.USER_REGISTRATION,
            UserRegistrationCommand.CREATE,
            {"username": "alice", "password": "..."},
            subject="alice",
        )
    """

    def __init__(
        self,
        publisher: IMessagePublisher,
        tracking: EventTrackingService,
        config: DispatchConfig,
    ) -> None:
        self._publisher = publisher
        self._tracking = tracking
        self._config = config

    async def enqueue(self, envelope: CommandEnvelope) -> str:
        """Track and publish *envelope*; return its ``event_id``.

        Raises:
            CommandValidationError: structurally incomplete command (no
                subject, or a family this process does not serve).
            EnqueueError: the broker write failed; the record is ``FAILED``.
        """
        self._check_structure(envelope)
        if envelope.status is not EventStatus.PENDING or envelope.retry_count:
            envelope = envelope.model_copy(
                update={"status": EventStatus.PENDING, "retry_count": 0}
            )

        registry = get_hook_registry()
        event_id: str = await registry.execute_all(
            f"dispatch.enqueue.{envelope.command_family.value}",
            {
                "event.id": envelope.event_id,
                "event.type": envelope.event_type,
                "subject": envelope.subject,
                "correlation_id": envelope.correlation_id or get_correlation_id(),
            },
            lambda: self._enqueue(envelope),
        )
        return event_id

    async def send(
        self,
        family: CommandFamily | str,
        command_type: str,
        payload: dict[str, Any] | None = None,
        *,
        subject: str | None = None,
        max_retries: int | None = None,
    ) -> str:
        """Build an envelope from parts and :meth:`enqueue` it."""
        envelope = CommandEnvelope.create(
            family,
            command_type,
            payload,
            subject=subject,
            max_retries=(
                self._config.retry.max_retries if max_retries is None else max_retries
            ),
        )
        return await self.enqueue(envelope)

    def _check_structure(self, envelope: CommandEnvelope) -> None:
        if not envelope.subject or not envelope.subject.strip():
            raise CommandValidationError(
                f"{envelope.event_type}: subject is required for tracking"
            )
        if envelope.command_family not in self._config.families:
            raise CommandValidationError(
                f"Command family {envelope.command_family.value!r} is not served"
            )

    async def _enqueue(self, envelope: CommandEnvelope) -> str:
        record = await self._tracking.create(envelope)
        if record.is_terminal:
            logger.info(
                "Event %s already %s; not republished",
                envelope.event_id,
                record.status.value,
            )
            return envelope.event_id

        topic = self._config.topic_for(envelope.command_family)
        try:
            await self._publisher.publish(topic, envelope, key=envelope.partition_key)
        except Exception as e:
            if not await self._compensate(envelope, e):
                return envelope.event_id
            raise EnqueueError(
                f"Failed to publish {envelope.event_id} to {topic}: {e}",
                event_id=envelope.event_id,
            ) from e

        logger.info(
            "Event published: %s -> %s (key=%s)",
            envelope.event_id,
            topic,
            envelope.partition_key,
        )
        return envelope.event_id

    async def _compensate(self, envelope: CommandEnvelope, error: Exception) -> bool:
        """Fail the PENDING record; False when a dispatcher already claimed it."""
        try:
            await self._tracking.transition(
                envelope.event_id,
                EventStatus.FAILED,
                f"publish failed: {error}",
                expected={EventStatus.PENDING},
            )
        except StatusConflictError:
            # Already picked up: the publish reached the broker after all.
            logger.warning(
                "Publish of %s reported failure but record moved on",
                envelope.event_id,
            )
            return False
        logger.error("Publish of %s failed: %s", envelope.event_id, error)
        return True


__all__ = ["CommandProducer"]
