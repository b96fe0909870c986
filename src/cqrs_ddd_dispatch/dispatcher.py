"""Command dispatcher: claims envelopes, runs handlers and classifies outcomes."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from .commands.envelope import EventStatus
from .correlation import correlation_scope
from .exceptions import (
    CommandValidationError,
    EventNotFoundError,
    FatalCommandError,
    StatusConflictError,
    TransientCommandError,
    UnknownCommandTypeError,
)
from .instrumentation import get_hook_registry
from .ports.handler import invoke_handler
from .ports.unit_of_work import InMemoryUnitOfWork
from .retry import DelayQueue

if TYPE_CHECKING:
    from collections.abc import Callable

    from .commands.envelope import CommandEnvelope
    from .config import DispatchConfig
    from .dead_letter import DeadLetterRouter
    from .ports.messaging import IMessageConsumer
    from .ports.unit_of_work import UnitOfWork
    from .registry import HandlerRegistry
    from .retry import RetryController
    from .tracking.service import EventTrackingService

logger = logging.getLogger("cqrs_ddd.dispatch.dispatcher")

COMPLETED_MESSAGE = "Command completed"


class CommandDispatcher:
    """Consumer-side processing of command envelopes.

    For each delivered envelope:

    1. The ledger record is created if missing and claimed (``PROCESSING``)
       with a compare-and-set.  A record that is already terminal is not
       processed again, so redelivery after completion has no side effect.
    2. The handler registered for ``(family, type)`` is looked up; an
       unknown type fails the record immediately.
    3. The handler runs inside a fresh unit of work; its domain writes
       commit only if it returns.
    4. The outcome becomes a status transition: success ``COMPLETED``,
       :class:`CommandValidationError` ``FAILED``,
       :class:`TransientCommandError` retry, :class:`FatalCommandError`
       dead letter.  Other exceptions are retried like transient ones unless
       ``retry_unexpected_errors`` is disabled, in which case they are
       dead-lettered.

    :meth:`process` returns only after the ledger reflects the outcome, and
    the transports acknowledge a message only after :meth:`process`
    returns.  Handler exceptions never escape; a ledger or broker failure
    does, and the transport redelivers the message.
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        tracking: EventTrackingService,
        retry: RetryController,
        dead_letter: DeadLetterRouter,
        config: DispatchConfig,
        *,
        uow_factory: Callable[[], UnitOfWork] | None = None,
        delay_queue: DelayQueue | None = None,
    ) -> None:
        self._registry = registry
        self._tracking = tracking
        self._retry = retry
        self._dead_letter = dead_letter
        self._config = config
        self._uow_factory = uow_factory or InMemoryUnitOfWork
        self._delay_queue = (
            delay_queue if delay_queue is not None else DelayQueue(self.process)
        )

    @property
    def delay_queue(self) -> DelayQueue:
        return self._delay_queue

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(
        self,
        consumer: IMessageConsumer,
        retry_consumer: IMessageConsumer | None = None,
    ) -> None:
        """Subscribe the main and retry topics of every configured family.

        The retry topics may use a separate consumer (their own group);
        both consumers are started by the caller.
        """
        retry_consumer = retry_consumer or consumer
        group = self._config.kafka.group_id
        for family in self._config.families:
            await consumer.subscribe(
                self._config.topic_for(family),
                self.process,
                queue_name=group,
                on_undecodable=self.reject_undecodable,
            )
            await retry_consumer.subscribe(
                self._config.retry_topic_for(family),
                self.process_retry,
                queue_name=f"{group}.retry",
                on_undecodable=self.reject_undecodable,
            )
            missing = self._registry.missing_types(family)
            if missing:
                logger.warning(
                    "No handler registered for %s: %s",
                    family.value,
                    ", ".join(missing),
                )
        await self._delay_queue.start()
        logger.info(
            "CommandDispatcher started for %s",
            ", ".join(f.value for f in self._config.families),
        )

    async def stop(self) -> None:
        await self._delay_queue.stop()
        logger.info("CommandDispatcher stopped")

    # ── Retry channel ────────────────────────────────────────────

    async def process_retry(self, envelope: CommandEnvelope) -> EventStatus:
        """Hold a retry-channel envelope until its due time, then process it.

        Returns once the delayed attempt has been recorded, so the transport
        commits the retry message only after its outcome is in the ledger.
        A consumer stopped inside the backoff window leaves the message
        uncommitted and it is redelivered on restart.
        """
        logger.info(
            "Retry %d/%d of %s due in %.1fs",
            envelope.retry_count,
            envelope.max_retries,
            envelope.event_id,
            self._delay_queue.delay_until(envelope),
        )
        status: EventStatus = await self._delay_queue.run_when_due(envelope)
        return status

    # ── Main path ────────────────────────────────────────────────

    async def process(self, envelope: CommandEnvelope) -> EventStatus:
        """Process one delivery of *envelope*; return the resulting status."""
        with correlation_scope(envelope.correlation_id):
            registry = get_hook_registry()
            status: EventStatus = await registry.execute_all(
                f"dispatch.process.{envelope.command_family.value}."
                f"{envelope.command_type}",
                {
                    "event.id": envelope.event_id,
                    "event.type": envelope.event_type,
                    "subject": envelope.subject,
                    "retry.count": envelope.retry_count,
                    "correlation_id": envelope.correlation_id,
                },
                lambda: self._process(envelope),
            )
            return status

    async def _process(self, envelope: CommandEnvelope) -> EventStatus:
        await self._tracking.create(envelope)
        claimed = await self._tracking.claim(envelope.event_id)
        if claimed is None:
            current = await self._tracking.find_by_event_id(envelope.event_id)
            return current.status if current else EventStatus.FAILED
        if claimed.retry_count > envelope.retry_count:
            # A stale redelivery must not reset the retry budget.
            envelope = envelope.model_copy(update={"retry_count": claimed.retry_count})

        logger.info(
            "Processing %s (%s, subject=%s, attempt %d)",
            envelope.event_id,
            envelope.event_type,
            envelope.subject,
            envelope.retry_count + 1,
        )

        handler = self._registry.get(envelope.command_family, envelope.command_type)
        if handler is None:
            error = UnknownCommandTypeError(
                envelope.command_family.value, envelope.command_type
            )
            logger.error("Event %s: %s", envelope.event_id, error)
            return await self._finish(envelope, EventStatus.FAILED, str(error))

        try:
            async with self._uow_factory() as uow:
                message = await invoke_handler(handler, envelope, uow)
        except CommandValidationError as e:
            logger.warning("Event %s rejected: %s", envelope.event_id, e)
            return await self._finish(envelope, EventStatus.FAILED, str(e))
        except FatalCommandError as e:
            logger.error("Event %s failed fatally: %s", envelope.event_id, e)
            await self._dead_letter.route(envelope, f"fatal error: {e}")
            return EventStatus.FAILED
        except TransientCommandError as e:
            logger.warning("Event %s transient failure: %s", envelope.event_id, e)
            return await self._retry.handle_failure(envelope, e)
        except Exception as e:
            logger.exception("Event %s handler raised unexpectedly", envelope.event_id)
            if self._config.retry.retry_unexpected_errors:
                return await self._retry.handle_failure(envelope, e)
            await self._dead_letter.route(
                envelope, f"unexpected error: {type(e).__name__}: {e}"
            )
            return EventStatus.FAILED

        return await self._finish(
            envelope, EventStatus.COMPLETED, message or COMPLETED_MESSAGE
        )

    async def _finish(
        self, envelope: CommandEnvelope, status: EventStatus, message: str
    ) -> EventStatus:
        try:
            await self._tracking.transition(
                envelope.event_id,
                status,
                message,
                expected={EventStatus.PROCESSING},
            )
        except StatusConflictError as exc:
            logger.warning(
                "Event %s moved to %s concurrently; %s outcome not recorded",
                envelope.event_id,
                exc.actual,
                status.value,
            )
            return EventStatus(exc.actual)
        return status

    # ── Poison messages ──────────────────────────────────────────

    async def reject_undecodable(self, raw: bytes, error: Exception) -> None:
        """Fail the ledger record of a message whose envelope is invalid."""
        try:
            data: Any = json.loads(raw)
        except (ValueError, TypeError):
            logger.error("Dropping unreadable message: %s", error)
            return
        event_id = data.get("event_id") if isinstance(data, dict) else None
        if not event_id:
            logger.error("Dropping message without event id: %s", error)
            return
        event_type = data.get("event_type") or (
            f"{data.get('command_family')}.{data.get('command_type')}"
        )
        try:
            await self._tracking.transition(
                event_id, EventStatus.FAILED, f"unknown command type: {event_type}"
            )
        except EventNotFoundError:
            logger.error("Undecodable message %s has no ledger record", event_id)
        except StatusConflictError:
            logger.info("Undecodable message %s already terminal", event_id)


__all__ = ["COMPLETED_MESSAGE", "CommandDispatcher"]
