"""Wires every component for a set of command families."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from .dead_letter import (
    DeadLetterInbox,
    DeadLetterRouter,
    DeadLetterService,
    InMemoryDeadLetterStore,
)
from .dispatcher import CommandDispatcher
from .producer import CommandProducer
from .retry import RetryController, RetryPolicy
from .tracking.health import LedgerHealthMonitor
from .tracking.memory import InMemoryEventTrackingStore
from .tracking.reaper import StaleEventReaper
from .tracking.service import EventTrackingService
from .transport.memory import InMemoryBroker, InMemoryConsumer, InMemoryPublisher

if TYPE_CHECKING:
    from collections.abc import Callable
    from types import TracebackType

    from .config import DispatchConfig
    from .ports.dead_letter import IDeadLetterStore
    from .ports.messaging import IMessageConsumer, IMessagePublisher
    from .ports.tracking import IEventTrackingStore
    from .ports.unit_of_work import UnitOfWork
    from .registry import HandlerRegistry
    from .workers import BackgroundWorker

logger = logging.getLogger("cqrs_ddd.dispatch.runtime")


class DispatchRuntime:
    """Builds producer, dispatcher, retry path, DLQ inbox and background workers.

    The configuration is passed explicitly to each component; nothing is
    read from global state.

    Example::

        config = DispatchConfig.from_env()
        runtime = DispatchRuntime.in_memory(config, registry)
        async with runtime:
            event_id = await runtime.producer.send(
                "user-registration", "CREATE", {...}, subject="alice"
            )
    """

    def __init__(
        self,
        config: DispatchConfig,
        registry: HandlerRegistry,
        *,
        publisher: IMessagePublisher,
        consumer: IMessageConsumer,
        retry_consumer: IMessageConsumer | None = None,
        dlq_consumer: IMessageConsumer | None = None,
        store: IEventTrackingStore | None = None,
        dead_letter_store: IDeadLetterStore | None = None,
        uow_factory: Callable[[], UnitOfWork] | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.config = config
        self.registry = registry
        self.publisher = publisher
        self.consumer = consumer
        self.retry_consumer = retry_consumer or consumer
        self.dlq_consumer = dlq_consumer or consumer

        self.tracking = EventTrackingService(
            store if store is not None else InMemoryEventTrackingStore()
        )
        self.dead_letter_store = (
            dead_letter_store
            if dead_letter_store is not None
            else InMemoryDeadLetterStore()
        )
        self.producer = CommandProducer(publisher, self.tracking, config)
        self.dead_letter_router = DeadLetterRouter(self.tracking, publisher, config)
        self.retry = RetryController(
            self.tracking,
            publisher,
            config,
            self.dead_letter_router,
            policy=retry_policy,
        )
        self.dispatcher = CommandDispatcher(
            registry,
            self.tracking,
            self.retry,
            self.dead_letter_router,
            config,
            uow_factory=uow_factory,
        )
        self.inbox = DeadLetterInbox(self.dead_letter_store)
        self.dead_letters = DeadLetterService(self.dead_letter_store, self.producer)
        self.reaper = StaleEventReaper(self.tracking, config.reaper)
        self.health_monitor = LedgerHealthMonitor(self.tracking, config.health)
        self._running = False

    # ── Factories ────────────────────────────────────────────────

    @classmethod
    def in_memory(
        cls,
        config: DispatchConfig,
        registry: HandlerRegistry,
        *,
        broker: InMemoryBroker | None = None,
        redelivery_delay: float = 0.05,
        **kwargs: Any,
    ) -> DispatchRuntime:
        """Runtime over an in-process broker with ``config.concurrency`` partitions."""
        broker = broker if broker is not None else InMemoryBroker(config.concurrency)
        return cls(
            config,
            registry,
            publisher=InMemoryPublisher(broker),
            consumer=InMemoryConsumer(broker, redelivery_delay=redelivery_delay),
            **kwargs,
        )

    @classmethod
    def kafka(
        cls,
        config: DispatchConfig,
        registry: HandlerRegistry,
        **kwargs: Any,
    ) -> DispatchRuntime:
        """Runtime over Kafka: one consumer group each for main, retry and DLQ."""
        from .transport.kafka import (
            KafkaConnectionManager,
            KafkaConsumer,
            KafkaPublisher,
        )

        connection = KafkaConnectionManager.from_settings(config.kafka)
        group = config.kafka.group_id
        return cls(
            config,
            registry,
            publisher=KafkaPublisher(connection),
            consumer=KafkaConsumer(
                connection, group_id=group, concurrency=config.concurrency
            ),
            retry_consumer=KafkaConsumer(
                connection, group_id=f"{group}.retry", concurrency=config.concurrency
            ),
            dlq_consumer=KafkaConsumer(connection, group_id=f"{group}.dlq"),
            **kwargs,
        )

    # ── Lifecycle ────────────────────────────────────────────────

    @property
    def background_workers(self) -> tuple[BackgroundWorker, ...]:
        """Workers started by :meth:`start` unless ``background_workers=False``."""
        return (self.reaper, self.health_monitor)

    def worker_status(self) -> dict[str, bool]:
        """Whether each worker, the retry delay queue included, is running."""
        workers: tuple[BackgroundWorker, ...] = (
            *self.background_workers,
            self.dispatcher.delay_queue,
        )
        return {type(worker).__name__: worker.running for worker in workers}

    def _consumers(self) -> list[IMessageConsumer]:
        unique: list[IMessageConsumer] = []
        for consumer in (self.consumer, self.retry_consumer, self.dlq_consumer):
            if all(consumer is not seen for seen in unique):
                unique.append(consumer)
        return unique

    async def start(self, *, background_workers: bool = True) -> None:
        if self._running:
            return
        await self.dispatcher.start(self.consumer, self.retry_consumer)
        await self.inbox.subscribe(self.dlq_consumer, self.config)
        for consumer in self._consumers():
            await consumer.start()
        if background_workers:
            for worker in self.background_workers:
                await worker.start()
        self._running = True
        logger.info("DispatchRuntime started")

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        for worker in reversed(self.background_workers):
            await worker.stop()
        for consumer in self._consumers():
            await consumer.stop()
        await self.dispatcher.stop()
        close = getattr(self.publisher, "close", None)
        if close is not None:
            await close()
        logger.info("DispatchRuntime stopped")

    async def __aenter__(self) -> DispatchRuntime:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.stop()


__all__ = ["DispatchRuntime"]
