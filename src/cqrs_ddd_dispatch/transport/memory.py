"""In-process partitioned message log.

``InMemoryBroker`` behaves like a small Kafka: each topic has a fixed number
of partitions, a message lands on ``crc32(key) % partitions``, and each
partition is consumed by one task, so messages sharing a key are handled
in order.  A handler that raises causes the same message to be redelivered
before anything behind it on that partition.

Partitions are logs with a committed offset.  A message is committed only
after its handler returns, so a consumer stopped mid-delivery leaves it for
the next consumer started on the same broker.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import zlib
from typing import TYPE_CHECKING, Any

from ..commands.serialization import EnvelopeSerializer
from ..exceptions import MessagingError, MessagingSerializationError
from ..ports.messaging import IMessageConsumer, IMessagePublisher

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine

    from ..commands.envelope import CommandEnvelope

    EnvelopeHandler = Callable[[CommandEnvelope], Coroutine[Any, Any, None]]
    UndecodableHandler = Callable[[bytes, Exception], Coroutine[Any, Any, None]]

logger = logging.getLogger("cqrs_ddd.dispatch.transport")


def partition_for(key: str | None, partitions: int) -> int:
    """Stable partition index for *key* (partition 0 when no key is given)."""
    if not key:
        return 0
    return zlib.crc32(key.encode("utf-8")) % partitions


class PartitionLog:
    """Append-only log of one partition plus the offset committed so far."""

    def __init__(self) -> None:
        self._messages: list[bytes] = []
        self._committed = 0
        self._changed = asyncio.Condition()

    def __len__(self) -> int:
        return len(self._messages)

    @property
    def committed(self) -> int:
        """Offset of the first message not yet acknowledged."""
        return self._committed

    @property
    def lag(self) -> int:
        return len(self._messages) - self._committed

    async def put(self, raw: bytes) -> int:
        """Append *raw*; return its offset."""
        async with self._changed:
            self._messages.append(raw)
            self._changed.notify_all()
            return len(self._messages) - 1

    async def next_uncommitted(self) -> tuple[int, bytes]:
        """Wait for and return the message at the committed offset."""
        async with self._changed:
            await self._changed.wait_for(lambda: self.lag > 0)
            return self._committed, self._messages[self._committed]

    async def commit(self, offset: int) -> None:
        async with self._changed:
            self._committed = max(self._committed, offset + 1)
            self._changed.notify_all()

    async def join(self) -> None:
        """Wait until every appended message has been committed."""
        async with self._changed:
            await self._changed.wait_for(lambda: self.lag == 0)


class InMemoryBroker:
    """Shared log connecting :class:`InMemoryPublisher` and :class:`InMemoryConsumer`.

    Messages are stored serialized, so the wire format is exercised exactly
    as with a real broker.
    """

    def __init__(
        self,
        partitions: int = 3,
        *,
        serializer: EnvelopeSerializer | None = None,
    ) -> None:
        if partitions < 1:
            raise ValueError("partitions must be >= 1")
        self._partition_count = partitions
        self._serializer = serializer or EnvelopeSerializer()
        self._topics: dict[str, list[PartitionLog]] = {}
        self._published: list[tuple[str, CommandEnvelope, str | None]] = []

    @property
    def serializer(self) -> EnvelopeSerializer:
        return self._serializer

    @property
    def partition_count(self) -> int:
        return self._partition_count

    def partitions(self, topic: str) -> list[PartitionLog]:
        """Partition logs of *topic*, created on first use."""
        logs = self._topics.get(topic)
        if logs is None:
            logs = [PartitionLog() for _ in range(self._partition_count)]
            self._topics[topic] = logs
        return logs

    async def publish(
        self, topic: str, envelope: CommandEnvelope, key: str | None = None
    ) -> int:
        """Append *envelope* to *topic*; return the partition it landed on."""
        body = self._serializer.serialize(envelope)
        index = partition_for(key, self._partition_count)
        self._published.append((topic, envelope, key))
        await self.partitions(topic)[index].put(body)
        return index

    def get_published(
        self, topic: str | None = None
    ) -> list[tuple[str, CommandEnvelope, str | None]]:
        """Return ``(topic, envelope, key)`` tuples in publish order."""
        if topic is None:
            return list(self._published)
        return [p for p in self._published if p[0] == topic]

    def pending(self, topic: str) -> int:
        """Number of messages on *topic* not yet committed by a consumer."""
        return sum(log.lag for log in self._topics.get(topic, []))

    async def join(self) -> None:
        """Wait until every message published so far has been committed."""
        for logs in list(self._topics.values()):
            for log in logs:
                await log.join()

    def clear(self) -> None:
        """Forget every topic and published message (for test teardown)."""
        self._topics.clear()
        self._published.clear()


class InMemoryPublisher(IMessagePublisher):
    """Publisher writing to an :class:`InMemoryBroker`, with assertion helpers."""

    def __init__(self, broker: InMemoryBroker | None = None) -> None:
        self._broker = broker or InMemoryBroker()

    @property
    def broker(self) -> InMemoryBroker:
        return self._broker

    async def publish(
        self,
        topic: str,
        message: CommandEnvelope,
        *,
        key: str | None = None,
        **kwargs: Any,  # noqa: ARG002
    ) -> None:
        await self._broker.publish(topic, message, key=key)

    def get_published(
        self, topic: str | None = None
    ) -> list[tuple[str, CommandEnvelope, str | None]]:
        return self._broker.get_published(topic)

    def assert_published(
        self,
        event_type: str,
        count: int = 1,
        topic: str | None = None,
    ) -> None:
        """Assert that exactly ``count`` envelopes of ``event_type`` were published."""
        matching = [
            env
            for _, env, _ in self.get_published(topic)
            if env.event_type == event_type
        ]
        assert len(matching) == count, (
            f"Expected {count} message(s) with event_type={event_type!r}, "
            f"got {len(matching)}. Published: "
            f"{[env.event_type for _, env, _ in self.get_published(topic)]}"
        )


class InMemoryConsumer(IMessageConsumer):
    """Consumes broker topics with one task per partition.

    The handler is awaited before the message is committed; if it raises,
    the same message is redelivered after ``redelivery_delay`` seconds.
    Run one started consumer per broker topic at a time.
    Messages that cannot be decoded are passed to ``on_undecodable`` (when
    given) and skipped.
    """

    def __init__(
        self,
        broker: InMemoryBroker,
        *,
        redelivery_delay: float = 0.05,
    ) -> None:
        self._broker = broker
        self._redelivery_delay = redelivery_delay
        self._subscriptions: dict[
            str, tuple[EnvelopeHandler, UndecodableHandler | None]
        ] = {}
        self._tasks: list[asyncio.Task[None]] = []
        self._running = False

    async def subscribe(
        self,
        topic: str,
        handler: EnvelopeHandler,
        queue_name: str | None = None,  # noqa: ARG002
        **kwargs: Any,
    ) -> None:
        """Register *handler* for *topic*; one subscriber per topic."""
        if topic in self._subscriptions:
            raise MessagingError(f"Topic {topic!r} already has a subscriber")
        self._subscriptions[topic] = (handler, kwargs.get("on_undecodable"))
        if self._running:
            self._start_topic(topic)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for topic in self._subscriptions:
            self._start_topic(topic)
        logger.debug(
            "InMemoryConsumer started: %s", ", ".join(sorted(self._subscriptions))
        )

    def _start_topic(self, topic: str) -> None:
        for index, log in enumerate(self._broker.partitions(topic)):
            task = asyncio.create_task(
                self._consume(topic, index, log),
                name=f"consume:{topic}:{index}",
            )
            self._tasks.append(task)

    async def stop(self) -> None:
        self._running = False
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _consume(self, topic: str, index: int, log: PartitionLog) -> None:
        handler, on_undecodable = self._subscriptions[topic]
        while True:
            offset, raw = await log.next_uncommitted()
            await self._deliver(topic, index, raw, handler, on_undecodable)
            await log.commit(offset)

    async def _deliver(
        self,
        topic: str,
        index: int,
        raw: bytes,
        handler: EnvelopeHandler,
        on_undecodable: UndecodableHandler | None,
    ) -> None:
        try:
            envelope = self._broker.serializer.deserialize(raw)
        except MessagingSerializationError as exc:
            logger.error(
                "Undecodable message on %s[%d] skipped: %s", topic, index, exc
            )
            if on_undecodable is not None:
                try:
                    await on_undecodable(raw, exc)
                except Exception:
                    logger.exception("Undecodable-message callback failed")
            return

        while True:
            try:
                await handler(envelope)
                return
            except Exception:
                logger.exception(
                    "Handler failed for %s on %s[%d]; redelivering",
                    envelope.event_id,
                    topic,
                    index,
                )
                await asyncio.sleep(self._redelivery_delay)


__all__ = [
    "InMemoryBroker",
    "InMemoryConsumer",
    "InMemoryPublisher",
    "PartitionLog",
    "partition_for",
]
