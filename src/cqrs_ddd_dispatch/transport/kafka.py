"""Kafka adapters: connection settings, keyed publisher and consumer group."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Any

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.admin import AIOKafkaAdminClient
from aiokafka.errors import KafkaError

from ..commands.serialization import EnvelopeSerializer
from ..exceptions import MessagingConnectionError, MessagingSerializationError
from ..ports.messaging import IMessageConsumer, IMessagePublisher

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine

    from ..commands.envelope import CommandEnvelope
    from ..config import KafkaSettings

    EnvelopeHandler = Callable[[CommandEnvelope], Coroutine[Any, Any, None]]
    UndecodableHandler = Callable[[bytes, Exception], Coroutine[Any, Any, None]]

logger = logging.getLogger("cqrs_ddd.dispatch.transport")


class KafkaConnectionManager:
    """Cluster address plus the client options shared by every Kafka client.

    ``group_id`` is stripped from the options: each consumer channel (main,
    retry, dead-letter) joins its own group.
    """

    def __init__(
        self,
        bootstrap_servers: str | list[str] = "localhost:9092",
        **client_options: Any,
    ) -> None:
        client_options.pop("group_id", None)
        self._servers = bootstrap_servers
        self._options = client_options

    @classmethod
    def from_settings(cls, settings: KafkaSettings) -> KafkaConnectionManager:
        return cls(settings.bootstrap_servers, **dict(settings.client_options))

    @property
    def bootstrap_servers(self) -> str | list[str]:
        return self._servers

    def _client_kwargs(self) -> dict[str, Any]:
        return {"bootstrap_servers": self._servers, **self._options}

    def producer_config(self) -> dict[str, Any]:
        return self._client_kwargs()

    def consumer_config(self) -> dict[str, Any]:
        return self._client_kwargs()

    async def health_check(self) -> bool:
        """Check the cluster by listing topics with a short-lived admin client."""
        admin = AIOKafkaAdminClient(**self._client_kwargs())
        try:
            await admin.start()
            await admin.list_topics()
        except (KafkaError, OSError, asyncio.TimeoutError):
            logger.warning("Kafka cluster %s unreachable", self._servers, exc_info=True)
            return False
        finally:
            with contextlib.suppress(KafkaError, OSError):
                await admin.close()
        return True


class KafkaPublisher(IMessagePublisher):
    """Keyed Kafka publisher.

    ``publish`` waits for the broker acknowledgement, so a failed write
    surfaces to the caller as :class:`MessagingConnectionError`.
    """

    def __init__(
        self,
        connection: KafkaConnectionManager,
        *,
        serializer: EnvelopeSerializer | None = None,
    ) -> None:
        self._connection = connection
        self._serializer = serializer or EnvelopeSerializer()
        self._producer: AIOKafkaProducer | None = None

    async def _get_producer(self) -> AIOKafkaProducer:
        if self._producer is not None:
            return self._producer
        producer = AIOKafkaProducer(**self._connection.producer_config())
        try:
            await producer.start()
        except KafkaError as e:
            raise MessagingConnectionError(f"Kafka producer start failed: {e}") from e
        self._producer = producer
        return producer

    async def start(self) -> None:
        await self._get_producer()

    async def publish(
        self,
        topic: str,
        message: CommandEnvelope,
        *,
        key: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Publish *message* to *topic*, partitioned by *key*."""
        body = self._serializer.serialize(message)
        producer = await self._get_producer()
        headers = [
            (name, str(value).encode("utf-8"))
            for name, value in (kwargs.get("headers") or {}).items()
        ]
        if message.correlation_id:
            headers.append(("correlation_id", message.correlation_id.encode("utf-8")))
        try:
            await producer.send_and_wait(
                topic,
                value=body,
                key=key.encode("utf-8") if key else None,
                headers=headers or None,
            )
        except KafkaError as e:
            raise MessagingConnectionError(
                f"Failed to publish {message.event_id} to {topic}: {e}"
            ) from e
        logger.debug("Published %s to %s (key=%s)", message.event_id, topic, key)

    async def close(self) -> None:
        """Stop the producer."""
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None

    async def health_check(self) -> bool:
        return await self._connection.health_check()


class KafkaConsumer(IMessageConsumer):
    """Kafka consumer group implementing IMessageConsumer.

    ``concurrency`` AIOKafkaConsumer members join the same group, so the
    broker spreads partitions over them and each partition is handled by
    one member in order.  Offsets are committed manually after the handler
    returns; when it raises, the member seeks back to the failed offset and
    the message is redelivered.
    """

    def __init__(
        self,
        connection: KafkaConnectionManager,
        *,
        group_id: str = "libsys-group",
        concurrency: int = 1,
        serializer: EnvelopeSerializer | None = None,
        redelivery_delay: float = 1.0,
    ) -> None:
        self._connection = connection
        self._group_id = group_id
        self._concurrency = max(1, concurrency)
        self._serializer = serializer or EnvelopeSerializer()
        self._redelivery_delay = redelivery_delay
        self._topic_handlers: dict[
            str, tuple[EnvelopeHandler, UndecodableHandler | None]
        ] = {}
        self._consumers: list[AIOKafkaConsumer] = []
        self._tasks: list[asyncio.Task[None]] = []
        self._running = False

    @property
    def group_id(self) -> str:
        return self._group_id

    async def subscribe(
        self,
        topic: str,
        handler: EnvelopeHandler,
        queue_name: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Route *topic* to *handler*; *queue_name* replaces the group id."""
        if self._running:
            raise MessagingConnectionError(
                "Subscribe before start(); the group is already running"
            )
        if queue_name:
            self._group_id = queue_name
        self._topic_handlers[topic] = (handler, kwargs.get("on_undecodable"))

    async def start(self) -> None:
        if self._running or not self._topic_handlers:
            return
        topics = list(self._topic_handlers)
        for index in range(self._concurrency):
            consumer = AIOKafkaConsumer(
                *topics,
                group_id=self._group_id,
                enable_auto_commit=False,
                **self._connection.consumer_config(),
            )
            try:
                await consumer.start()
            except KafkaError as e:
                await self.stop()
                raise MessagingConnectionError(
                    f"Kafka consumer start failed: {e}"
                ) from e
            self._consumers.append(consumer)
            self._tasks.append(
                asyncio.create_task(
                    self._run(consumer), name=f"kafka:{self._group_id}:{index}"
                )
            )
        self._running = True
        logger.info(
            "Kafka consumer group %s started on %s (concurrency=%d)",
            self._group_id,
            ", ".join(topics),
            self._concurrency,
        )

    async def _run(self, consumer: AIOKafkaConsumer) -> None:
        async for msg in consumer:
            entry = self._topic_handlers.get(msg.topic)
            if entry is None:
                continue
            try:
                await self._handle_message(consumer, msg, *entry)
            except KafkaError:
                logger.exception("Kafka consumer error in group %s", self._group_id)

    async def _handle_message(
        self,
        consumer: AIOKafkaConsumer,
        msg: Any,
        handler: EnvelopeHandler,
        on_undecodable: UndecodableHandler | None = None,
    ) -> None:
        """Process a single message: invoke handler, then commit or seek back."""
        try:
            envelope = self._serializer.deserialize(msg.value)
        except MessagingSerializationError as exc:
            logger.error(
                "Undecodable message at %s[%d]@%d skipped: %s",
                msg.topic,
                msg.partition,
                msg.offset,
                exc,
            )
            if on_undecodable is not None:
                try:
                    await on_undecodable(msg.value, exc)
                except Exception:
                    logger.exception("Undecodable-message callback failed")
            await consumer.commit()
            return

        try:
            await handler(envelope)
        except Exception:
            logger.exception(
                "Handler failed for %s at %s[%d]@%d; redelivering",
                envelope.event_id,
                msg.topic,
                msg.partition,
                msg.offset,
            )
            consumer.seek(TopicPartition(msg.topic, msg.partition), msg.offset)
            await asyncio.sleep(self._redelivery_delay)
            return
        await consumer.commit()

    async def stop(self) -> None:
        """Stop every group member."""
        self._running = False
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        consumers, self._consumers = self._consumers, []
        for consumer in consumers:
            await consumer.stop()

    async def health_check(self) -> bool:
        return await self._connection.health_check()


__all__ = ["KafkaConnectionManager", "KafkaConsumer", "KafkaPublisher"]
