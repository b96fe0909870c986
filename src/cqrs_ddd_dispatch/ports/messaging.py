from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine

    from ..commands.envelope import CommandEnvelope


@runtime_checkable
class IMessagePublisher(Protocol):
    """
    Port for publishing command envelopes to a partitioned log.

    Infrastructure modules provide concrete adapters (Kafka, in-memory).
    """

    async def publish(
        self,
        topic: str,
        message: CommandEnvelope,
        *,
        key: str | None = None,
        **kwargs: Any,
    ) -> None:
        """
        Publish *message* to *topic*.

        Args:
            topic: Topic name (``<family>-topic`` and its ``.retry``/``.dlq``).
            message: Envelope to write.
            key: Partition key; messages sharing a key keep their order.
            **kwargs: Transport-specific metadata such as headers.

        Raises:
            MessagingError: the write was not acknowledged by the broker.
        """
        ...


@runtime_checkable
class IMessageConsumer(Protocol):
    """
    Port for subscribing to envelopes from a partitioned log.

    The handler is awaited before the message is acknowledged: a message
    whose handler raised is redelivered (at-least-once).
    """

    async def subscribe(
        self,
        topic: str,
        handler: Callable[[CommandEnvelope], Coroutine[Any, Any, None]],
        queue_name: str | None = None,
        **kwargs: Any,
    ) -> None:
        """
        Subscribe *handler* to *topic*.

        Args:
            topic: Topic to consume.
            handler: Async callable invoked for each envelope.
            queue_name: Consumer group name.
            **kwargs: Transport-specific options.
        """
        ...

    async def start(self) -> None:
        """Begin delivering messages to subscribed handlers."""
        ...

    async def stop(self) -> None:
        """Stop delivering and release transport resources."""
        ...
