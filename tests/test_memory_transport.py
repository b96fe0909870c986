"""Tests for the in-memory partitioned broker, publisher and consumer."""

from __future__ import annotations

import asyncio

import pytest

from cqrs_ddd_dispatch import CommandEnvelope
from cqrs_ddd_dispatch.exceptions import MessagingError
from cqrs_ddd_dispatch.ports.messaging import IMessageConsumer, IMessagePublisher
from cqrs_ddd_dispatch.transport.memory import (
    InMemoryBroker,
    InMemoryConsumer,
    InMemoryPublisher,
    PartitionLog,
    partition_for,
)


def test_partition_for_is_stable() -> None:
    assert partition_for("alice", 3) == partition_for("alice", 3)
    assert 0 <= partition_for("bob", 3) < 3
    assert partition_for(None, 3) == 0
    assert partition_for("", 5) == 0


def test_broker_rejects_zero_partitions() -> None:
    with pytest.raises(ValueError):
        InMemoryBroker(partitions=0)


@pytest.mark.asyncio
async def test_protocol_compliance() -> None:
    broker = InMemoryBroker()
    assert isinstance(InMemoryPublisher(broker), IMessagePublisher)
    assert isinstance(InMemoryConsumer(broker), IMessageConsumer)


@pytest.mark.asyncio
async def test_publish_and_assert_published(make_envelope) -> None:
    pub = InMemoryPublisher()
    await pub.publish("invoice-topic", make_envelope("invoice", "GENERATE"), key="i-1")
    await pub.publish("invoice-topic", make_envelope("invoice", "CANCEL"), key="i-1")

    published = pub.get_published()
    assert [env.command_type for _, env, _ in published] == ["GENERATE", "CANCEL"]
    assert published[0][2] == "i-1"
    pub.assert_published("invoice.GENERATE", count=1)
    pub.assert_published("invoice.CANCEL", count=1, topic="invoice-topic")
    with pytest.raises(AssertionError):
        pub.assert_published("invoice.GENERATE", count=2)
    assert pub.broker.pending("invoice-topic") == 2


@pytest.mark.asyncio
async def test_same_key_lands_on_same_partition(make_envelope) -> None:
    broker = InMemoryBroker(partitions=4)
    indexes = {
        await broker.publish("t", make_envelope(subject="SKU-1"), key="SKU-1")
        for _ in range(5)
    }
    assert len(indexes) == 1


@pytest.mark.asyncio
async def test_consumer_preserves_per_key_order(make_envelope) -> None:
    broker = InMemoryBroker(partitions=3)
    publisher = InMemoryPublisher(broker)
    consumer = InMemoryConsumer(broker)
    received: dict[str, list[int]] = {}

    async def handler(envelope: CommandEnvelope) -> None:
        await asyncio.sleep(0)
        received.setdefault(envelope.subject, []).append(envelope.payload["seq"])

    await consumer.subscribe("stock-control-topic", handler)
    await consumer.start()
    try:
        for seq in range(10):
            for sku in ("SKU-1", "SKU-2"):
                env = make_envelope(
                    "stock-control", "DECREASE", {"seq": seq}, subject=sku
                )
                await publisher.publish("stock-control-topic", env, key=sku)
        await asyncio.wait_for(broker.join(), timeout=5.0)
    finally:
        await consumer.stop()

    assert received == {"SKU-1": list(range(10)), "SKU-2": list(range(10))}


@pytest.mark.asyncio
async def test_failed_handler_redelivers_before_next_message(make_envelope) -> None:
    broker = InMemoryBroker(partitions=1)
    consumer = InMemoryConsumer(broker, redelivery_delay=0.0)
    seen: list[int] = []

    async def handler(envelope: CommandEnvelope) -> None:
        seen.append(envelope.payload["seq"])
        if seen.count(0) < 3 and envelope.payload["seq"] == 0:
            raise RuntimeError("ledger unavailable")

    await consumer.subscribe("invoice-topic", handler)
    await consumer.start()
    try:
        for seq in (0, 1):
            await broker.publish(
                "invoice-topic", make_envelope("invoice", "UPDATE", {"seq": seq})
            )
        await asyncio.wait_for(broker.join(), timeout=5.0)
    finally:
        await consumer.stop()

    assert seen == [0, 0, 0, 1]


@pytest.mark.asyncio
async def test_undecodable_message_is_reported_and_skipped(make_envelope) -> None:
    broker = InMemoryBroker(partitions=1)
    consumer = InMemoryConsumer(broker)
    rejected: list[bytes] = []
    handled: list[str] = []

    async def handler(envelope: CommandEnvelope) -> None:
        handled.append(envelope.event_id)

    async def on_undecodable(raw: bytes, error: Exception) -> None:
        rejected.append(raw)

    await consumer.subscribe("invoice-topic", handler, on_undecodable=on_undecodable)
    await broker.partitions("invoice-topic")[0].put(b"{not json")
    env = make_envelope("invoice", "GENERATE")
    await broker.publish("invoice-topic", env)
    await consumer.start()
    try:
        await asyncio.wait_for(broker.join(), timeout=5.0)
    finally:
        await consumer.stop()

    assert rejected == [b"{not json"]
    assert handled == [env.event_id]


@pytest.mark.asyncio
async def test_single_subscriber_per_topic() -> None:
    consumer = InMemoryConsumer(InMemoryBroker())

    async def handler(envelope: CommandEnvelope) -> None:
        return None

    await consumer.subscribe("t", handler)
    with pytest.raises(MessagingError):
        await consumer.subscribe("t", handler)


@pytest.mark.asyncio
async def test_message_is_committed_only_after_handler_returns(make_envelope) -> None:
    broker = InMemoryBroker(partitions=1)
    release = asyncio.Event()
    started = asyncio.Event()
    seen: list[str] = []

    async def blocking(envelope):
        started.set()
        await release.wait()

    first = InMemoryConsumer(broker, redelivery_delay=0.01)
    await first.subscribe("invoice-topic", blocking)
    await first.start()
    env = make_envelope("invoice", "GENERATE", subject="inv-1")
    await broker.publish("invoice-topic", env, key="inv-1")
    await asyncio.wait_for(started.wait(), timeout=2.0)
    await first.stop()

    assert broker.pending("invoice-topic") == 1
    assert broker.partitions("invoice-topic")[0].committed == 0

    async def record(envelope):
        seen.append(envelope.event_id)

    second = InMemoryConsumer(broker, redelivery_delay=0.01)
    await second.subscribe("invoice-topic", record)
    await second.start()
    try:
        await asyncio.wait_for(broker.join(), timeout=2.0)
    finally:
        await second.stop()

    assert seen == [env.event_id]
    assert broker.pending("invoice-topic") == 0


@pytest.mark.asyncio
async def test_partition_log_tracks_committed_offset() -> None:
    log = PartitionLog()
    assert await log.put(b"a") == 0
    assert await log.put(b"b") == 1
    assert (len(log), log.lag) == (2, 2)

    assert await log.next_uncommitted() == (0, b"a")
    assert await log.next_uncommitted() == (0, b"a")
    await log.commit(0)
    assert await log.next_uncommitted() == (1, b"b")
    await log.commit(1)
    await log.commit(0)

    assert log.committed == 2
    assert log.lag == 0
    await asyncio.wait_for(log.join(), timeout=1.0)
