"""Tests for the envelope wire format."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from cqrs_ddd_dispatch import CommandEnvelope, EnvelopeSerializer, EventStatus
from cqrs_ddd_dispatch.exceptions import MessagingSerializationError


@pytest.fixture
def serializer() -> EnvelopeSerializer:
    return EnvelopeSerializer()


def test_serialize_is_flat_json_with_event_type(serializer: EnvelopeSerializer) -> None:
    env = CommandEnvelope.create(
        "stock-order", "CONFIRM", {"orderId": 42}, subject="order-42"
    )
    data = json.loads(serializer.serialize(env))

    assert data["event_type"] == "stock-order.CONFIRM"
    assert data["command_family"] == "stock-order"
    assert data["command_type"] == "CONFIRM"
    assert data["subject"] == "order-42"
    assert data["payload"] == {"orderId": 42}
    assert data["status"] == "PENDING"
    assert data["retry_count"] == 0


def test_deserialize_restores_envelope(serializer: EnvelopeSerializer) -> None:
    due = datetime(2030, 1, 1, tzinfo=timezone.utc)
    env = CommandEnvelope.create(
        "invoice", "MARK_PAID", {"invoiceId": 7}, subject="inv-7"
    ).next_retry(due, "Retry attempt 1: gateway timeout")

    restored = serializer.deserialize(serializer.serialize(env))

    assert restored == env
    assert restored.status is EventStatus.RETRY
    assert restored.not_before == due


def test_deserialize_from_event_type_only(serializer: EnvelopeSerializer) -> None:
    raw = json.dumps(
        {"event_id": "INVOICE_GENERATE_1", "event_type": "invoice.GENERATE"}
    ).encode()
    env = serializer.deserialize(raw)
    assert env.command_family.value == "invoice"
    assert env.command_type == "GENERATE"
    assert env.event_id == "INVOICE_GENERATE_1"


def test_deserialize_accepts_str_and_envelope(serializer: EnvelopeSerializer) -> None:
    env = CommandEnvelope.create("user-registration", "CREATE", subject="bob")
    assert serializer.deserialize(env) is env
    assert serializer.deserialize(serializer.serialize(env).decode()) == env


@pytest.mark.parametrize(
    "raw",
    [
        b"not json",
        b"[1, 2, 3]",
        b"\xff\xfe",
        json.dumps({"event_id": "X", "event_type": "invoice.SHIP"}).encode(),
        json.dumps({"command_family": "payroll", "command_type": "RUN"}).encode(),
    ],
)
def test_deserialize_rejects_invalid_messages(
    serializer: EnvelopeSerializer, raw: bytes
) -> None:
    with pytest.raises(MessagingSerializationError):
        serializer.deserialize(raw)
