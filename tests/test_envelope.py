"""Tests for command families and CommandEnvelope."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from cqrs_ddd_dispatch import (
    CommandEnvelope,
    CommandFamily,
    EventStatus,
    HandlerRegistrationError,
    InvoiceCommand,
    StockOrderCommand,
    correlation_scope,
)
from cqrs_ddd_dispatch.commands.families import (
    command_types_for,
    is_valid_command,
    validate_command_type,
)


def test_command_types_per_family() -> None:
    assert command_types_for(CommandFamily.USER_REGISTRATION) == ["CREATE"]
    assert command_types_for("invoice") == ["GENERATE", "MARK_PAID", "CANCEL", "UPDATE"]
    assert "RESTOCK_NEEDED" in command_types_for(CommandFamily.STOCK_CONTROL)
    assert "GENERATE_INVOICE" in command_types_for(CommandFamily.STOCK_ORDER)


def test_validate_command_type_accepts_enum_members() -> None:
    assert (
        validate_command_type(CommandFamily.STOCK_ORDER, StockOrderCommand.CONFIRM)
        == "CONFIRM"
    )
    assert validate_command_type("invoice", InvoiceCommand.MARK_PAID) == "MARK_PAID"


def test_validate_command_type_rejects_foreign_pairs() -> None:
    with pytest.raises(HandlerRegistrationError, match="not a command type"):
        validate_command_type("stock-control", "SHIP")
    with pytest.raises(HandlerRegistrationError, match="Unknown command family"):
        validate_command_type("payroll", "CREATE")
    assert not is_valid_command("user-registration", "DELETE")
    assert is_valid_command("stock-order", "SHIP")


def test_create_assigns_prefixed_event_id() -> None:
    env = CommandEnvelope.create(
        "user-registration", "CREATE", {"username": "alice"}, subject="alice"
    )
    assert env.event_id.startswith("USER_REG_CREATE_")
    assert env.status is EventStatus.PENDING
    assert env.retry_count == 0
    assert env.max_retries == 3
    assert env.event_type == "user-registration.CREATE"


def test_event_ids_are_unique() -> None:
    ids = {
        CommandEnvelope.create("stock-order", "CREATE", subject="o-1").event_id
        for _ in range(50)
    }
    assert len(ids) == 50
    assert all(i.startswith("ORDER_CREATE_") for i in ids)


def test_explicit_event_id_is_kept() -> None:
    env = CommandEnvelope.create("invoice", "GENERATE", event_id="INVOICE_X")
    assert env.event_id == "INVOICE_X"


def test_invalid_pair_fails_validation() -> None:
    with pytest.raises(ValidationError):
        CommandEnvelope.create("invoice", "SHIP", subject="inv-1")


def test_unknown_family_rejected() -> None:
    with pytest.raises(ValueError):
        CommandEnvelope.create("payroll", "CREATE")


def test_envelope_is_frozen() -> None:
    env = CommandEnvelope.create("invoice", "GENERATE", subject="inv-1")
    with pytest.raises(ValidationError):
        env.subject = "other"  # type: ignore[misc]


def test_partition_key_prefers_subject() -> None:
    with_subject = CommandEnvelope.create("stock-control", "DECREASE", subject="SKU-1")
    without = CommandEnvelope.create("stock-control", "DECREASE")
    assert with_subject.partition_key == "SKU-1"
    assert without.partition_key == without.event_id


def test_next_retry_bumps_counter_and_sets_due_time() -> None:
    env = CommandEnvelope.create("stock-order", "SHIP", subject="o-1")
    due = datetime.now(timezone.utc) + timedelta(seconds=2)
    retry = env.next_retry(due, "Retry attempt 1: timeout")

    assert retry.event_id == env.event_id
    assert retry.retry_count == 1
    assert retry.status is EventStatus.RETRY
    assert retry.not_before == due
    assert retry.message == "Retry attempt 1: timeout"
    assert env.retry_count == 0


def test_can_retry_until_ceiling() -> None:
    env = CommandEnvelope.create("invoice", "UPDATE", max_retries=2)
    assert env.can_retry
    assert env.model_copy(update={"retry_count": 1}).can_retry
    assert not env.model_copy(update={"retry_count": 2}).can_retry


def test_with_status_keeps_message_when_not_given() -> None:
    env = CommandEnvelope.create("invoice", "UPDATE", message="original")
    assert env.with_status(EventStatus.PROCESSING).message == "original"
    assert env.with_status(EventStatus.FAILED, "nope").message == "nope"


def test_correlation_id_captured_from_context() -> None:
    with correlation_scope("corr-123") as cid:
        env = CommandEnvelope.create("invoice", "CANCEL")
    assert cid == "corr-123"
    assert env.correlation_id == "corr-123"


def test_terminal_statuses() -> None:
    assert EventStatus.COMPLETED.is_terminal
    assert EventStatus.FAILED.is_terminal
    assert not EventStatus.RETRY.is_terminal
    assert not EventStatus.PENDING.is_terminal
