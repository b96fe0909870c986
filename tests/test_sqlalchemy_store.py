"""Tests for the SQLAlchemy ledger store and unit of work (SQLite in memory)."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import StatementError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from cqrs_ddd_dispatch import (
    DeadLetterEntry,
    DeadLetterService,
    DispatchRuntime,
    EventNotFoundError,
    EventStatus,
    EventTrackingRecord,
    EventTrackingService,
    FatalCommandError,
    ReaperSettings,
    SQLAlchemyDeadLetterStore,
    SQLAlchemyEventTrackingStore,
    StatusConflictError,
)
from cqrs_ddd_dispatch.exceptions import SessionManagementError, UnitOfWorkError
from cqrs_ddd_dispatch.persistence import (
    CommandEventModel,
    DeadLetterModel,
    SQLAlchemyUnitOfWork,
    create_all,
)
from cqrs_ddd_dispatch.ports.dead_letter import IDeadLetterStore

pytest.importorskip("aiosqlite")


@pytest.fixture
async def engine():
    eng = create_async_engine("sqlite+aiosqlite:///:memory:")
    await create_all(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def sql_store(session_factory) -> SQLAlchemyEventTrackingStore:
    return SQLAlchemyEventTrackingStore(session_factory)


def _record(make_envelope, **extra) -> EventTrackingRecord:
    return EventTrackingRecord.from_envelope(make_envelope(**extra))


@pytest.mark.asyncio
async def test_create_and_get(sql_store, make_envelope) -> None:
    record = _record(make_envelope, payload={"username": "alice", "roles": ["a"]})
    stored, created = await sql_store.create(record)

    assert created is True
    assert stored.id is not None
    fetched = await sql_store.get(record.event_id)
    assert fetched is not None
    assert fetched.event_id == record.event_id
    assert fetched.payload == {"username": "alice", "roles": ["a"]}
    assert fetched.status is EventStatus.PENDING
    assert fetched.created_at.tzinfo is not None
    assert await sql_store.get("missing") is None


@pytest.mark.asyncio
async def test_create_duplicate_returns_existing(sql_store, make_envelope) -> None:
    record = _record(make_envelope)
    await sql_store.create(record)
    await sql_store.compare_and_set(
        record.event_id, {EventStatus.PENDING}, EventStatus.PROCESSING
    )

    existing, created = await sql_store.create(record)

    assert created is False
    assert existing.status is EventStatus.PROCESSING


@pytest.mark.asyncio
async def test_conditional_update(sql_store, make_envelope) -> None:
    record = _record(make_envelope)
    await sql_store.create(record)

    claimed = await sql_store.compare_and_set(
        record.event_id, {EventStatus.PENDING}, EventStatus.PROCESSING
    )
    assert claimed.status is EventStatus.PROCESSING

    with pytest.raises(StatusConflictError) as exc_info:
        await sql_store.compare_and_set(
            record.event_id, {EventStatus.PENDING}, EventStatus.PROCESSING
        )
    assert exc_info.value.actual == "PROCESSING"

    retried = await sql_store.compare_and_set(
        record.event_id,
        {EventStatus.PROCESSING},
        EventStatus.RETRY,
        message="Retry attempt 1: timeout",
        retry_count=1,
    )
    assert retried.retry_count == 1
    assert retried.message == "Retry attempt 1: timeout"
    assert retried.completed_at is None

    failed = await sql_store.compare_and_set(
        record.event_id, {EventStatus.RETRY}, EventStatus.FAILED, message="done"
    )
    assert failed.completed_at is not None

    with pytest.raises(EventNotFoundError):
        await sql_store.compare_and_set(
            "missing", {EventStatus.PENDING}, EventStatus.FAILED
        )


@pytest.mark.asyncio
async def test_set_retry_count(sql_store, make_envelope) -> None:
    record = _record(make_envelope)
    await sql_store.create(record)
    updated = await sql_store.set_retry_count(
        record.event_id, 2, {EventStatus.PENDING}
    )
    assert updated.retry_count == 2
    with pytest.raises(StatusConflictError):
        await sql_store.set_retry_count(record.event_id, 3, {EventStatus.RETRY})


@pytest.mark.asyncio
async def test_queries(sql_store, make_envelope) -> None:
    now = datetime.now(timezone.utc)
    old = _record(make_envelope, subject="alice", created_at=now - timedelta(hours=3))
    new = _record(make_envelope, subject="alice", created_at=now)
    other = _record(make_envelope, subject="bob", created_at=now - timedelta(hours=30))
    for record in (old, new, other):
        await sql_store.create(record)
    await sql_store.compare_and_set(
        other.event_id, {EventStatus.PENDING}, EventStatus.FAILED
    )

    by_subject = await sql_store.find_by_subject("alice")
    assert [r.event_id for r in by_subject] == [new.event_id, old.event_id]

    pending = await sql_store.find_by_status(EventStatus.PENDING, limit=1)
    assert [r.event_id for r in pending] == [new.event_id]

    recent = await sql_store.find_recent(now - timedelta(hours=24))
    assert {r.event_id for r in recent} == {new.event_id, old.event_id}

    stale = await sql_store.find_stale(
        now - timedelta(hours=2), {EventStatus.PENDING, EventStatus.PROCESSING}
    )
    assert [r.event_id for r in stale] == [old.event_id]

    assert await sql_store.count_by_status() == {"PENDING": 2, "FAILED": 1}


@pytest.mark.asyncio
async def test_find_stale_measures_retry_from_updated_at(
    sql_store, make_envelope
) -> None:
    now = datetime.now(timezone.utc)
    retrying = _record(make_envelope, created_at=now - timedelta(hours=3))
    await sql_store.create(retrying)
    await sql_store.compare_and_set(
        retrying.event_id, {EventStatus.PENDING}, EventStatus.PROCESSING
    )
    await sql_store.compare_and_set(
        retrying.event_id,
        {EventStatus.PROCESSING},
        EventStatus.RETRY,
        retry_count=1,
    )
    statuses = {EventStatus.PENDING, EventStatus.PROCESSING, EventStatus.RETRY}

    assert await sql_store.find_stale(now - timedelta(hours=2), statuses) == []
    stale = await sql_store.find_stale(now + timedelta(hours=1), statuses)
    assert [r.event_id for r in stale] == [retrying.event_id]
    assert stale[0].status is EventStatus.RETRY


@pytest.mark.asyncio
async def test_service_over_sql_store(sql_store, make_envelope) -> None:
    tracking = EventTrackingService(sql_store)
    stale = make_envelope(created_at=datetime.now(timezone.utc) - timedelta(hours=3))
    await tracking.create(stale)
    done = make_envelope()
    await tracking.create(done)

    assert await tracking.fail_stale_events(ReaperSettings()) == 1
    record = await tracking.mark_completed(done.event_id, "ok")
    assert record.status is EventStatus.COMPLETED

    stats = await tracking.statistics()
    assert stats.total == 2
    assert stats.success_rate == 0.5


# ── SQLAlchemyUnitOfWork ─────────────────────────────────────────────


def _model(event_id: str) -> CommandEventModel:
    return CommandEventModel(
        event_id=event_id,
        command_family="invoice",
        command_type="GENERATE",
        status=EventStatus.PENDING,
        payload={},
    )


async def _count(session_factory) -> int:
    async with session_factory() as session:
        return int(await session.scalar(select(func.count(CommandEventModel.id))))


def test_uow_requires_exactly_one_source(session_factory) -> None:
    with pytest.raises(SessionManagementError):
        SQLAlchemyUnitOfWork()
    with pytest.raises(SessionManagementError):
        SQLAlchemyUnitOfWork(session=session_factory(), session_factory=session_factory)


def test_uow_session_unavailable_before_enter(session_factory) -> None:
    uow = SQLAlchemyUnitOfWork(session_factory=session_factory)
    with pytest.raises(UnitOfWorkError):
        _ = uow.session


@pytest.mark.asyncio
async def test_uow_commits_on_success(session_factory) -> None:
    committed: list[bool] = []

    async def hook() -> None:
        committed.append(True)

    async with SQLAlchemyUnitOfWork(session_factory=session_factory) as uow:
        uow.session.add(_model("INVOICE_A"))
        uow.on_commit(hook)

    assert committed == [True]
    assert await _count(session_factory) == 1
    with pytest.raises(UnitOfWorkError):
        _ = uow.session


@pytest.mark.asyncio
async def test_uow_rolls_back_on_error(session_factory) -> None:
    with pytest.raises(RuntimeError):
        async with SQLAlchemyUnitOfWork(session_factory=session_factory) as uow:
            uow.session.add(_model("INVOICE_B"))
            await uow.session.flush()
            raise RuntimeError("handler failed")

    assert await _count(session_factory) == 0


# ── SQLAlchemyDeadLetterStore ────────────────────────────────────────


@pytest.fixture
def dead_letter_store(session_factory) -> SQLAlchemyDeadLetterStore:
    return SQLAlchemyDeadLetterStore(session_factory)


def _dead_letter(make_envelope, reason="fatal error: boom", **extra):
    envelope = make_envelope(**extra).with_status(
        EventStatus.FAILED, f"Sent to DLQ: {reason}"
    )
    return DeadLetterEntry.from_envelope(envelope)


def test_dead_letter_store_protocol(dead_letter_store) -> None:
    assert isinstance(dead_letter_store, IDeadLetterStore)


@pytest.mark.asyncio
async def test_dead_letter_add_and_get(dead_letter_store, make_envelope) -> None:
    entry = _dead_letter(
        make_envelope,
        family="stock-order",
        command_type="SHIP",
        payload={"orderId": 4, "lines": [{"sku": "A", "qty": 2}]},
        subject="order-4",
    )
    await dead_letter_store.add(entry)

    fetched = await dead_letter_store.get(entry.event_id)
    assert fetched is not None
    assert fetched.reason == "fatal error: boom"
    assert fetched.envelope == entry.envelope
    assert fetched.dead_lettered_at.tzinfo is not None
    assert await dead_letter_store.get("missing") is None


@pytest.mark.asyncio
async def test_dead_letter_add_replaces_entry(
    dead_letter_store, session_factory, make_envelope
) -> None:
    entry = _dead_letter(make_envelope)
    await dead_letter_store.add(entry)
    await dead_letter_store.add(
        DeadLetterEntry(envelope=entry.envelope, reason="retries exhausted (3/3)")
    )

    assert (await dead_letter_store.get(entry.event_id)).reason == (
        "retries exhausted (3/3)"
    )
    async with session_factory() as session:
        rows = await session.scalar(select(func.count(DeadLetterModel.id)))
    assert rows == 1


@pytest.mark.asyncio
async def test_dead_letter_list_filters_and_orders(
    dead_letter_store, make_envelope
) -> None:
    now = datetime.now(timezone.utc)
    older = _dead_letter(make_envelope, family="invoice", command_type="GENERATE")
    newer = _dead_letter(make_envelope, family="invoice", command_type="CANCEL")
    other = _dead_letter(make_envelope)
    for entry, age in ((older, 3), (newer, 2), (other, 1)):
        await dead_letter_store.add(
            DeadLetterEntry(
                envelope=entry.envelope,
                reason=entry.reason,
                dead_lettered_at=now - timedelta(minutes=age),
            )
        )

    everything = await dead_letter_store.list()
    assert [e.event_id for e in everything] == [
        other.event_id,
        newer.event_id,
        older.event_id,
    ]
    invoices = await dead_letter_store.list(family="invoice")
    assert [e.event_id for e in invoices] == [newer.event_id, older.event_id]
    assert len(await dead_letter_store.list(limit=1)) == 1


@pytest.mark.asyncio
async def test_dead_letter_remove(dead_letter_store, make_envelope) -> None:
    entry = _dead_letter(make_envelope)
    await dead_letter_store.add(entry)

    assert await dead_letter_store.remove(entry.event_id) is True
    assert await dead_letter_store.remove(entry.event_id) is False
    assert await dead_letter_store.get(entry.event_id) is None


@pytest.mark.asyncio
async def test_runtime_dead_letters_outlive_the_runtime(
    session_factory, config, registry, wait_for_status, eventually
) -> None:
    @registry.handles("stock-order", "SHIP")
    async def ship(envelope, uow):
        raise FatalCommandError("carrier rejected shipment")

    runtime = DispatchRuntime.in_memory(
        config,
        registry,
        store=SQLAlchemyEventTrackingStore(session_factory),
        dead_letter_store=SQLAlchemyDeadLetterStore(session_factory),
        redelivery_delay=0.01,
    )
    async with runtime:
        event_id = await runtime.producer.send(
            "stock-order", "SHIP", {"orderId": 4}, subject="order-4"
        )
        await wait_for_status(runtime.tracking, event_id, EventStatus.FAILED)

        async def _recorded() -> bool:
            return await runtime.dead_letter_store.get(event_id) is not None

        await eventually(_recorded)

    reopened = DeadLetterService(SQLAlchemyDeadLetterStore(session_factory))
    entry = await reopened.inspect(event_id)
    assert entry.reason == "fatal error: carrier rejected shipment"
    assert entry.envelope.payload == {"orderId": 4}
    assert [e.event_id for e in await reopened.list(family="stock-order")] == [
        event_id
    ]
    await reopened.discard(event_id)
    assert await reopened.list() == []


# ── JSONObject ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_json_object_column_normalizes_payload(session_factory) -> None:
    created = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    async with session_factory() as session, session.begin():
        empty = _model("INVOICE_EMPTY")
        empty.payload = None
        stamped = _model("INVOICE_STAMPED")
        stamped.payload = {"issuedAt": created, "lines": [1, 2]}
        session.add_all([empty, stamped])

    async with session_factory() as session:
        rows = {
            m.event_id: m.payload
            for m in (await session.execute(select(CommandEventModel))).scalars()
        }
    assert rows["INVOICE_EMPTY"] == {}
    assert rows["INVOICE_STAMPED"] == {
        "issuedAt": "2026-01-02T03:04:05+00:00",
        "lines": [1, 2],
    }


@pytest.mark.asyncio
async def test_json_object_column_rejects_non_objects(session_factory) -> None:
    with pytest.raises(StatementError):
        async with session_factory() as session, session.begin():
            broken = _model("INVOICE_LIST")
            broken.payload = ["not", "an", "object"]
            session.add(broken)
