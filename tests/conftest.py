"""Shared fixtures for dispatch tests."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import pytest

from cqrs_ddd_dispatch import (
    CommandEnvelope,
    DispatchConfig,
    DispatchRuntime,
    EventStatus,
    EventTrackingService,
    HandlerRegistry,
    InMemoryEventTrackingStore,
    RetrySettings,
)
from cqrs_ddd_dispatch.tracking.record import EventTrackingRecord


@pytest.fixture
def config() -> DispatchConfig:
    """Fast backoff: 0.02s, 0.04s, 0.08s."""
    return DispatchConfig(
        retry=RetrySettings(max_retries=3, base_delay=0.01, max_delay=0.1),
        concurrency=3,
    )


@pytest.fixture
def registry() -> HandlerRegistry:
    return HandlerRegistry()


@pytest.fixture
def store() -> InMemoryEventTrackingStore:
    return InMemoryEventTrackingStore()


@pytest.fixture
def tracking(store: InMemoryEventTrackingStore) -> EventTrackingService:
    return EventTrackingService(store)


@pytest.fixture
def make_envelope() -> Callable[..., CommandEnvelope]:
    def _make(
        family: str = "user-registration",
        command_type: str = "CREATE",
        payload: dict[str, Any] | None = None,
        *,
        subject: str | None = "alice",
        **extra: Any,
    ) -> CommandEnvelope:
        return CommandEnvelope.create(
            family,
            command_type,
            payload if payload is not None else {"username": subject},
            subject=subject,
            **extra,
        )

    return _make


@pytest.fixture
async def runtime(config: DispatchConfig, registry: HandlerRegistry):
    """In-memory runtime with consumers running and background workers off."""
    rt = DispatchRuntime.in_memory(config, registry, redelivery_delay=0.01)
    await rt.start(background_workers=False)
    yield rt
    await rt.stop()


@pytest.fixture
def eventually() -> Callable[..., Awaitable[None]]:
    """Poll an (async or sync) predicate until it holds or the timeout expires."""

    async def _eventually(
        predicate: Callable[[], Any], timeout: float = 5.0, interval: float = 0.01
    ) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return
            if loop.time() > deadline:
                raise AssertionError("condition not met within timeout")
            await asyncio.sleep(interval)

    return _eventually


@pytest.fixture
def wait_for_status(
    eventually: Callable[..., Awaitable[None]],
) -> Callable[..., Awaitable[EventTrackingRecord]]:
    async def _wait(
        tracking: EventTrackingService,
        event_id: str,
        *statuses: EventStatus,
        timeout: float = 5.0,
    ) -> EventTrackingRecord:
        async def _reached() -> bool:
            record = await tracking.find_by_event_id(event_id)
            return record is not None and record.status in statuses

        await eventually(_reached, timeout=timeout)
        return await tracking.get(event_id)

    return _wait
