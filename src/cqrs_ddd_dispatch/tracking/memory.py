"""In-memory ledger for tests and single-process deployments."""

from __future__ import annotations

import asyncio
import itertools
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from ..exceptions import EventNotFoundError, StatusConflictError
from ..ports.tracking import IEventTrackingStore

if TYPE_CHECKING:
    from collections.abc import Collection, Iterable

    from ..commands.envelope import EventStatus
    from .record import EventTrackingRecord


def _aware(ts: datetime) -> datetime:
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


def _newest_first(records: Iterable[EventTrackingRecord]) -> list[EventTrackingRecord]:
    return sorted(
        records, key=lambda r: (_aware(r.created_at), r.id or 0), reverse=True
    )


class InMemoryEventTrackingStore(IEventTrackingStore):
    """Dictionary-backed ledger; a single ``asyncio.Lock`` makes each
    compare-and-set atomic with respect to other coroutines."""

    def __init__(self) -> None:
        self._records: dict[str, EventTrackingRecord] = {}
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()

    async def create(
        self, record: EventTrackingRecord
    ) -> tuple[EventTrackingRecord, bool]:
        async with self._lock:
            existing = self._records.get(record.event_id)
            if existing is not None:
                return existing, False
            stored = record.model_copy(update={"id": next(self._ids)})
            self._records[record.event_id] = stored
            return stored, True

    async def compare_and_set(
        self,
        event_id: str,
        expected: Collection[EventStatus],
        new_status: EventStatus,
        *,
        message: str | None = None,
        retry_count: int | None = None,
    ) -> EventTrackingRecord:
        async with self._lock:
            current = self._records.get(event_id)
            if current is None:
                raise EventNotFoundError(event_id)
            if current.status not in expected:
                raise StatusConflictError(
                    event_id, sorted(s.value for s in expected), current.status.value
                )
            updated = current.transitioned(
                new_status, message=message, retry_count=retry_count
            )
            self._records[event_id] = updated
            return updated

    async def set_retry_count(
        self,
        event_id: str,
        retry_count: int,
        expected: Collection[EventStatus],
    ) -> EventTrackingRecord:
        async with self._lock:
            current = self._records.get(event_id)
            if current is None:
                raise EventNotFoundError(event_id)
            if current.status not in expected:
                raise StatusConflictError(
                    event_id, sorted(s.value for s in expected), current.status.value
                )
            updated = current.model_copy(
                update={
                    "retry_count": retry_count,
                    "updated_at": datetime.now(timezone.utc),
                }
            )
            self._records[event_id] = updated
            return updated

    async def get(self, event_id: str) -> EventTrackingRecord | None:
        return self._records.get(event_id)

    async def find_by_status(
        self, status: EventStatus, limit: int | None = None
    ) -> list[EventTrackingRecord]:
        found = _newest_first(r for r in self._records.values() if r.status is status)
        return found if limit is None else found[:limit]

    async def find_by_subject(self, subject: str) -> list[EventTrackingRecord]:
        return _newest_first(r for r in self._records.values() if r.subject == subject)

    async def find_recent(self, since: datetime) -> list[EventTrackingRecord]:
        since = _aware(since)
        return _newest_first(
            r for r in self._records.values() if _aware(r.created_at) >= since
        )

    async def find_stale(
        self, cutoff: datetime, statuses: Collection[EventStatus]
    ) -> list[EventTrackingRecord]:
        cutoff = _aware(cutoff)
        wanted = set(statuses)
        return [
            r
            for r in self._records.values()
            if r.status in wanted and _aware(r.stale_since) < cutoff
        ]

    async def count_by_status(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for record in self._records.values():
            counts[record.status.value] = counts.get(record.status.value, 0) + 1
        return counts

    def clear(self) -> None:
        """Drop every record (testing utility)."""
        self._records.clear()


__all__ = ["InMemoryEventTrackingStore"]
