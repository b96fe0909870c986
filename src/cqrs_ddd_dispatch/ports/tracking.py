"""Persistence port for the command status ledger."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Collection
    from datetime import datetime

    from ..commands.envelope import EventStatus
    from ..tracking.record import EventTrackingRecord


@runtime_checkable
class IEventTrackingStore(Protocol):
    """Ledger storage keyed by unique ``event_id``.

    Every mutation is a single atomic compare-and-set conditioned on the
    record's current status, so concurrent writers (dispatcher workers, the
    retry path and the reaper) cannot lose each other's updates.

    ``InMemoryEventTrackingStore`` ships for tests and single-process use;
    ``SQLAlchemyEventTrackingStore`` is the durable implementation.

    Operational methods (producer, dispatcher, reaper):
        - ``create``: upsert-by-event_id.
        - ``compare_and_set``: conditional status transition.
        - ``set_retry_count``: conditional retry counter update.
        - ``find_stale``: non-terminal records idle past a cutoff.

    Query methods (operator tooling):
        - ``get``, ``find_by_status``, ``find_by_subject``, ``find_recent``,
          ``count_by_status``.
    """

    async def create(
        self, record: EventTrackingRecord
    ) -> tuple[EventTrackingRecord, bool]:
        """Insert *record* unless its ``event_id`` already exists.

        Returns:
            ``(stored, created)``: the stored record and whether it was new.
        """
        ...

    async def compare_and_set(
        self,
        event_id: str,
        expected: Collection[EventStatus],
        new_status: EventStatus,
        *,
        message: str | None = None,
        retry_count: int | None = None,
    ) -> EventTrackingRecord:
        """Move *event_id* to *new_status* iff its status is in *expected*.

        ``updated_at`` is stamped; ``completed_at`` is set on a terminal
        *new_status*.

        Raises:
            EventNotFoundError: no record for *event_id*.
            StatusConflictError: the current status is not in *expected*.
        """
        ...

    async def set_retry_count(
        self,
        event_id: str,
        retry_count: int,
        expected: Collection[EventStatus],
    ) -> EventTrackingRecord:
        """Set the retry counter iff the status is in *expected*."""
        ...

    async def get(self, event_id: str) -> EventTrackingRecord | None: ...

    async def find_by_status(
        self, status: EventStatus, limit: int | None = None
    ) -> list[EventTrackingRecord]:
        """Records in *status*, newest first."""
        ...

    async def find_by_subject(self, subject: str) -> list[EventTrackingRecord]:
        """Records for *subject*, newest first."""
        ...

    async def find_recent(self, since: datetime) -> list[EventTrackingRecord]:
        """Records created at or after *since*, newest first."""
        ...

    async def find_stale(
        self, cutoff: datetime, statuses: Collection[EventStatus]
    ) -> list[EventTrackingRecord]:
        """Records in *statuses* whose ``stale_since`` is strictly before *cutoff*.

        ``stale_since`` is ``updated_at`` for ``RETRY`` and ``created_at``
        otherwise.
        """
        ...

    async def count_by_status(self) -> dict[str, int]:
        """Mapping of status value to count; zero-count statuses omitted."""
        ...
