"""State-machine guarded access to the status ledger."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from ..commands.envelope import IN_FLIGHT_STATUSES, EventStatus
from ..exceptions import (
    EventNotFoundError,
    InvalidTransitionError,
    StatusConflictError,
)
from ..instrumentation import get_hook_registry
from .record import EventStatistics, EventTrackingRecord

if TYPE_CHECKING:
    from collections.abc import Collection

    from ..commands.envelope import CommandEnvelope
    from ..config import HealthSettings, ReaperSettings
    from ..ports.tracking import IEventTrackingStore

logger = logging.getLogger("cqrs_ddd.dispatch.tracking")

STALE_MESSAGE = "timeout - marked failed by system"
MANUAL_COMPLETION_PREFIX = "Manually completed: "

#: Allowed predecessor statuses for each target status.
TRANSITIONS: dict[EventStatus, frozenset[EventStatus]] = {
    EventStatus.PENDING: frozenset(),
    EventStatus.PROCESSING: frozenset(
        {EventStatus.PENDING, EventStatus.RETRY, EventStatus.PROCESSING}
    ),
    EventStatus.RETRY: frozenset({EventStatus.PROCESSING}),
    EventStatus.COMPLETED: frozenset({EventStatus.PROCESSING}),
    EventStatus.FAILED: frozenset(
        {EventStatus.PENDING, EventStatus.PROCESSING, EventStatus.RETRY}
    ),
}


@dataclass(frozen=True)
class HealthReport:
    """Ledger health snapshot for operators.

    ``status`` is ``HEALTHY``, ``WARNING`` (too many commands in flight or a
    low success rate) or ``ERROR`` (statistics could not be read).
    """

    status: str
    message: str
    statistics: EventStatistics | None = None

    def to_dict(self) -> dict[str, Any]:
        stats = self.statistics
        return {
            "status": self.status,
            "message": self.message,
            "totalEvents": stats.total if stats else None,
            "pendingEvents": stats.count(EventStatus.PENDING) if stats else None,
            "processingEvents": (
                stats.count(EventStatus.PROCESSING) if stats else None
            ),
            "successRate": stats.success_rate if stats else None,
        }


class EventTrackingService:
    """Operational and administrative access to the command status ledger.

    All writes go through :meth:`transition`, which validates the requested
    move against the state machine and applies it as one compare-and-set on
    the store::

        PENDING -> PROCESSING -> COMPLETED
                            \\-> RETRY -> PROCESSING (loop)
                            \\-> FAILED
        PENDING | PROCESSING | RETRY -> FAILED

    ``COMPLETED`` and ``FAILED`` are terminal; no transition leaves them.
    """

    def __init__(self, store: IEventTrackingStore) -> None:
        self._store = store

    @property
    def store(self) -> IEventTrackingStore:
        return self._store

    # ── Operational path ─────────────────────────────────────────

    async def create(self, envelope: CommandEnvelope) -> EventTrackingRecord:
        """Record a freshly enqueued envelope as ``PENDING`` (upsert by id)."""
        record, created = await self._store.create(
            EventTrackingRecord.from_envelope(envelope)
        )
        if created:
            logger.info(
                "Event record created: %s (%s, subject=%s)",
                record.event_id,
                record.event_type,
                record.subject,
            )
        else:
            logger.debug("Event record %s already exists", record.event_id)
        return record

    async def transition(
        self,
        event_id: str,
        status: EventStatus,
        message: str | None = None,
        *,
        expected: Collection[EventStatus] | None = None,
        retry_count: int | None = None,
    ) -> EventTrackingRecord:
        """Move *event_id* to *status* with a single compare-and-set.

        Args:
            expected: Narrow the accepted predecessors; defaults to every
                predecessor the state machine allows for *status*.

        Raises:
            InvalidTransitionError: *expected* allows a move the state
                machine forbids.
            EventNotFoundError: unknown *event_id*.
            StatusConflictError: the record was not in an accepted status.
        """
        allowed = TRANSITIONS[status]
        accepted = allowed if expected is None else frozenset(expected)
        if not accepted or not accepted <= allowed:
            raise InvalidTransitionError(
                f"Cannot move {event_id!r} to {status.value} from "
                f"{sorted(s.value for s in accepted) or 'nothing'}"
            )
        record = await self._store.compare_and_set(
            event_id, accepted, status, message=message, retry_count=retry_count
        )
        logger.info(
            "Event status updated: %s -> %s%s",
            event_id,
            status.value,
            f" ({message})" if message else "",
        )
        return record

    async def update_status(
        self, event_id: str, status: EventStatus, message: str | None = None
    ) -> EventTrackingRecord:
        return await self.transition(event_id, status, message)

    async def update_retry_count(
        self, event_id: str, retry_count: int
    ) -> EventTrackingRecord:
        """Set the retry counter of a non-terminal record."""
        record = await self._store.set_retry_count(
            event_id, retry_count, IN_FLIGHT_STATUSES
        )
        logger.debug("Event %s retry count -> %d", event_id, retry_count)
        return record

    async def claim(self, event_id: str) -> EventTrackingRecord | None:
        """Mark *event_id* ``PROCESSING``; ``None`` if it is already terminal."""
        try:
            return await self.transition(event_id, EventStatus.PROCESSING)
        except StatusConflictError as exc:
            logger.info(
                "Event %s already terminal (%s); skipping redelivery",
                event_id,
                exc.actual,
            )
            return None

    # ── Queries ──────────────────────────────────────────────────

    async def find_by_event_id(self, event_id: str) -> EventTrackingRecord | None:
        return await self._store.get(event_id)

    async def get(self, event_id: str) -> EventTrackingRecord:
        record = await self._store.get(event_id)
        if record is None:
            raise EventNotFoundError(event_id)
        return record

    async def find_by_status(
        self, status: EventStatus, limit: int | None = None
    ) -> list[EventTrackingRecord]:
        return await self._store.find_by_status(status, limit=limit)

    async def find_by_subject(self, subject: str) -> list[EventTrackingRecord]:
        return await self._store.find_by_subject(subject)

    async def get_recent_events(
        self, window: timedelta = timedelta(hours=24)
    ) -> list[EventTrackingRecord]:
        return await self._store.find_recent(datetime.now(timezone.utc) - window)

    async def find_stale(
        self,
        cutoff: datetime,
        statuses: Collection[EventStatus] = (
            EventStatus.PENDING,
            EventStatus.PROCESSING,
            EventStatus.RETRY,
        ),
    ) -> list[EventTrackingRecord]:
        return await self._store.find_stale(cutoff, statuses)

    async def statistics(self) -> EventStatistics:
        return EventStatistics.from_counts(await self._store.count_by_status())

    async def health(self, settings: HealthSettings | None = None) -> HealthReport:
        """Assess the ledger: too many in-flight commands yields ``WARNING``."""
        max_in_flight = settings.max_in_flight if settings else 100
        min_success_rate = settings.min_success_rate if settings else None
        try:
            stats = await self.statistics()
        except Exception as exc:
            logger.exception("Ledger health check failed")
            return HealthReport("ERROR", f"Could not read statistics: {exc}")

        if stats.in_flight > max_in_flight:
            return HealthReport(
                "WARNING",
                f"High number of in-flight commands: {stats.in_flight}",
                stats,
            )
        if (
            min_success_rate is not None
            and stats.total > 0
            and stats.success_rate < min_success_rate
        ):
            return HealthReport(
                "WARNING",
                f"Low success rate: {stats.success_rate:.1%}",
                stats,
            )
        return HealthReport("HEALTHY", "System operating normally", stats)

    # ── Administrative path ──────────────────────────────────────

    async def mark_completed(
        self, event_id: str, message: str | None = None
    ) -> EventTrackingRecord:
        """Operator force-complete.

        Idempotent on a ``COMPLETED`` record; a ``FAILED`` record raises
        :class:`StatusConflictError`.
        """
        text = f"{MANUAL_COMPLETION_PREFIX}{message or ''}".rstrip()
        for _ in range(len(IN_FLIGHT_STATUSES) + 1):
            record = await self.get(event_id)
            if record.status is EventStatus.COMPLETED:
                return record
            if record.status is EventStatus.FAILED:
                raise StatusConflictError(
                    event_id,
                    sorted(s.value for s in IN_FLIGHT_STATUSES),
                    record.status.value,
                )
            try:
                updated = await self._store.compare_and_set(
                    event_id, {record.status}, EventStatus.COMPLETED, message=text
                )
            except StatusConflictError:
                # Lost against a concurrent writer; re-read and decide again.
                continue
            logger.info("Event %s manually completed", event_id)
            return updated
        raise StatusConflictError(
            event_id, sorted(s.value for s in IN_FLIGHT_STATUSES), "changing"
        )

    async def fail_stale_events(
        self,
        settings: ReaperSettings,
        now: datetime | None = None,
    ) -> int:
        """Fail every record in ``settings.statuses`` idle since before the cutoff.

        Each record is moved with its own compare-and-set, so a record that a
        worker finished meanwhile is left alone.

        Returns:
            Number of records transitioned to ``FAILED``.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(seconds=settings.stale_after_seconds)

        async def _sweep() -> int:
            stale = await self._store.find_stale(cutoff, settings.statuses)
            failed = 0
            for record in stale:
                try:
                    await self._store.compare_and_set(
                        record.event_id,
                        settings.statuses,
                        EventStatus.FAILED,
                        message=STALE_MESSAGE,
                    )
                except StatusConflictError:
                    logger.debug(
                        "Stale event %s moved on before the sweep reached it",
                        record.event_id,
                    )
                    continue
                failed += 1
                logger.warning(
                    "Event %s marked FAILED by timeout (created %s)",
                    record.event_id,
                    record.created_at.isoformat(),
                )
            if failed:
                logger.info("Stale event cleanup: %d record(s) failed", failed)
            return failed

        registry = get_hook_registry()
        result: int = await registry.execute_all(
            "dispatch.reaper.sweep",
            {"cutoff": cutoff.isoformat()},
            _sweep,
        )
        return result


__all__ = [
    "MANUAL_COMPLETION_PREFIX",
    "STALE_MESSAGE",
    "TRANSITIONS",
    "EventTrackingService",
    "HealthReport",
]
