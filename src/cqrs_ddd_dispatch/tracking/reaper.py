"""Background sweep that fails commands stuck in flight."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..workers import PeriodicWorker

if TYPE_CHECKING:
    from datetime import datetime

    from ..config import ReaperSettings
    from .service import EventTrackingService


class StaleEventReaper(PeriodicWorker):
    """Fails ledger records left ``PENDING``/``PROCESSING``/``RETRY`` past the cutoff.

    Runs every ``settings.interval_seconds`` (hourly by default); call
    :meth:`trigger` to sweep immediately.  A record is failed with one
    compare-and-set, so a record a worker completes concurrently is never
    overwritten and a failed record is never swept twice.
    """

    name = "StaleEventReaper"

    def __init__(
        self,
        service: EventTrackingService,
        settings: ReaperSettings,
    ) -> None:
        super().__init__(settings.interval_seconds)
        self._service = service
        self._settings = settings

    @property
    def settings(self) -> ReaperSettings:
        return self._settings

    async def run_once(self, now: datetime | None = None) -> int:
        """Execute a single sweep (used by the cleanup endpoint and tests)."""
        return await self._service.fail_stale_events(self._settings, now=now)


__all__ = ["StaleEventReaper"]
