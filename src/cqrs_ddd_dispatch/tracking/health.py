"""Periodic statistics check that logs ledger degradations."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..workers import PeriodicWorker

if TYPE_CHECKING:
    from ..config import HealthSettings
    from .service import EventTrackingService, HealthReport

logger = logging.getLogger("cqrs_ddd.dispatch.health")


class LedgerHealthMonitor(PeriodicWorker):
    """Every ``settings.interval_seconds`` reads the ledger statistics and
    logs a warning when too many commands are in flight or the success rate
    drops below ``settings.min_success_rate``.
    """

    name = "LedgerHealthMonitor"

    def __init__(
        self,
        service: EventTrackingService,
        settings: HealthSettings,
    ) -> None:
        super().__init__(settings.interval_seconds)
        self._service = service
        self._settings = settings
        self.last_report: HealthReport | None = None

    async def run_once(self) -> HealthReport:
        report = await self._service.health(self._settings)
        self.last_report = report
        stats = report.statistics
        if report.status == "HEALTHY" and stats is not None:
            logger.info(
                "Ledger health: total=%d in_flight=%d success_rate=%.1f%%",
                stats.total,
                stats.in_flight,
                stats.success_rate * 100,
            )
        elif report.status == "WARNING":
            logger.warning("Ledger health WARNING: %s", report.message)
        else:
            logger.error("Ledger health %s: %s", report.status, report.message)
        return report


__all__ = ["LedgerHealthMonitor"]
