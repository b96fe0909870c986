"""Event tracking ledger: records, stores, service and background workers."""

from __future__ import annotations

from .health import LedgerHealthMonitor
from .memory import InMemoryEventTrackingStore
from .reaper import StaleEventReaper
from .record import EventStatistics, EventTrackingRecord
from .service import (
    MANUAL_COMPLETION_PREFIX,
    STALE_MESSAGE,
    EventTrackingService,
    HealthReport,
)
from .sqlalchemy import SQLAlchemyEventTrackingStore

__all__ = [
    "MANUAL_COMPLETION_PREFIX",
    "STALE_MESSAGE",
    "EventStatistics",
    "EventTrackingRecord",
    "EventTrackingService",
    "HealthReport",
    "InMemoryEventTrackingStore",
    "LedgerHealthMonitor",
    "SQLAlchemyEventTrackingStore",
    "StaleEventReaper",
]
