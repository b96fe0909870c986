"""FastAPI router exposing the operator surface over the ledger and DLQ.

Example::

    from fastapi import FastAPI
    from cqrs_ddd_dispatch.api import create_admin_router

    app = FastAPI()
    app.include_router(
        create_admin_router(runtime.tracking, runtime.dead_letters, runtime.reaper),
        prefix="/admin",
    )

Authentication is left to the application (mount behind its own
dependencies).
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from ..commands.envelope import EventStatus
from ..config import HealthSettings, ReaperSettings
from ..exceptions import DeadLetterError, EventNotFoundError, StatusConflictError

if TYPE_CHECKING:
    from ..dead_letter import DeadLetterService
    from ..tracking.reaper import StaleEventReaper
    from ..tracking.service import EventTrackingService

logger = logging.getLogger("cqrs_ddd.dispatch.api")


class CompleteRequest(BaseModel):
    """Body of ``PUT /events/{event_id}/complete``."""

    message: str | None = None


def _parse_status(raw: str) -> EventStatus:
    try:
        return EventStatus(raw.strip().upper())
    except ValueError as err:
        raise HTTPException(
            status_code=400,
            detail=(
                f"Invalid status {raw!r}; expected one of "
                f"{', '.join(s.value for s in EventStatus)}"
            ),
        ) from err


def create_admin_router(
    tracking: EventTrackingService,
    dead_letters: DeadLetterService | None = None,
    reaper: StaleEventReaper | None = None,
    *,
    health_settings: HealthSettings | None = None,
    reaper_settings: ReaperSettings | None = None,
) -> APIRouter:
    """Build the ``/events`` (and, with *dead_letters*, ``/dead-letters``) routes.

    Args:
        tracking: Ledger service backing every ``/events`` route.
        dead_letters: Enables the dead-letter routes when given.
        reaper: Used by ``POST /events/cleanup``; without it the sweep runs
            with *reaper_settings* (defaults when ``None``).
        health_settings: Thresholds for ``GET /events/health`` and the default
            window of ``GET /events/recent`` (``?hours=`` overrides it).
    """
    router = APIRouter()
    recent_window = (health_settings or HealthSettings()).recent_window

    # Fixed paths are registered before ``/events/{event_id}``.

    @router.get("/events/statistics")
    async def get_statistics() -> dict[str, Any]:
        stats = await tracking.statistics()
        return stats.to_dict()

    @router.get("/events/recent")
    async def get_recent_events(
        hours: float | None = Query(default=None, gt=0),
    ) -> list[dict[str, Any]]:
        window = timedelta(hours=hours) if hours is not None else recent_window
        return [r.to_dict() for r in await tracking.get_recent_events(window)]

    @router.get("/events/status/{status}")
    async def get_events_by_status(
        status: str, limit: int | None = Query(default=None, ge=1)
    ) -> list[dict[str, Any]]:
        records = await tracking.find_by_status(_parse_status(status), limit=limit)
        return [r.to_dict() for r in records]

    @router.get("/events/user/{subject}")
    async def get_events_by_subject(subject: str) -> list[dict[str, Any]]:
        return [r.to_dict() for r in await tracking.find_by_subject(subject)]

    @router.get("/events/health")
    async def get_health() -> JSONResponse:
        report = await tracking.health(health_settings)
        status_code = 500 if report.status == "ERROR" else 200
        return JSONResponse(report.to_dict(), status_code=status_code)

    @router.post("/events/cleanup")
    async def cleanup_stale_events() -> JSONResponse:
        try:
            if reaper is not None:
                failed = await reaper.run_once()
            else:
                failed = await tracking.fail_stale_events(
                    reaper_settings or ReaperSettings()
                )
        except Exception as exc:
            logger.exception("Manual stale-event cleanup failed")
            return JSONResponse(
                {"success": False, "message": f"Cleanup failed: {exc}"},
                status_code=500,
            )
        return JSONResponse(
            {
                "success": True,
                "failedEvents": failed,
                "message": f"Stale event cleanup completed ({failed} failed)",
            }
        )

    @router.get("/events/{event_id}")
    async def get_event(event_id: str) -> dict[str, Any]:
        record = await tracking.find_by_event_id(event_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"Event {event_id} not found")
        return record.to_dict()

    @router.put("/events/{event_id}/complete")
    async def complete_event(
        event_id: str, body: CompleteRequest | None = None
    ) -> dict[str, Any]:
        message = body.message if body else None
        try:
            record = await tracking.mark_completed(event_id, message)
        except EventNotFoundError as err:
            raise HTTPException(status_code=404, detail=str(err)) from err
        except StatusConflictError as err:
            raise HTTPException(status_code=409, detail=str(err)) from err
        return {"success": True, "event": record.to_dict()}

    if dead_letters is None:
        return router

    @router.get("/dead-letters")
    async def list_dead_letters(
        family: str | None = None,
        limit: int | None = Query(default=None, ge=1),
    ) -> list[dict[str, Any]]:
        entries = await dead_letters.list(family=family, limit=limit)
        return [e.to_dict() for e in entries]

    @router.get("/dead-letters/{event_id}")
    async def get_dead_letter(event_id: str) -> dict[str, Any]:
        try:
            entry = await dead_letters.inspect(event_id)
        except EventNotFoundError as err:
            raise HTTPException(status_code=404, detail=str(err)) from err
        return entry.to_dict()

    @router.post("/dead-letters/{event_id}/replay")
    async def replay_dead_letter(event_id: str) -> dict[str, Any]:
        try:
            new_event_id = await dead_letters.replay(event_id)
        except EventNotFoundError as err:
            raise HTTPException(status_code=404, detail=str(err)) from err
        except DeadLetterError as err:
            raise HTTPException(status_code=409, detail=str(err)) from err
        return {"success": True, "eventId": event_id, "replayedAs": new_event_id}

    @router.delete("/dead-letters/{event_id}")
    async def discard_dead_letter(event_id: str) -> dict[str, Any]:
        try:
            await dead_letters.discard(event_id)
        except EventNotFoundError as err:
            raise HTTPException(status_code=404, detail=str(err)) from err
        return {"success": True, "eventId": event_id}

    return router


__all__ = ["CompleteRequest", "create_admin_router"]
