"""Calendar sync API routes."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..middleware import get_context, require_auth
from ...context import AppContext
from ...models import User
from ...sync.provider import ProviderError


logger = logging.getLogger(__name__)


router = APIRouter(prefix="/api/calendar", tags=["calendar"])


def require_calendar(context: AppContext = Depends(get_context)) -> AppContext:
    """Fail with 503 unless a calendar provider and grant are configured."""
    if not context.calendar_configured:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Calendar provider not configured"
        )
    return context


def provider_failure(action: str, error: ProviderError) -> HTTPException:
    logger.error(f"{action} failed: {error}")
    return HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=f"Calendar provider error: {error}"
    )


@router.post("/sync")
async def sync_calendar(user: User = Depends(require_auth),
                        context: AppContext = Depends(require_calendar)):
    """Sync the caller's calendar now instead of waiting for the scheduler."""
    try:
        outcome = await context.engine.manual_sync(user.id, context.grant_id)
    except ProviderError as e:
        raise provider_failure("Manual calendar sync", e)

    return {
        "message": "Calendar sync completed",
        "result": outcome.to_dict(),
    }


@router.get("/sync-stats")
async def sync_stats(user: User = Depends(require_auth),
                     context: AppContext = Depends(get_context)):
    """Counts of synced events and the most recent sync records."""
    return await context.record_store.get_stats(user.id, context.clock())


@router.get("/events")
async def list_events(start: Optional[int] = Query(None, description="Window start, epoch seconds"),
                      end: Optional[int] = Query(None, description="Window end, epoch seconds"),
                      calendar_id: Optional[str] = None,
                      limit: int = Query(100, ge=1, le=200),
                      user: User = Depends(require_auth),
                      context: AppContext = Depends(require_calendar)):
    """Events from the configured calendar account."""
    try:
        events = await context.provider.fetch_calendar_events(
            context.grant_id,
            calendar_id=calendar_id,
            start=start,
            end=end,
            limit=limit,
        )
    except ProviderError as e:
        raise provider_failure("Fetching calendar events", e)

    return {"events": [event.to_dict() for event in events], "count": len(events)}


@router.get("/calendars")
async def list_calendars(user: User = Depends(require_auth),
                         context: AppContext = Depends(require_calendar)):
    """Calendars of the configured calendar account."""
    try:
        calendars = await context.provider.fetch_calendars(context.grant_id)
    except ProviderError as e:
        raise provider_failure("Fetching calendars", e)

    return {"calendars": [calendar.to_dict() for calendar in calendars]}


@router.get("/scheduler")
async def scheduler_status(user: User = Depends(require_auth),
                           context: AppContext = Depends(get_context)):
    """State of the background sync scheduler."""
    if context.scheduler is None:
        return {
            "state": "disabled",
            "grant_configured": bool(context.grant_id),
            "pass_count": 0,
            "last_summary": None,
        }
    return context.scheduler.status()
