"""
Events router — GET /events and GET /events/{correlation_id}/trace
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from api.auth import require_auth
from api.schemas import EventSummary, _dt

router = APIRouter(prefix="/events", tags=["events"])

MAX_LIMIT = 200


def _to_summary(e) -> EventSummary:
    return EventSummary(
        event_id=e.event_id,
        event_type=e.event_type,
        source=e.source,
        timestamp_utc=_dt(e.timestamp_utc) or "",
        correlation_id=e.correlation_id,
        payload=dict(e.payload),
    )


@router.get("", response_model=list[EventSummary], dependencies=[Depends(require_auth)])
async def list_events(
    request: Request,
    event_type: str | None = None,
    limit: int = Query(default=50, ge=1, le=MAX_LIMIT),
) -> list[EventSummary]:
    """Newest first. Only available when the app runs on the in-memory bus."""
    bus = request.app.state.bus
    if not hasattr(bus, "get_events"):
        return []
    events = list(reversed(bus.get_events(event_type)))[:limit]
    return [_to_summary(e) for e in events]


@router.get("/{correlation_id}/trace", response_model=list[EventSummary], dependencies=[Depends(require_auth)])
async def trace_events(correlation_id: str, request: Request) -> list[EventSummary]:
    bus = request.app.state.bus
    if not hasattr(bus, "get_events"):
        return []
    matched = [e for e in bus.get_events() if e.correlation_id == correlation_id]
    matched.sort(key=lambda e: e.timestamp_utc)
    return [_to_summary(e) for e in matched]
