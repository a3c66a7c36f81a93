"""
AI lifecycle event log endpoints
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from typing import Optional
import uuid

from assist_core.api.deps import to_http_exception
from assist_core.core.database import get_db
from assist_core.core.errors import AssistError
from assist_core.services.event_emitter import list_events, count_events, get_event, event_to_dict

router = APIRouter()


@router.get("")
async def get_events(
    event_type: Optional[str] = None,
    window: str = "24h",
    search: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    """Events in the window, newest first"""
    try:
        events = list_events(db, event_type=event_type, window=window, search=search, limit=limit)
    except AssistError as exc:
        raise to_http_exception(exc)
    return {
        "window": window,
        "events": [event_to_dict(e, include_payload=False) for e in events],
    }


@router.get("/count")
async def get_event_count(
    event_type: Optional[str] = None,
    window: str = "24h",
    db: Session = Depends(get_db),
):
    try:
        total = count_events(db, event_type=event_type, window=window)
    except AssistError as exc:
        raise to_http_exception(exc)
    return {"window": window, "event_type": event_type or "all", "count": total}


@router.get("/{event_id}")
async def get_event_detail(event_id: uuid.UUID, db: Session = Depends(get_db)):
    """Single event including its raw payload"""
    try:
        event = get_event(db, event_id)
    except AssistError as exc:
        raise to_http_exception(exc)
    return event_to_dict(event)
