"""
Lifecycle event emitter

Writes AI lifecycle events to the durable ai_webhook_events log. Delivery to
subscribers is done by the webhook dispatcher, which flips ``processed``.
"""
from sqlalchemy.orm import Session
from sqlalchemy import String, cast, func
from sqlalchemy.exc import SQLAlchemyError
from typing import Optional, List, Dict, Any
from datetime import datetime, timedelta
import logging
import uuid

from assist_core.core.errors import PersistenceError, ValidationError, NotFoundError
from assist_core.models.webhook import AIWebhookEvent, AIEventType
from assist_core.services.event_payloads import EventPayload, dump_payload, parse_payload

logger = logging.getLogger(__name__)


TIME_WINDOWS = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}

# Period names used by the operator console
_WINDOW_ALIASES = {
    "24hours": "24h",
    "7days": "7d",
    "30days": "30d",
}


def _as_uuid(value) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def _next_timestamp(db: Session, conversation_id: Optional[uuid.UUID]) -> datetime:
    """Timestamp strictly after the conversation's latest event"""
    now = datetime.utcnow()
    if conversation_id is None:
        return now
    latest = db.query(func.max(AIWebhookEvent.created_at)).filter(
        AIWebhookEvent.conversation_id == conversation_id
    ).scalar()
    if latest is not None and now <= latest:
        return latest + timedelta(microseconds=1)
    return now


def emit_event(
    db: Session,
    payload: EventPayload,
    conversation_id: Optional[uuid.UUID] = None,
    agent_id: Optional[uuid.UUID] = None,
    commit: bool = True,
) -> AIWebhookEvent:
    """
    Persist one lifecycle event with processed=False

    With commit=False the event is only flushed; it becomes durable with
    the caller's commit, together with the state change it describes.
    """
    if conversation_id is None:
        conversation_id = getattr(payload, "conversation_id", None)
    conversation_id = _as_uuid(conversation_id)
    agent_id = _as_uuid(agent_id)

    event = AIWebhookEvent(
        event_type=payload.event_type,
        agent_id=agent_id,
        conversation_id=conversation_id,
        payload=dump_payload(payload),
        processed=False,
        created_at=_next_timestamp(db, conversation_id),
    )
    db.add(event)
    try:
        if commit:
            db.commit()
        else:
            db.flush()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to persist %s event", payload.event_type)
        raise PersistenceError(f"Could not record {payload.event_type} event") from exc

    logger.info("Emitted %s (conversation=%s)", event.event_type, conversation_id)
    return event


def resolve_window(window: str) -> timedelta:
    """Map a 24h|7d|30d window name to its duration"""
    key = _WINDOW_ALIASES.get(window, window)
    if key not in TIME_WINDOWS:
        raise ValidationError(f"Unknown time window: {window}")
    return TIME_WINDOWS[key]


def _filtered_query(
    db: Session,
    event_type: Optional[str],
    window: str,
    search: Optional[str],
    now: Optional[datetime],
):
    start_time = (now or datetime.utcnow()) - resolve_window(window)
    query = db.query(AIWebhookEvent).filter(AIWebhookEvent.created_at >= start_time)

    if event_type and event_type != "all":
        try:
            event_type = AIEventType(event_type).value
        except ValueError:
            raise ValidationError(f"Unknown event type: {event_type}")
        query = query.filter(AIWebhookEvent.event_type == event_type)

    if search:
        query = query.filter(cast(AIWebhookEvent.payload, String).ilike(f"%{search}%"))

    return query


def list_events(
    db: Session,
    event_type: Optional[str] = None,
    window: str = "24h",
    search: Optional[str] = None,
    limit: int = 100,
    now: Optional[datetime] = None,
) -> List[AIWebhookEvent]:
    """Events in the time window, newest first"""
    query = _filtered_query(db, event_type, window, search, now)
    return query.order_by(AIWebhookEvent.created_at.desc()).limit(limit).all()


def count_events(
    db: Session,
    event_type: Optional[str] = None,
    window: str = "24h",
    now: Optional[datetime] = None,
) -> int:
    return _filtered_query(db, event_type, window, None, now).count()


def get_event(db: Session, event_id: uuid.UUID) -> AIWebhookEvent:
    event = db.query(AIWebhookEvent).filter(AIWebhookEvent.id == _as_uuid(event_id)).first()
    if not event:
        raise NotFoundError("Event not found")
    return event


def conversation_events(db: Session, conversation_id: uuid.UUID) -> List[AIWebhookEvent]:
    """All events of one conversation in emission order"""
    return db.query(AIWebhookEvent).filter(
        AIWebhookEvent.conversation_id == _as_uuid(conversation_id)
    ).order_by(AIWebhookEvent.created_at.asc()).all()


def event_to_dict(event: AIWebhookEvent, include_payload: bool = True) -> Dict[str, Any]:
    result = {
        "id": str(event.id),
        "event_type": event.event_type,
        "agent_id": str(event.agent_id) if event.agent_id else None,
        "conversation_id": str(event.conversation_id) if event.conversation_id else None,
        "processed": event.processed,
        "processed_at": event.processed_at.isoformat() if event.processed_at else None,
        "created_at": event.created_at.isoformat(),
    }
    if include_payload:
        result["payload"] = event.payload
        result["typed_payload"] = parse_payload(event.event_type, event.payload).model_dump(mode="json")
    return result
