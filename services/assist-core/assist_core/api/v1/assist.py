"""
Conversation API endpoints: AI turns, history, handoff, feedback and metrics
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import Optional
from datetime import datetime
import uuid

from assist_core.api.deps import get_engine, to_http_exception
from assist_core.core.database import get_db
from assist_core.core.errors import AssistError
from assist_core.services.conversation_engine import (
    ConversationEngine, conversation_to_dict, list_conversations, message_to_dict
)
from assist_core.services.conversation_session import ConversationSession
from assist_core.services.escalation import request_handoff
from assist_core.services.metrics_aggregator import summarize

router = APIRouter()


class SendMessageRequest(BaseModel):
    text: str
    conversation_id: Optional[uuid.UUID] = None
    customer_id: Optional[str] = None
    agent_id: Optional[uuid.UUID] = None
    department_id: Optional[str] = None
    team_id: Optional[str] = None


class HandoffRequest(BaseModel):
    requested_by: Optional[str] = None
    reason: Optional[str] = None


class CompleteConversationRequest(BaseModel):
    status: str = "resolved"


class FeedbackRequest(BaseModel):
    score: Optional[int] = None
    comment: Optional[str] = None


@router.post("/messages")
async def send_message(
    request: SendMessageRequest,
    db: Session = Depends(get_db),
    engine: ConversationEngine = Depends(get_engine),
):
    """
    Send a customer message to the AI and return the reply with the
    conversation's running metrics and escalation decision
    """
    session = ConversationSession(request.conversation_id)
    try:
        result = await engine.send_message(
            db,
            session,
            request.text,
            customer_id=request.customer_id,
            agent_id=request.agent_id,
            department_id=request.department_id,
            team_id=request.team_id,
        )
    except AssistError as exc:
        raise to_http_exception(exc)

    return result.to_dict()


@router.get("/conversations")
async def get_conversations(
    status: Optional[str] = None,
    confidence: Optional[str] = Query(None, description="high, medium or low"),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    search: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    """List conversations for the dashboard, newest first"""
    try:
        conversations = list_conversations(
            db, status=status, confidence_band=confidence, start=start, end=end, search=search, limit=limit
        )
    except AssistError as exc:
        raise to_http_exception(exc)
    return {"conversations": [conversation_to_dict(c) for c in conversations]}


@router.get("/conversations/{conversation_id}/messages")
async def get_messages(
    conversation_id: uuid.UUID,
    db: Session = Depends(get_db),
    engine: ConversationEngine = Depends(get_engine),
):
    try:
        messages = engine.load_history(db, conversation_id)
    except AssistError as exc:
        raise to_http_exception(exc)
    return {"conversation_id": str(conversation_id), "messages": [message_to_dict(m) for m in messages]}


@router.get("/conversations/{conversation_id}/metrics")
async def get_conversation_metrics(
    conversation_id: uuid.UUID,
    db: Session = Depends(get_db),
    engine: ConversationEngine = Depends(get_engine),
):
    try:
        metrics = engine.metrics_for(db, conversation_id)
    except AssistError as exc:
        raise to_http_exception(exc)
    return {"conversation_id": str(conversation_id), **metrics.to_dict()}


@router.post("/conversations/{conversation_id}/handoff")
async def handoff_conversation(
    conversation_id: uuid.UUID,
    request: HandoffRequest,
    db: Session = Depends(get_db),
):
    """
    Transfer the conversation to a human agent (no-op when already transferred)
    """
    try:
        result = request_handoff(db, conversation_id, requested_by=request.requested_by, reason=request.reason)
    except AssistError as exc:
        raise to_http_exception(exc)
    return result.to_dict()


@router.post("/conversations/{conversation_id}/complete")
async def complete_conversation(
    conversation_id: uuid.UUID,
    request: CompleteConversationRequest,
    db: Session = Depends(get_db),
    engine: ConversationEngine = Depends(get_engine),
):
    try:
        conversation, completed = engine.complete_conversation(db, conversation_id, request.status)
    except AssistError as exc:
        raise to_http_exception(exc)
    return {
        "conversation_id": str(conversation.id),
        "status": conversation.status.value,
        "completed": completed,
    }


@router.post("/messages/{message_id}/feedback")
async def submit_feedback(
    message_id: uuid.UUID,
    request: FeedbackRequest,
    db: Session = Depends(get_db),
    engine: ConversationEngine = Depends(get_engine),
):
    try:
        recorded = engine.record_feedback(db, message_id, request.score, request.comment)
    except AssistError as exc:
        raise to_http_exception(exc)
    return {"message_id": str(message_id), "recorded": recorded}


@router.get("/metrics")
async def get_metrics(
    window: str = "7d",
    db: Session = Depends(get_db),
):
    """Dashboard metrics for 24h, 7d or 30d"""
    try:
        return summarize(db, window)
    except AssistError as exc:
        raise to_http_exception(exc)


@router.get("/metrics/session")
async def get_session_metrics(engine: ConversationEngine = Depends(get_engine)):
    """Averages across every conversation this process is tracking"""
    return engine.aggregator.session_summary()
