"""
Feedback recorder

Attaches a human quality rating to the latest AI log of a conversation.
Running metrics never read feedback, so repeated ratings cannot skew them.
"""
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from typing import Optional
import logging
import uuid

from assist_core.core.errors import NotFoundError, PersistenceError, ValidationError
from assist_core.models.ai_log import AIConversationLog
from assist_core.models.conversation import Message, MessageRole
from assist_core.services.event_emitter import emit_event
from assist_core.services.event_payloads import FeedbackReceivedPayload

logger = logging.getLogger(__name__)

MIN_SCORE = 1
MAX_SCORE = 5


def validate_score(score: Optional[int]) -> int:
    if score is None:
        raise ValidationError("A feedback score is required")
    if isinstance(score, bool) or not isinstance(score, int):
        raise ValidationError("Feedback score must be an integer")
    if score < MIN_SCORE or score > MAX_SCORE:
        raise ValidationError(f"Feedback score must be between {MIN_SCORE} and {MAX_SCORE}")
    return score


def latest_log(db: Session, conversation_id: uuid.UUID) -> Optional[AIConversationLog]:
    return db.query(AIConversationLog).filter(
        AIConversationLog.conversation_id == conversation_id
    ).order_by(AIConversationLog.created_at.desc()).limit(1).first()


def record_feedback(
    db: Session,
    message_id: uuid.UUID,
    score: Optional[int],
    comment: Optional[str] = None,
) -> bool:
    """
    Record a 1-5 rating for an assistant message

    Updates feedback_score and metadata.feedback_comment on the most recent
    AI log of the message's conversation and emits ai.feedback.received.

    Returns:
        True when feedback was recorded, False when the message already had it
    """
    score = validate_score(score)

    message = db.query(Message).filter(Message.id == message_id).first()
    if not message:
        raise NotFoundError("Message not found")
    if message.role != MessageRole.ASSISTANT:
        raise ValidationError("Feedback can only be recorded for assistant messages")
    if message.feedback_recorded:
        return False

    log = latest_log(db, message.conversation_id)
    try:
        if log is not None:
            log.feedback_score = score
            log.log_metadata = {**(log.log_metadata or {}), "feedback_comment": comment}
        message.feedback_recorded = True
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to record feedback for message %s", message_id)
        raise PersistenceError("Could not record feedback") from exc

    if log is None:
        logger.warning("No AI log found for conversation %s; feedback kept on message only", message.conversation_id)

    emit_event(
        db,
        FeedbackReceivedPayload(
            message_id=str(message.id),
            score=score,
            comment=comment,
            conversation_id=str(message.conversation_id),
        ),
    )
    return True
