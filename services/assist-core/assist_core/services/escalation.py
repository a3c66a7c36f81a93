"""
Escalation decision unit

Decides after every AI turn whether to offer a human handoff, and performs
the explicit handoff transition.

States (Conversation.handoff_state):
- AI_HANDLING: the AI answers
- HANDOFF_SUGGESTED: a low-confidence turn invited the customer to escalate
- HANDOFF_REQUESTED: ai.handoff.requested emitted, transfer not yet written
- HUMAN_HANDLING: is_ai_handled is false
"""
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from typing import Optional, Dict, Any
from datetime import datetime
import logging
import uuid

from assist_core.core.errors import NotFoundError, PersistenceError
from assist_core.models.conversation import (
    Conversation, ConversationStatus, HandoffState, Message, MessageDirection, MessageRole
)
from assist_core.models.webhook import AIWebhookEvent, AIEventType
from assist_core.services.agent_service import BehaviorSettings, get_behavior_settings
from assist_core.services.event_emitter import emit_event
from assist_core.services.event_payloads import HandoffRequestedPayload, HandoffCompletedPayload

logger = logging.getLogger(__name__)

SYSTEM_SENDER = "System"


class EscalationDecision:
    """Outcome of evaluating one AI turn"""
    def __init__(
        self,
        state: HandoffState,
        suggest_handoff: bool = False,
        reason: Optional[str] = None,
        auto_handoff_eligible: bool = False,
        system_message: Optional[str] = None,
    ):
        self.state = state
        self.suggest_handoff = suggest_handoff
        self.reason = reason
        self.auto_handoff_eligible = auto_handoff_eligible
        self.system_message = system_message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "suggest_handoff": self.suggest_handoff,
            "reason": self.reason,
            "auto_handoff_eligible": self.auto_handoff_eligible,
        }


class HandoffResult:
    """Outcome of an explicit handoff request"""
    def __init__(
        self,
        conversation: Conversation,
        performed: bool,
        requested_event: Optional[AIWebhookEvent] = None,
        completed_event: Optional[AIWebhookEvent] = None,
        system_message: Optional[Message] = None,
    ):
        self.conversation = conversation
        self.performed = performed
        self.requested_event = requested_event
        self.completed_event = completed_event
        self.system_message = system_message

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": str(self.conversation.id),
            "performed": self.performed,
            "state": self.conversation.handoff_state.value,
            "is_ai_handled": self.conversation.is_ai_handled,
            "status": self.conversation.status.value,
            "assigned_to": self.conversation.assigned_to,
            "requested_event_id": str(self.requested_event.id) if self.requested_event else None,
            "completed_event_id": str(self.completed_event.id) if self.completed_event else None,
        }


def evaluate_turn(
    conversation: Conversation,
    behavior: BehaviorSettings,
    confidence: float,
    turn_count: int,
) -> EscalationDecision:
    """
    Decide the handoff state after an AI turn

    Decision rules:
    - already requested or human-handled → unchanged
    - confidence < confidence_threshold → suggest handoff
    - turn_count >= max_conversation_turns → suggest handoff
    - otherwise → AI_HANDLING

    Forced handoff eligibility (confidence below auto_handoff_threshold after
    auto_handoff_after_turns turns) is reported only; the transfer itself
    always goes through request_handoff.
    """
    if not conversation.is_ai_handled:
        return EscalationDecision(HandoffState.HUMAN_HANDLING)
    if conversation.handoff_state == HandoffState.HANDOFF_REQUESTED:
        return EscalationDecision(HandoffState.HANDOFF_REQUESTED)

    auto_handoff_eligible = (
        confidence < behavior.auto_handoff_threshold
        and turn_count >= behavior.auto_handoff_after_turns
    )

    if confidence < behavior.confidence_threshold:
        return EscalationDecision(
            HandoffState.HANDOFF_SUGGESTED,
            suggest_handoff=True,
            reason="low_confidence",
            auto_handoff_eligible=auto_handoff_eligible,
            system_message=behavior.handoff_suggestion_message,
        )
    if turn_count >= behavior.max_conversation_turns:
        return EscalationDecision(
            HandoffState.HANDOFF_SUGGESTED,
            suggest_handoff=True,
            reason="turn_limit",
            auto_handoff_eligible=auto_handoff_eligible,
            system_message=behavior.handoff_suggestion_message,
        )
    return EscalationDecision(HandoffState.AI_HANDLING, auto_handoff_eligible=auto_handoff_eligible)


def apply_decision(
    db: Session,
    conversation: Conversation,
    decision: EscalationDecision,
) -> Optional[Message]:
    """
    Persist the handoff state of a decision and its suggestion message

    Raises:
        PersistenceError: the state write failed; retry this call alone
    """
    if decision.state in (HandoffState.HUMAN_HANDLING, HandoffState.HANDOFF_REQUESTED):
        return None

    system_message = None
    try:
        conversation.handoff_state = decision.state
        if decision.suggest_handoff:
            system_message = Message(
                conversation_id=conversation.id,
                direction=MessageDirection.OUTBOUND,
                role=MessageRole.SYSTEM,
                content=decision.system_message,
                sender_name=SYSTEM_SENDER,
            )
            db.add(system_message)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Failed to update handoff state of conversation %s", conversation.id)
        raise PersistenceError("Could not update conversation handoff state") from exc

    return system_message


def _pending_handoff_request(db: Session, conversation_id: uuid.UUID) -> Optional[AIWebhookEvent]:
    """Latest ai.handoff.requested event not yet followed by a completion"""
    requested = db.query(AIWebhookEvent).filter(
        AIWebhookEvent.conversation_id == conversation_id,
        AIWebhookEvent.event_type == AIEventType.HANDOFF_REQUESTED.value,
    ).order_by(AIWebhookEvent.created_at.desc()).first()
    if not requested:
        return None

    completed = db.query(AIWebhookEvent).filter(
        AIWebhookEvent.conversation_id == conversation_id,
        AIWebhookEvent.event_type == AIEventType.HANDOFF_COMPLETED.value,
        AIWebhookEvent.created_at > requested.created_at,
    ).first()
    return None if completed else requested


def request_handoff(
    db: Session,
    conversation_id: uuid.UUID,
    requested_by: Optional[str] = None,
    reason: Optional[str] = None,
) -> HandoffResult:
    """
    Transfer a conversation from the AI to a human agent

    Emits ai.handoff.requested, then in a single commit sets
    is_ai_handled=false, status='new', assigned_to=None, appends a system
    transfer message and records ai.handoff.completed. A conversation already
    handled by a human is left alone. If the transfer write fails, nothing of
    it is kept and a retry reuses the pending request event.
    """
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if not conversation:
        raise NotFoundError("Conversation not found")

    if not conversation.is_ai_handled:
        return HandoffResult(conversation, performed=False)

    requested_event = _pending_handoff_request(db, conversation.id)
    if requested_event is None:
        conversation.handoff_state = HandoffState.HANDOFF_REQUESTED
        requested_event = emit_event(
            db,
            HandoffRequestedPayload(
                conversation_id=str(conversation.id),
                requested_by=requested_by,
                reason=reason,
                ai_confidence=conversation.ai_confidence,
            ),
            agent_id=conversation.agent_id,
        )

    behavior = get_behavior_settings(conversation.agent)
    previous_status = conversation.status
    try:
        conversation.is_ai_handled = False
        conversation.status = ConversationStatus.NEW
        conversation.assigned_to = None
        conversation.handoff_state = HandoffState.HUMAN_HANDLING
        conversation.updated_at = datetime.utcnow()
        system_message = Message(
            conversation_id=conversation.id,
            direction=MessageDirection.OUTBOUND,
            role=MessageRole.SYSTEM,
            content=behavior.handoff_message,
            sender_name=SYSTEM_SENDER,
        )
        db.add(system_message)
        # The transfer and its completion event commit together
        completed_event = emit_event(
            db,
            HandoffCompletedPayload(
                conversation_id=str(conversation.id),
                previous_status=previous_status.value,
                status=ConversationStatus.NEW.value,
                assigned_to=None,
            ),
            agent_id=conversation.agent_id,
            commit=False,
        )
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception("Handoff write failed for conversation %s", conversation.id)
        raise PersistenceError("Could not transfer conversation to a human agent") from exc

    logger.info("Conversation %s handed off to a human agent", conversation.id)

    return HandoffResult(
        conversation,
        performed=True,
        requested_event=requested_event,
        completed_event=completed_event,
        system_message=system_message,
    )
