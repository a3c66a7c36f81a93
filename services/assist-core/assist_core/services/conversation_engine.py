"""
Conversation engine

Runs one AI turn end to end:
1. Validate the input and resolve the AI agent
2. Append the optimistic user message to the session
3. Call the AI responder
4. Persist the turn (messages + AI log), update metrics, evaluate escalation
5. Reconcile the session with the durable result

The engine keeps no conversation state between calls beyond the metrics
cache; everything else is loaded from and saved to the database.
"""
from sqlalchemy import or_
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from typing import Optional, List, Dict, Any, Tuple
from datetime import datetime, timedelta
import logging
import uuid

from assist_core.core.errors import (
    NotFoundError, PersistenceError, TransportError, ValidationError
)
from assist_core.models.agent import AIAgent
from assist_core.models.ai_log import AIConversationLog
from assist_core.models.conversation import (
    Conversation, ConversationStatus, Message, MessageDirection, MessageRole
)
from assist_core.services.agent_service import BehaviorSettings, get_behavior_settings, resolve_agent
from assist_core.services.conversation_session import ConversationSession, LocalMessage, LocalState
from assist_core.services.escalation import EscalationDecision, apply_decision, evaluate_turn
from assist_core.services.event_emitter import emit_event
from assist_core.services.event_payloads import (
    ConversationStartedPayload, ConversationCompletedPayload, KnowledgeUsedPayload
)
from assist_core.services.exchange_client import ExchangeClient, ExchangeReply, get_exchange_client
from assist_core.services.feedback_service import record_feedback
from assist_core.services.metrics_aggregator import ConversationMetrics, MetricsAggregator

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 4000
MAX_PAGE_SIZE = 200
COMPLETED_STATUSES = (ConversationStatus.RESOLVED, ConversationStatus.CLOSED)

# (inclusive lower bound, exclusive upper bound)
CONFIDENCE_BANDS = {
    "high": (0.8, None),
    "medium": (0.6, 0.8),
    "low": (None, 0.6),
}


class TurnResult:
    """Outcome of one successful turn"""
    def __init__(
        self,
        conversation: Conversation,
        reply: ExchangeReply,
        user_message: Message,
        assistant_message: Message,
        log: AIConversationLog,
        metrics: ConversationMetrics,
        decision: EscalationDecision,
        system_message: Optional[Message] = None,
        escalation_pending: bool = False,
        orphaned: bool = False,
    ):
        self.conversation = conversation
        self.reply = reply
        self.user_message = user_message
        self.assistant_message = assistant_message
        self.log = log
        self.metrics = metrics
        self.decision = decision
        self.system_message = system_message
        self.escalation_pending = escalation_pending
        self.orphaned = orphaned

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": str(self.conversation.id),
            "user_message_id": str(self.user_message.id),
            "assistant_message_id": str(self.assistant_message.id),
            "response": self.reply.response_text,
            "confidence": self.reply.confidence,
            "processing_time": self.reply.processing_time_seconds,
            "tokens_used": self.reply.tokens_used,
            "knowledge_base_id": self.reply.knowledge_base_id,
            "metrics": self.metrics.to_dict(),
            "escalation": self.decision.to_dict(),
            "system_message": self.system_message.content if self.system_message else None,
            "escalation_pending": self.escalation_pending,
            "is_ai_handled": self.conversation.is_ai_handled,
        }


def message_to_dict(message: Message) -> Dict[str, Any]:
    return {
        "id": str(message.id),
        "conversation_id": str(message.conversation_id),
        "direction": message.direction.value,
        "role": message.role.value,
        "content": message.content,
        "confidence": message.confidence,
        "sender_name": message.sender_name,
        "feedback_recorded": message.feedback_recorded,
        "created_at": message.created_at.isoformat(),
    }


def conversation_to_dict(conversation: Conversation) -> Dict[str, Any]:
    return {
        "id": str(conversation.id),
        "customer_id": conversation.customer_id,
        "agent_id": str(conversation.agent_id) if conversation.agent_id else None,
        "channel_type": conversation.channel_type,
        "subject": conversation.subject,
        "status": conversation.status.value,
        "is_ai_handled": conversation.is_ai_handled,
        "handoff_state": conversation.handoff_state.value,
        "ai_confidence": conversation.ai_confidence,
        "ai_response_time": conversation.ai_response_time,
        "assigned_to": conversation.assigned_to,
        "created_at": conversation.created_at.isoformat(),
        "updated_at": conversation.updated_at.isoformat(),
    }


def list_conversations(
    db: Session,
    status: Optional[str] = None,
    confidence_band: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    search: Optional[str] = None,
    limit: int = 50,
) -> List[Conversation]:
    """
    Dashboard listing of conversations, newest first

    Confidence bands use the latest observed confidence:
        high: >= 0.8
        medium: 0.6 <= confidence < 0.8
        low: < 0.6
    Conversations without a confidence only match when no band is given.
    ``search`` matches the customer id or subject, case-insensitively.

    Raises:
        ValidationError: unknown status or band, or a bad limit
    """
    query = db.query(Conversation)

    if status:
        try:
            query = query.filter(Conversation.status == ConversationStatus(status))
        except ValueError:
            raise ValidationError(f"Invalid conversation status: {status}")

    if confidence_band:
        if confidence_band not in CONFIDENCE_BANDS:
            raise ValidationError(f"Invalid confidence band: {confidence_band}")
        low, high = CONFIDENCE_BANDS[confidence_band]
        query = query.filter(Conversation.ai_confidence.isnot(None))
        if low is not None:
            query = query.filter(Conversation.ai_confidence >= low)
        if high is not None:
            query = query.filter(Conversation.ai_confidence < high)

    if start:
        query = query.filter(Conversation.created_at >= start)
    if end:
        query = query.filter(Conversation.created_at <= end)

    if search and search.strip():
        pattern = f"%{search.strip()}%"
        query = query.filter(or_(
            Conversation.customer_id.ilike(pattern),
            Conversation.subject.ilike(pattern),
        ))

    if limit < 1 or limit > MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

    return query.order_by(Conversation.created_at.desc()).limit(limit).all()


class ConversationEngine:
    """
    Orchestrates AI turns for conversations

    Args:
        client: AI responder client
        aggregator: Metrics registry shared by every turn of the process
    """

    def __init__(self, client: ExchangeClient, aggregator: Optional[MetricsAggregator] = None):
        self.client = client
        self.aggregator = aggregator or MetricsAggregator()

    @staticmethod
    def _validate_text(text: Optional[str]) -> str:
        if text is None or not text.strip():
            raise ValidationError("Message text is required")
        if len(text) > MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message text exceeds {MAX_MESSAGE_LENGTH} characters")
        return text.strip()

    async def send_message(
        self,
        db: Session,
        session: ConversationSession,
        text: str,
        customer_id: Optional[str] = None,
        agent_id: Optional[uuid.UUID] = None,
        department_id: Optional[str] = None,
        team_id: Optional[str] = None,
        behavior: Optional[BehaviorSettings] = None,
    ) -> TurnResult:
        """
        Send a user message and record the AI reply

        Raises:
            ValidationError: empty or oversized text (nothing is touched)
            ConfigurationError: no AI agent can answer
            TransportError: the responder call failed; the user message stays
                in the session with an error notice
            PersistenceError: the turn could not be written
        """
        text = self._validate_text(text)
        agent = resolve_agent(db, agent_id=agent_id, department_id=department_id, team_id=team_id)
        behavior = behavior or get_behavior_settings(agent)

        local_user = session.append_user(text)
        requested_id = str(session.conversation_id) if session.conversation_id else None

        try:
            reply = await self.client.send_message(requested_id, customer_id, str(agent.id), text)
            conversation_id = self._reply_conversation_id(reply)
        except TransportError as exc:
            session.fail(local_user)
            session.append_error(str(exc))
            raise

        async with self.aggregator.hold(conversation_id):
            try:
                conversation = self._get_or_create_conversation(db, conversation_id, customer_id, agent)
                self.aggregator.load(db, conversation_id)
                user_row, assistant_row, log = self._persist_turn(db, conversation, agent, text, reply)
            except PersistenceError as exc:
                if session.accepts(conversation_id):
                    session.fail(local_user)
                    session.append_error(str(exc))
                raise

            if reply.knowledge_base_id:
                emit_event(
                    db,
                    KnowledgeUsedPayload(
                        knowledge_base_id=reply.knowledge_base_id,
                        usage="response",
                        conversation_id=str(conversation.id),
                    ),
                    agent_id=agent.id,
                )

            metrics = self.aggregator.record_turn(
                conversation_id, reply.confidence, reply.processing_time_seconds
            )

            decision = evaluate_turn(conversation, behavior, reply.confidence, metrics.turns)
            system_row = None
            escalation_pending = False
            try:
                system_row = apply_decision(db, conversation, decision)
            except PersistenceError:
                # Turn rows are already durable; only apply_decision needs a retry
                escalation_pending = True

        orphaned = not session.accepts(conversation_id)
        if orphaned:
            logger.info("Reply for conversation %s arrived after the session was abandoned", conversation_id)
        else:
            session.adopt(conversation_id)
            session.confirm(local_user, user_row.id)
            session.append_assistant(reply.response_text, reply.confidence, assistant_row.id)
            if system_row is not None:
                session.append_system(system_row.content, system_row.id)
            elif decision.suggest_handoff:
                session.append_system(decision.system_message)
            if escalation_pending:
                session.append_error("Could not update the conversation status")

        return TurnResult(
            conversation=conversation,
            reply=reply,
            user_message=user_row,
            assistant_message=assistant_row,
            log=log,
            metrics=metrics,
            decision=decision,
            system_message=system_row,
            escalation_pending=escalation_pending,
            orphaned=orphaned,
        )

    @staticmethod
    def _reply_conversation_id(reply: ExchangeReply) -> uuid.UUID:
        try:
            return uuid.UUID(reply.conversation_id)
        except ValueError as exc:
            raise TransportError(f"AI responder returned an invalid conversation id: {reply.conversation_id}") from exc

    def _get_or_create_conversation(
        self,
        db: Session,
        conversation_id: uuid.UUID,
        customer_id: Optional[str],
        agent: AIAgent,
    ) -> Conversation:
        try:
            conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
            if conversation:
                return conversation

            conversation = Conversation(
                id=conversation_id,
                customer_id=customer_id,
                agent_id=agent.id,
                status=ConversationStatus.ACTIVE,
                is_ai_handled=True,
            )
            db.add(conversation)
            db.flush()
            # The row and its started event commit together
            emit_event(
                db,
                ConversationStartedPayload(
                    conversation_id=str(conversation.id),
                    customer_id=customer_id,
                    agent_id=str(agent.id),
                    channel_type=conversation.channel_type,
                ),
                agent_id=agent.id,
                commit=False,
            )
            db.commit()
            db.refresh(conversation)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Failed to load conversation %s", conversation_id)
            raise PersistenceError("Could not load conversation") from exc

        logger.info("Conversation %s started with agent %s", conversation.id, agent.id)
        return conversation

    def _persist_turn(
        self,
        db: Session,
        conversation: Conversation,
        agent: AIAgent,
        text: str,
        reply: ExchangeReply,
    ) -> Tuple[Message, Message, AIConversationLog]:
        """Write the user message, the assistant message and its AI log in one commit"""
        now = datetime.utcnow()
        try:
            user_row = Message(
                conversation_id=conversation.id,
                direction=MessageDirection.INBOUND,
                role=MessageRole.USER,
                content=text,
                created_at=now,
            )
            assistant_row = Message(
                id=uuid.uuid4(),
                conversation_id=conversation.id,
                direction=MessageDirection.OUTBOUND,
                role=MessageRole.ASSISTANT,
                content=reply.response_text,
                confidence=reply.confidence,
                sender_name=agent.name,
                created_at=now + timedelta(microseconds=1),
            )
            log = AIConversationLog(
                conversation_id=conversation.id,
                message_id=assistant_row.id,
                agent_id=agent.id,
                prompt=text,
                response=reply.response_text,
                tokens_used=reply.tokens_used,
                confidence_score=reply.confidence,
                processing_time=reply.processing_time_seconds,
                log_metadata={"knowledge_base_id": reply.knowledge_base_id} if reply.knowledge_base_id else {},
                created_at=now,
            )
            conversation.ai_confidence = reply.confidence
            conversation.ai_response_time = reply.processing_time_seconds
            conversation.updated_at = now

            db.add(user_row)
            db.add(assistant_row)
            db.add(log)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Failed to persist turn of conversation %s", conversation.id)
            raise PersistenceError("Could not save the conversation turn") from exc

        return user_row, assistant_row, log

    def load_history(self, db: Session, conversation_id: uuid.UUID) -> List[Message]:
        """Messages of a conversation in creation order"""
        conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
        if not conversation:
            raise NotFoundError("Conversation not found")
        return db.query(Message).filter(
            Message.conversation_id == conversation_id
        ).order_by(Message.created_at.asc()).all()

    def open_session(self, db: Session, conversation_id: uuid.UUID) -> ConversationSession:
        """Rebuild the local view of a stored conversation and warm its metrics"""
        session = ConversationSession(conversation_id)
        for message in self.load_history(db, conversation_id):
            local = LocalMessage(
                message.role.value,
                message.content,
                confidence=message.confidence,
                state=LocalState.CONFIRMED,
                message_id=message.id,
            )
            local.timestamp = message.created_at
            local.feedback_recorded = message.feedback_recorded
            session.messages.append(local)
        self.aggregator.load(db, conversation_id)
        return session

    def metrics_for(self, db: Session, conversation_id: uuid.UUID) -> ConversationMetrics:
        conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
        if not conversation:
            raise NotFoundError("Conversation not found")
        return self.aggregator.load(db, conversation_id)

    def record_feedback(
        self,
        db: Session,
        message_id: uuid.UUID,
        score: Optional[int],
        comment: Optional[str] = None,
        session: Optional[ConversationSession] = None,
    ) -> bool:
        recorded = record_feedback(db, message_id, score, comment)
        if session is not None:
            session.mark_feedback(message_id)
        return recorded

    def complete_conversation(
        self,
        db: Session,
        conversation_id: uuid.UUID,
        status: str = ConversationStatus.RESOLVED.value,
    ) -> Tuple[Conversation, bool]:
        """
        Close out a conversation and emit ai.conversation.completed

        Returns:
            (conversation, completed) where completed is False when the
            conversation was already resolved or closed
        """
        try:
            target = ConversationStatus(status)
        except ValueError:
            raise ValidationError(f"Invalid completion status: {status}")
        if target not in COMPLETED_STATUSES:
            raise ValidationError("Conversations can only be completed as resolved or closed")

        conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
        if not conversation:
            raise NotFoundError("Conversation not found")
        if conversation.status in COMPLETED_STATUSES:
            return conversation, False

        metrics = ConversationMetrics.from_logs(conversation.ai_logs)
        try:
            conversation.status = target
            conversation.updated_at = datetime.utcnow()
            emit_event(
                db,
                ConversationCompletedPayload(
                    conversation_id=str(conversation.id),
                    status=target.value,
                    total_turns=metrics.turns,
                    avg_confidence=metrics.avg_confidence,
                    avg_response_time=metrics.avg_response_time,
                ),
                agent_id=conversation.agent_id,
                commit=False,
            )
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Failed to complete conversation %s", conversation_id)
            raise PersistenceError("Could not complete conversation") from exc

        self.aggregator.forget(conversation.id)
        return conversation, True


# Singleton instance
_conversation_engine: Optional[ConversationEngine] = None


def get_conversation_engine() -> ConversationEngine:
    """Get singleton conversation engine instance"""
    global _conversation_engine
    if _conversation_engine is None:
        _conversation_engine = ConversationEngine(get_exchange_client())
    return _conversation_engine
