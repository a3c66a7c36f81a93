"""
AI lifecycle event log and webhook subscription models
"""
from sqlalchemy import Column, String, DateTime, ForeignKey, Boolean, Integer
from sqlalchemy.dialects.postgresql import UUID
from datetime import datetime
import uuid
import enum
from assist_core.core.database import Base, JSONType


class AIEventType(str, enum.Enum):
    CONVERSATION_STARTED = "ai.conversation.started"
    CONVERSATION_COMPLETED = "ai.conversation.completed"
    HANDOFF_REQUESTED = "ai.handoff.requested"
    HANDOFF_COMPLETED = "ai.handoff.completed"
    FEEDBACK_RECEIVED = "ai.feedback.received"
    KNOWLEDGE_USED = "ai.knowledge.used"


class AIWebhookEvent(Base):
    __tablename__ = "ai_webhook_events"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    event_type = Column(String, nullable=False, index=True)  # AIEventType value
    agent_id = Column(UUID(as_uuid=True), ForeignKey("ai_agents.id"), nullable=True, index=True)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=True, index=True)
    payload = Column(JSONType, nullable=False)
    processed = Column(Boolean, nullable=False, default=False, index=True)
    processed_at = Column(DateTime, nullable=True)
    delivery_attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)


class WebhookSubscription(Base):
    __tablename__ = "webhook_subscriptions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    url = Column(String, nullable=False)
    secret_key = Column(String, nullable=False)
    events = Column(JSONType, nullable=False)  # List of AIEventType values
    is_active = Column(Boolean, nullable=False, default=True)
    last_triggered = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
