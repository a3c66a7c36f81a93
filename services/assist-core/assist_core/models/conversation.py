"""
Conversation and message models
"""
from sqlalchemy import Column, String, DateTime, ForeignKey, Enum as SQLEnum, Boolean, Float
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
import enum
from assist_core.core.database import Base


class ConversationStatus(str, enum.Enum):
    NEW = "new"
    ACTIVE = "active"
    WAITING = "waiting"
    RESOLVED = "resolved"
    CLOSED = "closed"


class HandoffState(str, enum.Enum):
    AI_HANDLING = "ai_handling"
    HANDOFF_SUGGESTED = "handoff_suggested"
    HANDOFF_REQUESTED = "handoff_requested"
    HUMAN_HANDLING = "human_handling"


class MessageDirection(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageRole(str, enum.Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id = Column(String, nullable=True, index=True)
    agent_id = Column(UUID(as_uuid=True), ForeignKey("ai_agents.id"), nullable=True, index=True)
    channel_type = Column(String, nullable=False, default="webchat")
    subject = Column(String, nullable=True)
    status = Column(SQLEnum(ConversationStatus), nullable=False, default=ConversationStatus.ACTIVE, index=True)
    is_ai_handled = Column(Boolean, nullable=False, default=True)
    handoff_state = Column(SQLEnum(HandoffState), nullable=False, default=HandoffState.AI_HANDLING)
    ai_confidence = Column(Float, nullable=True)  # Latest observed confidence (0.0-1.0)
    ai_response_time = Column(Float, nullable=True)  # Latest processing time in seconds
    assigned_to = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    agent = relationship("AIAgent")
    messages = relationship("Message", back_populates="conversation", order_by="Message.created_at")
    ai_logs = relationship("AIConversationLog", back_populates="conversation", order_by="AIConversationLog.created_at")


class Message(Base):
    __tablename__ = "messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False, index=True)
    direction = Column(SQLEnum(MessageDirection), nullable=False)
    role = Column(SQLEnum(MessageRole), nullable=False)
    content = Column(String, nullable=False)
    confidence = Column(Float, nullable=True)  # Assistant turns only
    sender_name = Column(String, nullable=True)
    feedback_recorded = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    # Relationships
    conversation = relationship("Conversation", back_populates="messages")
