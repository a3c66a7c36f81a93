"""
AI conversation log model
One row per AI turn; feedback is attached later by the feedback recorder
"""
from sqlalchemy import Column, String, DateTime, ForeignKey, Float, Integer
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
from datetime import datetime
import uuid
from assist_core.core.database import Base, JSONType


class AIConversationLog(Base):
    __tablename__ = "ai_conversation_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False, index=True)
    message_id = Column(UUID(as_uuid=True), ForeignKey("messages.id"), nullable=True, index=True)  # Assistant message of the turn
    agent_id = Column(UUID(as_uuid=True), ForeignKey("ai_agents.id"), nullable=True)
    prompt = Column(String, nullable=False)  # User utterance
    response = Column(String, nullable=False)  # AI reply
    tokens_used = Column(Integer, nullable=True)
    confidence_score = Column(Float, nullable=False)
    processing_time = Column(Float, nullable=False, default=0.0)  # Seconds
    feedback_score = Column(Integer, nullable=True)  # 1-5, attached later
    log_metadata = Column("metadata", JSONType, nullable=True)  # e.g. {"feedback_comment": "..."}
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    # Relationships
    conversation = relationship("Conversation", back_populates="ai_logs")
    message = relationship("Message")
