"""
AI agent configuration model
"""
from sqlalchemy import Column, String, DateTime, Boolean
from sqlalchemy.dialects.postgresql import UUID
from datetime import datetime
import uuid
from assist_core.core.database import Base, JSONType


class AIAgent(Base):
    __tablename__ = "ai_agents"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, index=True)
    is_global = Column(Boolean, nullable=False, default=True)
    department_id = Column(String, nullable=True, index=True)
    team_id = Column(String, nullable=True, index=True)
    model_settings = Column(JSONType, nullable=True)  # {"model": "gpt-4o", "temperature": 0.7, ...}
    behavior_settings = Column(JSONType, nullable=True)  # Validated by BehaviorSettings
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
