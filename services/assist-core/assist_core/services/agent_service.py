"""
AI agent resolution and behavior settings
"""
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from pydantic import BaseModel, Field, ValidationError as PydanticValidationError
from typing import Optional
import logging
import uuid

from assist_core.core.config import settings
from assist_core.core.errors import ConfigurationError, PersistenceError
from assist_core.models.agent import AIAgent

logger = logging.getLogger(__name__)


class BehaviorSettings(BaseModel):
    """Per-agent escalation behavior"""
    confidence_threshold: float = Field(default_factory=lambda: settings.HANDOFF_SUGGESTION_THRESHOLD, ge=0.0, le=1.0)
    max_conversation_turns: int = Field(10, ge=1)
    auto_handoff_enabled: bool = False  # Reserved; forced handoff always needs a human action
    auto_handoff_threshold: float = Field(0.5, ge=0.0, le=1.0)
    auto_handoff_after_turns: int = Field(5, ge=1)
    use_knowledge_base: bool = True
    knowledge_base_weight: float = Field(0.8, ge=0.0, le=1.0)
    handoff_suggestion_message: str = "Confidence in this answer is low. Would you like to talk to a human agent?"
    handoff_message: str = "This conversation was transferred to a human agent."


def get_behavior_settings(agent: Optional[AIAgent]) -> BehaviorSettings:
    """
    Behavior settings of an agent, defaults for missing keys

    Raises:
        ConfigurationError: the stored settings do not validate
    """
    if agent is None or not agent.behavior_settings:
        return BehaviorSettings()
    try:
        return BehaviorSettings(**agent.behavior_settings)
    except (PydanticValidationError, TypeError) as exc:
        logger.warning("AI agent %s has invalid behavior settings: %s", agent.id, exc)
        raise ConfigurationError("AI agent configuration is invalid") from exc


def resolve_agent(
    db: Session,
    agent_id: Optional[uuid.UUID] = None,
    department_id: Optional[str] = None,
    team_id: Optional[str] = None,
) -> AIAgent:
    """
    Pick the AI agent for a turn

    An explicit agent_id must name an active agent. Otherwise a team-scoped
    agent wins over a department-scoped one, which wins over a global one.

    Raises:
        ConfigurationError: no active agent is available
    """
    try:
        if agent_id:
            agent = db.query(AIAgent).filter(AIAgent.id == agent_id).first()
            if not agent or not agent.is_active:
                raise ConfigurationError("The selected AI agent is not available")
            return agent

        active = db.query(AIAgent).filter(AIAgent.is_active == True)

        if team_id:
            agent = active.filter(AIAgent.team_id == team_id).order_by(AIAgent.created_at.asc()).first()
            if agent:
                return agent

        if department_id:
            agent = active.filter(AIAgent.department_id == department_id).order_by(AIAgent.created_at.asc()).first()
            if agent:
                return agent

        agent = active.filter(AIAgent.is_global == True).order_by(AIAgent.created_at.asc()).first()
        if agent:
            return agent
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError("Could not load AI agent configuration") from exc

    raise ConfigurationError("No AI agent is available to answer this conversation")
