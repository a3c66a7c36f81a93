"""
Typed payloads for AI lifecycle events

One model per event type, discriminated by ``event_type``. The discriminator
lives on the event row; stored payloads omit it.
"""
from typing import Annotated, Literal, Optional, Union, Dict, Any
from pydantic import BaseModel, Field, TypeAdapter


class ConversationStartedPayload(BaseModel):
    event_type: Literal["ai.conversation.started"] = "ai.conversation.started"
    conversation_id: str
    customer_id: Optional[str] = None
    agent_id: Optional[str] = None
    channel_type: str = "webchat"


class ConversationCompletedPayload(BaseModel):
    event_type: Literal["ai.conversation.completed"] = "ai.conversation.completed"
    conversation_id: str
    status: str
    total_turns: int = 0
    avg_confidence: float = 0.0
    avg_response_time: float = 0.0


class HandoffRequestedPayload(BaseModel):
    event_type: Literal["ai.handoff.requested"] = "ai.handoff.requested"
    conversation_id: str
    requested_by: Optional[str] = None
    reason: Optional[str] = None
    ai_confidence: Optional[float] = None


class HandoffCompletedPayload(BaseModel):
    event_type: Literal["ai.handoff.completed"] = "ai.handoff.completed"
    conversation_id: str
    previous_status: Optional[str] = None
    status: str = "new"
    assigned_to: Optional[str] = None


class FeedbackReceivedPayload(BaseModel):
    event_type: Literal["ai.feedback.received"] = "ai.feedback.received"
    message_id: str
    score: int = Field(ge=1, le=5)
    comment: Optional[str] = None
    conversation_id: Optional[str] = None


class KnowledgeUsedPayload(BaseModel):
    event_type: Literal["ai.knowledge.used"] = "ai.knowledge.used"
    knowledge_base_id: str
    usage: Literal["response", "training"] = "response"
    conversation_id: Optional[str] = None
    document_count: Optional[int] = None
    quality: Optional[float] = None


EventPayload = Annotated[
    Union[
        ConversationStartedPayload,
        ConversationCompletedPayload,
        HandoffRequestedPayload,
        HandoffCompletedPayload,
        FeedbackReceivedPayload,
        KnowledgeUsedPayload,
    ],
    Field(discriminator="event_type"),
]

_payload_adapter = TypeAdapter(EventPayload)


def dump_payload(payload: BaseModel) -> Dict[str, Any]:
    """Serialize a payload for storage (JSON-safe, without the discriminator)"""
    return payload.model_dump(mode="json", exclude={"event_type"})


def parse_payload(event_type: str, data: Dict[str, Any]) -> EventPayload:
    """Rebuild the typed payload of a stored event"""
    return _payload_adapter.validate_python({**(data or {}), "event_type": event_type})
