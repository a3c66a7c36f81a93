"""
SQLAlchemy models
"""
from assist_core.models.agent import AIAgent
from assist_core.models.conversation import Conversation, Message, ConversationStatus, HandoffState, MessageDirection, MessageRole
from assist_core.models.ai_log import AIConversationLog
from assist_core.models.webhook import AIWebhookEvent, WebhookSubscription, AIEventType
from assist_core.models.knowledge import KnowledgeBase, Document, TrainingJob, TrainingState, DocumentStatus

__all__ = [
    "AIAgent",
    "Conversation",
    "Message",
    "ConversationStatus",
    "HandoffState",
    "MessageDirection",
    "MessageRole",
    "AIConversationLog",
    "AIWebhookEvent",
    "WebhookSubscription",
    "AIEventType",
    "KnowledgeBase",
    "Document",
    "TrainingJob",
    "TrainingState",
    "DocumentStatus",
]
