"""
Shared API dependencies and error mapping
"""
from fastapi import HTTPException
from typing import Optional

from assist_core.core.errors import (
    AssistError, TransportError, PersistenceError, ValidationError, ConfigurationError, NotFoundError
)
from assist_core.services.conversation_engine import ConversationEngine, get_conversation_engine
from assist_core.services.knowledge_training import KnowledgeTrainingController, get_training_controller
from assist_core.services.webhook_dispatcher import WebhookDispatcher


ERROR_STATUS_CODES = {
    NotFoundError: 404,
    ValidationError: 422,
    TransportError: 502,
    ConfigurationError: 503,
    PersistenceError: 500,
}


def to_http_exception(exc: AssistError) -> HTTPException:
    for error_type, status_code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def get_engine() -> ConversationEngine:
    return get_conversation_engine()


def get_trainer() -> KnowledgeTrainingController:
    return get_training_controller()


_dispatcher: Optional[WebhookDispatcher] = None


def get_dispatcher() -> WebhookDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = WebhookDispatcher()
    return _dispatcher
