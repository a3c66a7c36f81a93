"""
Webhook subscription and delivery endpoints
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session
from pydantic import BaseModel
from typing import List

from assist_core.api.deps import get_dispatcher, to_http_exception
from assist_core.core.database import get_db
from assist_core.core.errors import AssistError
from assist_core.services.webhook_dispatcher import WebhookDispatcher, create_subscription

router = APIRouter()


class CreateSubscriptionRequest(BaseModel):
    name: str
    url: str
    events: List[str]


@router.post("/subscriptions")
async def create_subscription_endpoint(
    request: CreateSubscriptionRequest,
    db: Session = Depends(get_db),
):
    """
    Register a subscriber URL
    The signing secret is only returned here
    """
    try:
        subscription = create_subscription(db, request.name, request.url, request.events)
    except AssistError as exc:
        raise to_http_exception(exc)
    return {
        "id": str(subscription.id),
        "name": subscription.name,
        "url": subscription.url,
        "events": subscription.events,
        "secret_key": subscription.secret_key,
    }


@router.post("/dispatch")
async def dispatch_events(
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
):
    """Deliver pending lifecycle events once (called by the scheduler)"""
    try:
        return await dispatcher.drain(db, limit=limit)
    except AssistError as exc:
        raise to_http_exception(exc)
