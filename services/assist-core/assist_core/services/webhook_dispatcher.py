"""
Webhook dispatcher

Drains unprocessed lifecycle events oldest first and posts them to every
active subscription listening for the event type. Delivery is
at-least-once: an event is marked processed only after all its subscribers
accepted it, so a retry may reach a subscriber twice.

Request body:
    {"event_id", "event_type", "timestamp", "data"}
Headers:
    X-Webhook-Event, X-Webhook-Timestamp,
    X-Webhook-Signature: sha256=<hex HMAC-SHA256 of the raw body>
"""
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from typing import Optional, List, Dict, Any
from datetime import datetime
import hashlib
import hmac
import json
import logging
import secrets

import httpx

from assist_core.core.config import settings
from assist_core.core.errors import PersistenceError, ValidationError
from assist_core.models.webhook import AIWebhookEvent, AIEventType, WebhookSubscription

logger = logging.getLogger(__name__)

SIGNATURE_PREFIX = "sha256="


def generate_webhook_secret() -> str:
    return secrets.token_hex(32)


def sign_payload(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def create_subscription(
    db: Session,
    name: str,
    url: str,
    events: List[str],
) -> WebhookSubscription:
    """Register a subscriber; the generated secret is returned once to the caller"""
    if not url.startswith(("http://", "https://")):
        raise ValidationError("Webhook URL must be http(s)")
    if not events:
        raise ValidationError("At least one event type is required")
    try:
        event_types = [AIEventType(event).value for event in events]
    except ValueError as exc:
        raise ValidationError(f"Unknown event type: {exc}")

    subscription = WebhookSubscription(
        name=name,
        url=url,
        secret_key=generate_webhook_secret(),
        events=event_types,
        is_active=True,
    )
    db.add(subscription)
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError("Could not save webhook subscription") from exc
    db.refresh(subscription)
    return subscription


def build_body(event: AIWebhookEvent) -> bytes:
    return json.dumps(
        {
            "event_id": str(event.id),
            "event_type": event.event_type,
            "timestamp": event.created_at.isoformat(),
            "data": event.payload,
        },
        separators=(",", ":"),
    ).encode("utf-8")


class WebhookDispatcher:
    """Delivers pending events to subscribers"""

    def __init__(
        self,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
    ):
        self.transport = transport
        self.timeout = timeout or settings.WEBHOOK_DELIVERY_TIMEOUT_SECONDS
        self.max_attempts = max_attempts or settings.WEBHOOK_MAX_ATTEMPTS

    async def _deliver(
        self,
        client: httpx.AsyncClient,
        subscription: WebhookSubscription,
        event: AIWebhookEvent,
        body: bytes,
    ) -> None:
        headers = {
            "Content-Type": "application/json",
            "X-Webhook-Event": event.event_type,
            "X-Webhook-Timestamp": event.created_at.isoformat(),
            "X-Webhook-Signature": sign_payload(subscription.secret_key, body),
        }
        response = await client.post(subscription.url, content=body, headers=headers)
        response.raise_for_status()

    async def drain(self, db: Session, limit: int = 100) -> Dict[str, Any]:
        """
        Deliver up to ``limit`` pending events

        Returns:
            {"delivered": int, "failed": int, "skipped": int}
        """
        events = db.query(AIWebhookEvent).filter(
            AIWebhookEvent.processed == False,
            AIWebhookEvent.delivery_attempts < self.max_attempts,
        ).order_by(AIWebhookEvent.created_at.asc()).limit(limit).all()

        subscriptions = db.query(WebhookSubscription).filter(WebhookSubscription.is_active == True).all()

        stats = {"delivered": 0, "failed": 0, "skipped": 0}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            for event in events:
                targets = [s for s in subscriptions if event.event_type in (s.events or [])]
                now = datetime.utcnow()

                if not targets:
                    event.processed = True
                    event.processed_at = now
                    stats["skipped"] += 1
                    continue

                body = build_body(event)
                errors = []
                for subscription in targets:
                    try:
                        await self._deliver(client, subscription, event, body)
                        subscription.last_triggered = now
                    except httpx.HTTPError as exc:
                        logger.warning(
                            "Webhook delivery of %s to %s failed: %s",
                            event.id, subscription.url, exc,
                        )
                        errors.append(f"{subscription.url}: {exc}")

                event.delivery_attempts = (event.delivery_attempts or 0) + 1
                if errors:
                    event.last_error = "; ".join(errors)
                    stats["failed"] += 1
                else:
                    event.processed = True
                    event.processed_at = now
                    event.last_error = None
                    stats["delivered"] += 1

        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Failed to record webhook delivery state")
            raise PersistenceError("Could not record webhook delivery state") from exc

        logger.info("Webhook drain finished: %s", stats)
        return stats
