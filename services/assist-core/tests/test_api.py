"""
Tests for the HTTP API
"""
import json
import uuid

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from assist_core.api.deps import get_dispatcher, get_engine, get_trainer
from assist_core.core.database import Base, get_db
from assist_core.main import app
from assist_core.models.agent import AIAgent
from assist_core.services.conversation_engine import ConversationEngine
from assist_core.services.exchange_client import ExchangeClient
from assist_core.services.knowledge_training import KnowledgeTrainingController
from assist_core.services.metrics_aggregator import MetricsAggregator
from assist_core.services.webhook_dispatcher import WebhookDispatcher


@pytest.fixture
def testing_session():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def replies():
    return []


@pytest.fixture
def client(testing_session, replies):
    def responder(request):
        body = json.loads(request.content)
        status_code, confidence = replies.pop(0)
        if status_code != 200:
            return httpx.Response(status_code)
        return httpx.Response(200, json={
            "response": "Olá! Como posso ajudar?",
            "conversation_id": body.get("conversation_id") or str(uuid.uuid4()),
            "confidence": confidence,
            "processing_time": 1200,
        })

    def override_get_db():
        db = testing_session()
        try:
            yield db
        finally:
            db.close()

    engine = ConversationEngine(
        ExchangeClient(base_url="http://responder.test", api_key="k", transport=httpx.MockTransport(responder)),
        MetricsAggregator(),
    )
    trainer = KnowledgeTrainingController(tick_seconds=0, session_factory=testing_session)
    dispatcher = WebhookDispatcher(transport=httpx.MockTransport(lambda request: httpx.Response(200)))

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_engine] = lambda: engine
    app.dependency_overrides[get_trainer] = lambda: trainer
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def agent(testing_session):
    db = testing_session()
    agent = AIAgent(name="Sapphire", is_active=True, is_global=True)
    db.add(agent)
    db.commit()
    agent_id = agent.id
    db.close()
    return agent_id


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_send_message_and_history(client, agent, replies):
    replies.append((200, 0.92))

    response = client.post("/v1/assist/messages", json={"text": "Olá", "customer_id": "customer-1"})

    assert response.status_code == 200
    data = response.json()
    assert data["confidence"] == 0.92
    assert data["metrics"]["avg_confidence"] == pytest.approx(0.92)
    assert data["escalation"]["suggest_handoff"] is False

    history = client.get(f"/v1/assist/conversations/{data['conversation_id']}/messages").json()
    assert [m["role"] for m in history["messages"]] == ["user", "assistant"]

    metrics = client.get(f"/v1/assist/conversations/{data['conversation_id']}/metrics").json()
    assert metrics["turns"] == 1
    assert metrics["avg_response_time"] == pytest.approx(1.2)


def test_send_message_error_mapping(client, agent, replies):
    replies.append((500, None))
    assert client.post("/v1/assist/messages", json={"text": "Olá"}).status_code == 502
    assert client.post("/v1/assist/messages", json={"text": "  "}).status_code == 422


def test_send_message_without_agent(client):
    assert client.post("/v1/assist/messages", json={"text": "Olá"}).status_code == 503


def test_send_message_with_invalid_agent_settings(client, testing_session, replies):
    db = testing_session()
    db.add(AIAgent(name="Broken", is_active=True, is_global=True, behavior_settings={"max_conversation_turns": None}))
    db.commit()
    db.close()

    response = client.post("/v1/assist/messages", json={"text": "Olá"})

    assert response.status_code == 503
    assert client.get("/v1/assist/conversations").json()["conversations"] == []


def test_list_conversations_by_confidence(client, agent, replies):
    for confidence in (0.95, 0.7, 0.3):
        replies.append((200, confidence))
        client.post("/v1/assist/messages", json={"text": "Olá", "customer_id": f"customer-{confidence}"})

    listed = client.get("/v1/assist/conversations").json()["conversations"]
    assert len(listed) == 3

    medium = client.get("/v1/assist/conversations", params={"confidence": "medium"}).json()["conversations"]
    assert [c["ai_confidence"] for c in medium] == [0.7]

    found = client.get("/v1/assist/conversations", params={"search": "CUSTOMER-0.3"}).json()["conversations"]
    assert [c["customer_id"] for c in found] == ["customer-0.3"]

    assert client.get("/v1/assist/conversations", params={"confidence": "great"}).status_code == 422
    assert client.get("/v1/assist/conversations", params={"status": "lost"}).status_code == 422


def test_handoff_feedback_and_events(client, agent, replies):
    replies.append((200, 0.41))
    data = client.post("/v1/assist/messages", json={"text": "Preciso de ajuda"}).json()
    conversation_id = data["conversation_id"]
    assert data["system_message"]

    feedback = client.post(f"/v1/assist/messages/{data['assistant_message_id']}/feedback", json={"score": 9})
    assert feedback.status_code == 422
    feedback = client.post(
        f"/v1/assist/messages/{data['assistant_message_id']}/feedback",
        json={"score": 2, "comment": "Not what I asked"},
    )
    assert feedback.json()["recorded"] is True

    handoff = client.post(f"/v1/assist/conversations/{conversation_id}/handoff", json={"requested_by": "customer"})
    assert handoff.status_code == 200
    assert handoff.json()["is_ai_handled"] is False
    assert handoff.json()["status"] == "new"

    events = client.get("/v1/ai-events", params={"window": "24h"}).json()["events"]
    assert [e["event_type"] for e in reversed(events)] == [
        "ai.conversation.started",
        "ai.feedback.received",
        "ai.handoff.requested",
        "ai.handoff.completed",
    ]
    count = client.get("/v1/ai-events/count", params={"event_type": "ai.handoff.requested"}).json()
    assert count["count"] == 1

    detail = client.get(f"/v1/ai-events/{events[0]['id']}").json()
    assert detail["payload"]["conversation_id"] == conversation_id

    assert client.get("/v1/ai-events", params={"window": "1y"}).status_code == 422
    assert client.get(f"/v1/ai-events/{uuid.uuid4()}").status_code == 404

    dispatched = client.post("/v1/webhooks/dispatch").json()
    assert dispatched["skipped"] == 4


def test_complete_conversation(client, agent, replies):
    replies.append((200, 0.8))
    conversation_id = client.post("/v1/assist/messages", json={"text": "Obrigado"}).json()["conversation_id"]

    response = client.post(f"/v1/assist/conversations/{conversation_id}/complete", json={"status": "closed"})

    assert response.json() == {"conversation_id": conversation_id, "status": "closed", "completed": True}
    summary = client.get("/v1/assist/metrics", params={"window": "24h"}).json()
    assert summary["resolution_rate"] == 1.0


def test_knowledge_base_training(client):
    kb = client.post("/v1/knowledge-bases", json={"name": "Billing FAQ"}).json()

    rejected = client.post(f"/v1/knowledge-bases/{kb['id']}/train")
    assert rejected.status_code == 422

    document = client.post(
        f"/v1/knowledge-bases/{kb['id']}/documents",
        json={"title": "Refunds", "content": "Refunds take 5 days."},
    ).json()
    assert document["status"] == "pending"

    job = client.post(f"/v1/knowledge-bases/{kb['id']}/train").json()
    assert job["status"] == "training"

    # The background worker has finished by the time the response is returned
    job = client.get(f"/v1/knowledge-bases/training-jobs/{job['id']}").json()
    assert job["status"] == "trained"
    assert job["progress"] == 100.0
    assert 60.0 <= job["quality"] <= 100.0

    kb = client.get(f"/v1/knowledge-bases/{kb['id']}").json()
    assert kb["training_state"] == "trained"
    assert kb["document_count"] == 1

    assert client.post(f"/v1/knowledge-bases/{kb['id']}/train/abort").status_code == 422


def test_webhook_subscription(client):
    response = client.post("/v1/webhooks/subscriptions", json={
        "name": "CRM",
        "url": "https://crm.test/hook",
        "events": ["ai.handoff.completed"],
    })

    assert response.status_code == 200
    assert len(response.json()["secret_key"]) == 64
