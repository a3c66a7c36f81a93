"""
Tests for end-to-end AI turns
"""
import asyncio
from datetime import datetime, timedelta
import json
import uuid

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from assist_core.core.database import Base
from assist_core.core.errors import ConfigurationError, PersistenceError, TransportError, ValidationError
from assist_core.models.agent import AIAgent
from assist_core.models.ai_log import AIConversationLog
from assist_core.models.conversation import Conversation, ConversationStatus, HandoffState, Message, MessageRole
from assist_core.models.webhook import AIWebhookEvent, AIEventType
from assist_core.services import conversation_engine as engine_module
from assist_core.services.conversation_engine import ConversationEngine, list_conversations
from assist_core.services.conversation_session import ConversationSession, LocalState
from assist_core.services.event_emitter import conversation_events
from assist_core.services.exchange_client import ExchangeClient
from assist_core.services.metrics_aggregator import ConversationMetrics, MetricsAggregator


@pytest.fixture
def db_session():
    """Create test database session"""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine)
    session = Session()
    yield session
    session.close()


@pytest.fixture
def agent(db_session):
    agent = AIAgent(name="Sapphire", is_active=True, is_global=True)
    db_session.add(agent)
    db_session.commit()
    return agent


class FakeResponder:
    """Scripted AI responder behind httpx.MockTransport"""

    def __init__(self):
        self.replies = []
        self.requests = []
        self.on_request = None

    def queue(self, confidence, text="Olá! Como posso ajudar?", status_code=200, **extra):
        self.replies.append((status_code, confidence, text, extra))

    def __call__(self, request):
        body = json.loads(request.content)
        self.requests.append(body)
        if self.on_request:
            self.on_request(body)
        status_code, confidence, text, extra = self.replies.pop(0)
        if status_code != 200:
            return httpx.Response(status_code, json={"error": "responder failure"})
        return httpx.Response(200, json={
            "response": text,
            "conversation_id": body.get("conversation_id") or str(uuid.uuid4()),
            "confidence": confidence,
            "processing_time": "00:00:02",
            "tokens_used": 30,
            **extra,
        })


@pytest.fixture
def responder():
    return FakeResponder()


@pytest.fixture
def engine(responder):
    client = ExchangeClient(base_url="http://responder.test", api_key="k", transport=httpx.MockTransport(responder))
    return ConversationEngine(client, MetricsAggregator())


def send(engine, db, session, text="Olá", **kwargs):
    return asyncio.run(engine.send_message(db, session, text, customer_id="customer-1", **kwargs))


def test_first_turn_creates_conversation(db_session, agent, engine, responder):
    responder.queue(0.92)
    session = ConversationSession()

    result = send(engine, db_session, session)

    assert result.metrics.avg_confidence == pytest.approx(0.92)
    assert result.metrics.total_messages == 2
    assert result.decision.suggest_handoff is False
    assert result.system_message is None

    assert session.conversation_id == result.conversation.id
    assert [m.role for m in session.messages] == ["user", "assistant"]
    assert all(m.state == LocalState.CONFIRMED for m in session.messages)
    assert session.messages[1].content == "Olá! Como posso ajudar?"

    conversation = db_session.query(Conversation).one()
    assert conversation.is_ai_handled is True
    assert conversation.ai_confidence == 0.92
    assert conversation.ai_response_time == 2.0

    log = db_session.query(AIConversationLog).one()
    assert log.message_id == result.assistant_message.id
    assert log.confidence_score == result.assistant_message.confidence == 0.92

    events = conversation_events(db_session, conversation.id)
    assert [e.event_type for e in events] == [AIEventType.CONVERSATION_STARTED.value]


def test_follow_up_turn_reuses_conversation(db_session, agent, engine, responder):
    responder.queue(0.9)
    responder.queue(0.7)
    session = ConversationSession()

    first = send(engine, db_session, session)
    second = send(engine, db_session, session, text="E o reembolso?")

    assert responder.requests[1]["conversation_id"] == str(first.conversation.id)
    assert second.conversation.id == first.conversation.id
    assert second.metrics.turns == 2
    assert second.metrics.total_messages == 4
    assert second.metrics.avg_confidence == pytest.approx(0.8)
    assert db_session.query(AIWebhookEvent).count() == 1


def test_low_confidence_suggests_handoff(db_session, agent, engine, responder):
    responder.queue(0.41, text="Não tenho certeza.")
    session = ConversationSession()

    result = send(engine, db_session, session)

    assert result.decision.suggest_handoff is True
    assert result.system_message.role == MessageRole.SYSTEM
    assert [m.role for m in session.messages] == ["user", "assistant", "system"]
    assert result.conversation.is_ai_handled is True
    assert result.conversation.handoff_state == HandoffState.HANDOFF_SUGGESTED


def test_transport_failure_keeps_user_message(db_session, agent, engine, responder):
    responder.queue(None, status_code=500)
    session = ConversationSession()

    with pytest.raises(TransportError):
        send(engine, db_session, session)

    assert len(session.messages) == 1
    assert session.messages[0].role == "user"
    assert session.messages[0].state == LocalState.FAILED
    assert [n.message for n in session.active_notices] == ["Error: 500"]
    assert db_session.query(Conversation).count() == 0
    assert db_session.query(Message).count() == 0

    notice = session.active_notices[0]
    assert session.dismiss_error(notice.id) is True
    assert session.active_notices == []
    assert len(session.messages) == 1


def test_empty_text_is_rejected_before_anything(db_session, agent, engine, responder):
    session = ConversationSession()

    with pytest.raises(ValidationError):
        send(engine, db_session, session, text="   ")

    assert session.messages == []
    assert responder.requests == []


def test_no_agent_available(db_session, engine, responder):
    session = ConversationSession()

    with pytest.raises(ConfigurationError):
        send(engine, db_session, session)

    assert session.messages == []
    assert responder.requests == []


def test_team_agent_wins_over_global(db_session, agent, engine, responder):
    team_agent = AIAgent(name="Billing bot", is_active=True, is_global=False, team_id="billing")
    db_session.add(team_agent)
    db_session.commit()
    responder.queue(0.9)

    send(engine, db_session, ConversationSession(), team_id="billing")

    assert responder.requests[0]["agent_id"] == str(team_agent.id)


def test_abandoned_session_ignores_late_reply(db_session, agent, engine, responder):
    responder.queue(0.88)
    session = ConversationSession()
    responder.on_request = lambda body: session.abandon()

    result = send(engine, db_session, session)

    assert result.orphaned is True
    assert len(session.messages) == 1
    assert session.messages[0].state == LocalState.PENDING
    assert db_session.query(Message).count() == 2
    assert db_session.query(AIConversationLog).count() == 1


def test_knowledge_base_reply_emits_knowledge_used(db_session, agent, engine, responder):
    responder.queue(0.95, knowledge_base_id="kb-billing")

    result = send(engine, db_session, ConversationSession())

    events = conversation_events(db_session, result.conversation.id)
    assert [e.event_type for e in events] == [
        AIEventType.CONVERSATION_STARTED.value,
        AIEventType.KNOWLEDGE_USED.value,
    ]
    assert events[1].payload["knowledge_base_id"] == "kb-billing"


def test_escalation_write_failure_keeps_turn(db_session, agent, engine, responder, monkeypatch):
    def failing_apply(db, conversation, decision):
        raise PersistenceError("Could not update conversation handoff state")

    monkeypatch.setattr(engine_module, "apply_decision", failing_apply)
    responder.queue(0.3)
    session = ConversationSession()

    result = send(engine, db_session, session)

    assert result.escalation_pending is True
    assert db_session.query(AIConversationLog).count() == 1
    assert [m.role for m in session.messages] == ["user", "assistant", "system"]
    assert session.messages[2].state == LocalState.PENDING
    assert len(session.active_notices) == 1


def test_reloaded_metrics_match_incremental(db_session, agent, engine, responder):
    for confidence in (0.9, 0.35, 0.77):
        responder.queue(confidence)
    session = ConversationSession()
    for _ in range(3):
        result = send(engine, db_session, session)

    fresh = ConversationEngine(engine.client, MetricsAggregator())
    reopened = fresh.open_session(db_session, result.conversation.id)
    reloaded = fresh.metrics_for(db_session, result.conversation.id)

    assert reloaded.turns == result.metrics.turns == 3
    assert reloaded.total_messages == result.metrics.total_messages == 6
    assert reloaded.avg_confidence == pytest.approx(result.metrics.avg_confidence)
    assert [m.role for m in reopened.messages].count("system") == 1


def test_complete_conversation_emits_final_metrics(db_session, agent, engine, responder):
    responder.queue(0.9)
    responder.queue(0.5)
    session = ConversationSession()
    send(engine, db_session, session)
    result = send(engine, db_session, session)

    conversation, completed = engine.complete_conversation(db_session, result.conversation.id, "resolved")

    assert completed is True
    assert conversation.status == ConversationStatus.RESOLVED
    event = conversation_events(db_session, conversation.id)[-1]
    assert event.event_type == AIEventType.CONVERSATION_COMPLETED.value
    assert event.payload["total_turns"] == 2
    assert event.payload["avg_confidence"] == pytest.approx(0.7)

    assert engine.complete_conversation(db_session, conversation.id, "closed")[1] is False
    with pytest.raises(ValidationError):
        engine.complete_conversation(db_session, conversation.id, "waiting")


def test_feedback_marks_session_message(db_session, agent, engine, responder):
    responder.queue(0.9)
    session = ConversationSession()
    result = send(engine, db_session, session)

    assert engine.record_feedback(db_session, result.assistant_message.id, 5, session=session) is True
    assert session.messages[1].feedback_recorded is True


def test_invalid_behavior_settings_are_a_configuration_error(db_session, engine, responder):
    broken = AIAgent(
        name="Broken", is_active=True, is_global=True,
        behavior_settings={"max_conversation_turns": None, "confidence_threshold": "high"},
    )
    db_session.add(broken)
    db_session.commit()
    session = ConversationSession()

    with pytest.raises(ConfigurationError):
        send(engine, db_session, session)

    assert session.messages == []
    assert responder.requests == []


def test_conversation_is_not_created_without_started_event(db_session, agent, engine, responder, monkeypatch):
    original_commit = db_session.commit
    calls = {"count": 0}

    def flaky_commit():
        calls["count"] += 1
        if calls["count"] == 1:
            raise OperationalError("INSERT INTO conversations", {}, Exception("disk I/O error"))
        return original_commit()

    monkeypatch.setattr(db_session, "commit", flaky_commit)
    responder.queue(0.9)
    session = ConversationSession()

    with pytest.raises(PersistenceError):
        send(engine, db_session, session)

    assert db_session.query(Conversation).count() == 0
    assert db_session.query(AIWebhookEvent).count() == 0
    assert session.messages[0].state == LocalState.FAILED
    assert len(session.active_notices) == 1
    assert engine.aggregator.active_locks == 0

    responder.queue(0.9)
    result = send(engine, db_session, ConversationSession())

    events = conversation_events(db_session, result.conversation.id)
    assert [e.event_type for e in events] == [AIEventType.CONVERSATION_STARTED.value]


def test_metrics_include_turns_written_by_other_workers(db_session, agent, responder):
    client = ExchangeClient(base_url="http://responder.test", api_key="k", transport=httpx.MockTransport(responder))
    first_worker = ConversationEngine(client, MetricsAggregator())
    second_worker = ConversationEngine(client, MetricsAggregator())
    for confidence in (0.9, 0.5, 0.7):
        responder.queue(confidence)

    session = ConversationSession()
    opening = send(first_worker, db_session, session)
    other_session = second_worker.open_session(db_session, opening.conversation.id)
    send(second_worker, db_session, other_session)
    result = send(first_worker, db_session, session)

    logs = db_session.query(AIConversationLog).all()
    expected = ConversationMetrics.from_logs(logs)
    assert result.metrics.turns == expected.turns == 3
    assert result.metrics.total_messages == 6
    assert result.metrics.avg_confidence == pytest.approx(0.7)
    assert result.metrics.avg_confidence == pytest.approx(expected.avg_confidence)
    assert first_worker.metrics_for(db_session, result.conversation.id).turns == 3


def test_concurrent_turns_of_one_conversation_are_serialized(db_session, agent, engine, responder):
    for confidence in (0.9, 0.6, 0.3):
        responder.queue(confidence)
    session = ConversationSession()
    opening = send(engine, db_session, session)
    conversation_id = opening.conversation.id

    async def both_turns():
        return await asyncio.gather(
            engine.send_message(db_session, ConversationSession(conversation_id), "Primeira"),
            engine.send_message(db_session, ConversationSession(conversation_id), "Segunda"),
        )

    results = asyncio.run(both_turns())

    assert sorted(r.metrics.turns for r in results) == [2, 3]
    latest = max(results, key=lambda r: r.metrics.turns)
    expected = ConversationMetrics.from_logs(db_session.query(AIConversationLog).all())
    assert latest.metrics.turns == expected.turns == 3
    assert latest.metrics.avg_confidence == pytest.approx(expected.avg_confidence)
    assert latest.metrics.total_messages == 6
    assert engine.aggregator.active_locks == 0


def test_list_conversations_confidence_bands(db_session):
    now = datetime.utcnow()
    rows = {}
    for offset, (name, confidence) in enumerate([
        ("exact-high", 0.8), ("exact-medium", 0.6), ("just-low", 0.5999), ("upper-medium", 0.7999), ("unscored", None),
    ]):
        rows[name] = Conversation(
            id=uuid.uuid4(), customer_id=name, subject=f"Pedido {name}",
            ai_confidence=confidence, created_at=now - timedelta(minutes=offset),
        )
        db_session.add(rows[name])
    rows["exact-medium"].status = ConversationStatus.RESOLVED
    db_session.commit()

    def customers(**filters):
        return [c.customer_id for c in list_conversations(db_session, **filters)]

    assert customers(confidence_band="high") == ["exact-high"]
    assert customers(confidence_band="medium") == ["exact-medium", "upper-medium"]
    assert customers(confidence_band="low") == ["just-low"]
    assert customers() == ["exact-high", "exact-medium", "just-low", "upper-medium", "unscored"]
    assert customers(status="resolved") == ["exact-medium"]
    assert customers(search="PEDIDO UNS") == ["unscored"]
    assert customers(start=now - timedelta(minutes=1, seconds=30)) == ["exact-high", "exact-medium"]
    assert customers(end=now - timedelta(minutes=3, seconds=30)) == ["unscored"]
    assert customers(limit=2) == ["exact-high", "exact-medium"]

    with pytest.raises(ValidationError):
        list_conversations(db_session, confidence_band="excellent")
    with pytest.raises(ValidationError):
        list_conversations(db_session, status="lost")
