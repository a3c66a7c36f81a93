"""
Tests for knowledge base training and document processing
"""
import asyncio

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from assist_core.core.database import Base
from assist_core.core.errors import TrainingRejectedError, ValidationError
from assist_core.models.knowledge import KnowledgeBase, Document, TrainingJob, TrainingState, DocumentStatus
from assist_core.models.webhook import AIWebhookEvent, AIEventType
from assist_core.services.knowledge_training import KnowledgeTrainingController, QUALITY_RANGE


class ScriptedRandom:
    """Full-size progress steps and a fixed sequence of quality scores"""

    def __init__(self, qualities):
        self.qualities = list(qualities)

    def uniform(self, low, high):
        if (low, high) == QUALITY_RANGE:
            return self.qualities.pop(0)
        return high


class BrokenRandom:
    def uniform(self, low, high):
        raise RuntimeError("entropy source unavailable")


@pytest.fixture
def session_factory():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine)


@pytest.fixture
def db_session(session_factory):
    """Create test database session"""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def knowledge_base(db_session):
    kb = KnowledgeBase(name="Billing FAQ")
    db_session.add(kb)
    db_session.commit()
    return kb


def train_to_completion(controller, db_session, job):
    for _ in range(1000):
        job = controller.advance(db_session, job.id)
        if job.status == TrainingState.TRAINED:
            return job
    raise AssertionError("training did not finish")


def test_training_without_documents_is_rejected(db_session, knowledge_base):
    controller = KnowledgeTrainingController(tick_seconds=0)

    with pytest.raises(TrainingRejectedError) as exc_info:
        controller.start_training(db_session, knowledge_base.id)

    assert isinstance(exc_info.value, ValidationError)
    assert knowledge_base.training_state == TrainingState.UNTRAINED
    assert db_session.query(TrainingJob).count() == 0


def test_training_runs_to_completion(db_session, knowledge_base):
    controller = KnowledgeTrainingController(tick_seconds=0)
    controller.add_document(db_session, knowledge_base.id, "Refunds", content="Refunds take 5 days.")
    controller.add_document(db_session, knowledge_base.id, "Empty scan", content="")

    job = controller.start_training(db_session, knowledge_base.id)
    assert job.progress == 0.0
    assert knowledge_base.training_state == TrainingState.TRAINING

    progress = []
    unsubscribe = controller.subscribe(lambda snapshot: progress.append(snapshot["progress"]))
    job = train_to_completion(controller, db_session, job)
    unsubscribe()

    assert job.progress == 100.0
    assert QUALITY_RANGE[0] <= job.quality <= QUALITY_RANGE[1]
    assert progress == sorted(progress)
    assert all(0 < later - earlier <= 10.01 for earlier, later in zip(progress, progress[1:]))

    assert knowledge_base.training_state == TrainingState.TRAINED
    assert knowledge_base.training_quality == job.quality
    assert knowledge_base.last_trained is not None

    statuses = {d.title: d.status for d in db_session.query(Document).all()}
    assert statuses == {"Refunds": DocumentStatus.PROCESSED, "Empty scan": DocumentStatus.ERROR}

    event = db_session.query(AIWebhookEvent).one()
    assert event.event_type == AIEventType.KNOWLEDGE_USED.value
    assert event.payload["usage"] == "training"
    assert event.payload["knowledge_base_id"] == str(knowledge_base.id)
    assert event.payload["document_count"] == 2


def test_training_in_progress_is_rejected(db_session, knowledge_base):
    controller = KnowledgeTrainingController(tick_seconds=0)
    controller.add_document(db_session, knowledge_base.id, "Refunds", content="Refunds take 5 days.")
    controller.start_training(db_session, knowledge_base.id)

    with pytest.raises(TrainingRejectedError):
        controller.start_training(db_session, knowledge_base.id)

    assert db_session.query(TrainingJob).count() == 1


def test_retraining_overwrites_quality(db_session, knowledge_base):
    controller = KnowledgeTrainingController(rng=ScriptedRandom([72.0, 95.0]), tick_seconds=0)
    controller.add_document(db_session, knowledge_base.id, "Refunds", content="Refunds take 5 days.")

    first = train_to_completion(controller, db_session, controller.start_training(db_session, knowledge_base.id))
    assert first.quality == 72.0
    assert knowledge_base.training_quality == 72.0

    second = train_to_completion(controller, db_session, controller.start_training(db_session, knowledge_base.id))

    assert second.id != first.id
    assert second.quality == 95.0
    assert knowledge_base.training_quality == 95.0
    assert first.quality == 72.0


def test_run_worker_uses_its_own_session(session_factory, db_session, knowledge_base):
    controller = KnowledgeTrainingController(
        rng=ScriptedRandom([80.0]), tick_seconds=0, session_factory=session_factory,
    )
    controller.add_document(db_session, knowledge_base.id, "Refunds", content="Refunds take 5 days.")
    job = controller.start_training(db_session, knowledge_base.id)

    asyncio.run(controller.run(job.id))

    db_session.expire_all()
    job = controller.get_job(db_session, job.id)
    assert job.status == TrainingState.TRAINED
    assert job.quality == 80.0


def test_process_document_settles_once(db_session, knowledge_base):
    controller = KnowledgeTrainingController(tick_seconds=0)
    document = controller.add_document(db_session, knowledge_base.id, "Blank", content="   ")

    assert knowledge_base.document_count == 1
    assert document.status == DocumentStatus.PENDING

    document = controller.process_document(db_session, document.id)
    assert document.status == DocumentStatus.ERROR
    assert document.error_message

    document.content = "Now with text"
    db_session.commit()
    document = controller.process_document(db_session, document.id)
    assert document.status == DocumentStatus.ERROR


def test_worker_that_cannot_open_a_session_releases_training(session_factory, db_session, knowledge_base):
    calls = {"count": 0}

    def flaky_factory():
        calls["count"] += 1
        if calls["count"] == 1:
            raise OperationalError("connect", {}, Exception("could not connect to server"))
        return session_factory()

    controller = KnowledgeTrainingController(tick_seconds=0, session_factory=flaky_factory)
    controller.add_document(db_session, knowledge_base.id, "Refunds", content="Refunds take 5 days.")
    job = controller.start_training(db_session, knowledge_base.id)

    with pytest.raises(OperationalError):
        asyncio.run(controller.run(job.id))

    db_session.expire_all()
    job = controller.get_job(db_session, job.id)
    assert job.status == TrainingState.FAILED
    assert job.completed_at is not None
    assert "could not connect" in job.error_message
    assert knowledge_base.training_state == TrainingState.UNTRAINED

    retry = controller.start_training(db_session, knowledge_base.id)
    assert retry.status == TrainingState.TRAINING


def test_worker_failure_mid_run_restores_previous_training(session_factory, db_session, knowledge_base):
    controller = KnowledgeTrainingController(rng=ScriptedRandom([88.0]), tick_seconds=0)
    controller.add_document(db_session, knowledge_base.id, "Refunds", content="Refunds take 5 days.")
    train_to_completion(controller, db_session, controller.start_training(db_session, knowledge_base.id))

    broken = KnowledgeTrainingController(rng=BrokenRandom(), tick_seconds=0, session_factory=session_factory)
    job = broken.start_training(db_session, knowledge_base.id)

    with pytest.raises(RuntimeError):
        asyncio.run(broken.run(job.id))

    db_session.expire_all()
    assert broken.get_job(db_session, job.id).status == TrainingState.FAILED
    assert knowledge_base.training_state == TrainingState.TRAINED
    assert knowledge_base.training_quality == 88.0


def test_abort_training(db_session, knowledge_base):
    controller = KnowledgeTrainingController(tick_seconds=0)
    controller.add_document(db_session, knowledge_base.id, "Refunds", content="Refunds take 5 days.")
    job = controller.start_training(db_session, knowledge_base.id)
    updates = []
    controller.subscribe(updates.append)

    aborted = controller.abort_training(db_session, knowledge_base.id, "Operator cancelled")

    assert aborted.id == job.id
    assert aborted.status == TrainingState.FAILED
    assert aborted.error_message == "Operator cancelled"
    assert knowledge_base.training_state == TrainingState.UNTRAINED
    assert updates[-1]["status"] == "failed"

    assert controller.advance(db_session, job.id).progress == 0.0
    with pytest.raises(TrainingRejectedError):
        controller.abort_training(db_session, knowledge_base.id)
