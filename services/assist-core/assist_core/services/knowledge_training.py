"""
Knowledge base training controller

Training state machine:
    UNTRAINED → TRAINING(progress 0..100) → TRAINED
    TRAINED → TRAINING → TRAINED (re-training overwrites the quality score)
    TRAINING → (abort or worker failure) → previous state; the job is FAILED

A TrainingJob row carries the progress. A worker (``run``) advances it in
bounded random steps; subscribers are pushed every update and clients can
poll the job.
"""
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from typing import Optional, Dict, Any, Callable, List
from datetime import datetime
import asyncio
import logging
import random
import uuid

from assist_core.core.config import settings
from assist_core.core.database import SessionLocal
from assist_core.core.errors import AssistError, NotFoundError, PersistenceError, TrainingRejectedError
from assist_core.models.knowledge import KnowledgeBase, Document, TrainingJob, TrainingState, DocumentStatus
from assist_core.services.event_emitter import emit_event
from assist_core.services.event_payloads import KnowledgeUsedPayload

logger = logging.getLogger(__name__)

MIN_INCREMENT = 0.1
QUALITY_RANGE = (60.0, 100.0)

ProgressCallback = Callable[[Dict[str, Any]], None]


def knowledge_base_to_dict(kb: KnowledgeBase) -> Dict[str, Any]:
    return {
        "id": str(kb.id),
        "name": kb.name,
        "description": kb.description,
        "is_active": kb.is_active,
        "document_count": kb.document_count,
        "training_state": kb.training_state.value,
        "training_quality": kb.training_quality,
        "last_trained": kb.last_trained.isoformat() if kb.last_trained else None,
    }


def job_to_dict(job: TrainingJob) -> Dict[str, Any]:
    return {
        "id": str(job.id),
        "knowledge_base_id": str(job.knowledge_base_id),
        "status": job.status.value,
        "progress": round(job.progress, 2),
        "quality": job.quality,
        "started_at": job.started_at.isoformat(),
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        "error_message": job.error_message,
    }


def document_to_dict(document: Document) -> Dict[str, Any]:
    return {
        "id": str(document.id),
        "knowledge_base_id": str(document.knowledge_base_id),
        "title": document.title,
        "status": document.status.value,
        "error_message": document.error_message,
    }


class KnowledgeTrainingController:
    """Drives knowledge base training jobs and document processing"""

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        max_increment: Optional[float] = None,
        tick_seconds: Optional[float] = None,
        session_factory: Callable[[], Session] = SessionLocal,
    ):
        self.rng = rng or random.Random()
        self.max_increment = max_increment or settings.TRAINING_MAX_INCREMENT
        self.tick_seconds = settings.TRAINING_TICK_SECONDS if tick_seconds is None else tick_seconds
        self.session_factory = session_factory
        self._subscribers: List[ProgressCallback] = []

    # Subscribers

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register a progress callback; returns an unsubscribe function"""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, job: TrainingJob) -> None:
        snapshot = job_to_dict(job)
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Training progress subscriber failed")

    # Queries

    def _get_knowledge_base(self, db: Session, knowledge_base_id: uuid.UUID) -> KnowledgeBase:
        kb = db.query(KnowledgeBase).filter(KnowledgeBase.id == knowledge_base_id).first()
        if not kb:
            raise NotFoundError("Knowledge base not found")
        return kb

    def get_job(self, db: Session, job_id: uuid.UUID) -> TrainingJob:
        job = db.query(TrainingJob).filter(TrainingJob.id == job_id).first()
        if not job:
            raise NotFoundError("Training job not found")
        return job

    def _commit(self, db: Session, action: str) -> None:
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception("Failed to %s", action)
            raise PersistenceError(f"Could not {action}") from exc

    # State machine

    def start_training(self, db: Session, knowledge_base_id: uuid.UUID) -> TrainingJob:
        """
        Enter TRAINING with a fresh job at 0%

        Raises:
            TrainingRejectedError: no documents, or a run is already in progress
        """
        kb = self._get_knowledge_base(db, knowledge_base_id)
        if kb.document_count <= 0:
            raise TrainingRejectedError("Knowledge base has no documents to train on")
        if kb.training_state == TrainingState.TRAINING:
            raise TrainingRejectedError("Knowledge base is already training")

        kb.training_state = TrainingState.TRAINING
        job = TrainingJob(
            knowledge_base_id=kb.id,
            status=TrainingState.TRAINING,
            progress=0.0,
            started_at=datetime.utcnow(),
        )
        db.add(job)
        self._commit(db, "start training")

        logger.info("Training started for knowledge base %s (job %s)", kb.id, job.id)
        self._notify(job)
        return job

    def advance(self, db: Session, job_id: uuid.UUID) -> TrainingJob:
        """Advance a job by one bounded random step; completes it at 100%"""
        job = self.get_job(db, job_id)
        if job.status != TrainingState.TRAINING:
            return job

        increment = max(MIN_INCREMENT, self.rng.uniform(0.0, self.max_increment))
        job.progress = min(job.progress + increment, 100.0)

        completed = job.progress >= 100.0
        if completed:
            self._complete(db, job)
        self._commit(db, "update training progress")
        self._notify(job)

        if completed:
            kb = job.knowledge_base
            emit_event(
                db,
                KnowledgeUsedPayload(
                    knowledge_base_id=str(kb.id),
                    usage="training",
                    document_count=kb.document_count,
                    quality=job.quality,
                ),
            )
            logger.info("Training finished for knowledge base %s (quality %.1f)", kb.id, job.quality)
        return job

    def _complete(self, db: Session, job: TrainingJob) -> None:
        now = datetime.utcnow()
        quality = self.rng.uniform(*QUALITY_RANGE)

        job.status = TrainingState.TRAINED
        job.quality = quality
        job.completed_at = now

        kb = job.knowledge_base
        kb.training_state = TrainingState.TRAINED
        kb.training_quality = quality
        kb.last_trained = now

        pending = db.query(Document).filter(
            Document.knowledge_base_id == kb.id,
            Document.status == DocumentStatus.PENDING,
        ).all()
        for document in pending:
            self._settle_document(document)

    def abort_training(
        self,
        db: Session,
        knowledge_base_id: uuid.UUID,
        reason: str = "Training was aborted",
    ) -> Optional[TrainingJob]:
        """
        Fail the running job and restore the knowledge base

        The knowledge base returns to TRAINED when an earlier run completed,
        otherwise to UNTRAINED, so training can be started again.

        Raises:
            TrainingRejectedError: the knowledge base is not training
        """
        kb = self._get_knowledge_base(db, knowledge_base_id)
        if kb.training_state != TrainingState.TRAINING:
            raise TrainingRejectedError("Knowledge base is not training")

        now = datetime.utcnow()
        running = db.query(TrainingJob).filter(
            TrainingJob.knowledge_base_id == kb.id,
            TrainingJob.status == TrainingState.TRAINING,
        ).order_by(TrainingJob.started_at.asc()).all()
        for job in running:
            job.status = TrainingState.FAILED
            job.completed_at = now
            job.error_message = reason

        kb.training_state = TrainingState.TRAINED if kb.last_trained else TrainingState.UNTRAINED
        self._commit(db, "abort training")

        logger.warning("Training aborted for knowledge base %s: %s", kb.id, reason)
        for job in running:
            self._notify(job)
        return running[-1] if running else None

    def _recover(self, job_id: uuid.UUID, reason: str) -> None:
        """Release a knowledge base whose worker died, using a fresh session"""
        try:
            db = self.session_factory()
        except SQLAlchemyError:
            logger.exception("Could not open a session to recover training job %s", job_id)
            return
        try:
            job = self.get_job(db, job_id)
            if job.status == TrainingState.TRAINING:
                self.abort_training(db, job.knowledge_base_id, reason)
        except (AssistError, SQLAlchemyError):
            logger.exception("Could not recover training job %s", job_id)
        finally:
            db.close()

    async def run(self, job_id: uuid.UUID) -> None:
        """
        Worker loop: advance the job until it leaves TRAINING

        If the worker fails, the job is marked FAILED and the knowledge base
        is released before the error propagates.
        """
        db = None
        try:
            db = self.session_factory()
            while True:
                job = self.advance(db, job_id)
                if job.status != TrainingState.TRAINING:
                    return
                await asyncio.sleep(self.tick_seconds)
        except Exception as exc:
            logger.exception("Training job %s failed", job_id)
            if db is not None:
                db.close()
                db = None
            self._recover(job_id, f"Training worker failed: {exc}")
            raise
        finally:
            if db is not None:
                db.close()

    # Documents

    def add_document(
        self,
        db: Session,
        knowledge_base_id: uuid.UUID,
        title: str,
        content: Optional[str] = None,
        file_type: Optional[str] = None,
    ) -> Document:
        """Register an uploaded document as pending"""
        kb = self._get_knowledge_base(db, knowledge_base_id)
        document = Document(
            knowledge_base_id=kb.id,
            title=title,
            content=content,
            file_type=file_type,
            status=DocumentStatus.PENDING,
        )
        db.add(document)
        kb.document_count = (kb.document_count or 0) + 1
        self._commit(db, "add document")
        return document

    def process_document(self, db: Session, document_id: uuid.UUID) -> Document:
        """Move a pending document to processed or error (once)"""
        document = db.query(Document).filter(Document.id == document_id).first()
        if not document:
            raise NotFoundError("Document not found")
        if document.status != DocumentStatus.PENDING:
            return document

        self._settle_document(document)
        self._commit(db, "process document")
        return document

    @staticmethod
    def _settle_document(document: Document) -> None:
        if document.content and document.content.strip():
            document.status = DocumentStatus.PROCESSED
            document.error_message = None
        else:
            document.status = DocumentStatus.ERROR
            document.error_message = "Document has no extractable content"


# Singleton instance
_training_controller: Optional[KnowledgeTrainingController] = None


def get_training_controller() -> KnowledgeTrainingController:
    """Get singleton training controller instance"""
    global _training_controller
    if _training_controller is None:
        _training_controller = KnowledgeTrainingController()
    return _training_controller
