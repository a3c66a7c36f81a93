"""
Knowledge base training endpoints
"""
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from pydantic import BaseModel
from typing import Optional
import uuid

from assist_core.api.deps import get_trainer, to_http_exception
from assist_core.core.database import get_db
from assist_core.core.errors import AssistError, PersistenceError
from assist_core.models.knowledge import KnowledgeBase
from assist_core.services.knowledge_training import (
    KnowledgeTrainingController,
    document_to_dict,
    job_to_dict,
    knowledge_base_to_dict,
)

router = APIRouter()


class CreateKnowledgeBaseRequest(BaseModel):
    name: str
    description: Optional[str] = None


class AddDocumentRequest(BaseModel):
    title: str
    content: Optional[str] = None
    file_type: Optional[str] = None


@router.post("")
async def create_knowledge_base(
    request: CreateKnowledgeBaseRequest,
    db: Session = Depends(get_db),
):
    kb = KnowledgeBase(name=request.name, description=request.description)
    db.add(kb)
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        raise to_http_exception(PersistenceError("Could not create knowledge base")) from exc
    db.refresh(kb)
    return knowledge_base_to_dict(kb)


@router.get("/training-jobs/{job_id}")
async def get_training_job(
    job_id: uuid.UUID,
    db: Session = Depends(get_db),
    trainer: KnowledgeTrainingController = Depends(get_trainer),
):
    """Poll training progress"""
    try:
        job = trainer.get_job(db, job_id)
    except AssistError as exc:
        raise to_http_exception(exc)
    return job_to_dict(job)


@router.post("/documents/{document_id}/process")
async def process_document(
    document_id: uuid.UUID,
    db: Session = Depends(get_db),
    trainer: KnowledgeTrainingController = Depends(get_trainer),
):
    try:
        document = trainer.process_document(db, document_id)
    except AssistError as exc:
        raise to_http_exception(exc)
    return document_to_dict(document)


@router.get("/{knowledge_base_id}")
async def get_knowledge_base(knowledge_base_id: uuid.UUID, db: Session = Depends(get_db)):
    kb = db.query(KnowledgeBase).filter(KnowledgeBase.id == knowledge_base_id).first()
    if not kb:
        raise HTTPException(status_code=404, detail="Knowledge base not found")
    return knowledge_base_to_dict(kb)


@router.post("/{knowledge_base_id}/documents")
async def add_document(
    knowledge_base_id: uuid.UUID,
    request: AddDocumentRequest,
    db: Session = Depends(get_db),
    trainer: KnowledgeTrainingController = Depends(get_trainer),
):
    try:
        document = trainer.add_document(
            db, knowledge_base_id, request.title, content=request.content, file_type=request.file_type
        )
    except AssistError as exc:
        raise to_http_exception(exc)
    return document_to_dict(document)


@router.post("/{knowledge_base_id}/train")
async def train_knowledge_base(
    knowledge_base_id: uuid.UUID,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    trainer: KnowledgeTrainingController = Depends(get_trainer),
):
    """
    Start a training run; progress is advanced in the background
    Rejected with 422 when the knowledge base has no documents or is already training
    """
    try:
        job = trainer.start_training(db, knowledge_base_id)
    except AssistError as exc:
        raise to_http_exception(exc)

    background_tasks.add_task(trainer.run, job.id)
    return job_to_dict(job)


@router.post("/{knowledge_base_id}/train/abort")
async def abort_training(
    knowledge_base_id: uuid.UUID,
    db: Session = Depends(get_db),
    trainer: KnowledgeTrainingController = Depends(get_trainer),
):
    """Fail the running job and release the knowledge base (422 when it is not training)"""
    try:
        trainer.abort_training(db, knowledge_base_id)
        kb = db.query(KnowledgeBase).filter(KnowledgeBase.id == knowledge_base_id).first()
    except AssistError as exc:
        raise to_http_exception(exc)
    return knowledge_base_to_dict(kb)
