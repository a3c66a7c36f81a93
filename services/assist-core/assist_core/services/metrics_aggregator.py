"""
Confidence & metrics aggregator

Lifetime running averages of response confidence and latency per
conversation. Incremental updates after each turn must agree with the
arithmetic mean recomputed from the stored AI logs.
"""
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from typing import Dict, Optional, Any, Iterable
from collections import OrderedDict
from contextlib import asynccontextmanager
from datetime import datetime
import asyncio
import logging
import uuid

from assist_core.models.ai_log import AIConversationLog
from assist_core.models.conversation import Conversation, ConversationStatus, Message, MessageRole
from assist_core.services.event_emitter import resolve_window
from assist_core.services.exchange_client import parse_duration

logger = logging.getLogger(__name__)


class ConversationMetrics:
    """Running metrics for one conversation"""

    def __init__(
        self,
        total_messages: int = 0,
        turns: int = 0,
        avg_confidence: float = 0.0,
        avg_response_time: float = 0.0,
    ):
        self.total_messages = total_messages
        self.turns = turns
        self.avg_confidence = avg_confidence
        self.avg_response_time = avg_response_time

    def record_turn(self, confidence: float, processing_time: float) -> None:
        """Fold one user + assistant turn into the averages"""
        self.total_messages += 2
        self.turns += 1
        self.avg_confidence += (confidence - self.avg_confidence) / self.turns
        self.avg_response_time += (processing_time - self.avg_response_time) / self.turns

    @classmethod
    def from_logs(
        cls,
        logs: Iterable[AIConversationLog],
        message_count: Optional[int] = None,
    ) -> "ConversationMetrics":
        """Recompute the averages from the full log set of a conversation"""
        logs = list(logs)
        turns = len(logs)
        if message_count is None:
            message_count = turns * 2
        if not turns:
            return cls(total_messages=message_count)

        avg_confidence = sum(log.confidence_score or 0.0 for log in logs) / turns
        avg_response_time = sum(parse_duration(log.processing_time) for log in logs) / turns
        return cls(
            total_messages=message_count,
            turns=turns,
            avg_confidence=avg_confidence,
            avg_response_time=avg_response_time,
        )

    def copy(self) -> "ConversationMetrics":
        return ConversationMetrics(
            self.total_messages, self.turns, self.avg_confidence, self.avg_response_time
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_messages": self.total_messages,
            "turns": self.turns,
            "avg_confidence": self.avg_confidence,
            "avg_response_time": self.avg_response_time,
        }


class MetricsAggregator:
    """
    Per-session registry of conversation metrics

    The durable AI logs are the source of truth: a turn re-reads the prior
    metrics with ``load`` and applies ``record_turn`` while holding
    ``hold(conversation_id)``, so turns written by other workers are always
    included. Lock entries exist only while a turn holds or waits for them;
    the snapshot cache keeps the ``max_tracked`` most recent conversations.
    """

    def __init__(self, max_tracked: int = 1000):
        self.max_tracked = max_tracked
        self._metrics: "OrderedDict[str, ConversationMetrics]" = OrderedDict()
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @staticmethod
    def _key(conversation_id) -> str:
        return str(conversation_id)

    @asynccontextmanager
    async def hold(self, conversation_id):
        """Serialize turns of one conversation"""
        key = self._key(conversation_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    @property
    def active_locks(self) -> int:
        return len(self._locks)

    def _store(self, key: str, metrics: ConversationMetrics) -> None:
        self._metrics[key] = metrics
        self._metrics.move_to_end(key)
        while len(self._metrics) > self.max_tracked:
            self._metrics.popitem(last=False)

    def is_tracking(self, conversation_id) -> bool:
        return self._key(conversation_id) in self._metrics

    def get(self, conversation_id) -> ConversationMetrics:
        return self._metrics.get(self._key(conversation_id), ConversationMetrics()).copy()

    def load(self, db: Session, conversation_id: uuid.UUID) -> ConversationMetrics:
        """
        Replace the cached metrics with values recomputed from storage

        A read failure keeps whatever was cached (or zeros).
        """
        key = self._key(conversation_id)
        try:
            logs = db.query(AIConversationLog).filter(
                AIConversationLog.conversation_id == conversation_id
            ).order_by(AIConversationLog.created_at.asc()).all()
            message_count = db.query(Message).filter(
                Message.conversation_id == conversation_id,
                Message.role != MessageRole.SYSTEM,
            ).count()
        except SQLAlchemyError:
            db.rollback()
            logger.warning("Metrics reload failed for conversation %s; keeping cached values", key, exc_info=True)
            return self.get(conversation_id)

        metrics = ConversationMetrics.from_logs(logs, message_count)
        self._store(key, metrics)
        return metrics.copy()

    def record_turn(self, conversation_id, confidence: float, processing_time: float) -> ConversationMetrics:
        """Apply one successful turn; the caller holds the conversation"""
        key = self._key(conversation_id)
        metrics = self._metrics.get(key) or ConversationMetrics()
        metrics.record_turn(confidence, processing_time)
        self._store(key, metrics)
        return metrics.copy()

    def forget(self, conversation_id) -> None:
        self._metrics.pop(self._key(conversation_id), None)

    def session_summary(self) -> Dict[str, Any]:
        """Turn-weighted averages across every tracked conversation"""
        turns = sum(m.turns for m in self._metrics.values())
        total_messages = sum(m.total_messages for m in self._metrics.values())
        if not turns:
            return {
                "conversations": len(self._metrics),
                "total_messages": total_messages,
                "turns": 0,
                "avg_confidence": 0.0,
                "avg_response_time": 0.0,
            }
        return {
            "conversations": len(self._metrics),
            "total_messages": total_messages,
            "turns": turns,
            "avg_confidence": sum(m.avg_confidence * m.turns for m in self._metrics.values()) / turns,
            "avg_response_time": sum(m.avg_response_time * m.turns for m in self._metrics.values()) / turns,
        }


def summarize(db: Session, window: str = "7d", now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    Dashboard metrics over a time window

    Returns:
        {
            "total_conversations": int,
            "ai_conversations": int,
            "avg_confidence": float,
            "avg_response_time": float,
            "handoff_rate": float (0-1),
            "resolution_rate": float (0-1),
            "satisfaction_rate": float (0-1, share of ratings >= 4)
        }
    """
    start_time = (now or datetime.utcnow()) - resolve_window(window)

    conversations = db.query(Conversation).filter(Conversation.created_at >= start_time).all()
    logs = db.query(AIConversationLog).filter(AIConversationLog.created_at >= start_time).all()

    ai_conversation_ids = {log.conversation_id for log in logs}
    ai_conversations = [c for c in conversations if c.id in ai_conversation_ids]
    handed_off = [c for c in ai_conversations if not c.is_ai_handled]
    resolved = [
        c for c in ai_conversations
        if c.status in (ConversationStatus.RESOLVED, ConversationStatus.CLOSED)
    ]
    rated = [log for log in logs if log.feedback_score is not None]
    satisfied = [log for log in rated if log.feedback_score >= 4]

    return {
        "window": window,
        "total_conversations": len(conversations),
        "ai_conversations": len(ai_conversations),
        "avg_confidence": sum(log.confidence_score for log in logs) / len(logs) if logs else 0.0,
        "avg_response_time": sum(log.processing_time or 0.0 for log in logs) / len(logs) if logs else 0.0,
        "handoff_rate": len(handed_off) / len(ai_conversations) if ai_conversations else 0.0,
        "resolution_rate": len(resolved) / len(ai_conversations) if ai_conversations else 0.0,
        "satisfaction_rate": len(satisfied) / len(rated) if rated else 0.0,
    }
