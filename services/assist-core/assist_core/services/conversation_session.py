"""
Client-side state of one open conversation

Holds the ordered local message list, dismissible error notices and feedback
marks. Local entries are written optimistically and reconciled with the
durable write; they are never removed. An abandoned session ignores replies
that arrive after the switch.
"""
from typing import Optional, List, Dict, Any
from datetime import datetime
import enum
import uuid


class LocalState(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class LocalMessage:
    """One message as the session sees it"""
    def __init__(
        self,
        role: str,
        content: str,
        confidence: Optional[float] = None,
        state: LocalState = LocalState.PENDING,
        message_id: Optional[uuid.UUID] = None,
    ):
        self.local_id = uuid.uuid4()
        self.role = role
        self.content = content
        self.confidence = confidence
        self.state = state
        self.message_id = message_id
        self.feedback_recorded = False
        self.timestamp = datetime.utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "local_id": str(self.local_id),
            "message_id": str(self.message_id) if self.message_id else None,
            "role": self.role,
            "content": self.content,
            "confidence": self.confidence,
            "state": self.state.value,
            "feedback_recorded": self.feedback_recorded,
            "timestamp": self.timestamp.isoformat(),
        }


class ErrorNotice:
    def __init__(self, message: str):
        self.id = uuid.uuid4()
        self.message = message
        self.timestamp = datetime.utcnow()
        self.dismissed = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


class ConversationSession:
    """
    Local view of a conversation for one client

    Args:
        conversation_id: Existing conversation to continue, or None to let the
            responder create one on the first turn
    """

    def __init__(self, conversation_id: Optional[uuid.UUID] = None):
        self.conversation_id = conversation_id
        self.messages: List[LocalMessage] = []
        self.notices: List[ErrorNotice] = []
        self.abandoned = False

    def accepts(self, conversation_id) -> bool:
        """Whether a reply for ``conversation_id`` may still touch this session"""
        if self.abandoned:
            return False
        return self.conversation_id is None or str(self.conversation_id) == str(conversation_id)

    def adopt(self, conversation_id: uuid.UUID) -> None:
        if self.conversation_id is None:
            self.conversation_id = conversation_id

    def abandon(self) -> None:
        self.abandoned = True

    # Messages

    def append_user(self, content: str) -> LocalMessage:
        message = LocalMessage("user", content)
        self.messages.append(message)
        return message

    def confirm(self, message: LocalMessage, message_id: uuid.UUID) -> None:
        message.state = LocalState.CONFIRMED
        message.message_id = message_id

    def fail(self, message: LocalMessage) -> None:
        message.state = LocalState.FAILED

    def append_assistant(self, content: str, confidence: float, message_id: uuid.UUID) -> LocalMessage:
        message = LocalMessage(
            "assistant", content, confidence=confidence,
            state=LocalState.CONFIRMED, message_id=message_id,
        )
        self.messages.append(message)
        return message

    def append_system(self, content: str, message_id: Optional[uuid.UUID] = None) -> LocalMessage:
        message = LocalMessage(
            "system", content,
            state=LocalState.CONFIRMED if message_id else LocalState.PENDING,
            message_id=message_id,
        )
        self.messages.append(message)
        return message

    def mark_feedback(self, message_id: uuid.UUID) -> bool:
        for message in self.messages:
            if message.message_id is not None and str(message.message_id) == str(message_id):
                message.feedback_recorded = True
                return True
        return False

    # Error notices

    def append_error(self, message: str) -> ErrorNotice:
        notice = ErrorNotice(message)
        self.notices.append(notice)
        return notice

    def dismiss_error(self, notice_id: uuid.UUID) -> bool:
        for notice in self.notices:
            if notice.id == notice_id and not notice.dismissed:
                notice.dismissed = True
                return True
        return False

    @property
    def active_notices(self) -> List[ErrorNotice]:
        return [n for n in self.notices if not n.dismissed]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "conversation_id": str(self.conversation_id) if self.conversation_id else None,
            "messages": [m.to_dict() for m in self.messages],
            "notices": [n.to_dict() for n in self.active_notices],
        }
