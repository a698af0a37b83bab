"""
Counseling session model.
"""
from typing import Any, Dict, List, Optional
from datetime import datetime
from enum import Enum
import logging

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .message import Message
from ..utils.clock import isoformat, parse_timestamp, utcnow

logger = logging.getLogger(__name__)


class SessionType(str, Enum):
    """Which kind of counterparty is currently active."""
    CHATBOT = "chatbot"
    HUMAN_HANDOVER = "human_handover"


class SessionStatus(str, Enum):
    """Session lifecycle status."""
    OPEN = "open"
    ESCALATED = "escalated"
    CLOSED = "closed"


class Session(BaseModel):
    """
    One counseling conversation.

    The session store is the system of record; instances of this model are
    snapshots returned by the store and are never cached by the relay.
    """

    model_config = ConfigDict(validate_assignment=True)

    session_id: str = Field(..., min_length=1, max_length=255)
    user_id: Optional[str] = None
    session_type: SessionType = SessionType.CHATBOT
    status: SessionStatus = SessionStatus.OPEN
    assigned_staff_id: Optional[str] = None
    escalation_reason: Optional[str] = None
    escalation_ticket_id: Optional[str] = None
    escalated_by: Optional[str] = None
    messages: List[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    consent_given_at: Optional[datetime] = None
    escalated_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    closed_by: Optional[str] = None
    summary: Optional[str] = None
    rating: Optional[int] = Field(None, ge=1, le=5)
    feedback: Optional[str] = None

    @field_validator('user_id', 'assigned_staff_id', mode='before')
    @classmethod
    def coerce_identifier(cls, v: Any) -> Optional[str]:
        """Backends hand out integer ids; the relay treats them as strings."""
        if v is None or v == "":
            return None
        return str(v)

    @property
    def is_open(self) -> bool:
        return self.status == SessionStatus.OPEN

    @property
    def is_escalated(self) -> bool:
        return self.status == SessionStatus.ESCALATED

    @property
    def is_closed(self) -> bool:
        return self.status == SessionStatus.CLOSED

    def recent_messages(self, limit: int) -> List[Message]:
        if limit <= 0:
            return []
        return self.messages[-limit:]

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'Session':
        """
        Build a session from a store document.

        Accepts both the backend's snake_case columns and the camelCase keys
        used by older relay payloads. Transcript entries that fail validation
        are skipped with a warning rather than failing the whole session.
        """
        messages = []
        for raw in data.get("messages") or []:
            try:
                messages.append(Message.from_api(raw))
            except (ValidationError, TypeError, AttributeError) as e:
                logger.warning(f"Skipping malformed transcript entry: {e}")

        session_id = data.get("session_id") or data.get("sessionId") or data.get("id")

        return cls(
            session_id=str(session_id) if session_id is not None else "",
            user_id=data.get("user_id", data.get("userId")),
            session_type=data.get("session_type") or data.get("sessionType") or data.get("type") or SessionType.CHATBOT.value,
            status=data.get("status") or SessionStatus.OPEN.value,
            assigned_staff_id=data.get("assigned_staff_id", data.get("counselor_id")),
            escalation_reason=data.get("escalation_reason"),
            escalation_ticket_id=data.get("escalation_ticket_id") or data.get("ticket_id"),
            escalated_by=data.get("escalated_by"),
            messages=messages,
            created_at=parse_timestamp(data.get("created_at") or data.get("started_at")) or utcnow(),
            consent_given_at=parse_timestamp(data.get("consent_given_at")),
            escalated_at=parse_timestamp(data.get("escalated_at")),
            ended_at=parse_timestamp(data.get("ended_at")),
            closed_by=data.get("closed_by"),
            summary=data.get("summary"),
            rating=data.get("rating"),
            feedback=data.get("feedback")
        )

    def to_client(self) -> Dict[str, Any]:
        """Payload used by ``session_joined`` and the history endpoint."""
        return {
            "sessionId": self.session_id,
            "userId": self.user_id,
            "sessionType": self.session_type.value,
            "status": self.status.value,
            "assignedStaffId": self.assigned_staff_id,
            "escalationReason": self.escalation_reason,
            "createdAt": isoformat(self.created_at),
            "escalatedAt": isoformat(self.escalated_at),
            "endedAt": isoformat(self.ended_at),
            "messages": [m.to_client(self.session_id) for m in self.messages]
        }


__all__ = ['SessionType', 'SessionStatus', 'Session']
