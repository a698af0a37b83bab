"""
Transcript message model.
"""
from typing import Any, Dict, Optional
from datetime import datetime
from enum import Enum
import uuid

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..utils.clock import isoformat, parse_timestamp, utcnow


class Sender(str, Enum):
    """Who wrote a transcript turn."""
    USER = "user"
    BOT = "bot"
    STAFF = "staff"
    SYSTEM = "system"


class Message(BaseModel):
    """One turn in a session transcript."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, min_length=1)
    sender: Sender
    text: str = Field(..., min_length=1)
    timestamp: datetime = Field(default_factory=utcnow)
    author_id: Optional[str] = Field(
        None,
        description="User or staff identifier of the author, when known"
    )
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('text')
    @classmethod
    def validate_text(cls, v: str) -> str:
        """Reject whitespace-only text."""
        if not v.strip():
            raise ValueError("Message text cannot be empty")
        return v

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'Message':
        """
        Build a message from a store document.

        The backend stores the text under ``message`` while the relay uses
        ``text``; both are accepted.
        """
        timestamp = parse_timestamp(data.get("timestamp") or data.get("created_at"))
        return cls(
            id=str(data.get("id") or uuid.uuid4().hex),
            sender=data.get("sender", Sender.SYSTEM.value),
            text=data.get("text") or data.get("message") or "",
            timestamp=timestamp or utcnow(),
            author_id=data.get("author_id") or data.get("userId") or data.get("user_id"),
            metadata=data.get("metadata") or {}
        )

    def to_api(self) -> Dict[str, Any]:
        """Document shape sent to the session store."""
        return {
            "id": self.id,
            "sender": self.sender.value,
            "message": self.text,
            "timestamp": isoformat(self.timestamp),
            "author_id": self.author_id,
            "metadata": self.metadata
        }

    def to_client(self, session_id: str) -> Dict[str, Any]:
        """Payload of a ``message_received`` event."""
        return {
            "sessionId": session_id,
            "id": self.id,
            "sender": self.sender.value,
            "text": self.text,
            "timestamp": isoformat(self.timestamp),
            "authorId": self.author_id,
            "metadata": self.metadata
        }


__all__ = ['Sender', 'Message']
