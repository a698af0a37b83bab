"""
Pydantic schemas for relay payloads, identities and responder replies.
"""
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, Optional
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Connection role claim."""
    ADMIN = "admin"
    STAFF = "staff"
    PSIKOLOG = "psikolog"
    USER = "user"
    ANONYMOUS = "anonymous"

    @classmethod
    def from_claim(cls, value: Optional[str]) -> 'Role':
        """Unknown or missing claims on a signed token degrade to a plain user."""
        if not value:
            return cls.USER
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.USER


class Priority(str, Enum):
    """Escalation priority used to route staff notifications."""
    HIGH = "high"
    NORMAL = "normal"


class Identity(BaseModel):
    """Authenticated (or anonymous) principal behind a connection."""

    model_config = ConfigDict(frozen=True)

    user_id: Optional[str] = None
    display_name: Optional[str] = None
    role: Role = Role.ANONYMOUS
    email: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return self.role == Role.ANONYMOUS

    @property
    def label(self) -> str:
        return self.display_name or self.user_id or "anonymous"


# Inbound event payloads

class _InboundPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    session_id: str = Field(..., alias="sessionId", min_length=1, max_length=255)


class JoinSessionPayload(_InboundPayload):
    """``join_session``"""
    user_id: Optional[str] = Field(None, alias="userId", max_length=255)
    consent: bool = False


class SendMessagePayload(_InboundPayload):
    """``send_message``"""
    message: str = Field(..., min_length=1)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('message')
    @classmethod
    def validate_message(cls, v: str) -> str:
        """Ensure message is not just whitespace."""
        if not v.strip():
            raise ValueError('Message cannot be empty')
        return v.strip()


class RequestEscalationPayload(_InboundPayload):
    """``request_escalation``"""
    reason: Optional[str] = Field(None, max_length=1000, validate_default=True)

    @field_validator('reason')
    @classmethod
    def default_reason(cls, v: Optional[str]) -> str:
        return v or "User requested to talk with a counselor"


class StaffJoinPayload(_InboundPayload):
    """``staff_join_session``"""


class CloseSessionPayload(_InboundPayload):
    """``close_session``"""
    rating: Optional[int] = Field(None, ge=1, le=5)
    feedback: Optional[str] = Field(None, max_length=2000)
    summary: Optional[str] = Field(None, max_length=4000)


class TypingPayload(_InboundPayload):
    """``typing``"""
    is_typing: bool = Field(True, alias="isTyping")


# Responder

class ResponderReply(BaseModel):
    """Normalised reply from the AI responder (or the fallback set)."""

    reply_text: str = Field(..., min_length=1)
    confidence: float = Field(..., ge=0.0, le=1.0)
    intent: str = "general_support"
    escalation_suggested: bool = False
    escalation_reason: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_fallback(self) -> bool:
        return bool(self.metadata.get("fallback"))


# HTTP

class HealthResponse(BaseModel):
    """Liveness payload."""
    status: str
    timestamp: datetime
    uptime: float


class CloseSessionRequest(BaseModel):
    """Body of ``POST /api/sessions/{id}/close``."""
    summary: Optional[str] = Field(None, max_length=4000)
    rating: Optional[int] = Field(None, ge=1, le=5)
    feedback: Optional[str] = Field(None, max_length=2000)


__all__ = [
    'Role',
    'Priority',
    'Identity',
    'JoinSessionPayload',
    'SendMessagePayload',
    'RequestEscalationPayload',
    'StaffJoinPayload',
    'CloseSessionPayload',
    'TypingPayload',
    'ResponderReply',
    'HealthResponse',
    'CloseSessionRequest',
]
