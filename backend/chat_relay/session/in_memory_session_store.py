"""
In-memory session store implementation.
Suitable for development and tests; sessions are lost on restart.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional
from datetime import datetime
from copy import deepcopy

from .session_store import SessionStore
from ..errors import InvalidSessionStateError, SessionClosedError, SessionNotFoundError
from ..models.message import Message
from ..models.schemas import Priority
from ..models.session import Session, SessionStatus, SessionType
from ..utils.clock import utcnow

logger = logging.getLogger(__name__)


class InMemorySessionStore(SessionStore):
    """
    In-memory implementation of SessionStore.

    Features:
    - Async-safe operations using an asyncio lock
    - Deep copy returns to prevent external mutations
    - Non-decreasing message timestamps per transcript
    - Same not-found/closed semantics as the HTTP store

    Limitations:
    - Sessions lost on restart
    - Not shared across multiple instances
    """

    def __init__(self):
        self.sessions: Dict[str, Session] = {}
        self.notifications: List[Dict[str, Any]] = []
        self.lock = asyncio.Lock()

        logger.info("InMemorySessionStore initialized")

    async def get(self, session_id: str) -> Optional[Session]:
        """
        Get a session by ID.

        Returns a deep copy to prevent external mutations.
        """
        async with self.lock:
            session = self.sessions.get(session_id)
            if session is None:
                return None
            return deepcopy(session)

    async def create(
        self,
        user_id: Optional[str],
        session_id: str,
        session_type: SessionType = SessionType.CHATBOT,
        consent_timestamp: Optional[datetime] = None
    ) -> Session:
        async with self.lock:
            existing = self.sessions.get(session_id)
            if existing is not None:
                # Retried create; hand back what is already stored.
                logger.debug(f"Session {session_id} already exists")
                return deepcopy(existing)

            session = Session(
                session_id=session_id,
                user_id=user_id,
                session_type=session_type,
                status=SessionStatus.OPEN,
                consent_given_at=consent_timestamp
            )
            self.sessions[session_id] = session

            logger.debug(f"Created session {session_id}")
            return deepcopy(session)

    async def append_message(self, session_id: str, message: Message) -> None:
        async with self.lock:
            session = self._require(session_id)
            if session.is_closed:
                raise SessionClosedError(f"Session {session_id} is closed")

            stored = deepcopy(message)
            if session.messages and stored.timestamp < session.messages[-1].timestamp:
                stored.timestamp = session.messages[-1].timestamp

            session.messages.append(stored)

            logger.debug(
                f"Appended {stored.sender.value} message to session {session_id} "
                f"({len(session.messages)} total)"
            )

    async def escalate(
        self,
        session_id: str,
        reason: str,
        escalated_by: Optional[str],
        ticket_id: str
    ) -> Session:
        async with self.lock:
            session = self._require(session_id)
            if session.is_closed:
                raise SessionClosedError(f"Session {session_id} is closed")

            if session.is_escalated:
                logger.debug(f"Session {session_id} already escalated; keeping first record")
                return deepcopy(session)

            session.status = SessionStatus.ESCALATED
            session.escalation_reason = reason
            session.escalated_by = escalated_by
            session.escalation_ticket_id = ticket_id
            session.escalated_at = utcnow()

            logger.info(f"Session {session_id} escalated (ticket {ticket_id})")
            return deepcopy(session)

    async def assign_staff(self, session_id: str, staff_id: str) -> Session:
        async with self.lock:
            session = self._require(session_id)
            if not session.is_escalated:
                raise InvalidSessionStateError(
                    f"Session {session_id} is {session.status.value}, not escalated"
                )

            session.assigned_staff_id = staff_id
            session.session_type = SessionType.HUMAN_HANDOVER

            logger.info(f"Session {session_id} assigned to staff {staff_id}")
            return deepcopy(session)

    async def close(
        self,
        session_id: str,
        closed_by: Optional[str],
        summary: Optional[str] = None,
        rating: Optional[int] = None,
        feedback: Optional[str] = None
    ) -> None:
        async with self.lock:
            session = self._require(session_id)
            if session.is_closed:
                logger.debug(f"Session {session_id} already closed")
                return

            session.status = SessionStatus.CLOSED
            session.ended_at = utcnow()
            session.closed_by = closed_by
            session.summary = summary
            session.rating = rating
            session.feedback = feedback

            logger.info(f"Session {session_id} closed by {closed_by or 'system'}")

    async def create_escalation_notification(
        self,
        session_id: str,
        user_id: Optional[str],
        reason: str,
        priority: Priority,
        ticket_id: str
    ) -> bool:
        async with self.lock:
            self.notifications.append({
                "session_id": session_id,
                "user_id": user_id,
                "reason": reason,
                "priority": priority.value,
                "ticket_id": ticket_id,
                "timestamp": utcnow()
            })
        return True

    async def list_staff_sessions(self, staff_id: str) -> List[Session]:
        async with self.lock:
            return [
                deepcopy(s) for s in self.sessions.values()
                if s.assigned_staff_id == staff_id and not s.is_closed
            ]

    async def health_check(self) -> Dict[str, Any]:
        async with self.lock:
            return {
                "status": "healthy",
                "backend": "in_memory",
                "sessions": len(self.sessions)
            }

    def _require(self, session_id: str) -> Session:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session


__all__ = ['InMemorySessionStore']
