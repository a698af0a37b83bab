"""
Abstract session store interface.
Defines the contract for the durable system of record for counseling
sessions and their transcripts.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from datetime import datetime

from ..models.message import Message
from ..models.schemas import Priority
from ..models.session import Session, SessionType


class SessionStore(ABC):
    """
    Abstract base class for session storage.

    Implementations must:
    - Report a missing session from get() as None, not as an error
    - Raise SessionNotFoundError from mutations on a missing session
    - Raise SessionClosedError when appending to a closed transcript
    - Serialize concurrent appends to the same transcript
    - Raise UpstreamUnavailableError when the backing service cannot be reached
    """

    @abstractmethod
    async def get(self, session_id: str) -> Optional[Session]:
        """
        Get a session by ID.

        Args:
            session_id: Session identifier

        Returns:
            Session or None if not found
        """
        pass

    @abstractmethod
    async def create(
        self,
        user_id: Optional[str],
        session_id: str,
        session_type: SessionType = SessionType.CHATBOT,
        consent_timestamp: Optional[datetime] = None
    ) -> Session:
        """
        Create a new OPEN session.

        Args:
            user_id: Owning user, None for anonymous sessions
            session_id: Session identifier chosen by the client
            session_type: Initial counterparty type
            consent_timestamp: When the user gave consent

        Returns:
            The created session
        """
        pass

    @abstractmethod
    async def append_message(self, session_id: str, message: Message) -> None:
        """
        Append one message to a session transcript.

        Raises:
            SessionNotFoundError: Session vanished
            SessionClosedError: Session is closed
        """
        pass

    @abstractmethod
    async def escalate(
        self,
        session_id: str,
        reason: str,
        escalated_by: Optional[str],
        ticket_id: str
    ) -> Session:
        """
        Mark a session ESCALATED.

        Calling this on an already escalated session keeps the first
        escalation record.

        Returns:
            The session after the transition
        """
        pass

    @abstractmethod
    async def assign_staff(self, session_id: str, staff_id: str) -> Session:
        """
        Assign a staff member to an escalated session.

        Returns:
            The session after assignment
        """
        pass

    @abstractmethod
    async def close(
        self,
        session_id: str,
        closed_by: Optional[str],
        summary: Optional[str] = None,
        rating: Optional[int] = None,
        feedback: Optional[str] = None
    ) -> None:
        """
        Mark a session CLOSED. The transcript becomes immutable.
        """
        pass

    @abstractmethod
    async def create_escalation_notification(
        self,
        session_id: str,
        user_id: Optional[str],
        reason: str,
        priority: Priority,
        ticket_id: str
    ) -> bool:
        """
        Record a staff notification for an escalation.

        Returns:
            True if the notification was stored
        """
        pass

    @abstractmethod
    async def list_staff_sessions(self, staff_id: str) -> List[Session]:
        """
        List non-closed sessions assigned to a staff member.
        """
        pass

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """
        Check store health.

        Returns:
            Health status dictionary with at least a ``status`` key
        """
        pass

    async def initialize(self) -> None:
        """Acquire resources (HTTP sessions, ...)."""
        pass

    async def cleanup(self) -> None:
        """Release resources."""
        pass


__all__ = ['SessionStore']
